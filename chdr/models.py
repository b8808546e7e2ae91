"""
Run-level data model for ch-dr.

Backups are not tracked in a database: a manifest is rebuilt from the
staging tree during a run and from the artifact name afterwards. These
classes carry what a single backup or restore run did.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional


class Strategy(str, Enum):
    """How a database's data was extracted or restored."""
    BULK_NATIVE = 'bulk_native'
    PER_TABLE = 'per_table'


class TargetKind(str, Enum):
    """Where clickhouse-client runs."""
    LOCAL = 'local'
    KUBERNETES = 'k8s'
    SSH = 'ssh'


class Tier(str, Enum):
    """Catalog storage tier."""
    LOCAL = 'local'
    REMOTE = 'remote'


@dataclass(frozen=True)
class ExecutionTarget:
    """
    Execution target resolved once per run into an executor.

    selector narrows the target for remote kinds (pod name prefix or SSH
    host); None means "use the configured value".
    """
    kind: TargetKind = TargetKind.LOCAL
    selector: Optional[str] = None


@dataclass
class TableArtifact:
    """Schema and data files extracted for one table."""
    database: str
    table: str
    strategy: Strategy = Strategy.PER_TABLE
    schema_path: Optional[str] = None
    data_path: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def qualified_name(self) -> str:
        return f"{self.database}.{self.table}"

    @property
    def failed(self) -> bool:
        return bool(self.errors)


@dataclass
class DatabaseSnapshot:
    """One database inside a backup artifact."""
    name: str
    strategy: Strategy = Strategy.PER_TABLE
    tables: List[TableArtifact] = field(default_factory=list)
    snapshot_path: Optional[str] = None

    @property
    def failed_tables(self) -> List[TableArtifact]:
        return [t for t in self.tables if t.failed]


@dataclass
class BackupManifest:
    """
    Result of a backup run.

    Identified by (environment, timestamp); the timestamp is embedded in the
    artifact name and doubles as the retention sort key.
    """
    environment: str
    timestamp: datetime
    databases: List[DatabaseSnapshot] = field(default_factory=list)
    skipped_databases: List[str] = field(default_factory=list)
    failed_databases: List[str] = field(default_factory=list)
    archive_path: Optional[str] = None
    remote_key: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    cancelled: bool = False
    logs: List[str] = field(default_factory=list)

    @property
    def failures(self) -> List[str]:
        """All recoverable failures recorded during the run."""
        failures = list(self.errors)
        for snapshot in self.databases:
            for table in snapshot.tables:
                failures.extend(f"{table.qualified_name}: {e}" for e in table.errors)
        return failures

    @property
    def has_failures(self) -> bool:
        return bool(self.failures) or bool(self.failed_databases)

    def summary(self) -> dict:
        tables = [t for s in self.databases for t in s.tables]
        return {
            'environment': self.environment,
            'timestamp': self.timestamp.strftime('%Y%m%d_%H%M%S'),
            'databases_attempted': (
                len(self.databases) + len(self.skipped_databases) + len(self.failed_databases)
            ),
            'databases_backed_up': len(self.databases),
            'databases_skipped': len(self.skipped_databases),
            'databases_failed': len(self.failed_databases),
            'tables_attempted': len(tables),
            'tables_failed': len([t for t in tables if t.failed]),
            'archive_path': self.archive_path,
            'remote_key': self.remote_key,
            'failures': self.failures,
        }


@dataclass
class TableRestore:
    table: str
    schema_restored: bool = False
    data_restored: bool = False
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class DatabaseRestore:
    name: str
    strategy: Strategy = Strategy.PER_TABLE
    tables: List[TableRestore] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return bool(self.errors) or any(t.errors for t in self.tables)


@dataclass
class RestoreReport:
    """Result of a restore run."""
    artifact: str
    source_tier: Optional[Tier] = None
    databases: List[DatabaseRestore] = field(default_factory=list)
    cancelled: bool = False
    logs: List[str] = field(default_factory=list)

    @property
    def failures(self) -> List[str]:
        failures = []
        for database in self.databases:
            failures.extend(f"{database.name}: {e}" for e in database.errors)
            for table in database.tables:
                failures.extend(f"{database.name}.{table.table}: {e}" for e in table.errors)
        return failures

    @property
    def has_failures(self) -> bool:
        return bool(self.failures)

    def summary(self) -> dict:
        tables = [t for d in self.databases for t in d.tables]
        return {
            'artifact': self.artifact,
            'source_tier': self.source_tier.value if self.source_tier else None,
            'databases_attempted': len(self.databases),
            'databases_failed': len([d for d in self.databases if d.failed]),
            'tables_attempted': len(tables),
            'tables_failed': len([t for t in tables if t.errors]),
            'failures': self.failures,
        }


@dataclass
class ArtifactRef:
    """A backup artifact known to the catalog."""
    name: str
    tier: Tier
    location: str
    timestamp: Optional[datetime]
    environment: str
    size: Optional[int] = None
