"""
Restore engine - rebuilds databases from a backup artifact.

Workflow:
1. Locate the artifact (file path, local backup directory, then S3)
2. Download it when it only exists remotely
3. Unpack into a private restore tree
4. For each database directory:
   a. CREATE DATABASE IF NOT EXISTS
   b. Native RESTORE DATABASE from the snapshot, when the artifact has one
   c. Otherwise (or when that fails) drop, recreate and reload every table
5. Cleanup temporary files
"""

import logging
import os
import posixpath
import re
import tempfile
import threading
from datetime import datetime
from typing import List, Optional

from chdr.models import (
    DatabaseRestore,
    ExecutionTarget,
    RestoreReport,
    Strategy,
    TableRestore,
    Tier,
)
from . import queries
from .catalog import ArtifactNotFoundError, Catalog
from .compression import TIMESTAMP_FORMAT, CompressionError, extract_archive
from .engine import BaseRun, RunCancelled, split_lines
from .storage import LocalStorage, StorageError, create_s3_storage
from .targets import BaseExecutor, ExecutorError, TargetResolutionError, create_executor

logger = logging.getLogger(__name__)


class RestoreError(Exception):
    """Raised when an artifact cannot be made available for restore."""
    pass


SNAPSHOT_SUFFIX = '-backup.snapshot'

# Current names first; the others come from archives made by the shell tooling
SCHEMA_SUFFIXES = ('.schema', '.sql')
DATA_SUFFIXES = ('.data', '.native')
LEGACY_SNAPSHOT_NAME = 'backup.zip'

WRAPPER_DIR_RE = re.compile(r'^(?:.+_)?backup_\d{8}_\d{6}$')

TSV_ESCAPES = {'n': '\n', 't': '\t', 'r': '\r', '0': '\0', '\\': '\\', "'": "'"}


def unescape_tsv(text: str) -> str:
    """Undo TabSeparated escaping, as in SHOW CREATE TABLE output saved without FORMAT TabSeparatedRaw."""
    return re.sub(r'\\(.)', lambda m: TSV_ESCAPES.get(m.group(1), m.group(0)), text)


class RestoreEngine(BaseRun):
    """
    Orchestrates one restore run against an executor.

    Restoring the same artifact twice yields the same tables: every table is
    dropped before it is recreated.
    """

    def __init__(
        self,
        config,
        executor: BaseExecutor,
        catalog: Catalog,
        cancel_event: Optional[threading.Event] = None,
    ):
        super().__init__(config, executor, cancel_event)
        self.catalog = catalog
        self.report = None

    def run(self, reference: str) -> RestoreReport:
        """
        Execute the restore.

        Args:
            reference: Artifact path, file name or S3 object name

        Returns:
            RestoreReport with per-database and per-table outcomes

        Raises:
            ArtifactNotFoundError: If the artifact resolves nowhere
            RestoreError: If a remote artifact cannot be downloaded
            CompressionError: If the archive is corrupt or unsafe
            TargetResolutionError: If the execution target is unreachable
            RunCancelled: If cancellation was requested
        """
        self.report = RestoreReport(artifact=reference, logs=self.logs)
        self._log(f"Starting ClickHouse restore of {reference} ({self.executor.describe()})")

        try:
            self._execute_workflow(reference)
            self._log("ClickHouse restore completed")

        except RunCancelled:
            self.report.cancelled = True
            self._log("Restore cancelled, cleaning up", logging.WARNING)
            raise

        except (ArtifactNotFoundError, RestoreError, CompressionError, ExecutorError) as e:
            self._log(f"Restore failed: {e}", logging.ERROR)
            raise

        finally:
            self._cleanup()
            self._log_summary()

        return self.report

    def _execute_workflow(self, reference: str):
        artifact = self.catalog.locate(reference)
        self.report.artifact = artifact.name
        self.report.source_tier = artifact.tier

        self.temp_dir = tempfile.mkdtemp(prefix='chdr_restore_')
        archive_path = self._fetch(artifact)

        self._check_cancelled()

        self._log(f"Extracting backup archive {artifact.name}")
        tree = extract_archive(archive_path, os.path.join(self.temp_dir, 'tree'))
        root = self._find_backup_root(tree)

        databases = sorted(
            entry for entry in os.listdir(root)
            if os.path.isdir(os.path.join(root, entry))
        )
        if not databases:
            self._log("Backup archive contains no databases", logging.WARNING)

        for database in databases:
            self._check_cancelled()
            self._restore_database(database, os.path.join(root, database))

    def _fetch(self, artifact) -> str:
        if artifact.tier == Tier.LOCAL:
            self._log(f"Using local backup file: {artifact.location}")
            return artifact.location

        self._log(f"Downloading backup from S3: {artifact.location}")
        local_path = os.path.join(self.temp_dir, artifact.name)
        try:
            return self.catalog.s3_storage.get(artifact.location, local_path)
        except StorageError as e:
            raise RestoreError(f"Failed to download backup from S3: {e}")

    @staticmethod
    def _find_backup_root(tree: str) -> str:
        """
        Descend into the single backup_<timestamp> directory that older
        archives wrap their databases in.

        A directory holding table files is a database, whatever its name.
        """
        entries = os.listdir(tree)
        if len(entries) != 1 or not WRAPPER_DIR_RE.match(entries[0]):
            return tree

        wrapper = os.path.join(tree, entries[0])
        if not os.path.isdir(wrapper):
            return tree

        children = os.listdir(wrapper)
        has_databases = any(os.path.isdir(os.path.join(wrapper, c)) for c in children)
        has_table_files = any(
            c.endswith(SCHEMA_SUFFIXES + DATA_SUFFIXES + (SNAPSHOT_SUFFIX,)) or c == LEGACY_SNAPSHOT_NAME
            for c in children
        )
        if has_databases and not has_table_files:
            return wrapper
        return tree

    @staticmethod
    def _table_file(database_dir: str, table: str, suffixes) -> Optional[str]:
        for suffix in suffixes:
            path = os.path.join(database_dir, f"{table}{suffix}")
            if os.path.isfile(path):
                return path
        return None

    @staticmethod
    def _snapshot_file(database: str, database_dir: str) -> Optional[str]:
        for name in (f"{database}{SNAPSHOT_SUFFIX}", LEGACY_SNAPSHOT_NAME):
            path = os.path.join(database_dir, name)
            if os.path.isfile(path):
                return path
        return None

    def _restore_database(self, database: str, database_dir: str):
        self._log(f"Restoring database: {database}")
        result = DatabaseRestore(name=database)
        self.report.databases.append(result)

        try:
            self.executor.run_query(queries.create_database(database))
        except TargetResolutionError:
            raise
        except ExecutorError as e:
            error_msg = f"Failed to create database: {e}"
            self._log(f"{error_msg} ({database})", logging.ERROR)
            result.errors.append(error_msg)
            return

        tables = self._tables_in(database_dir, result)
        snapshot_path = self._snapshot_file(database, database_dir)

        if snapshot_path and self._bulk_restore(database, tables, snapshot_path):
            result.strategy = Strategy.BULK_NATIVE
            result.tables = self._check_restored_tables(database, tables)
            return

        result.strategy = Strategy.PER_TABLE
        result.tables = [TableRestore(table=table) for table in tables]
        self._run_parallel(self._restore_table, result.tables, database, database_dir)

    @staticmethod
    def _strip_suffix(files: List[str], suffixes) -> set:
        names = set()
        for name in files:
            for suffix in suffixes:
                if name.endswith(suffix):
                    names.add(name[:-len(suffix)])
        return names

    def _tables_in(self, database_dir: str, result: DatabaseRestore) -> List[str]:
        files = [f for f in os.listdir(database_dir) if os.path.isfile(os.path.join(database_dir, f))]
        tables = sorted(self._strip_suffix(files, SCHEMA_SUFFIXES))

        for orphan in sorted(self._strip_suffix(files, DATA_SUFFIXES) - set(tables)):
            error_msg = f"Data file without schema for table {orphan}, skipping"
            self._log(f"{error_msg} ({result.name})", logging.ERROR)
            result.errors.append(error_msg)

        return tables

    def _check_restored_tables(self, database: str, tables: List[str]) -> List[TableRestore]:
        """Confirm the tables a native RESTORE should have brought back."""
        results = [TableRestore(table=table) for table in tables]

        try:
            present = set(split_lines(self.executor.run_query(queries.show_tables(database))))
        except TargetResolutionError:
            raise
        except ExecutorError as e:
            warning = f"Could not list tables after native restore: {e}"
            self._log(f"{warning} ({database})", logging.WARNING)
            for result in results:
                result.schema_restored = result.data_restored = True
                result.warnings.append(warning)
            return results

        for result in results:
            if result.table in present:
                result.schema_restored = result.data_restored = True
            else:
                error_msg = "Table missing after native restore"
                self._log(f"{error_msg} ({database}.{result.table})", logging.ERROR)
                result.errors.append(error_msg)

        return results

    def _bulk_restore(self, database: str, tables: List[str], snapshot_path: str) -> bool:
        """
        Try a native RESTORE DATABASE from the snapshot file.

        Returns:
            True if the database was restored from the snapshot
        """
        self._check_cancelled()

        filename = f"{database}-restore-{datetime.now().strftime(TIMESTAMP_FORMAT)}.zip"
        remote_path = posixpath.join(self.config.snapshot_disk_path, filename)

        self._log(f"Restoring database {database} from native backup")

        try:
            for table in tables:
                self.executor.run_query(queries.drop_table(database, table))
            self.executor.copy_in(snapshot_path, remote_path)
            self.executor.run_query(queries.restore_database(database, self.config.snapshot_disk, filename))
        except TargetResolutionError:
            raise
        except ExecutorError as e:
            self._log(
                f"Native RESTORE failed for {database}, falling back to table-by-table restore: {e}",
                logging.WARNING
            )
            return False
        finally:
            self.executor.remove(remote_path)

        return True

    def _restore_table(self, result: TableRestore, database: str, database_dir: str):
        if self.cancelled():
            return

        qualified_name = f"{database}.{result.table}"
        schema_path = self._table_file(database_dir, result.table, SCHEMA_SUFFIXES)
        data_path = self._table_file(database_dir, result.table, DATA_SUFFIXES)

        self._log(f"Restoring table {qualified_name}")

        try:
            self.executor.run_query(queries.drop_table(database, result.table))
        except TargetResolutionError:
            raise
        except ExecutorError as e:
            warning = f"Failed to drop existing table: {e}"
            self._log(f"{warning} ({qualified_name})", logging.WARNING)
            result.warnings.append(warning)

        try:
            with open(schema_path, 'r', encoding='utf-8') as f:
                schema = f.read()
            if schema_path.endswith('.sql'):
                schema = unescape_tsv(schema.strip())
            if not schema.strip():
                raise ExecutorError("schema file is empty")
            self.executor.run_query(schema)
            result.schema_restored = True
        except TargetResolutionError:
            raise
        except (ExecutorError, OSError) as e:
            error_msg = f"Failed to restore schema: {e}"
            self._log(f"{error_msg} ({qualified_name})", logging.ERROR)
            result.errors.append(error_msg)
            return

        if data_path is None:
            warning = "No data file found, restored schema only"
            self._log(f"{warning} ({qualified_name})", logging.WARNING)
            result.warnings.append(warning)
            return

        if os.path.getsize(data_path) == 0:
            result.data_restored = True
            return

        scratch_path = self.executor.scratch_path(f"{database}-{result.table}.data")
        try:
            self.executor.copy_in(data_path, scratch_path)
            self.executor.run_query_from_file(queries.insert_all(database, result.table), scratch_path)
            result.data_restored = True
        except TargetResolutionError:
            raise
        except ExecutorError as e:
            error_msg = f"Failed to restore data: {e}"
            self._log(f"{error_msg} ({qualified_name})", logging.ERROR)
            result.errors.append(error_msg)
        finally:
            self.executor.remove(scratch_path)

    def _log_summary(self):
        summary = self.report.summary()
        self._log(
            f"Summary: databases attempted {summary['databases_attempted']}, "
            f"failed {summary['databases_failed']}; "
            f"tables attempted {summary['tables_attempted']}, "
            f"failed {summary['tables_failed']}"
        )
        for failure in summary['failures']:
            self._log(f"Failure: {failure}", logging.ERROR)


def run_restore(
    config,
    target: ExecutionTarget,
    reference: str,
    cancel_event: Optional[threading.Event] = None,
) -> RestoreReport:
    """Restore an artifact onto an execution target."""
    executor = create_executor(target, config)
    try:
        catalog = Catalog(LocalStorage(config.backup_dir), create_s3_storage(config), config.s3_path)
        engine = RestoreEngine(config, executor, catalog, cancel_event=cancel_event)
        return engine.run(reference)
    finally:
        executor.cleanup()
