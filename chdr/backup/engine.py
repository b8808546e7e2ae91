"""
Backup engine - orchestrates the complete backup workflow.

Workflow:
1. Check that ClickHouse answers on the target
2. Select databases (configured list, or everything but system databases)
3. For each database with tables:
   a. Extract every table schema (worker pool, joined before data work)
   b. Try a native BACKUP DATABASE snapshot
   c. On failure fall back to per-table Native dumps (worker pool)
4. Pack the staging tree into an archive in the backup directory
5. Upload to S3 (if configured)
6. Cleanup temporary files
7. Enforce retention on both tiers, whatever the outcome (except cancellation)

Single table or database failures are recorded in the manifest and never
abort the run. Only an unreachable target, a failed listing of databases or
a failed archive step are fatal.
"""

import logging
import os
import posixpath
import shutil
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, List, Optional

from chdr.models import (
    BackupManifest,
    DatabaseSnapshot,
    ExecutionTarget,
    Strategy,
    TableArtifact,
)
from . import queries
from .catalog import Catalog
from .compression import (
    CompressionError,
    create_archive,
    generate_archive_filename,
    get_archive_size,
    strip_archive_extension,
)
from .retention import RetentionManager
from .storage import LocalStorage, S3Storage, StorageError, build_key, create_s3_storage
from .targets import BaseExecutor, ExecutorError, TargetResolutionError, create_executor

logger = logging.getLogger(__name__)


class BackupError(Exception):
    """Raised when a backup run cannot produce an artifact."""
    pass


class RunCancelled(Exception):
    """Raised when a run stops because cancellation was requested."""
    pass


def split_lines(output: str) -> List[str]:
    """Non-empty lines of clickhouse-client text output."""
    return [line.strip() for line in output.splitlines() if line.strip()]


class BaseRun:
    """Logging, cancellation and the worker pool shared by both engines."""

    def __init__(self, config, executor: BaseExecutor, cancel_event: Optional[threading.Event] = None):
        self.config = config
        self.executor = executor
        self.cancel_event = cancel_event or threading.Event()
        self.temp_dir = None
        self.logs = []

    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def _check_cancelled(self):
        if self.cancel_event.is_set():
            raise RunCancelled("Cancellation requested")

    def _run_parallel(self, func: Callable, items: Iterable, *args):
        """
        Run func(item, *args) for every item on a bounded pool.

        Returns once every worker has finished. The first fatal error raised
        by a worker is re-raised after the join.
        """
        with ThreadPoolExecutor(max_workers=self.config.workers, thread_name_prefix='chdr') as pool:
            futures = [pool.submit(func, item, *args) for item in items]

        for future in futures:
            future.result()

        self._check_cancelled()

    def _cleanup(self):
        """Remove temporary directory and files."""
        if self.temp_dir and os.path.exists(self.temp_dir):
            try:
                shutil.rmtree(self.temp_dir)
                self._log("Cleaned up temporary directory")
            except OSError as e:
                self._log(f"Warning: Failed to cleanup temp directory: {e}", logging.WARNING)
        self.temp_dir = None

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: logging level for the module logger
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {logging.getLevelName(level)} {message}")
        logger.log(level, message)


class BackupEngine(BaseRun):
    """
    Orchestrates one backup run against an executor.

    The engine owns its staging tree and removes it on every exit path.
    """

    def __init__(
        self,
        config,
        executor: BaseExecutor,
        local_storage: LocalStorage,
        s3_storage: Optional[S3Storage] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        super().__init__(config, executor, cancel_event)
        self.local_storage = local_storage
        self.s3_storage = s3_storage
        self.environment = config.environment_name(executor.kind)
        self.staging_dir = None
        self.manifest = None

    def run(self, selection: Optional[Iterable[str]] = None) -> BackupManifest:
        """
        Execute the backup.

        Args:
            selection: Databases to back up; empty or None means the configured
                list, or every non-system database when that is empty too

        Returns:
            BackupManifest describing what succeeded, was skipped and failed

        Raises:
            TargetResolutionError: If the execution target is unreachable
            BackupError: If databases cannot be listed or the archive cannot be stored
            CompressionError: If packing fails
            RunCancelled: If cancellation was requested
        """
        self.manifest = BackupManifest(
            environment=self.environment,
            timestamp=self._unique_timestamp(),
            logs=self.logs
        )

        self._log(f"Starting ClickHouse backup ({self.executor.describe()})")

        try:
            self._execute_workflow(selection)
            self._log(f"ClickHouse backup completed: {self.manifest.archive_path}")

        except RunCancelled:
            self.manifest.cancelled = True
            self._log("Backup cancelled, cleaning up", logging.WARNING)
            raise

        except (ExecutorError, BackupError, CompressionError) as e:
            self._log(f"Backup failed: {e}", logging.ERROR)
            raise

        finally:
            self._cleanup()
            if not self.cancelled():
                self._enforce_retention()
            self._log_summary()

        return self.manifest

    def _unique_timestamp(self) -> datetime:
        timestamp = datetime.now().replace(microsecond=0)
        while self.local_storage.exists(
            generate_archive_filename(self.environment, timestamp, self.config.compression_format)
        ):
            timestamp += timedelta(seconds=1)
        return timestamp

    def _execute_workflow(self, selection: Optional[Iterable[str]]):
        """Execute the main backup workflow steps."""
        self._check_cancelled()
        self.executor.verify()

        self.temp_dir = tempfile.mkdtemp(prefix='chdr_backup_')
        self.staging_dir = os.path.join(self.temp_dir, 'staging')
        os.makedirs(self.staging_dir)
        self._log(f"Staging directory: {self.staging_dir}")

        databases = self._select_databases(selection)
        self._log(f"Databases to back up: {', '.join(databases) or '(none)'}")

        for database in databases:
            self._check_cancelled()
            self._backup_database(database)

        self._check_cancelled()

        archive_path = self._create_archive()

        if self.s3_storage is not None:
            self._upload(archive_path)

    def _select_databases(self, selection: Optional[Iterable[str]]) -> List[str]:
        requested = list(selection or []) or list(self.config.databases)
        if requested:
            return list(dict.fromkeys(requested))

        self._log("No specific databases configured, backing up all databases")

        try:
            output = self.executor.run_query(queries.show_databases())
        except TargetResolutionError:
            raise
        except ExecutorError as e:
            raise BackupError(f"Failed to list databases: {e}")

        return [name for name in split_lines(output) if name not in queries.SYSTEM_DATABASES]

    def _backup_database(self, database: str):
        self._log(f"Backing up database: {database}")

        try:
            tables = split_lines(self.executor.run_query(queries.show_tables(database)))
        except TargetResolutionError:
            raise
        except ExecutorError as e:
            error_msg = f"Failed to list tables in {database}: {e}"
            self._log(error_msg, logging.ERROR)
            self.manifest.failed_databases.append(database)
            self.manifest.errors.append(error_msg)
            return

        if not tables:
            self._log(f"No tables found in database {database}, skipping", logging.WARNING)
            self.manifest.skipped_databases.append(database)
            return

        database_dir = os.path.join(self.staging_dir, database)
        os.makedirs(database_dir, exist_ok=True)

        snapshot = DatabaseSnapshot(
            name=database,
            tables=[TableArtifact(database=database, table=table) for table in tables]
        )
        self.manifest.databases.append(snapshot)

        self._log(f"Backing up table schemas for database {database}")
        self._run_parallel(self._extract_schema, snapshot.tables, database_dir)

        if self.config.bulk_snapshot and self._bulk_snapshot(snapshot, database_dir):
            strategy = Strategy.BULK_NATIVE
        else:
            strategy = Strategy.PER_TABLE
            self._log(f"Using table-by-table backup for {database}")
            self._run_parallel(self._extract_data, snapshot.tables, database_dir)

        snapshot.strategy = strategy
        for artifact in snapshot.tables:
            artifact.strategy = strategy

    def _extract_schema(self, artifact: TableArtifact, database_dir: str):
        if self.cancelled():
            return

        self._log(f"Getting schema for table {artifact.qualified_name}")
        schema_path = os.path.join(database_dir, f"{artifact.table}.schema")

        try:
            schema = self.executor.run_query(queries.show_create_table(artifact.database, artifact.table))
            if not schema.strip():
                raise ExecutorError("empty CREATE statement returned")
            with open(schema_path, 'w', encoding='utf-8') as f:
                f.write(schema)
            artifact.schema_path = schema_path
        except TargetResolutionError:
            raise
        except (ExecutorError, OSError) as e:
            error_msg = f"Failed to get schema: {e}"
            self._log(f"{error_msg} ({artifact.qualified_name})", logging.ERROR)
            artifact.errors.append(error_msg)

    def _bulk_snapshot(self, snapshot: DatabaseSnapshot, database_dir: str) -> bool:
        """
        Try a native BACKUP DATABASE snapshot.

        Returns:
            True if the snapshot landed in the staging tree
        """
        self._check_cancelled()

        database = snapshot.name
        filename = f"{database}-{self.manifest.timestamp.strftime('%Y%m%d_%H%M%S')}.zip"
        remote_path = posixpath.join(self.config.snapshot_disk_path, filename)
        snapshot_path = os.path.join(database_dir, f"{database}-backup.snapshot")

        self._log(f"Creating native backup for database {database}")

        try:
            self.executor.run_query(queries.backup_database(database, self.config.snapshot_disk, filename))
            self.executor.copy_out(remote_path, snapshot_path)
        except TargetResolutionError:
            raise
        except ExecutorError as e:
            self._log(
                f"Native BACKUP failed for {database}, falling back to table-by-table backup: {e}",
                logging.WARNING
            )
            if os.path.exists(snapshot_path):
                os.remove(snapshot_path)
            return False
        finally:
            self.executor.remove(remote_path)

        snapshot.snapshot_path = snapshot_path
        return True

    def _extract_data(self, artifact: TableArtifact, database_dir: str):
        if self.cancelled():
            return

        self._log(f"Backing up data for table {artifact.qualified_name}")
        scratch_path = self.executor.scratch_path(f"{artifact.database}-{artifact.table}.data")
        data_path = os.path.join(database_dir, f"{artifact.table}.data")

        try:
            self.executor.run_query_to_file(queries.select_all(artifact.database, artifact.table), scratch_path)
            self.executor.copy_out(scratch_path, data_path)
            artifact.data_path = data_path
        except TargetResolutionError:
            raise
        except ExecutorError as e:
            error_msg = f"Failed to backup data: {e}"
            self._log(f"{error_msg} ({artifact.qualified_name})", logging.ERROR)
            artifact.errors.append(error_msg)
            if os.path.exists(data_path):
                os.remove(data_path)
        finally:
            self.executor.remove(scratch_path)

    def _create_archive(self) -> str:
        """
        Pack the staging tree and move the archive into the backup directory.

        Returns:
            Full path of the stored archive
        """
        self._log(f"Creating compressed archive (format: {self.config.compression_format})")

        filename = generate_archive_filename(
            self.environment,
            self.manifest.timestamp,
            self.config.compression_format
        )
        archive_base = os.path.join(self.temp_dir, strip_archive_extension(filename))
        archive_path = create_archive(self.staging_dir, archive_base, self.config.compression_format)

        try:
            name = self.local_storage.store(archive_path)
        except StorageError as e:
            raise BackupError(f"Failed to store archive in {self.local_storage.base_path}: {e}")

        self.manifest.archive_path = self.local_storage.get_full_path(name)
        size = get_archive_size(self.manifest.archive_path)
        self._log(f"Archive created: {name} ({size / 1024 / 1024:.2f} MB)")
        return self.manifest.archive_path

    def _upload(self, archive_path: str):
        key = build_key(self.config.s3_path, os.path.basename(archive_path))
        self._log(f"Uploading backup to S3: s3://{self.s3_storage.bucket_name}/{key}")

        try:
            self.manifest.remote_key = self.s3_storage.put(
                archive_path,
                key,
                cancellation_check=self._check_cancelled
            )
            self._log(f"Uploaded to S3: {key}")
        except StorageError as e:
            error_msg = f"Failed to upload backup to S3: {e}"
            self._log(error_msg, logging.ERROR)
            self.manifest.errors.append(error_msg)

    def _enforce_retention(self):
        catalog = Catalog(self.local_storage, self.s3_storage, self.config.s3_path)
        manager = RetentionManager(catalog)
        result = manager.enforce(self.config.retention_days)
        self.logs.extend(result['logs'])

    def _log_summary(self):
        summary = self.manifest.summary()
        self._log(
            f"Summary: databases attempted {summary['databases_attempted']}, "
            f"backed up {summary['databases_backed_up']}, "
            f"skipped {summary['databases_skipped']}, "
            f"failed {summary['databases_failed']}; "
            f"tables attempted {summary['tables_attempted']}, "
            f"failed {summary['tables_failed']}"
        )
        for failure in summary['failures']:
            self._log(f"Failure: {failure}", logging.ERROR)


def run_backup(
    config,
    target: ExecutionTarget,
    selection: Optional[Iterable[str]] = None,
    cancel_event: Optional[threading.Event] = None,
) -> BackupManifest:
    """
    Run a backup against an execution target.

    Resolves the target into an executor, runs the engine and releases the
    executor afterwards.
    """
    executor = create_executor(target, config)
    try:
        engine = BackupEngine(
            config,
            executor,
            LocalStorage(config.backup_dir),
            create_s3_storage(config),
            cancel_event=cancel_event
        )
        return engine.run(selection)
    finally:
        executor.cleanup()
