"""
Shared pytest fixtures for ch-dr tests.

This module provides fixtures for:
- Configuration pointing at temporary directories
- FakeExecutor, an in-memory ClickHouse reached through the executor interface
- Mock fixtures for external services (S3, SSH)
- Backup artifact fixtures
"""

import json
import os
import re
import shutil
import threading
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from chdr.config import Config
from chdr.models import TargetKind
from chdr.backup.compression import create_archive
from chdr.backup.targets import BaseExecutor, ExecutorError


IDENTIFIER = r'`((?:[^`\\]|\\.)*)`'
STRING = r"'((?:[^'\\]|\\.)*)'"


def make_schema(database, table):
    return (
        f"CREATE TABLE {database}.{table}\n"
        f"(\n    `id` UInt64,\n    `value` String\n)\n"
        f"ENGINE = MergeTree\nORDER BY id\n"
    )


class FakeExecutor(BaseExecutor):
    """
    In-memory ClickHouse behind the executor interface.

    Understands the statements built by chdr.backup.queries plus the CREATE
    TABLE text it hands out. The executor host is a local directory, so
    copy_in/copy_out are plain file copies.

    Attributes:
        databases: {database: {table: {'schema': str, 'rows': bytes}}}
        fail_on: substrings; any query containing one fails
        bulk_supported: whether BACKUP/RESTORE DATABASE work
        queries: every statement received, in order
    """

    kind = TargetKind.LOCAL

    def __init__(self, config, host_dir, databases=None):
        super().__init__(config)
        self.host_dir = Path(host_dir)
        self.host_dir.mkdir(parents=True, exist_ok=True)
        self.databases = databases if databases is not None else {}
        self.fail_on = set()
        self.bulk_supported = True
        self.queries = []
        self.on_query = None
        self.cleaned_up = False
        self._lock = threading.Lock()

    # Helpers

    def add_table(self, database, table, rows=b''):
        self.databases.setdefault(database, {})[table] = {
            'schema': make_schema(database, table),
            'rows': rows,
        }

    def _fail_if_matching(self, query):
        for pattern in self.fail_on:
            if pattern in query:
                raise ExecutorError(f"Code: 60. DB::Exception: simulated failure for {pattern}")

    def _table(self, database, table):
        try:
            return self.databases[database][table]
        except KeyError:
            raise ExecutorError(f"Code: 60. DB::Exception: Table {database}.{table} does not exist")

    def _execute(self, query):
        with self._lock:
            self.queries.append(query)
        if self.on_query:
            self.on_query(query)
        self._fail_if_matching(query)

        text = query.strip()

        if text == 'SELECT 1':
            return '1\n'

        if text == 'SHOW DATABASES':
            return ''.join(f"{name}\n" for name in self.databases)

        match = re.match(rf'^SHOW TABLES FROM {IDENTIFIER}$', text)
        if match:
            database = match.group(1)
            if database not in self.databases:
                raise ExecutorError(f"Code: 81. DB::Exception: Database {database} does not exist")
            return ''.join(f"{name}\n" for name in sorted(self.databases[database]))

        match = re.match(rf'^SHOW CREATE TABLE {IDENTIFIER}\.{IDENTIFIER}', text)
        if match:
            return self._table(match.group(1), match.group(2))['schema']

        match = re.match(rf'^CREATE DATABASE IF NOT EXISTS {IDENTIFIER}$', text)
        if match:
            with self._lock:
                self.databases.setdefault(match.group(1), {})
            return ''

        match = re.match(rf'^DROP TABLE IF EXISTS {IDENTIFIER}\.{IDENTIFIER}$', text)
        if match:
            with self._lock:
                self.databases.get(match.group(1), {}).pop(match.group(2), None)
            return ''

        match = re.match(r'^CREATE TABLE\s+`?(\w+)`?\.`?(\w+)`?', text)
        if match:
            database, table = match.group(1), match.group(2)
            with self._lock:
                if database not in self.databases:
                    raise ExecutorError(f"Code: 81. DB::Exception: Database {database} does not exist")
                if table in self.databases[database]:
                    raise ExecutorError(f"Code: 57. DB::Exception: Table {database}.{table} already exists")
                self.databases[database][table] = {'schema': query, 'rows': b''}
            return ''

        # Row transfer happens in run_query_to_file / run_query_from_file
        match = re.match(rf'^SELECT \* FROM {IDENTIFIER}\.{IDENTIFIER} FORMAT Native$', text)
        if match:
            self._table(match.group(1), match.group(2))
            return ''

        match = re.match(rf'^INSERT INTO {IDENTIFIER}\.{IDENTIFIER} FORMAT Native$', text)
        if match:
            self._table(match.group(1), match.group(2))
            return ''

        match = re.match(rf'^BACKUP DATABASE {IDENTIFIER} TO Disk\({STRING}, {STRING}\)$', text)
        if match:
            if not self.bulk_supported:
                raise ExecutorError("Code: 48. DB::Exception: BACKUP is not supported")
            database, filename = match.group(1), match.group(3)
            tables = {
                name: {'schema': t['schema'], 'rows': t['rows'].decode('latin-1')}
                for name, t in self.databases[database].items()
            }
            path = Path(self.config.snapshot_disk_path) / filename
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(tables))
            return ''

        match = re.match(rf'^RESTORE DATABASE {IDENTIFIER} FROM Disk\({STRING}, {STRING}\)$', text)
        if match:
            if not self.bulk_supported:
                raise ExecutorError("Code: 48. DB::Exception: RESTORE is not supported")
            database, filename = match.group(1), match.group(3)
            path = Path(self.config.snapshot_disk_path) / filename
            tables = json.loads(path.read_text())
            with self._lock:
                target = self.databases.setdefault(database, {})
                for name, t in tables.items():
                    if name in target:
                        raise ExecutorError(f"Code: 57. DB::Exception: Table {database}.{name} already exists")
                    target[name] = {'schema': t['schema'], 'rows': t['rows'].encode('latin-1')}
            return ''

        raise ExecutorError(f"Code: 62. DB::Exception: Syntax error: {text[:40]}")

    # Executor interface

    def run_query(self, query):
        return self._execute(query)

    def run_query_to_file(self, query, path):
        self._execute(query)
        match = re.match(rf'^SELECT \* FROM {IDENTIFIER}\.{IDENTIFIER} FORMAT Native$', query)
        if not match:
            raise ExecutorError(f"Unexpected export: {query}")
        rows = self._table(match.group(1), match.group(2))['rows']
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        Path(path).write_bytes(rows)

    def run_query_from_file(self, query, path):
        self._execute(query)
        match = re.match(rf'^INSERT INTO {IDENTIFIER}\.{IDENTIFIER} FORMAT Native$', query)
        if not match:
            raise ExecutorError(f"Unexpected import: {query}")
        table = self._table(match.group(1), match.group(2))
        with self._lock:
            table['rows'] += Path(path).read_bytes()

    def run_shell(self, command):
        self._execute(command)
        return ''

    def copy_in(self, local_path, remote_path):
        self._fail_if_matching(f"copy_in {remote_path}")
        Path(remote_path).parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(local_path, remote_path)

    def copy_out(self, remote_path, local_path):
        self._fail_if_matching(f"copy_out {remote_path}")
        if not os.path.exists(remote_path):
            raise ExecutorError(f"No such file on executor host: {remote_path}")
        Path(local_path).parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(remote_path, local_path)

    def scratch_path(self, name):
        return str(self.host_dir / 'tmp' / name)

    def remove(self, path):
        try:
            os.remove(path)
        except FileNotFoundError:
            pass

    def cleanup(self):
        self.cleaned_up = True

    def describe(self):
        return 'fake clickhouse'

    def host_files(self):
        """Files left behind on the executor host."""
        return sorted(str(p.relative_to(self.host_dir)) for p in self.host_dir.rglob('*') if p.is_file())


@pytest.fixture
def config(tmp_path):
    """Configuration rooted in a temporary directory."""
    return Config(
        backup_dir=str(tmp_path / 'backups'),
        snapshot_disk_path=str(tmp_path / 'host' / 'disks' / 'backups'),
        workers=2,
        retention_days=7,
        bulk_snapshot=False,
        log_file=None,
    )


@pytest.fixture
def fake_clickhouse(config, tmp_path):
    """
    Source server with two user databases and the system databases.

    db1 has two tables (users is empty), db2 has none.
    """
    executor = FakeExecutor(config, tmp_path / 'host')
    executor.add_table('db1', 'events', rows=b'\x01\x02native-events\x00')
    executor.add_table('db1', 'users', rows=b'')
    executor.databases['db2'] = {}
    executor.add_table('system', 'parts')
    executor.databases['INFORMATION_SCHEMA'] = {}
    executor.databases['information_schema'] = {}
    return executor


@pytest.fixture
def empty_clickhouse(config, tmp_path):
    """Restore target with no databases."""
    return FakeExecutor(config, tmp_path / 'target-host')


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def s3_config(config):
    """Configuration with S3 enabled against the moto bucket."""
    return config.model_copy(update={
        'use_s3': True,
        's3_bucket': 'test-bucket',
        's3_region': 'us-east-1',
        's3_access_key': 'testing',
        's3_secret_key': 'testing',
    })


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SSH/SFTP testing.

    Returns the patched class; its return_value is the client instance.
    """
    with patch('chdr.backup.targets.SSHClient') as mock_ssh:
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp
        mock_ssh.return_value.connect.return_value = None
        yield mock_ssh


def build_artifact(path, tree):
    """
    Write a backup archive from a {relative path: bytes or str} mapping.

    Returns:
        Path of the archive
    """
    staging = Path(path).parent / (Path(path).name + '.staging')
    for relative, content in tree.items():
        file_path = staging / relative
        file_path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, str):
            file_path.write_text(content)
        else:
            file_path.write_bytes(content)

    name = Path(path).name
    base = str(Path(path).parent / name[:-len('.tar.gz')])
    archive = create_archive(str(staging), base, 'tar.gz')
    shutil.rmtree(staging)
    return archive


@pytest.fixture
def artifact_factory(tmp_path):
    """Build archives by file tree; see build_artifact."""

    def _factory(name, tree, directory=None):
        directory = Path(directory or tmp_path / 'artifacts')
        directory.mkdir(parents=True, exist_ok=True)
        return build_artifact(directory / name, tree)

    return _factory


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('chdr.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance


@pytest.fixture
def schema_text():
    """CREATE TABLE text as SHOW CREATE TABLE returns it."""
    return make_schema
