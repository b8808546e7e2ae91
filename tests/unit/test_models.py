"""
Unit tests for run result models (chdr/models.py).
"""

from datetime import datetime

from chdr.models import (
    BackupManifest,
    DatabaseRestore,
    DatabaseSnapshot,
    RestoreReport,
    Strategy,
    TableArtifact,
    TableRestore,
    Tier,
)


def make_manifest():
    ok = TableArtifact(database='db1', table='users')
    broken = TableArtifact(database='db1', table='events', errors=['Code: 60. Table does not exist'])
    return BackupManifest(
        environment='clickhouse',
        timestamp=datetime(2025, 1, 2, 3, 4, 5),
        databases=[
            DatabaseSnapshot(name='db1', tables=[ok, broken]),
            DatabaseSnapshot(name='db3', strategy=Strategy.BULK_NATIVE),
        ],
        skipped_databases=['db2'],
        archive_path='/backups/clickhouse_backup_20250102_030405.tar.gz',
    )


class TestBackupManifest:

    def test_clean_manifest(self):
        manifest = BackupManifest(environment='clickhouse', timestamp=datetime(2025, 1, 1))

        assert manifest.failures == []
        assert manifest.has_failures is False

    def test_table_failures_are_qualified(self):
        manifest = make_manifest()

        assert manifest.failures == ['db1.events: Code: 60. Table does not exist']
        assert manifest.has_failures is True
        assert [t.table for t in manifest.databases[0].failed_tables] == ['events']

    def test_failed_database_counts_as_failure(self):
        manifest = BackupManifest(
            environment='clickhouse',
            timestamp=datetime(2025, 1, 1),
            failed_databases=['db9'],
        )

        assert manifest.has_failures is True

    def test_summary(self):
        summary = make_manifest().summary()

        assert summary['timestamp'] == '20250102_030405'
        assert summary['databases_attempted'] == 3
        assert summary['databases_backed_up'] == 2
        assert summary['databases_skipped'] == 1
        assert summary['tables_attempted'] == 2
        assert summary['tables_failed'] == 1


class TestRestoreReport:

    def test_summary(self):
        report = RestoreReport(
            artifact='clickhouse_backup_20250102_030405.tar.gz',
            source_tier=Tier.REMOTE,
            databases=[
                DatabaseRestore(name='db1', tables=[
                    TableRestore(table='events', schema_restored=True, data_restored=True),
                    TableRestore(table='users', errors=['schema failed']),
                ]),
                DatabaseRestore(name='db2', errors=['CREATE DATABASE failed']),
            ],
        )

        summary = report.summary()

        assert summary['source_tier'] == 'remote'
        assert summary['databases_failed'] == 2
        assert summary['tables_failed'] == 1
        assert report.failures == ['db1.users: schema failed', 'db2: CREATE DATABASE failed']

    def test_warnings_are_not_failures(self):
        report = RestoreReport(artifact='a.tar.gz', databases=[
            DatabaseRestore(name='db1', tables=[TableRestore(table='t', warnings=['no data file'])]),
        ])

        assert report.has_failures is False
