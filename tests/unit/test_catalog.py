"""
Unit tests for the artifact catalog (chdr/backup/catalog.py).
"""

from datetime import datetime
from unittest.mock import MagicMock

import pytest

from chdr.models import Tier
from chdr.backup.catalog import ArtifactNotFoundError, Catalog
from chdr.backup.storage import LocalStorage, S3Storage, StorageError


@pytest.fixture
def local_storage(tmp_path):
    storage = LocalStorage(str(tmp_path / 'backups'))
    for name in (
        'clickhouse_backup_20250101_000000.tar.gz',
        'clickhouse_backup_20250103_000000.tar.gz',
        'clickhouse_k8s_backup_20250102_120000.tar.xz',
        'notes.txt',
    ):
        (tmp_path / 'backups' / name).write_bytes(b'data')
    return storage


@pytest.fixture
def s3_storage(mock_s3):
    bucket = mock_s3.Bucket('test-bucket')
    bucket.put_object(Key='clickhouse/backups/clickhouse_backup_20250105_000000.tar.gz', Body=b'data')
    bucket.put_object(Key='clickhouse/backups/clickhouse_backup_20241231_235959.tar.gz', Body=b'data')
    bucket.put_object(Key='clickhouse/backups/nested/clickhouse_backup_20250106_000000.tar.gz', Body=b'x')
    bucket.put_object(Key='clickhouse/backups/readme.md', Body=b'x')
    return S3Storage(bucket_name='test-bucket', access_key='testing', secret_key='testing')


class TestListArtifacts:

    def test_local_newest_first(self, local_storage):
        artifacts = Catalog(local_storage).list_artifacts(Tier.LOCAL)

        assert [a.name for a in artifacts] == [
            'clickhouse_backup_20250103_000000.tar.gz',
            'clickhouse_k8s_backup_20250102_120000.tar.xz',
            'clickhouse_backup_20250101_000000.tar.gz',
        ]
        assert artifacts[1].environment == 'clickhouse_k8s'
        assert artifacts[1].timestamp == datetime(2025, 1, 2, 12, 0, 0)
        assert all(a.tier == Tier.LOCAL for a in artifacts)

    def test_remote_direct_children_only(self, local_storage, s3_storage):
        catalog = Catalog(local_storage, s3_storage, 'clickhouse/backups')

        artifacts = catalog.list_artifacts(Tier.REMOTE)

        assert [a.location for a in artifacts] == [
            'clickhouse/backups/clickhouse_backup_20250105_000000.tar.gz',
            'clickhouse/backups/clickhouse_backup_20241231_235959.tar.gz',
        ]
        assert all(a.tier == Tier.REMOTE for a in artifacts)

    def test_remote_without_s3_is_empty(self, local_storage):
        assert Catalog(local_storage).list_artifacts(Tier.REMOTE) == []

    def test_remote_listing_failure_raises(self, local_storage):
        s3 = MagicMock()
        s3.list_objects.side_effect = StorageError("S3 list failed (AccessDenied)")

        with pytest.raises(StorageError):
            Catalog(local_storage, s3, 'clickhouse/backups').list_artifacts(Tier.REMOTE)


class TestLocate:

    def test_locate_existing_path(self, local_storage, tmp_path):
        elsewhere = tmp_path / 'elsewhere' / 'clickhouse_backup_20240101_000000.tar.gz'
        elsewhere.parent.mkdir()
        elsewhere.write_bytes(b'data')

        ref = Catalog(local_storage).locate(str(elsewhere))

        assert ref.tier == Tier.LOCAL
        assert ref.location == str(elsewhere)
        assert ref.timestamp == datetime(2024, 1, 1)

    def test_locate_path_with_custom_name(self, local_storage, tmp_path):
        custom = tmp_path / 'my-backup.tar.gz'
        custom.write_bytes(b'data')

        ref = Catalog(local_storage).locate(str(custom))

        assert ref.name == 'my-backup.tar.gz'
        assert ref.timestamp is None

    def test_locate_name_in_backup_dir(self, local_storage):
        ref = Catalog(local_storage).locate('clickhouse_backup_20250101_000000.tar.gz')

        assert ref.tier == Tier.LOCAL
        assert ref.location == local_storage.get_full_path('clickhouse_backup_20250101_000000.tar.gz')

    def test_local_wins_over_remote(self, local_storage):
        s3 = MagicMock()
        s3.exists.return_value = True

        ref = Catalog(local_storage, s3, 'clickhouse/backups').locate('clickhouse_backup_20250101_000000.tar.gz')

        assert ref.tier == Tier.LOCAL
        s3.exists.assert_not_called()

    def test_locate_remote(self, local_storage, s3_storage):
        catalog = Catalog(local_storage, s3_storage, 'clickhouse/backups')

        ref = catalog.locate('clickhouse_backup_20250105_000000.tar.gz')

        assert ref.tier == Tier.REMOTE
        assert ref.location == 'clickhouse/backups/clickhouse_backup_20250105_000000.tar.gz'

    def test_locate_not_found(self, local_storage, s3_storage):
        catalog = Catalog(local_storage, s3_storage, 'clickhouse/backups')

        with pytest.raises(ArtifactNotFoundError):
            catalog.locate('clickhouse_backup_19990101_000000.tar.gz')

    def test_locate_s3_error_reported_as_not_found(self, local_storage):
        s3 = MagicMock()
        s3.exists.side_effect = StorageError("S3 head failed (403)")

        with pytest.raises(ArtifactNotFoundError):
            Catalog(local_storage, s3, 'clickhouse/backups').locate('clickhouse_backup_19990101_000000.tar.gz')

    def test_locate_empty_reference(self, local_storage):
        with pytest.raises(ArtifactNotFoundError):
            Catalog(local_storage).locate('')

    def test_catalog_never_deletes(self, local_storage):
        catalog = Catalog(local_storage)
        before = sorted(f['name'] for f in local_storage.list_files())

        catalog.list_artifacts(Tier.LOCAL)
        catalog.locate('clickhouse_backup_20250101_000000.tar.gz')

        assert sorted(f['name'] for f in local_storage.list_files()) == before
