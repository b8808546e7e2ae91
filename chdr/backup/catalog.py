"""
Catalog of backup artifacts across the local and remote tiers.

The catalog only reads: it lists artifacts and resolves references to a
location. Retention and restore act on what it returns.
"""

import logging
import os
from typing import List, Optional

from chdr.models import ArtifactRef, Tier
from .compression import parse_archive_filename
from .storage import LocalStorage, S3Storage, StorageError, build_key

logger = logging.getLogger(__name__)


class ArtifactNotFoundError(Exception):
    """Raised when an artifact reference cannot be resolved on any tier."""
    pass


class Catalog:
    """Lists and resolves backup artifacts."""

    def __init__(self, local_storage: LocalStorage, s3_storage: Optional[S3Storage] = None, s3_path: str = ''):
        self.local_storage = local_storage
        self.s3_storage = s3_storage
        self.s3_path = s3_path

    def list_artifacts(self, tier: Tier) -> List[ArtifactRef]:
        """
        List artifacts on a tier, newest first.

        Files that do not follow the artifact naming convention are ignored.
        The remote tier is empty when S3 is not configured.

        Raises:
            StorageError: If the tier cannot be listed
        """
        tier = Tier(tier)
        artifacts = []

        if tier == Tier.LOCAL:
            for file_info in self.local_storage.list_files():
                ref = self._make_ref(file_info['name'], Tier.LOCAL, file_info['path'], file_info['size'])
                if ref:
                    artifacts.append(ref)
        elif self.s3_storage is not None:
            prefix = build_key(self.s3_path, '')
            for obj in self.s3_storage.list_objects(prefix):
                # Only direct children of the prefix
                if '/' in obj['Key'][len(prefix):]:
                    continue
                ref = self._make_ref(os.path.basename(obj['Key']), Tier.REMOTE, obj['Key'], obj['Size'])
                if ref:
                    artifacts.append(ref)

        artifacts.sort(key=lambda a: (a.timestamp, a.name), reverse=True)
        return artifacts

    def _make_ref(self, name: str, tier: Tier, location: str, size: Optional[int] = None) -> Optional[ArtifactRef]:
        parsed = parse_archive_filename(name)
        if parsed is None:
            return None
        environment, timestamp = parsed
        return ArtifactRef(
            name=name,
            tier=tier,
            location=location,
            timestamp=timestamp,
            environment=environment,
            size=size
        )

    def locate(self, reference: str) -> ArtifactRef:
        """
        Resolve an artifact reference.

        Resolution order, first hit wins:
        1. an existing file path
        2. a file name in the local backup directory
        3. an object under the configured S3 prefix

        Raises:
            ArtifactNotFoundError: If the reference resolves nowhere
        """
        if not reference:
            raise ArtifactNotFoundError("No backup file specified for restoration")

        name = os.path.basename(reference)

        if os.path.isfile(reference):
            return self._ref_or_raw(name, Tier.LOCAL, os.path.abspath(reference))

        if self.local_storage.exists(name):
            return self._ref_or_raw(name, Tier.LOCAL, self.local_storage.get_full_path(name))

        if self.s3_storage is not None:
            key = build_key(self.s3_path, name)
            logger.info(f"Backup file not found locally, checking S3: {key}")
            try:
                if self.s3_storage.exists(key):
                    return self._ref_or_raw(name, Tier.REMOTE, key)
            except StorageError as e:
                logger.error(f"Failed to check S3 for {key}: {e}")

        raise ArtifactNotFoundError(f"Backup file not found: {reference}")

    def _ref_or_raw(self, name: str, tier: Tier, location: str) -> ArtifactRef:
        # Explicit paths may carry any name; keep them restorable.
        ref = self._make_ref(name, tier, location)
        if ref is not None:
            return ref
        return ArtifactRef(name=name, tier=tier, location=location, timestamp=None, environment='')
