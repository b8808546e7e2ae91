"""
Retention policy enforcement for backups.

Removes artifacts older than the retention window from both the local
backup directory and S3. Age comes from the timestamp embedded in the
artifact name, never from file or object modification times.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from chdr.models import Tier
from .catalog import Catalog
from .storage import StorageError

logger = logging.getLogger(__name__)


class RetentionManager:
    """
    Applies one cutoff to both catalog tiers.

    Each tier is swept independently; a failure to list or delete on one
    tier is logged and never stops the other.
    """

    def __init__(self, catalog: Catalog):
        self.catalog = catalog
        self.logs = []

    @staticmethod
    def cutoff(retention_days: int, now: Optional[datetime] = None) -> datetime:
        """Oldest timestamp that survives a retention window."""
        return (now or datetime.now()) - timedelta(days=retention_days)

    def enforce(self, retention_days: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Purge everything older than retention_days."""
        cutoff = self.cutoff(retention_days, now)
        self._log(f"Cleaning up old backups (keeping the last {retention_days} days)")
        return self.purge_older_than(cutoff)

    def purge_older_than(self, cutoff: datetime) -> Dict[str, Any]:
        """
        Delete every artifact whose embedded timestamp is before cutoff.

        Returns:
            Dict with summary of cleanup operations:
            {
                'local_deleted': int,
                'remote_deleted': int,
                'errors': List[str],
                'logs': List[str]
            }
        """
        summary = {
            'local_deleted': 0,
            'remote_deleted': 0,
            'errors': []
        }

        summary['local_deleted'] = self._purge_tier(Tier.LOCAL, cutoff, summary['errors'])

        if self.catalog.s3_storage is not None:
            summary['remote_deleted'] = self._purge_tier(Tier.REMOTE, cutoff, summary['errors'])
        else:
            self._log("S3 not configured, skipping remote cleanup")

        self._log(
            f"Backup cleanup completed. "
            f"Local deleted: {summary['local_deleted']}, "
            f"S3 deleted: {summary['remote_deleted']}, "
            f"Errors: {len(summary['errors'])}"
        )

        summary['logs'] = self.logs
        return summary

    def _purge_tier(self, tier: Tier, cutoff: datetime, errors: list) -> int:
        try:
            artifacts = self.catalog.list_artifacts(tier)
        except StorageError as e:
            error_msg = f"Failed to list {tier.value} backups: {e}"
            self._log(error_msg, logging.ERROR)
            errors.append(error_msg)
            return 0

        deleted_count = 0
        for artifact in artifacts:
            if artifact.timestamp >= cutoff:
                continue

            try:
                if tier == Tier.LOCAL:
                    self.catalog.local_storage.delete(artifact.name)
                else:
                    self.catalog.s3_storage.delete(artifact.location)
                deleted_count += 1
                self._log(f"Removed old {tier.value} backup: {artifact.location}")
            except StorageError as e:
                error_msg = f"Failed to remove {tier.value} backup {artifact.location}: {e}"
                self._log(error_msg, logging.ERROR)
                errors.append(error_msg)

        return deleted_count

    def _log(self, message: str, level: int = logging.INFO):
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def enforce_retention_policy(catalog: Catalog, retention_days: int) -> Dict[str, Any]:
    """
    Enforce the retention window on both tiers.

    Called after every backup run and daily by the scheduler.
    """
    manager = RetentionManager(catalog)
    return manager.enforce(retention_days)
