"""
Backup module for ch-dr.

This module handles the core backup and restore functionality including:
- Execution targets (local, Kubernetes, SSH)
- Compression
- Storage (S3 and local)
- Backup and restore orchestration
- Retention policy enforcement
"""

from .targets import LocalExecutor, KubernetesExecutor, SSHExecutor, create_executor
from .compression import create_archive, extract_archive
from .storage import S3Storage, LocalStorage
from .catalog import Catalog
from .retention import RetentionManager
from .engine import BackupEngine, run_backup
from .restore import RestoreEngine, run_restore

__all__ = [
    'LocalExecutor',
    'KubernetesExecutor',
    'SSHExecutor',
    'create_executor',
    'create_archive',
    'extract_archive',
    'S3Storage',
    'LocalStorage',
    'Catalog',
    'RetentionManager',
    'BackupEngine',
    'run_backup',
    'RestoreEngine',
    'run_restore'
]
