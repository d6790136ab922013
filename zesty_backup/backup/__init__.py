"""
Backup module for zesty-backup.

This module handles the core backup functionality including:
- Change scanning (full and incremental)
- Archive creation (tar / tar.zst)
- Manifests and archive naming
- Retention policy enforcement
- Remote storage gateways
- Execution orchestration and restore
"""

from .scanner import ChangeScanner, SourceRoot
from .compression import ArchiveBuilder
from .manifest import ManifestEntry, ManifestStore
from .retention import LocalRetentionManager, RemoteRetentionManager, RetentionPolicy
from .restore import RestoreEngine
from .executor import BackupExecutor, CleanExecutor, RestoreExecutor, UploadExecutor

__all__ = [
    'ChangeScanner',
    'SourceRoot',
    'ArchiveBuilder',
    'ManifestEntry',
    'ManifestStore',
    'LocalRetentionManager',
    'RemoteRetentionManager',
    'RetentionPolicy',
    'RestoreEngine',
    'BackupExecutor',
    'CleanExecutor',
    'RestoreExecutor',
    'UploadExecutor',
]
