"""
Backup module for vwbackup.

This module handles the core backup functionality including:
- Database snapshots (SQLite online backup)
- Compression
- Storage (S3 and local) and multi-destination upload
- Retention policy enforcement
- Verification and restore

The orchestrator (``executor``) and settings (``settings``) are imported
from their modules directly.
"""

from .errors import BackupError
from .tiers import BackupTier, RetentionPolicy, BackupArtifact
from .snapshot import create_snapshot
from .compression import create_archive
from .storage import S3Storage, LocalStorage
from .uploader import RemoteUploader
from .retention import RetentionManager

__all__ = [
    'BackupError',
    'BackupTier',
    'RetentionPolicy',
    'BackupArtifact',
    'create_snapshot',
    'create_archive',
    'S3Storage',
    'LocalStorage',
    'RemoteUploader',
    'RetentionManager'
]
