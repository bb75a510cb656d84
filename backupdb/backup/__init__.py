"""
Backup engine for backupdb.

This module handles the core backup functionality including:
- Source capture (folders, MySQL and PostgreSQL dumps, over SSH when configured)
- Compression with ignore rules
- Storage fan-out (S3, rsync, Google Drive)
- Execution orchestration
- Retention policy enforcement
"""

from .executor import BackupExecutor, BackupRunner, JobResult
from .sources import FolderCapture, MySQLCapture, PostgresCapture, create_capture_strategy
from .compression import create_archive
from .storage import S3Storage, RsyncStorage, GoogleDriveStorage, StorageDispatcher
from .retention import RetentionManager

__all__ = [
    'BackupExecutor',
    'BackupRunner',
    'JobResult',
    'FolderCapture',
    'MySQLCapture',
    'PostgresCapture',
    'create_capture_strategy',
    'create_archive',
    'S3Storage',
    'RsyncStorage',
    'GoogleDriveStorage',
    'StorageDispatcher',
    'RetentionManager'
]
