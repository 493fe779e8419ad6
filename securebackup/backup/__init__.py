"""
Backup module for secure-backup.

This module handles the core backup functionality including:
- Streaming pipeline (archive, compress, encrypt and back)
- Integrity manifests
- Exclusive destination lock
- Retention policy enforcement
- Backup, restore and verify orchestration
"""

from .executor import BackupExecutor, BackupResult, perform_backup
from .restore import RestoreExecutor, VerifyExecutor, perform_restore, perform_verify
from .pipeline import run_backup, run_restore, run_verify
from .compression import create_compressor
from .encryption import create_encryptor
from .lock import acquire, release
from .retention import RetentionManager, apply_policy, list_backups

__all__ = [
    'BackupExecutor',
    'BackupResult',
    'perform_backup',
    'RestoreExecutor',
    'VerifyExecutor',
    'perform_restore',
    'perform_verify',
    'run_backup',
    'run_restore',
    'run_verify',
    'create_compressor',
    'create_encryptor',
    'acquire',
    'release',
    'RetentionManager',
    'apply_policy',
    'list_backups'
]
