"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Validate inputs (source, keep count) before any I/O
2. Acquire the destination lock
3. Run archive -> compress -> encrypt into a temporary file
4. Promote the temporary file to its final name
5. Write the manifest (a failure here is only a warning)
6. Apply retention (a failure here is only a warning)
7. Release the lock and clean up the temporary file
"""

import os
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from securebackup import __version__
from securebackup.config import Config
from securebackup.errors import SecureBackupError, StorageError, missing_file
from securebackup.utils.format import format_size
from . import lock as dest_lock
from . import manifest as manifest_mod
from .compression import Compressor
from .conduit import Cancellation
from .encryption import Encryptor
from .manifest import Manifest
from .naming import artifact_filename, logical_name_for, temp_path_for
from .pipeline import BACKUP_STAGES, run_backup
from .retention import RetentionManager, RetentionResult, validate_keep_last
from .storage import LocalStorage, is_world_readable


logger = logging.getLogger(__name__)


@dataclass
class BackupResult:
    """Result of a backup operation."""

    success: bool
    path: Optional[str] = None
    manifest: Optional[Manifest] = None
    manifest_path: Optional[str] = None
    size_bytes: int = 0
    uncompressed_bytes: int = 0
    dry_run: bool = False
    retention: Optional[RetentionResult] = None
    warnings: List[str] = field(default_factory=list)
    error: Optional[SecureBackupError] = None
    logs: List[str] = field(default_factory=list)


def source_size(path: str) -> int:
    """Best-effort total size of regular files under path (for previews)."""
    if os.path.isfile(path):
        return os.path.getsize(path)

    total = 0
    for root, _, files in os.walk(path):
        for name in files:
            full = os.path.join(root, name)
            if os.path.isfile(full) and not os.path.islink(full):
                try:
                    total += os.path.getsize(full)
                except OSError:
                    pass
    return total


class BackupExecutor:
    """
    Orchestrates one backup of a source directory into a destination.

    Args:
        source_path: Directory to back up
        dest_dir: Destination directory
        compressor: Compression strategy
        encryptor: Encryption strategy
        keep_last: Apply retention afterwards, keeping this many per series
        dry_run: Preview only: no lock, no writes
        file_mode: Permissions for artifact and manifest (None = umask)
        cancellation: Cancellation wired to signal handlers
    """

    def __init__(
        self,
        source_path: str,
        dest_dir: str,
        compressor: Compressor,
        encryptor: Encryptor,
        keep_last: Optional[int] = None,
        dry_run: bool = False,
        file_mode: Optional[int] = Config.DEFAULT_FILE_MODE,
        cancellation: Optional[Cancellation] = None
    ):
        self.source_path = os.path.abspath(source_path)
        self.dest_dir = os.path.abspath(dest_dir)
        self.compressor = compressor
        self.encryptor = encryptor
        self.keep_last = keep_last
        self.dry_run = dry_run
        self.file_mode = file_mode
        self.cancellation = cancellation or Cancellation()
        self.logs = []

    def execute(self) -> BackupResult:
        """
        Execute the backup.

        Returns:
            BackupResult; pipeline and storage failures are reported in it
            with success=False

        Raises:
            ConfigurationError: On invalid inputs, before any I/O
            LockContentionError: If another backup holds the destination
        """
        self._validate()

        filename = artifact_filename(logical_name_for(self.source_path), self.compressor, self.encryptor)
        final_path = os.path.join(self.dest_dir, filename)

        if self.dry_run:
            return self._dry_run(final_path)

        if is_world_readable(self.file_mode):
            self._warn(f"File mode {self.file_mode:04o} makes backups world-readable")

        storage = LocalStorage(self.dest_dir)
        lock = dest_lock.acquire(self.dest_dir)
        self._log(f"Acquired destination lock: {lock.path}")

        result = BackupResult(success=False, path=final_path)
        temp_path = temp_path_for(final_path)
        promoted = False

        try:
            self._log(f"Starting backup of {self.source_path}")
            self._log(f"Destination: {final_path}")

            result.uncompressed_bytes = run_backup(
                self.source_path,
                temp_path,
                self.compressor,
                self.encryptor,
                cancellation=self.cancellation,
                file_mode=self.file_mode
            )
            storage.promote(temp_path, final_path)
            promoted = True

            result.size_bytes = os.path.getsize(final_path)
            result.success = True
            self._log(
                f"Backup completed: {filename} ({format_size(result.size_bytes)}, "
                f"{format_size(result.uncompressed_bytes)} uncompressed)"
            )

            self._write_manifest(result, filename, final_path)

            if self.keep_last is not None:
                result.retention = self._apply_retention()

        except SecureBackupError as e:
            result.error = e
            self._log(f"Backup failed: {e.message}")
        except OSError as e:
            result.error = StorageError(f"Backup failed: {e}", context={'path': final_path})
            self._log(f"Backup failed: {e}")

        finally:
            if not promoted:
                storage.discard(temp_path)
            self._release(lock)

        result.warnings = [line for line in self.logs if 'Warning: ' in line]
        result.logs = self.logs
        return result

    def _validate(self):
        if not os.path.lexists(self.source_path):
            raise missing_file(self.source_path, "Check that the path exists and you have permission to read it")

        if self.keep_last is not None:
            validate_keep_last(self.keep_last)

    def _dry_run(self, final_path: str) -> BackupResult:
        self._log("[DRY RUN] Backup preview:")
        self._log(f"[DRY RUN]   Source: {self.source_path} ({format_size(source_size(self.source_path))})")
        self._log(f"[DRY RUN]   Destination: {final_path}")
        self._log(f"[DRY RUN]   Compression: {self.compressor.method}")
        self._log(f"[DRY RUN]   Encryption: {self.encryptor.method}")
        self._log(f"[DRY RUN]   Pipeline stages: {' -> '.join(s.upper() for s in BACKUP_STAGES)}")

        result = BackupResult(success=True, path=final_path, dry_run=True)

        if self.keep_last is not None and os.path.isdir(self.dest_dir):
            result.retention = RetentionManager(self.dest_dir, self.keep_last, dry_run=True).apply()
            self.logs.extend(result.retention.logs)

        result.logs = self.logs
        return result

    def _write_manifest(self, result: BackupResult, filename: str, final_path: str):
        manifest_path = manifest_mod.derive_path(final_path)

        try:
            manifest = manifest_mod.generate(
                self.source_path,
                filename,
                __version__,
                self.compressor.method,
                self.encryptor.method
            )
            manifest.checksum_value = manifest_mod.compute_checksum(final_path)
            manifest.compressed_size_bytes = result.size_bytes
            manifest.uncompressed_size_bytes = result.uncompressed_bytes
            manifest_mod.persist(manifest, manifest_path, self.file_mode)
        except (SecureBackupError, OSError) as e:
            self._warn(f"Failed to write manifest (backup is still valid): {e}")
            return

        result.manifest = manifest
        result.manifest_path = manifest_path
        self._log(f"Manifest written: {os.path.basename(manifest_path)}")

    def _apply_retention(self) -> Optional[RetentionResult]:
        try:
            retention = RetentionManager(self.dest_dir, self.keep_last).apply()
        except SecureBackupError as e:
            self._warn(f"Retention policy failed: {e.message}")
            return None

        self.logs.extend(retention.logs)
        return retention

    def _release(self, lock):
        try:
            dest_lock.release(lock)
        except StorageError as e:
            self._warn(e.message)
            return
        self._log("Released destination lock")

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)

    def _warn(self, message: str):
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] Warning: {message}")
        logger.warning(message)


def perform_backup(
    source_path: str,
    dest_dir: str,
    compressor: Compressor,
    encryptor: Encryptor,
    **kwargs
) -> BackupResult:
    """Run one backup with BackupExecutor."""
    return BackupExecutor(source_path, dest_dir, compressor, encryptor, **kwargs).execute()
