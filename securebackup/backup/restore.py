"""
Restore and verify operations.

Both run the pipeline in reverse (read -> decrypt -> decompress -> extract)
and check the artifact's manifest first unless told to skip it. Neither
takes the destination lock.
"""

import os
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from securebackup.errors import (
    ConfigurationError, IntegrityError, SecureBackupError, missing_file
)
from securebackup.utils.format import format_size
from . import manifest as manifest_mod
from .compression import Compressor
from .conduit import Cancellation
from .encryption import HEADER, Encryptor
from .manifest import Manifest
from .pipeline import RESTORE_STAGES, run_restore, run_verify


logger = logging.getLogger(__name__)

SKIP_MANIFEST_HINT = "Use --skip-manifest to bypass (not recommended)"


@dataclass
class RestoreResult:
    """Result of a restore operation."""

    success: bool
    backup_file: str
    dest_dir: str
    bytes_restored: int = 0
    manifest: Optional[Manifest] = None
    dry_run: bool = False
    error: Optional[SecureBackupError] = None
    logs: List[str] = field(default_factory=list)


@dataclass
class VerifyResult:
    """Result of a verify operation."""

    success: bool
    backup_file: str
    quick: bool = False
    manifest: Optional[Manifest] = None
    members: int = 0
    bytes_verified: int = 0
    dry_run: bool = False
    error: Optional[SecureBackupError] = None
    logs: List[str] = field(default_factory=list)


def check_manifest(backup_file: str) -> Manifest:
    """
    Load, validate and checksum-verify the manifest of backup_file.

    Raises:
        IntegrityError: If the manifest is missing or invalid, or the
            checksum doesn't match
    """
    try:
        manifest = manifest_mod.load_for_artifact(backup_file)
    except IntegrityError as e:
        raise IntegrityError(e.message, hint=SKIP_MANIFEST_HINT, context=e.context)
    except SecureBackupError as e:
        raise IntegrityError(f"Unreadable manifest: {e.message}", hint=SKIP_MANIFEST_HINT, context=e.context)

    try:
        manifest_mod.validate_checksum(manifest, backup_file)
    except IntegrityError as e:
        raise IntegrityError(
            f"Backup file {e.message}",
            hint=f"File may be corrupted. {SKIP_MANIFEST_HINT}",
            context=e.context
        )

    return manifest


def is_directory_non_empty(path: str) -> bool:
    """
    Check whether path is an existing, non-empty directory.

    Raises:
        ConfigurationError: If path exists but is not a directory
    """
    if not os.path.lexists(path):
        return False
    if not os.path.isdir(path):
        raise ConfigurationError(f"Destination exists but is not a directory: {path}", context={'path': path})
    with os.scandir(path) as entries:
        return any(True for _ in entries)


class _Operation:
    """Shared logging for restore and verify."""

    def __init__(self, backup_file: str, compressor: Compressor, encryptor: Encryptor,
                 skip_manifest: bool, dry_run: bool, cancellation: Optional[Cancellation]):
        self.backup_file = os.path.abspath(backup_file)
        self.compressor = compressor
        self.encryptor = encryptor
        self.skip_manifest = skip_manifest
        self.dry_run = dry_run
        self.cancellation = cancellation or Cancellation()
        self.logs = []

    def _require_backup_file(self):
        if not os.path.isfile(self.backup_file):
            raise missing_file(self.backup_file, "Specify a valid backup file with --file")

    def _check_manifest(self) -> Optional[Manifest]:
        if self.skip_manifest:
            self._warn("Skipping manifest validation")
            return None

        manifest = check_manifest(self.backup_file)
        self._log("Manifest validation passed")

        for label, recorded, actual in (
            ('compression', manifest.compression, self.compressor.method),
            ('encryption', manifest.encryption, self.encryptor.method),
        ):
            if recorded != actual:
                self._warn(f"Manifest records {label} {recorded!r} but {actual!r} is in use")

        return manifest

    def _log(self, message: str):
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)

    def _warn(self, message: str):
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] Warning: {message}")
        logger.warning(message)


class RestoreExecutor(_Operation):
    """
    Restores one artifact into a destination directory.

    Args:
        backup_file: Artifact to restore
        dest_dir: Directory to extract into
        compressor: Compression strategy the artifact was written with
        encryptor: Encryption strategy (with the passphrase)
        force: Allow restoring into a non-empty directory
        skip_manifest: Don't check the manifest first
        dry_run: Preview only
        cancellation: Cancellation wired to signal handlers
    """

    def __init__(
        self,
        backup_file: str,
        dest_dir: str,
        compressor: Compressor,
        encryptor: Encryptor,
        force: bool = False,
        skip_manifest: bool = False,
        dry_run: bool = False,
        cancellation: Optional[Cancellation] = None
    ):
        super().__init__(backup_file, compressor, encryptor, skip_manifest, dry_run, cancellation)
        self.dest_dir = os.path.abspath(dest_dir)
        self.force = force

    def execute(self) -> RestoreResult:
        """
        Run the restore.

        Returns:
            RestoreResult; pipeline failures are reported in it

        Raises:
            ConfigurationError: Missing backup file, or non-empty destination
                without force
            IntegrityError: If the manifest check fails
        """
        self._require_backup_file()
        result = RestoreResult(success=False, backup_file=self.backup_file, dest_dir=self.dest_dir)

        if self.dry_run:
            return self._dry_run(result)

        non_empty = is_directory_non_empty(self.dest_dir)
        if non_empty and not self.force:
            raise ConfigurationError(
                f"Destination directory is not empty: {self.dest_dir}",
                hint="Use --force to overwrite existing files (this will replace files with the same names)",
                context={'path': self.dest_dir}
            )

        result.manifest = self._check_manifest()

        if non_empty:
            self._warn("Restoring to non-empty directory - existing files may be overwritten")

        self._log(f"Restoring from: {self.backup_file}")
        self._log(f"Destination: {self.dest_dir}")

        try:
            result.bytes_restored = run_restore(
                self.backup_file,
                self.dest_dir,
                self.compressor,
                self.encryptor,
                cancellation=self.cancellation
            )
        except SecureBackupError as e:
            result.error = e
            self._log(f"Restore failed: {e.message}")
        else:
            result.success = True
            self._log(f"Restore completed: {format_size(result.bytes_restored)} restored")

        result.logs = self.logs
        return result

    def _dry_run(self, result: RestoreResult) -> RestoreResult:
        self._log("[DRY RUN] Restore preview:")
        self._log(f"[DRY RUN]   Backup file: {self.backup_file} ({format_size(os.path.getsize(self.backup_file))})")
        self._log(f"[DRY RUN]   Destination: {self.dest_dir}")
        self._log(f"[DRY RUN]   Compression: {self.compressor.method}")
        self._log(f"[DRY RUN]   Encryption: {self.encryptor.method}")
        self._log(f"[DRY RUN]   Pipeline stages: {' -> '.join(s.upper() for s in RESTORE_STAGES)}")

        result.success = True
        result.dry_run = True
        result.logs = self.logs
        return result


class VerifyExecutor(_Operation):
    """
    Verifies one artifact without restoring it.

    Quick mode checks the manifest checksum and the encryption header. Full
    mode also decrypts and decompresses the whole stream and reads the
    archive to its end.
    """

    def __init__(
        self,
        backup_file: str,
        compressor: Compressor,
        encryptor: Encryptor,
        quick: bool = False,
        skip_manifest: bool = False,
        dry_run: bool = False,
        cancellation: Optional[Cancellation] = None
    ):
        super().__init__(backup_file, compressor, encryptor, skip_manifest, dry_run, cancellation)
        self.quick = quick

    def execute(self) -> VerifyResult:
        """
        Run the verification.

        Returns:
            VerifyResult; header, integrity and pipeline failures are
            reported in it

        Raises:
            ConfigurationError: If the backup file doesn't exist
        """
        self._require_backup_file()
        result = VerifyResult(success=False, backup_file=self.backup_file, quick=self.quick)
        size = os.path.getsize(self.backup_file)

        if self.dry_run:
            mode = 'Quick verification (manifest + header check)' if self.quick else 'Full verification (decrypt + decompress)'
            self._log("[DRY RUN] Verify preview:")
            self._log(f"[DRY RUN]   Backup file: {self.backup_file} ({format_size(size)})")
            self._log(f"[DRY RUN]   Mode: {mode}")
            result.success = True
            result.dry_run = True
            result.logs = self.logs
            return result

        self._log(f"Verifying: {self.backup_file} ({format_size(size)})")

        try:
            result.manifest = self._check_manifest()

            if self.quick:
                self._quick_verify()
            else:
                result.members, result.bytes_verified = run_verify(
                    self.backup_file,
                    self.compressor,
                    self.encryptor,
                    cancellation=self.cancellation
                )
                self._log(
                    f"Successfully verified {result.members} archive entries, "
                    f"{format_size(result.bytes_verified)} of file data"
                )
        except SecureBackupError as e:
            result.error = e
            self._log(f"Verification failed: {e.message}")
        else:
            result.success = True
            self._log(f"{'Quick' if self.quick else 'Full'} verification passed")

        result.logs = self.logs
        return result

    def _quick_verify(self):
        try:
            with open(self.backup_file, 'rb') as f:
                header = f.read(HEADER.size)
        except OSError as e:
            raise IntegrityError(f"Failed to read file header: {e}", context={'path': self.backup_file})

        self.encryptor.check_header(header)
        self._log(f"Valid {self.encryptor.method} header detected")


def perform_restore(
    backup_file: str,
    dest_dir: str,
    compressor: Compressor,
    encryptor: Encryptor,
    **kwargs
) -> RestoreResult:
    """Restore backup_file into dest_dir with RestoreExecutor."""
    return RestoreExecutor(backup_file, dest_dir, compressor, encryptor, **kwargs).execute()


def perform_verify(
    backup_file: str,
    compressor: Compressor,
    encryptor: Encryptor,
    **kwargs
) -> VerifyResult:
    """Verify backup_file with VerifyExecutor."""
    return VerifyExecutor(backup_file, compressor, encryptor, **kwargs).execute()
