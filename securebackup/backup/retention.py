"""
Retention policy enforcement for backups.

Backups in a destination are grouped into series by the (hostname,
source_path) recorded in their manifests, and each series keeps its newest
``keep_last`` backups by manifest creation time. Filesystem timestamps are
never used for ordering.

A backup whose manifest is missing, unreadable or invalid is an orphan:
it belongs to no series, never counts toward a limit and is never deleted.
"""

import os
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from securebackup.errors import ErrorKind, SecureBackupError, StorageError, invalid_config
from . import manifest as manifest_mod
from .manifest import Manifest
from .naming import is_artifact, manifest_path_for
from .storage import LocalStorage


logger = logging.getLogger(__name__)


@dataclass
class BackupInfo:
    """One artifact found in a destination."""

    path: str
    name: str
    size: int
    modified: datetime
    manifest: Optional[Manifest] = None
    orphan_reason: Optional[str] = None

    @property
    def managed(self) -> bool:
        return self.manifest is not None

    @property
    def manifest_path(self) -> str:
        return manifest_path_for(self.path)

    @property
    def created_at(self) -> datetime:
        """Manifest creation time, or file mtime for orphans (display only)."""
        if self.manifest is not None:
            return self.manifest.created_at
        return self.modified.astimezone(timezone.utc)


@dataclass
class RetentionGroup:
    """Backups sharing (hostname, source_path), newest first."""

    hostname: str
    source_path: str
    backups: List[BackupInfo] = field(default_factory=list)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.hostname, self.source_path)

    def sort(self):
        self.backups.sort(key=lambda b: (b.manifest.created_at, b.name), reverse=True)

    def split(self, keep_last: int) -> Tuple[List[BackupInfo], List[BackupInfo]]:
        """Return (kept, deletion candidates)."""
        return self.backups[:keep_last], self.backups[keep_last:]


@dataclass
class DeletionFailure:
    """A candidate (or its manifest) that could not be deleted."""

    path: str
    error: str


@dataclass
class RetentionResult:
    """Outcome of one retention pass."""

    keep_last: int
    dry_run: bool
    deleted_count: int = 0
    groups: List[RetentionGroup] = field(default_factory=list)
    kept: List[str] = field(default_factory=list)
    planned: List[Tuple[str, Optional[str]]] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    orphans: List[str] = field(default_factory=list)
    failures: List[DeletionFailure] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)

    @property
    def failed_count(self) -> int:
        return len(self.failures)

    @property
    def kind(self) -> Optional[ErrorKind]:
        """PARTIAL_FAILURE if any candidate failed, else None."""
        return ErrorKind.PARTIAL_FAILURE if self.failures else None


def discover(dest_dir: str) -> Tuple[List[BackupInfo], List[BackupInfo]]:
    """
    Find artifacts in dest_dir and classify them.

    Returns:
        Tuple of (managed backups, orphans), each sorted by name

    Raises:
        StorageError: If the directory can't be listed
    """
    storage = LocalStorage(dest_dir, create=False)
    managed = []
    orphans = []

    for entry in storage.list_files():
        if not is_artifact(entry['name']):
            continue

        info = BackupInfo(
            path=entry['path'],
            name=entry['name'],
            size=entry['size'],
            modified=entry['modified'],
        )

        try:
            info.manifest = manifest_mod.load_for_artifact(info.path)
        except SecureBackupError as e:
            info.orphan_reason = e.message
            orphans.append(info)
            continue

        managed.append(info)

    return managed, orphans


def group_backups(managed: List[BackupInfo]) -> List[RetentionGroup]:
    """Group managed backups by (hostname, source_path); each group newest first."""
    groups: Dict[Tuple[str, str], RetentionGroup] = {}

    for info in managed:
        key = info.manifest.group_key
        if key not in groups:
            groups[key] = RetentionGroup(hostname=key[0], source_path=key[1])
        groups[key].backups.append(info)

    for group in groups.values():
        group.sort()

    return sorted(groups.values(), key=lambda g: g.key)


def validate_keep_last(keep_last: int):
    """
    Reject a keep count that isn't a positive integer.

    Raises:
        ConfigurationError: If keep_last <= 0 or not an integer
    """
    if isinstance(keep_last, bool) or not isinstance(keep_last, int) or keep_last <= 0:
        raise invalid_config(
            'keep_last',
            f"keep count must be positive, got {keep_last!r}",
            "Use a positive number of backups to keep, or omit it to disable retention"
        )


def list_backups(dest_dir: str) -> List[BackupInfo]:
    """
    List every artifact in dest_dir, managed and orphan, newest first.

    Raises:
        StorageError: If the directory can't be listed
    """
    managed, orphans = discover(dest_dir)
    backups = managed + orphans
    backups.sort(key=lambda b: (b.created_at, b.name), reverse=True)
    return backups


class RetentionManager:
    """
    Applies a keep-last-N policy to one destination directory.

    Args:
        dest_dir: Destination directory holding artifacts and manifests
        keep_last: Number of newest backups to keep per series (> 0)
        dry_run: Classify and select only, touch nothing

    Raises:
        ConfigurationError: If keep_last is not a positive integer
    """

    def __init__(self, dest_dir: str, keep_last: int, dry_run: bool = False):
        validate_keep_last(keep_last)

        self.dest_dir = os.path.abspath(dest_dir)
        self.keep_last = keep_last
        self.dry_run = dry_run
        self.storage = LocalStorage(self.dest_dir, create=False)
        self.logs = []

    def apply(self) -> RetentionResult:
        """
        Run one retention pass.

        Returns:
            RetentionResult; per-candidate failures are recorded in it and
            never abort the pass

        Raises:
            StorageError: If the destination can't be listed
        """
        result = RetentionResult(keep_last=self.keep_last, dry_run=self.dry_run)
        prefix = '[DRY RUN] ' if self.dry_run else ''

        self._log(f"{prefix}Applying retention policy: keep last {self.keep_last} backup(s) per source")

        managed, orphans = discover(self.dest_dir)

        for orphan in orphans:
            result.orphans.append(orphan.path)
            self._warn(f"Skipping orphan backup ({orphan.orphan_reason}): {orphan.name}")

        result.groups = group_backups(managed)

        for group in result.groups:
            kept, candidates = group.split(self.keep_last)
            result.kept.extend(b.path for b in kept)

            if not candidates:
                continue

            self._log(
                f"Retention group [{group.hostname}:{group.source_path}]: "
                f"{len(group.backups)} backup(s), keeping {len(kept)}"
            )

            for backup in candidates:
                self._process_candidate(backup, result, prefix)

        if self.dry_run:
            self._log(f"[DRY RUN] Would delete {result.deleted_count} backup(s)")
        else:
            self._log(f"Deleted {result.deleted_count} old backup(s)")

        if result.failures:
            self._warn(f"{result.failed_count} backup(s) could not be deleted")

        result.logs = self.logs
        return result

    def _process_candidate(self, backup: BackupInfo, result: RetentionResult, prefix: str):
        manifest_path = backup.manifest_path
        paired = manifest_path if os.path.exists(manifest_path) else None
        result.planned.append((backup.path, paired))

        if self.dry_run:
            self._log(f"{prefix}Would delete: {backup.name}")
            if paired:
                self._log(f"{prefix}Would delete manifest: {os.path.basename(paired)}")
            result.deleted_count += 1
            return

        # Artifact first: if it can't be removed its manifest stays
        try:
            self.storage.delete(backup.path)
        except StorageError as e:
            result.failures.append(DeletionFailure(path=backup.path, error=e.message))
            self._warn(f"Failed to delete {backup.name}: {e.message}")
            return

        result.deleted.append(backup.path)
        result.deleted_count += 1
        self._log(f"Deleted old backup: {backup.name}")

        if paired is None:
            return

        try:
            self.storage.delete(paired)
        except StorageError as e:
            result.failures.append(DeletionFailure(path=paired, error=e.message))
            self._warn(f"Failed to delete manifest {os.path.basename(paired)}: {e.message}")
            return

        self._log(f"Deleted manifest: {os.path.basename(paired)}")

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


def apply_policy(dest_dir: str, keep_last: int, dry_run: bool = False) -> RetentionResult:
    """
    Apply the keep-last-N policy to dest_dir.

    Returns:
        RetentionResult (deleted_count is the number of artifacts removed,
        or that would be removed in a dry run)

    Raises:
        ConfigurationError: If keep_last <= 0
    """
    return RetentionManager(dest_dir, keep_last, dry_run).apply()
