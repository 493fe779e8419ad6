"""
Exclusive destination lock.

One lock file per destination directory, created with O_CREAT | O_EXCL so
two writers can never both succeed. A lock left behind by a crashed process
stays until an operator removes it: there is no staleness detection, no
liveness check of the recorded pid and no forced takeover.
"""

import os
import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterator, Optional

from securebackup.config import Config
from securebackup.errors import LockContentionError, StorageError
from securebackup.utils.system import get_hostname


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LockInfo:
    """Contents of a lock file."""

    pid: int
    hostname: str
    acquired_at: datetime

    def to_dict(self):
        return {
            'pid': self.pid,
            'hostname': self.hostname,
            'timestamp': self.acquired_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data) -> 'LockInfo':
        acquired_at = datetime.fromisoformat(str(data['timestamp']).replace('Z', '+00:00'))
        return cls(pid=int(data['pid']), hostname=str(data['hostname']), acquired_at=acquired_at)


@dataclass(frozen=True)
class DestinationLock:
    """Handle returned by acquire() and passed back to release()."""

    path: str
    info: LockInfo


def lock_path_for(dest_dir: str) -> str:
    """Fixed lock file path at the destination root."""
    return os.path.join(os.path.abspath(dest_dir), Config.LOCK_FILENAME)


def acquire(dest_dir: str) -> DestinationLock:
    """
    Take the exclusive lock on a destination directory.

    Args:
        dest_dir: Existing destination directory

    Returns:
        Lock handle for release()

    Raises:
        LockContentionError: If the lock file already exists, with the
            holder's pid, hostname and acquisition time
        StorageError: If the lock file can't be created or written
    """
    path = lock_path_for(dest_dir)
    info = LockInfo(pid=os.getpid(), hostname=get_hostname(), acquired_at=datetime.now(timezone.utc))
    data = json.dumps(info.to_dict(), indent=2).encode('utf-8')

    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
    except FileExistsError:
        raise _contention_error(path)
    except OSError as e:
        raise StorageError(f"Failed to create lock file {path}: {e}", context={'path': path})

    try:
        with os.fdopen(fd, 'wb') as f:
            f.write(data)
    except OSError as e:
        _remove(path)
        raise StorageError(f"Failed to write lock file {path}: {e}", context={'path': path})

    logger.debug(f"Acquired lock {path} (pid {info.pid})")
    return DestinationLock(path=path, info=info)


def release(lock: Optional[DestinationLock]):
    """
    Remove the lock file.

    Idempotent: releasing None or an already removed lock is not an error.

    Raises:
        StorageError: If the lock file exists but can't be removed
    """
    if lock is None:
        return

    try:
        os.remove(lock.path)
    except FileNotFoundError:
        return
    except OSError as e:
        raise StorageError(f"Failed to remove lock file {lock.path}: {e}", context={'path': lock.path})

    logger.debug(f"Released lock {lock.path}")


def read_lock(path: str) -> LockInfo:
    """
    Read an existing lock file.

    Raises:
        StorageError: If it is missing or unparsable
    """
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return LockInfo.from_dict(json.load(f))
    except FileNotFoundError:
        raise StorageError(f"Lock file not found: {path}", context={'path': path})
    except (OSError, ValueError, KeyError, TypeError) as e:
        raise StorageError(f"Failed to read lock file (corrupted?): {e}", context={'path': path})


@contextmanager
def destination_lock(dest_dir: str) -> Iterator[DestinationLock]:
    """Hold the destination lock for the duration of a with block."""
    lock = acquire(dest_dir)
    try:
        yield lock
    finally:
        release(lock)


def _contention_error(path: str) -> LockContentionError:
    hint = f"If the process is not running, manually remove the lock file with: rm {path}"

    try:
        holder = read_lock(path)
    except StorageError:
        return LockContentionError(
            f"Backup already in progress (lock file exists: {path})",
            hint=hint,
            context={'lock_path': path}
        )

    started = holder.acquired_at.strftime('%Y-%m-%d %H:%M:%S')
    return LockContentionError(
        f"Backup already in progress (PID {holder.pid} on {holder.hostname}, started {started})",
        hint=f"Lock file: {path}\n{hint}",
        context={
            'lock_path': path,
            'pid': holder.pid,
            'hostname': holder.hostname,
            'acquired_at': holder.acquired_at.isoformat(),
        }
    )


def _remove(path: str):
    try:
        os.remove(path)
    except OSError as e:
        logger.warning(f"Failed to clean up lock file {path}: {e}")
