"""
Local destination storage for backup artifacts.

Every artifact and manifest is written to a temporary sibling first and
promoted with a single atomic rename.
"""

import os
import logging
from pathlib import Path
from datetime import datetime
from typing import Any, Dict, List, Optional

from securebackup.config import Config
from securebackup.errors import StorageError, invalid_config


logger = logging.getLogger(__name__)


def parse_file_mode(value: Optional[str]) -> Optional[int]:
    """
    Parse a file mode option.

    Args:
        value: Octal string such as '0600' or '640', 'system' for the
            process umask, or None/empty for the default (0600)

    Returns:
        Mode bits, or None for the process umask

    Raises:
        ConfigurationError: If value is not a valid octal mode
    """
    if value is None or value == '':
        return Config.DEFAULT_FILE_MODE

    if value.strip().lower() == 'system':
        return None

    try:
        mode = int(value, 8)
    except ValueError:
        raise invalid_config(
            'file mode',
            f"not an octal mode: {value}",
            "Use an octal value such as 0600, or 'system' for the default umask"
        )

    if not 0 <= mode <= 0o777:
        raise invalid_config(
            'file mode',
            f"out of range: {value}",
            "Use permission bits only (0000-0777)"
        )

    return mode


def is_world_readable(mode: Optional[int]) -> bool:
    """Check whether a mode grants read access to others."""
    return mode is not None and bool(mode & 0o004)


def open_for_write(path: str, file_mode: Optional[int] = Config.DEFAULT_FILE_MODE):
    """
    Create (or truncate) path for binary writing with the given mode.

    The mode is applied to the open descriptor, so it holds regardless of
    the process umask. None leaves permissions to the umask.
    """
    initial = 0o600 if file_mode is not None else 0o666
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, initial)
    try:
        if file_mode is not None:
            os.fchmod(fd, file_mode)
        return os.fdopen(fd, 'wb')
    except BaseException:
        os.close(fd)
        raise


class LocalStorage:
    """
    Handler for a local backup destination directory.

    Artifacts live directly in base_path next to their manifests and the
    destination lock.
    """

    def __init__(self, base_path: str, create: bool = True):
        """
        Initialize local storage handler.

        Args:
            base_path: Destination directory
            create: Create the directory if it doesn't exist

        Raises:
            StorageError: If the directory can't be created
        """
        self.base_path = Path(os.path.abspath(base_path))

        if create:
            try:
                self.base_path.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise StorageError(
                    f"Failed to create destination directory: {e}",
                    context={'path': str(self.base_path)}
                )

    def path_for(self, filename: str) -> str:
        """Full path of filename inside the destination."""
        return str(self.base_path / filename)

    def promote(self, temp_path: str, final_path: str):
        """
        Atomically rename a finished temporary file to its final name.

        Raises:
            StorageError: If the rename fails
        """
        try:
            os.replace(temp_path, final_path)
        except OSError as e:
            raise StorageError(
                f"Failed to finalize {os.path.basename(final_path)}: {e}",
                context={'path': final_path}
            )

    def delete(self, path: str):
        """
        Delete a file from the destination.

        A file that is already gone is not an error.

        Raises:
            StorageError: If deletion fails
        """
        full_path = self.base_path / path

        try:
            full_path.unlink()
        except FileNotFoundError:
            return
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {full_path}: {e}", context={'path': str(full_path)})
        except OSError as e:
            raise StorageError(f"Failed to delete {full_path}: {e}", context={'path': str(full_path)})

    def discard(self, path: str):
        """Best-effort removal of a temporary file."""
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove temporary file {path}: {e}")

    def list_files(self) -> List[Dict[str, Any]]:
        """
        List regular files directly inside the destination.

        Returns:
            List of dicts with 'name', 'path', 'modified' and 'size' keys,
            sorted by name

        Raises:
            StorageError: If listing fails
        """
        if not self.base_path.exists():
            return []

        try:
            files = []

            for file_path in sorted(self.base_path.iterdir()):
                if file_path.is_symlink() or not file_path.is_file():
                    continue

                stat = file_path.stat()
                files.append({
                    'name': file_path.name,
                    'path': str(file_path),
                    'modified': datetime.fromtimestamp(stat.st_mtime),
                    'size': stat.st_size
                })

            return files

        except OSError as e:
            raise StorageError(f"Failed to list {self.base_path}: {e}", context={'path': str(self.base_path)})
