"""
Tar archiver for the backup pipeline.

Archives a source directory into a single streamed tar (PAX format) and
extracts it back. Symlinks are stored as symlinks and never followed.
Member names are relative to the source's parent directory, so the archive
root is the source basename. Extraction refuses absolute names and parent
traversal.
"""

import os
import stat
import logging
import tarfile
from typing import List, Optional, Tuple

from securebackup.config import Config
from securebackup.errors import SecureBackupError, ErrorKind
from .conduit import Cancellation, iter_chunks


logger = logging.getLogger(__name__)


class ArchiveError(SecureBackupError):
    """Raised when archiving or extraction fails."""

    kind = ErrorKind.PIPELINE


class _CountingReader:
    """File wrapper counting bytes read and checking cancellation."""

    def __init__(self, fileobj, cancellation: Optional[Cancellation] = None):
        self._fileobj = fileobj
        self._cancellation = cancellation
        self.count = 0

    def read(self, size=-1):
        if self._cancellation is not None:
            self._cancellation.raise_if_cancelled()
        data = self._fileobj.read(size)
        self.count += len(data)
        return data


def create_tar(
    source_path: str,
    writer,
    cancellation: Optional[Cancellation] = None
) -> int:
    """
    Write a tar stream of source_path into writer.

    Args:
        source_path: Directory (or single file) to archive
        writer: File-like sink with write()
        cancellation: Optional pipeline cancellation

    Returns:
        Raw byte count of all regular file contents archived

    Raises:
        ArchiveError: If the source is missing or cannot be read
    """
    abs_source = os.path.abspath(source_path)
    if not os.path.lexists(abs_source):
        raise ArchiveError(f"Source path does not exist: {source_path}")

    root_name = os.path.basename(os.path.normpath(abs_source)) or 'root'
    total = 0

    with tarfile.open(fileobj=writer, mode='w|', format=tarfile.PAX_FORMAT) as tar:
        for path, arcname in _walk(abs_source, root_name):
            if cancellation is not None:
                cancellation.raise_if_cancelled()
            total += _add_member(tar, path, arcname, cancellation)

    logger.debug(f"Archived {abs_source} ({total} bytes of file content)")
    return total


def _walk(path: str, arcname: str):
    """Yield (path, arcname) depth first, entries sorted by name, symlinks not followed."""
    yield path, arcname

    if os.path.islink(path) or not os.path.isdir(path):
        return

    try:
        entries = sorted(os.scandir(path), key=lambda entry: entry.name)
    except OSError as e:
        raise ArchiveError(f"Failed to read directory {path}: {e}")

    for entry in entries:
        yield from _walk(entry.path, f"{arcname}/{entry.name}")


def _add_member(tar: tarfile.TarFile, path: str, arcname: str, cancellation) -> int:
    try:
        tarinfo = tar.gettarinfo(path, arcname)
    except OSError as e:
        raise ArchiveError(f"Failed to stat {path}: {e}")

    if tarinfo is None or not (tarinfo.isdir() or tarinfo.isreg() or tarinfo.issym() or tarinfo.islnk()):
        logger.warning(f"Skipping unsupported file type: {path}")
        return 0

    if not tarinfo.isreg():
        tar.addfile(tarinfo)
        return 0

    try:
        with open(path, 'rb') as f:
            reader = _CountingReader(f, cancellation)
            tar.addfile(tarinfo, reader)
    except OSError as e:
        raise ArchiveError(f"Failed to archive {path}: {e}")

    return reader.count


def extract_tar(
    reader,
    dest_path: str,
    cancellation: Optional[Cancellation] = None
) -> int:
    """
    Extract a tar stream from reader into dest_path.

    Regular files, directories, symlinks and hard links are restored with
    their permissions and modification times. Other member types are
    skipped with a warning.

    Args:
        reader: File-like source with read()
        dest_path: Destination directory (created if missing)
        cancellation: Optional pipeline cancellation

    Returns:
        Number of regular file bytes written

    Raises:
        ArchiveError: On unsafe member names or a corrupt archive
    """
    dest = os.path.abspath(dest_path)
    os.makedirs(dest, exist_ok=True)

    written = 0
    directories: List[Tuple[str, tarfile.TarInfo]] = []

    try:
        with tarfile.open(fileobj=reader, mode='r|') as tar:
            for member in tar:
                if cancellation is not None:
                    cancellation.raise_if_cancelled()

                target = _safe_target(dest, member.name)

                if member.isdir():
                    os.makedirs(target, exist_ok=True)
                    directories.append((target, member))
                elif member.isreg():
                    written += _extract_file(tar, member, target, cancellation)
                elif member.issym():
                    _extract_symlink(member, target)
                elif member.islnk():
                    _extract_hardlink(dest, member, target)
                else:
                    logger.warning(f"Skipping unsupported member type {member.type!r} for {member.name}")
    except tarfile.TarError as e:
        raise ArchiveError(f"Corrupt archive: {e}")
    except OSError as e:
        raise ArchiveError(f"Failed to extract archive: {e}")

    # Directory modes last, deepest first, so read-only directories don't
    # block their own contents
    for target, member in reversed(directories):
        try:
            os.chmod(target, member.mode & 0o7777)
            os.utime(target, (member.mtime, member.mtime))
        except OSError as e:
            logger.warning(f"Failed to restore attributes of {target}: {e}")

    _drain(reader, cancellation)
    return written


def walk_tar(reader, cancellation: Optional[Cancellation] = None) -> Tuple[int, int]:
    """
    Read a tar stream to its end without writing anything.

    Returns:
        Tuple of (member count, regular file bytes)

    Raises:
        ArchiveError: If the archive is corrupt
    """
    members = 0
    total = 0

    try:
        with tarfile.open(fileobj=reader, mode='r|') as tar:
            for member in tar:
                if cancellation is not None:
                    cancellation.raise_if_cancelled()
                members += 1
                if member.isreg():
                    source = tar.extractfile(member)
                    for chunk in iter_chunks(source, Config.IO_BUFFER_SIZE, cancellation):
                        total += len(chunk)
    except tarfile.TarError as e:
        raise ArchiveError(f"Corrupt archive: {e}")

    _drain(reader, cancellation)
    return members, total


def _safe_target(dest: str, name: str) -> str:
    """
    Resolve a member name under dest, rejecting anything that could escape.

    Raises:
        ArchiveError: If name is absolute, traverses upwards, or its parent
            resolves outside dest through an extracted symlink
    """
    if not name or os.path.isabs(name) or name.startswith('/'):
        raise ArchiveError(f"Invalid tar path {name!r}: absolute paths not allowed")

    parts = name.replace('\\', '/').split('/')
    if '..' in parts:
        raise ArchiveError(f"Invalid tar path {name!r}: path traversal detected")

    target = os.path.normpath(os.path.join(dest, name))
    if target != dest and not target.startswith(dest + os.sep):
        raise ArchiveError(f"Invalid tar path {name!r}: path traversal detected")

    real_dest = os.path.realpath(dest)
    real_parent = os.path.realpath(os.path.dirname(target))
    if real_parent != real_dest and not real_parent.startswith(real_dest + os.sep):
        raise ArchiveError(f"Invalid tar path {name!r}: parent directory resolves outside destination")

    return target


def _prepare_target(target: str):
    os.makedirs(os.path.dirname(target), exist_ok=True)
    if os.path.islink(target) or (os.path.lexists(target) and not os.path.isdir(target)):
        os.unlink(target)


def _extract_file(tar: tarfile.TarFile, member: tarfile.TarInfo, target: str, cancellation) -> int:
    _prepare_target(target)

    source = tar.extractfile(member)
    written = 0
    with open(target, 'wb') as out:
        for chunk in iter_chunks(source, Config.IO_BUFFER_SIZE, cancellation):
            out.write(chunk)
            written += len(chunk)

    os.chmod(target, member.mode & 0o7777)
    os.utime(target, (member.mtime, member.mtime))
    return written


def _extract_symlink(member: tarfile.TarInfo, target: str):
    _prepare_target(target)
    os.symlink(member.linkname, target)

    if os.utime in os.supports_follow_symlinks:
        os.utime(target, (member.mtime, member.mtime), follow_symlinks=False)


def _extract_hardlink(dest: str, member: tarfile.TarInfo, target: str):
    source = _safe_target(dest, member.linkname)
    if not os.path.lexists(source):
        raise ArchiveError(f"Hard link target missing for {member.name}: {member.linkname}")
    if not stat.S_ISREG(os.lstat(source).st_mode):
        raise ArchiveError(f"Hard link target is not a regular file: {member.linkname}")

    _prepare_target(target)
    os.link(source, target)


def _drain(reader, cancellation):
    # Consume tar end-of-archive padding so the upstream stage can finish
    for _ in iter_chunks(reader, Config.IO_BUFFER_SIZE, cancellation):
        pass
