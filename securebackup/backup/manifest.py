"""
Integrity manifests.

Each artifact has a JSON sidecar in the same directory recording where the
backup came from, how it was produced and the SHA-256 digest of the final
encrypted bytes. A manifest with any empty required field is invalid and
never trusted.
"""

import os
import json
import hashlib
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from securebackup import TOOL_NAME
from securebackup.config import Config
from securebackup.errors import IntegrityError, StorageError
from securebackup.utils.system import get_hostname
from .naming import manifest_path_for
from .storage import open_for_write

CHECKSUM_ALGORITHM = 'sha256'


@dataclass
class CreatedBy:
    """Tool and host that produced a backup."""

    tool: str
    version: str
    hostname: str


@dataclass
class Manifest:
    """Provenance and integrity record for one artifact."""

    created_at: Optional[datetime]
    created_by: CreatedBy
    source_path: str
    backup_file: str
    compression: str
    encryption: str
    checksum_algorithm: str = CHECKSUM_ALGORITHM
    checksum_value: str = ''
    compressed_size_bytes: int = 0
    uncompressed_size_bytes: int = 0

    @property
    def hostname(self) -> str:
        return self.created_by.hostname

    @property
    def group_key(self):
        """Retention series this backup belongs to."""
        return (self.created_by.hostname, self.source_path)

    def to_dict(self) -> Dict[str, Any]:
        """Convert manifest to a JSON-ready dictionary."""
        data = asdict(self)
        data['created_at'] = self.created_at.isoformat() if self.created_at else ''
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Manifest':
        """
        Create manifest from dictionary.

        Missing fields come back empty so validate() can name them.

        Raises:
            IntegrityError: If a field has the wrong type
        """
        if not isinstance(data, dict):
            raise IntegrityError("Invalid manifest: not a JSON object")

        created_by = data.get('created_by') or {}
        if not isinstance(created_by, dict):
            raise IntegrityError("Invalid manifest: created_by is not an object", context={'field': 'created_by'})

        return cls(
            created_at=_parse_timestamp(data.get('created_at')),
            created_by=CreatedBy(
                tool=_as_str(created_by, 'tool', 'created_by.tool'),
                version=_as_str(created_by, 'version', 'created_by.version'),
                hostname=_as_str(created_by, 'hostname', 'created_by.hostname'),
            ),
            source_path=_as_str(data, 'source_path'),
            backup_file=_as_str(data, 'backup_file'),
            compression=_as_str(data, 'compression'),
            encryption=_as_str(data, 'encryption'),
            checksum_algorithm=_as_str(data, 'checksum_algorithm'),
            checksum_value=_as_str(data, 'checksum_value'),
            compressed_size_bytes=_as_size(data, 'compressed_size_bytes'),
            uncompressed_size_bytes=_as_size(data, 'uncompressed_size_bytes'),
        )


def _as_str(data: Dict[str, Any], key: str, label: Optional[str] = None) -> str:
    value = data.get(key, '')
    if value is None:
        return ''
    if not isinstance(value, str):
        name = label or key
        raise IntegrityError(f"Invalid manifest: {name} must be a string", context={'field': name})
    return value


def _as_size(data: Dict[str, Any], key: str) -> int:
    value = data.get(key, 0)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise IntegrityError(f"Invalid manifest: {key} must be a non-negative integer", context={'field': key})
    return value


def _parse_timestamp(value) -> Optional[datetime]:
    if not value:
        return None
    if not isinstance(value, str):
        raise IntegrityError("Invalid manifest: created_at must be a string", context={'field': 'created_at'})

    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        raise IntegrityError(f"Invalid manifest: unparsable created_at {value!r}", context={'field': 'created_at'})

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def generate(
    source_path: str,
    backup_file: str,
    tool_version: str,
    compression: str,
    encryption: str
) -> Manifest:
    """
    Create a manifest for a finished backup.

    Checksum and sizes are left empty; the caller fills them in once the
    artifact is final.

    Args:
        source_path: Directory that was backed up (stored absolute)
        backup_file: Artifact filename (not a path)
        tool_version: Version of the producing tool
        compression: Compression method identifier
        encryption: Encryption method identifier
    """
    return Manifest(
        created_at=datetime.now(timezone.utc),
        created_by=CreatedBy(tool=TOOL_NAME, version=tool_version, hostname=get_hostname()),
        source_path=os.path.abspath(source_path),
        backup_file=os.path.basename(backup_file),
        compression=compression,
        encryption=encryption,
    )


def compute_checksum(path: str, chunk_size: int = Config.IO_BUFFER_SIZE) -> str:
    """
    Compute the SHA-256 hex digest of a file, streamed.

    Raises:
        StorageError: If the file can't be read
    """
    digest = hashlib.sha256()
    try:
        with open(path, 'rb') as f:
            for chunk in iter(lambda: f.read(chunk_size), b''):
                digest.update(chunk)
    except OSError as e:
        raise StorageError(f"Failed to compute checksum of {path}: {e}", context={'path': path})

    return digest.hexdigest()


def validate(manifest: Manifest):
    """
    Check that every required field is present.

    Raises:
        IntegrityError: Naming the first empty or unsupported field
    """
    required = [
        ('created_at', manifest.created_at),
        ('created_by.tool', manifest.created_by.tool),
        ('created_by.version', manifest.created_by.version),
        ('created_by.hostname', manifest.created_by.hostname),
        ('source_path', manifest.source_path),
        ('backup_file', manifest.backup_file),
        ('compression', manifest.compression),
        ('encryption', manifest.encryption),
        ('checksum_algorithm', manifest.checksum_algorithm),
        ('checksum_value', manifest.checksum_value),
    ]

    for name, value in required:
        if not value:
            raise IntegrityError(f"manifest missing {name}", context={'field': name})

    if manifest.checksum_algorithm != CHECKSUM_ALGORITHM:
        raise IntegrityError(
            f"manifest has unsupported checksum_algorithm: {manifest.checksum_algorithm}",
            context={'field': 'checksum_algorithm'}
        )


def validate_checksum(manifest: Manifest, artifact_path: str):
    """
    Recompute the artifact digest and compare it with the manifest.

    Raises:
        IntegrityError: On mismatch
        StorageError: If the artifact can't be read
    """
    actual = compute_checksum(artifact_path)

    if actual != manifest.checksum_value:
        raise IntegrityError(
            f"checksum mismatch: expected {manifest.checksum_value}, got {actual}",
            hint="The backup file is corrupted or was modified after it was written",
            context={'expected': manifest.checksum_value, 'actual': actual, 'path': artifact_path}
        )


def persist(manifest: Manifest, path: str, file_mode: Optional[int] = Config.DEFAULT_FILE_MODE):
    """
    Write manifest JSON atomically (temporary file, then rename).

    Raises:
        StorageError: If writing fails
    """
    temp_path = path + Config.TEMP_SUFFIX
    data = json.dumps(manifest.to_dict(), indent=2) + '\n'

    try:
        with open_for_write(temp_path, file_mode) as f:
            f.write(data.encode('utf-8'))
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except OSError as e:
        try:
            os.remove(temp_path)
        except OSError:
            pass
        raise StorageError(f"Failed to write manifest {path}: {e}", context={'path': path})


def load(path: str) -> Manifest:
    """
    Read a manifest back.

    Raises:
        StorageError: If the file can't be read
        IntegrityError: If it isn't a parsable manifest
    """
    try:
        with open(path, 'rb') as f:
            raw = f.read()
    except OSError as e:
        raise StorageError(f"Failed to read manifest {path}: {e}", context={'path': path})

    # UnicodeDecodeError is a ValueError too
    try:
        data = json.loads(raw.decode('utf-8'))
    except ValueError as e:
        raise IntegrityError(f"Failed to parse manifest {path}: {e}", context={'path': path})

    return Manifest.from_dict(data)


def derive_path(artifact_path: str) -> str:
    """Manifest path co-located with an artifact."""
    return manifest_path_for(artifact_path)


def load_for_artifact(artifact_path: str) -> Manifest:
    """
    Load and validate the manifest belonging to an artifact.

    Raises:
        IntegrityError: If the manifest is missing, invalid, or describes a
            different file
        StorageError: If the manifest can't be read
    """
    path = derive_path(artifact_path)
    if not os.path.isfile(path):
        raise IntegrityError(f"Manifest not found: {path}", context={'path': path, 'field': 'manifest'})

    manifest = load(path)
    validate(manifest)

    expected = os.path.basename(artifact_path)
    if manifest.backup_file != expected:
        raise IntegrityError(
            f"manifest backup_file {manifest.backup_file!r} does not match {expected!r}",
            context={'path': path, 'field': 'backup_file'}
        )

    return manifest
