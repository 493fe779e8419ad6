"""
Artifact naming.

Artifact filename:
    backup_<logicalname>_<YYYYMMDD_HHMMSS>.tar<compression-suffix><encryption-suffix>

Manifest filename: same stem with the compound suffix replaced by
``_manifest.json``.

Compound suffixes come from a table built once from every supported
(compression, encryption) pair, matched longest first, so adding a method
never produces an un-collocated manifest name.
"""

import os
import re
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from securebackup.config import Config
from securebackup.errors import ConfigurationError
from .compression import COMPRESSORS, Compressor
from .encryption import ENCRYPTORS, Encryptor


def _build_suffix_table() -> Dict[str, Tuple[str, str]]:
    table = {}
    for compression, compressor_cls in COMPRESSORS.items():
        for encryption, encryptor_cls in ENCRYPTORS.items():
            suffix = Config.ARCHIVE_EXTENSION + compressor_cls.suffix + encryptor_cls.suffix
            table[suffix] = (compression, encryption)
    return table


# compound suffix -> (compression method, encryption method)
SUFFIX_TABLE: Dict[str, Tuple[str, str]] = _build_suffix_table()

# Longest first so '.tar.gz.fernet' never matches as '.tar.fernet'
SUFFIXES: List[str] = sorted(SUFFIX_TABLE, key=len, reverse=True)

_UNSAFE_CHARS = re.compile(r'[^A-Za-z0-9_.-]+')


def compound_suffix(compressor: Compressor, encryptor: Encryptor) -> str:
    """Return the compound suffix for a compressor/encryptor pair."""
    return Config.ARCHIVE_EXTENSION + compressor.suffix + encryptor.suffix


def sanitize_name(name: str) -> str:
    """
    Make a logical backup name safe for filenames.

    Runs of unsafe characters collapse into one underscore. An empty
    result becomes 'root' (backing up '/').
    """
    cleaned = _UNSAFE_CHARS.sub('_', name or '').strip('_.')
    return cleaned or 'root'


def logical_name_for(source_path: str) -> str:
    """Logical name of a source directory: its sanitized basename."""
    return sanitize_name(os.path.basename(os.path.normpath(os.path.abspath(source_path))))


def artifact_filename(
    logical_name: str,
    compressor: Compressor,
    encryptor: Encryptor,
    timestamp: Optional[datetime] = None
) -> str:
    """
    Generate an artifact filename.

    Args:
        logical_name: Logical backup name (sanitized here)
        compressor: Compression strategy in use
        encryptor: Encryption strategy in use
        timestamp: Creation time (default: now, local time)

    Returns:
        Filename such as 'backup_data_20260215_120000.tar.gz.fernet'
    """
    if timestamp is None:
        timestamp = datetime.now()

    stamp = timestamp.strftime(Config.TIMESTAMP_FORMAT)
    return (
        f"{Config.BACKUP_PREFIX}_{sanitize_name(logical_name)}_{stamp}"
        f"{compound_suffix(compressor, encryptor)}"
    )


def match_suffix(filename: str) -> Optional[str]:
    """Return the known compound suffix filename ends with, if any."""
    for suffix in SUFFIXES:
        if filename.endswith(suffix) and len(filename) > len(suffix):
            return suffix
    return None


def is_artifact(filename: str) -> bool:
    """
    Check whether filename follows the artifact naming convention.

    Manifests, temporary files and the lock file never match.
    """
    name = os.path.basename(filename)
    if not name.startswith(Config.BACKUP_PREFIX + '_'):
        return False
    return match_suffix(name) is not None


def split_artifact(filename: str) -> Tuple[str, str]:
    """
    Split an artifact filename into (stem, compound suffix).

    Raises:
        ConfigurationError: If filename has no recognized suffix
    """
    name = os.path.basename(filename)
    suffix = match_suffix(name)
    if suffix is None:
        raise ConfigurationError(
            f"Unrecognized backup file extension: {name}",
            hint=f"Known extensions: {', '.join(SUFFIXES)}",
            context={'path': filename}
        )
    return name[:-len(suffix)], suffix


def resolve_methods(filename: str) -> Tuple[str, str]:
    """
    Detect (compression, encryption) methods from an artifact filename.

    Raises:
        ConfigurationError: If filename has no recognized suffix
    """
    _, suffix = split_artifact(filename)
    return SUFFIX_TABLE[suffix]


def manifest_filename(artifact_name: str) -> str:
    """
    Derive the manifest filename for an artifact filename.

    Unknown suffixes fall back to appending the manifest suffix to the whole
    filename.
    """
    name = os.path.basename(artifact_name)
    suffix = match_suffix(name)
    if suffix is None:
        return name + Config.MANIFEST_SUFFIX
    return name[:-len(suffix)] + Config.MANIFEST_SUFFIX


def manifest_path_for(artifact_path: str) -> str:
    """Manifest path co-located with an artifact path."""
    directory = os.path.dirname(artifact_path)
    return os.path.join(directory, manifest_filename(artifact_path))


def temp_path_for(artifact_path: str) -> str:
    """Temporary path the pipeline writes to before promotion."""
    return artifact_path + Config.TEMP_SUFFIX
