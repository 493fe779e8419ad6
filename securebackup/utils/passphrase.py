"""
Passphrase resolution.

Exactly one source may be used, in priority order:
1. Command-line value (insecure, warned about)
2. Environment variable
3. Passphrase file (warned about when world-readable)
"""

import os
import stat
import logging
from typing import Optional

from securebackup.errors import ConfigurationError, missing_file


logger = logging.getLogger(__name__)


def get_passphrase(
    flag_value: Optional[str] = None,
    env_name: Optional[str] = None,
    file_path: Optional[str] = None
) -> str:
    """
    Resolve the passphrase from at most one source.

    Args:
        flag_value: Passphrase given on the command line
        env_name: Environment variable to read
        file_path: File holding the passphrase

    Returns:
        The passphrase, or '' when no source is provided

    Raises:
        ConfigurationError: If several sources are given, or the file is
            missing or empty
    """
    sources = []

    if flag_value:
        sources.append('--passphrase flag')

    env_value = os.environ.get(env_name, '') if env_name else ''
    if env_value:
        sources.append(f"{env_name} environment variable")

    if file_path:
        sources.append('--passphrase-file flag')

    if len(sources) > 1:
        raise ConfigurationError(
            f"Multiple passphrase sources provided ({', '.join(sources)})",
            hint="Use only one method"
        )

    if flag_value:
        logger.warning(
            "Passphrase on command line is insecure and visible in process lists. "
            f"Use the {env_name or 'SECURE_BACKUP_PASSPHRASE'} environment variable or --passphrase-file instead."
        )
        return flag_value

    if env_value:
        return env_value

    if file_path:
        return read_passphrase_file(file_path)

    return ''


def read_passphrase_file(path: str) -> str:
    """
    Read a passphrase from a file, stripping surrounding whitespace.

    Raises:
        ConfigurationError: If the file is missing, unreadable or empty
    """
    try:
        mode = os.stat(path).st_mode
    except FileNotFoundError:
        raise missing_file(path, "Check the --passphrase-file path")
    except OSError as e:
        raise ConfigurationError(f"Failed to read passphrase file: {e}", context={'path': path})

    if stat.S_IMODE(mode) & 0o004:
        logger.warning(f"Passphrase file {path} is world-readable. Recommend: chmod 600 {path}")

    try:
        with open(path, 'r', encoding='utf-8') as f:
            passphrase = f.read().strip()
    except OSError as e:
        raise ConfigurationError(f"Failed to read passphrase file: {e}", context={'path': path})

    if not passphrase:
        raise ConfigurationError(f"Passphrase file is empty: {path}", context={'path': path})

    return passphrase
