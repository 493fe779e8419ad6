"""
Error taxonomy shared by every subsystem.

Each error carries a kind so callers can tell apart:
- configuration errors (rejected before any I/O)
- contention errors (destination lock held)
- integrity errors (manifest invalid, checksum mismatch)
- partial failures (one retention candidate failed)
- pipeline stage errors
- plain I/O errors
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(Enum):
    """Category of a SecureBackupError."""

    CONFIGURATION = 'configuration'
    CONTENTION = 'contention'
    INTEGRITY = 'integrity'
    PARTIAL_FAILURE = 'partial_failure'
    PIPELINE = 'pipeline'
    IO = 'io'


class SecureBackupError(Exception):
    """
    Base error with a user-facing message, an actionable hint and context.

    Args:
        message: User-friendly error message
        hint: Optional hint telling the operator how to resolve the issue
        context: Structured details (paths, pids, digests, field names)
        kind: Override for the error category
    """

    kind = ErrorKind.IO

    def __init__(
        self,
        message: str,
        hint: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        kind: Optional[ErrorKind] = None
    ):
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.context = dict(context or {})
        if kind is not None:
            self.kind = kind

    def __str__(self) -> str:
        if self.hint:
            return f"{self.message}\nHint: {self.hint}"
        return self.message


class ConfigurationError(SecureBackupError):
    """Invalid configuration or missing required input."""

    kind = ErrorKind.CONFIGURATION


class LockContentionError(SecureBackupError):
    """Destination lock is held by another process."""

    kind = ErrorKind.CONTENTION


class IntegrityError(SecureBackupError):
    """Manifest validation or checksum verification failed."""

    kind = ErrorKind.INTEGRITY


class StorageError(SecureBackupError):
    """Filesystem operation on the destination failed."""

    kind = ErrorKind.IO


class PipelineError(SecureBackupError):
    """
    A pipeline stage failed.

    The failing stage is kept in ``stage`` (archive, compress, encrypt, write
    for backups; read, decrypt, decompress, extract for restores).
    """

    kind = ErrorKind.PIPELINE

    def __init__(self, stage: str, cause: BaseException, hint: Optional[str] = None):
        detail = cause.message if isinstance(cause, SecureBackupError) else cause
        super().__init__(
            f"{stage} stage failed: {detail}",
            hint=hint or getattr(cause, 'hint', None),
            context={'stage': stage}
        )
        self.stage = stage
        self.cause = cause


class PipelineCancelled(SecureBackupError):
    """The pipeline was cancelled by an interrupt or by another stage."""

    kind = ErrorKind.PIPELINE


def missing_file(path: str, suggestion: str) -> ConfigurationError:
    """Error for a missing input path."""
    return ConfigurationError(f"File not found: {path}", hint=suggestion, context={'path': path})


def invalid_config(field: str, issue: str, fix: str) -> ConfigurationError:
    """Error for an invalid configuration value."""
    return ConfigurationError(
        f"Invalid configuration for {field}: {issue}",
        hint=fix,
        context={'field': field}
    )


def missing_required(param: str, suggestion: str) -> ConfigurationError:
    """Error for a missing required parameter."""
    return ConfigurationError(
        f"Required parameter missing: {param}",
        hint=suggestion,
        context={'field': param}
    )
