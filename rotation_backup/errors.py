"""
Error types raised by the rotating backup system.
"""

from typing import Optional


class BackupError(Exception):
    """Base class for backup system errors."""


class ConfigurationError(BackupError):
    """Invalid configuration or misuse of an operation."""


class CorruptState(BackupError):
    """A clock record exists but cannot be parsed.

    Fatal: the run halts instead of guessing a slot, since defaulting would
    overwrite retained history.
    """

    def __init__(self, granularity: str, path: str, reason: str):
        self.granularity = granularity
        self.path = path
        self.reason = reason
        super().__init__(f"Corrupt clock record for '{granularity}' at {path}: {reason}")


class TransferFailure(BackupError):
    """A single (granularity, source) transfer did not complete."""

    def __init__(self, granularity: str, source: str, exit_code: Optional[int] = None,
                 detail: str = ""):
        self.granularity = granularity
        self.source = source
        self.exit_code = exit_code
        self.detail = detail
        message = f"Transfer of '{source}' for {granularity} failed"
        if exit_code is not None:
            message += f" (exit code {exit_code})"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class CollaboratorUnavailable(BackupError):
    """An external collaborator is not configured or its tooling is missing."""
