"""
Shared exception types for Keepsake.

Every error carries a human-readable message and the list of paths it
affects, so callers can render actionable detail instead of a bare code.
Module-specific errors (archive, manifest, tool and configuration errors)
subclass KeepsakeError in their own modules.
"""

from __future__ import annotations


class KeepsakeError(Exception):
    """Base exception for all Keepsake errors."""

    def __init__(self, message: str, paths: list[str] | None = None) -> None:
        self.message = message
        self.paths = list(paths or [])
        super().__init__(message)


class BackupCancelledError(KeepsakeError):
    """Raised when a backup run is cancelled through its token."""

    pass


class BackupFailedError(KeepsakeError):
    """Raised when a backup run ends in the failed state."""

    pass


class BackupNotFoundError(KeepsakeError):
    """Raised when a timestamp does not name a complete backup on the target."""

    pass


class TargetBusyError(KeepsakeError):
    """
    Raised when a backup or restore is already in flight on a target.

    Attributes:
        holder: Description of the operation holding the target, if known.
    """

    def __init__(
        self,
        message: str,
        paths: list[str] | None = None,
        holder: str | None = None,
    ) -> None:
        super().__init__(message, paths)
        self.holder = holder
