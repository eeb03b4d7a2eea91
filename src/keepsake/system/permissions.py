"""
Read-permission probe.

On macOS, protected folders (Desktop, Documents, Downloads, Mail, ...) are
only readable once the process has been granted access, and the failure
surfaces as a plain EPERM on open. Probing before archiving lets the
collector skip such directories with a clear message instead of failing
the whole run halfway through an archive.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from keepsake.system.paths import expand_home

logger = logging.getLogger(__name__)


@dataclass
class PermissionCheckResult:
    """Outcome of probing one path."""

    path: str
    readable: bool
    error_message: str | None = None

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "readable": self.readable,
            "error_message": self.error_message,
        }


def check_read_permission(path: str, home: Path | None = None) -> PermissionCheckResult:
    """
    Check whether path can be read by this process.

    Files are opened for reading; directories are listed.

    Args:
        path: Path to probe; a leading "~" is expanded.
        home: Home directory to expand "~" against.
    """
    resolved = expand_home(path, home)

    if not resolved.exists():
        return PermissionCheckResult(path, False, "Path does not exist")

    try:
        if resolved.is_dir():
            with os.scandir(resolved) as entries:
                next(entries, None)
        else:
            with open(resolved, "rb") as f:
                f.read(1)
    except PermissionError as e:
        logger.debug(f"Permission denied for {resolved}: {e}")
        return PermissionCheckResult(
            path,
            False,
            f"Permission denied: {resolved}. Grant Full Disk Access to the "
            "application running keepsake and try again.",
        )
    except OSError as e:
        return PermissionCheckResult(path, False, f"Cannot read {resolved}: {e}")

    return PermissionCheckResult(path, True)
