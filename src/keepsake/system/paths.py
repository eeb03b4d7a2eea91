"""
Home directory resolution.

Backups record directories as the user typed them ("~/Documents"). A "~"
and a bare relative path always resolve against the current user's home,
never the working directory. KEEPSAKE_HOME can override the home (useful
for restoring into a scratch home and for tests).
"""

import os
from pathlib import Path


def get_home() -> Path:
    """Current home directory, honoring KEEPSAKE_HOME."""
    override = os.environ.get("KEEPSAKE_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home()


def expand_home(path: str, home: Path | None = None) -> Path:
    """
    Resolve a configured path against home.

    "~" and "~/x" expand to the home directory, and a bare relative path is
    placed under it. Only the current user's "~" is expanded; "~other" is
    left as-is.
    """
    home = home if home is not None else get_home()
    if path == "~":
        return home
    if path.startswith("~/"):
        return home / path[2:]
    if path.startswith("~"):
        return Path(path)
    resolved = Path(path)
    if not resolved.is_absolute():
        return home / resolved
    return resolved
