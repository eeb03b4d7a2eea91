"""
Volume enumeration.

Lists mounted volumes that can serve as backup targets. The boot volume,
Time Machine destinations and read-only volumes are left out.
"""

import logging
import os
import shutil
import sys
import uuid
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

SYSTEM_VOLUME_NAMES = {"Macintosh HD", "Macintosh HD - Data"}
INTERNAL_VOLUME_NAMES = {"Recovery", "Preboot", "VM", "Update"}
TIME_MACHINE_MARKERS = (
    ".timemachine",
    "Backups.backupdb",
    ".com.apple.timemachine.supported",
)


@dataclass
class Volume:
    """A candidate backup target. Rebuilt on every enumeration."""

    name: str
    path: str
    available: bool
    writable: bool
    is_internal: bool
    free_space_gb: float

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "path": self.path,
            "available": self.available,
            "writable": self.writable,
            "is_internal": self.is_internal,
            "free_space_gb": self.free_space_gb,
        }


def default_volume_roots() -> list[Path]:
    """Directories under which removable volumes are mounted."""
    if sys.platform == "darwin":
        return [Path("/Volumes")]
    user = os.environ.get("USER", "")
    roots = []
    if user:
        roots.extend([Path("/media") / user, Path("/run/media") / user])
    roots.append(Path("/mnt"))
    return roots


def is_internal_volume(name: str) -> bool:
    return name.startswith("com.apple") or name in INTERNAL_VOLUME_NAMES


def is_time_machine_volume(path: Path) -> bool:
    return any((path / marker).exists() for marker in TIME_MACHINE_MARKERS)


def is_writable(path: Path) -> bool:
    """Probe writability by creating and removing a small file."""
    probe = path / f".keepsake-write-test-{uuid.uuid4().hex[:8]}"
    try:
        probe.write_bytes(b"")
        probe.unlink()
    except OSError:
        return False
    return True


def free_space_gb(path: Path) -> float:
    try:
        usage = shutil.disk_usage(path)
    except OSError:
        return 0.0
    return round(usage.free / (1024**3), 2)


def list_volumes(
    roots: list[Path] | None = None,
    include_readonly: bool = False,
) -> list[Volume]:
    """
    Enumerate mounted volumes usable as backup targets.

    Args:
        roots: Mount roots to scan; defaults to the platform's roots.
        include_readonly: Also report volumes that are not writable.

    Returns:
        Volumes sorted by name.
    """
    volumes = []
    for root in roots if roots is not None else default_volume_roots():
        if not root.is_dir():
            continue
        try:
            entries = sorted(root.iterdir())
        except OSError as e:
            logger.warning(f"Cannot list {root}: {e}")
            continue

        for entry in entries:
            name = entry.name
            if name.startswith(".") or name in SYSTEM_VOLUME_NAMES:
                continue
            if not entry.is_dir():
                continue
            if is_time_machine_volume(entry):
                logger.debug(f"Skipping Time Machine volume {entry}")
                continue

            writable = is_writable(entry)
            if not writable and not include_readonly:
                logger.debug(f"Skipping read-only volume {entry}")
                continue

            volumes.append(
                Volume(
                    name=name,
                    path=str(entry),
                    available=True,
                    writable=writable,
                    is_internal=is_internal_volume(name),
                    free_space_gb=free_space_gb(entry),
                )
            )

    return sorted(volumes, key=lambda v: v.name.lower())
