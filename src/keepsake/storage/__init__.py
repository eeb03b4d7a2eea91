"""
Backup storage on a target volume.

Each backup is a timestamped directory holding one archive per source
item, an inventory folder and a metadata.json manifest that is written
last and atomically. A manifest on disk implies a complete backup.

Features:
    - Atomic manifest commit (temp file, fsync, rename)
    - latest.json pointer kept in step with commits and deletions
    - Deletion via rename-to-trash so a manifest never outlives its archives
    - Exclusive per-target lock for backup and restore runs

Storage Structure:
    <target>/keepsake/
        latest.json
        .lock
        data/
            {YYYYMMDD-HHMMSS}/
                metadata.json
                {archive}.tar.{zst,xz,gz}
                inventory/

Usage:
    from keepsake.storage import Catalog

    catalog = Catalog()
    for summary in catalog.list_backups(Path("/Volumes/Backup")):
        print(summary.timestamp, summary.hash_verified)
"""

from keepsake.storage.catalog import Catalog
from keepsake.storage.lock import TargetLock
from keepsake.storage.manifest_store import ManifestError, ManifestStore
from keepsake.storage.models import (
    SYNTHETIC_KEYS,
    ArchiveEntry,
    BackupManifest,
    BackupSummary,
    SourceKind,
)

__all__ = [
    # Store and catalog
    "ManifestStore",
    "Catalog",
    "TargetLock",
    # Data models
    "ArchiveEntry",
    "BackupManifest",
    "BackupSummary",
    "SourceKind",
    "SYNTHETIC_KEYS",
    # Exceptions
    "ManifestError",
]
