"""
Catalog of backups on a target.

Lists, loads and deletes backups by scanning the manifest store. Listing
and deletion do not take the target lock; deleting a backup never touches
any other backup's files.
"""

from __future__ import annotations

import logging
from pathlib import Path

from keepsake.errors import BackupNotFoundError
from keepsake.storage.manifest_store import ManifestError, ManifestStore
from keepsake.storage.models import BackupManifest, BackupSummary

logger = logging.getLogger(__name__)

MANUAL_APPS_FILE = "manual_apps.txt"


class Catalog:
    """Read and delete access to the backups on a target."""

    def __init__(self, store: ManifestStore | None = None) -> None:
        self.store = store or ManifestStore()

    def list_backups(self, target: Path) -> list[BackupSummary]:
        """
        Summaries of every committed backup, newest first.

        Leftover trash from interrupted deletes is purged first. Backups
        whose manifest cannot be parsed are logged and left out.
        """
        target = Path(target)
        self.store.purge_trash(target)

        summaries = []
        for timestamp in self.store.list_timestamps(target):
            try:
                manifest = self.store.load(target, timestamp)
            except (ManifestError, BackupNotFoundError) as e:
                logger.warning(f"Skipping unreadable backup {timestamp}: {e.message}")
                continue
            summaries.append(BackupSummary.from_manifest(manifest))
        return summaries

    def get_manifest(self, target: Path, timestamp: str) -> BackupManifest:
        """
        Full manifest of one backup.

        Raises:
            BackupNotFoundError: If the backup does not exist.
        """
        return self.store.load(Path(target), timestamp)

    def get_details(self, target: Path, timestamp: str) -> BackupManifest:
        """
        Manifest of one backup with archive sizes refreshed from disk.

        Archives missing from disk keep their recorded size.
        """
        target = Path(target)
        manifest = self.store.load(target, timestamp)
        backup_dir = self.store.backup_dir(target, timestamp)
        for item in manifest.items:
            archive_path = backup_dir / item.archive
            if archive_path.is_file():
                item.archive_size_bytes = archive_path.stat().st_size
        return manifest

    def delete_backup(self, target: Path, timestamp: str) -> None:
        """
        Delete a backup and all of its archives.

        Raises:
            BackupNotFoundError: If the backup does not exist, including
                when it was already deleted.
        """
        self.store.delete(Path(target), timestamp)

    def get_manual_apps(self, target: Path, timestamp: str) -> list[str]:
        """
        Applications recorded as installed without a package manager.

        Returns:
            Application names sorted case-insensitively; empty if the
            backup recorded no inventory.

        Raises:
            BackupNotFoundError: If the backup does not exist.
        """
        target = Path(target)
        if not self.store.exists(target, timestamp):
            raise BackupNotFoundError(f"Backup not found: {timestamp}")

        path = self.store.inventory_dir(target, timestamp) / MANUAL_APPS_FILE
        if not path.is_file():
            return []
        with open(path, encoding="utf-8") as f:
            apps = [line.strip() for line in f if line.strip()]
        return sorted(apps, key=str.lower)
