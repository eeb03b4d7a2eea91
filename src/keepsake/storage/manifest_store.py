"""
On-disk manifest store.

Owns the layout of backups on a target and every write to it:

    <target>/keepsake/
        latest.json                 # {"latest": <timestamp>, "updated_at": iso}
        .lock                       # present while a backup/restore is in flight
        data/
            <YYYYMMDD-HHMMSS>/
                metadata.json       # the manifest, written last, atomically
                <archive files>
                inventory/          # plain-text inventories
            .trash-<ts>-<id>/       # transient, during deletion only

A backup directory without metadata.json is not a backup. Manifests are
written with temp-file-then-rename semantics so a reader never sees a
partial file.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
import uuid
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from keepsake.errors import BackupNotFoundError, KeepsakeError
from keepsake.storage.models import (
    TIMESTAMP_FORMAT,
    BackupManifest,
    is_valid_timestamp,
)

logger = logging.getLogger(__name__)

APP_DIRECTORY = "keepsake"
DATA_DIRECTORY = "data"
MANIFEST_FILE = "metadata.json"
LATEST_FILE = "latest.json"
LOCK_FILE = ".lock"
INVENTORY_DIRECTORY = "inventory"
TRASH_PREFIX = ".trash-"


class ManifestError(KeepsakeError):
    """Raised when a manifest cannot be read or written."""

    pass


class ManifestStore:
    """
    Reads and writes backups under a target directory.

    The store holds no state of its own; every method takes the target
    path so one instance can serve any number of volumes.
    """

    def base_dir(self, target: Path) -> Path:
        """Application directory on the target."""
        return Path(target) / APP_DIRECTORY

    def data_dir(self, target: Path) -> Path:
        """Directory holding one subdirectory per backup."""
        return self.base_dir(target) / DATA_DIRECTORY

    def lock_path(self, target: Path) -> Path:
        return self.base_dir(target) / LOCK_FILE

    def backup_dir(self, target: Path, timestamp: str) -> Path:
        """
        Directory of one backup.

        Raises:
            BackupNotFoundError: If timestamp is not a well-formed backup id.
        """
        if not is_valid_timestamp(timestamp):
            raise BackupNotFoundError(f"Invalid backup timestamp: {timestamp}")
        return self.data_dir(target) / timestamp

    def manifest_path(self, target: Path, timestamp: str) -> Path:
        return self.backup_dir(target, timestamp) / MANIFEST_FILE

    def inventory_dir(self, target: Path, timestamp: str) -> Path:
        return self.backup_dir(target, timestamp) / INVENTORY_DIRECTORY

    def exists(self, target: Path, timestamp: str) -> bool:
        """True if a committed manifest exists for timestamp."""
        if not is_valid_timestamp(timestamp):
            return False
        return self.manifest_path(target, timestamp).is_file()

    def allocate(self, target: Path, started_at: datetime) -> tuple[str, Path]:
        """
        Create a fresh backup directory named after started_at.

        If a directory for that second already exists, the next free
        second is used so timestamps stay unique and sortable.

        Returns:
            Tuple of (timestamp, backup directory).
        """
        data_dir = self.data_dir(target)
        data_dir.mkdir(parents=True, exist_ok=True)
        candidate = started_at
        for _ in range(60):
            timestamp = candidate.strftime(TIMESTAMP_FORMAT)
            path = data_dir / timestamp
            try:
                path.mkdir()
            except FileExistsError:
                candidate = candidate + timedelta(seconds=1)
                continue
            logger.debug(f"Allocated backup directory {path}")
            return timestamp, path
        raise ManifestError(
            f"Could not allocate a backup directory near {started_at.isoformat()}",
            [str(data_dir)],
        )

    def commit(self, target: Path, manifest: BackupManifest) -> Path:
        """
        Write a backup's manifest and point latest.json at it.

        The manifest is written exactly once.

        Returns:
            Path to the written manifest.

        Raises:
            ManifestError: If a manifest already exists or the write fails.
        """
        path = self.manifest_path(target, manifest.timestamp)
        if path.exists():
            raise ManifestError(
                f"Manifest already committed for {manifest.timestamp}", [str(path)]
            )
        self._write_json(path, manifest.to_dict())
        self.update_latest(target)
        logger.info(f"Committed manifest {path}")
        return path

    def load(self, target: Path, timestamp: str) -> BackupManifest:
        """
        Read one backup's manifest.

        Raises:
            BackupNotFoundError: If no committed manifest exists.
            ManifestError: If the manifest cannot be parsed.
        """
        path = self.manifest_path(target, timestamp)
        if not path.is_file():
            raise BackupNotFoundError(f"Backup not found: {timestamp}", [str(path)])
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            return BackupManifest.from_dict(data)
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise ManifestError(
                f"Failed to read manifest for {timestamp}: {e}", [str(path)]
            ) from e

    def mark_verified(self, target: Path, timestamp: str) -> BackupManifest:
        """
        Set hash_verified on a committed manifest.

        The flag only ever goes from false to true; calling this on an
        already verified backup is a no-op.
        """
        manifest = self.load(target, timestamp)
        if manifest.hash_verified:
            return manifest
        manifest.hash_verified = True
        self._write_json(self.manifest_path(target, timestamp), manifest.to_dict())
        logger.info(f"Marked backup {timestamp} as verified")
        return manifest

    def list_timestamps(self, target: Path) -> list[str]:
        """Timestamps of committed backups, newest first."""
        data_dir = self.data_dir(target)
        if not data_dir.is_dir():
            return []
        timestamps = [
            entry.name
            for entry in data_dir.iterdir()
            if entry.is_dir()
            and is_valid_timestamp(entry.name)
            and (entry / MANIFEST_FILE).is_file()
        ]
        return sorted(timestamps, reverse=True)

    def discard(self, target: Path, timestamp: str) -> None:
        """Remove a backup directory that was never committed."""
        path = self.backup_dir(target, timestamp)
        if path.exists():
            shutil.rmtree(path, ignore_errors=True)
            logger.info(f"Removed incomplete backup {path}")

    def delete(self, target: Path, timestamp: str) -> None:
        """
        Remove a committed backup and every archive it references.

        The backup directory is first renamed to a trash sibling, which
        removes the manifest from view in one step, then deleted.

        Raises:
            BackupNotFoundError: If no committed manifest exists.
        """
        if not self.exists(target, timestamp):
            raise BackupNotFoundError(
                f"Backup not found: {timestamp}",
                [str(self.backup_dir(target, timestamp))],
            )
        source = self.backup_dir(target, timestamp)
        trash = self.data_dir(target) / f"{TRASH_PREFIX}{timestamp}-{uuid.uuid4().hex[:8]}"
        try:
            os.rename(source, trash)
        except OSError as e:
            raise ManifestError(f"Failed to delete backup {timestamp}: {e}", [str(source)]) from e
        shutil.rmtree(trash, ignore_errors=True)
        if trash.exists():
            logger.warning(f"Could not fully remove {trash}; it will be purged later")
        self.update_latest(target)
        logger.info(f"Deleted backup {timestamp}")

    def purge_trash(self, target: Path) -> int:
        """Remove leftover trash directories from interrupted deletes."""
        data_dir = self.data_dir(target)
        if not data_dir.is_dir():
            return 0
        purged = 0
        for entry in data_dir.iterdir():
            if entry.is_dir() and entry.name.startswith(TRASH_PREFIX):
                shutil.rmtree(entry, ignore_errors=True)
                purged += 1
        if purged:
            logger.info(f"Purged {purged} stale trash director{'y' if purged == 1 else 'ies'}")
        return purged

    def read_latest(self, target: Path) -> str | None:
        """Timestamp recorded in latest.json, if any."""
        path = self.base_dir(target) / LATEST_FILE
        try:
            with open(path, encoding="utf-8") as f:
                return json.load(f).get("latest")
        except (OSError, json.JSONDecodeError, AttributeError):
            return None

    def update_latest(self, target: Path) -> None:
        """Point latest.json at the newest committed backup, or remove it."""
        path = self.base_dir(target) / LATEST_FILE
        timestamps = self.list_timestamps(target)
        if not timestamps:
            path.unlink(missing_ok=True)
            return
        self._write_json(
            path,
            {"latest": timestamps[0], "updated_at": datetime.now(UTC).isoformat()},
        )

    def _write_json(self, path: Path, data: dict[str, Any]) -> None:
        """Write JSON atomically (temp file in the same directory, then rename)."""
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_fd, temp_path = tempfile.mkstemp(suffix=".json", dir=str(path.parent))
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, path)
        except OSError as e:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise ManifestError(f"Failed to write {path.name}: {e}", [str(path)]) from e
        except Exception:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise
