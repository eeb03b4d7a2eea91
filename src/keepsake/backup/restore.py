"""
Restore engine.

Reconstructs selected entries of a backup. Each entry is restored by the
strategy registered for its kind; filesystem entries honor the overwrite
policy (an existing destination is skipped unless overwrite is set) and
special sources reinstall packages, apps or extensions on bounded pools.
A failing entry is recorded as an error and never stops the others.
Restore cannot be cancelled once started.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from keepsake.collectors.base import RestoreContext, StrategyRegistry
from keepsake.config.settings import Settings
from keepsake.errors import KeepsakeError
from keepsake.events import RESTORE_LOG, RESTORE_PROGRESS, NullEventSink
from keepsake.storage.manifest_store import ManifestStore
from keepsake.storage.models import SYNTHETIC_KEYS, BackupManifest, SourceKind
from keepsake.system.paths import get_home
from keepsake.system.tools import SystemTools

logger = logging.getLogger(__name__)


@dataclass
class RestoreResult:
    """
    Outcome of one restore invocation.

    Attributes:
        restored: Logical paths restored.
        skipped: Logical paths left untouched because the destination exists.
        errors: "path: message" strings for entries that failed.
        details: Per-path strategy details.
    """

    restored: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    details: dict[str, dict[str, Any]] = field(default_factory=dict)

    @property
    def restored_count(self) -> int:
        return len(self.restored)

    @property
    def skipped_count(self) -> int:
        return len(self.skipped)

    @property
    def error_count(self) -> int:
        return len(self.errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "restored_count": self.restored_count,
            "skipped_count": self.skipped_count,
            "error_count": self.error_count,
            "restored": self.restored,
            "skipped": self.skipped,
            "errors": self.errors,
            "details": self.details,
        }


class RestoreEngine:
    """Restores manifest entries through their kind's strategy."""

    def __init__(
        self,
        store: ManifestStore,
        tools: SystemTools,
        settings: Settings,
        events: Any = None,
        home: Path | None = None,
    ) -> None:
        self.store = store
        self.tools = tools
        self.settings = settings
        self.events = events if events is not None else NullEventSink()
        self.home = home if home is not None else get_home()

    def restore(
        self,
        target_path: Path,
        manifest: BackupManifest,
        selected_paths: list[str],
        overwrite: bool,
        restore_root: Path | None = None,
    ) -> RestoreResult:
        """
        Restore the selected logical paths of manifest.

        Args:
            target_path: Target holding the backup.
            manifest: Manifest of the backup to restore from.
            selected_paths: Logical paths to restore, in order.
            overwrite: Replace existing files and reinstall existing packages.
            restore_root: Optional directory to re-root destinations under.
        """
        backup_dir = self.store.backup_dir(Path(target_path), manifest.timestamp)
        selection = list(dict.fromkeys(selected_paths))
        result = RestoreResult()
        total = len(selection)

        self._progress(0, f"Restoring {total} items from {manifest.timestamp}")

        for index, path in enumerate(selection, start=1):
            self._restore_one(path, manifest, backup_dir, overwrite, restore_root, result)
            self._progress(int(100 * index / total), f"Processed {path}")

        logger.info(
            f"Restore from {manifest.timestamp}: {result.restored_count} restored, "
            f"{result.skipped_count} skipped, {result.error_count} errors"
        )
        self._log(
            f"Restore finished: {result.restored_count} restored, "
            f"{result.skipped_count} skipped, {result.error_count} errors"
        )
        return result

    def restore_essentials(self, target_path: Path, manifest: BackupManifest) -> RestoreResult:
        """
        Quick restore: install the essential Homebrew packages of manifest.

        Only packages on the essential list that the backup's Brewfile
        records are installed; already installed ones are left alone.
        """
        backup_dir = self.store.backup_dir(Path(target_path), manifest.timestamp)
        key = SYNTHETIC_KEYS[SourceKind.PACKAGE_INVENTORY]
        result = RestoreResult()

        self._progress(5, "Quick restore started")
        self._restore_one(key, manifest, backup_dir, False, None, result, essentials=True)
        self._progress(100, "Quick restore finished")

        logger.info(
            f"Quick restore from {manifest.timestamp}: {result.restored_count} restored, "
            f"{result.error_count} errors"
        )
        return result

    def _restore_one(
        self,
        path: str,
        manifest: BackupManifest,
        backup_dir: Path,
        overwrite: bool,
        restore_root: Path | None,
        result: RestoreResult,
        essentials: bool = False,
    ) -> None:
        entry = manifest.find_entry(path)
        if entry is None:
            self._error(result, path, "not found in backup")
            return

        archive_path = backup_dir / entry.archive
        if Path(entry.archive).name != entry.archive or not archive_path.is_file():
            self._error(result, path, f"archive {entry.archive} is missing")
            return

        context = RestoreContext(
            entry=entry,
            archive_path=archive_path,
            manifest=manifest,
            overwrite=overwrite,
            home=self.home,
            restore_root=Path(restore_root) if restore_root is not None else None,
            log=self._log,
        )

        self._log(f"Restoring {path}")
        try:
            strategy = StrategyRegistry.create(entry.kind, self.settings, self.tools)
            if essentials:
                outcome = strategy.restore_essentials(context)
            else:
                outcome = strategy.restore(context)
        except KeepsakeError as e:
            logger.warning(f"Restore of {path} failed: {e.message}")
            self._error(result, path, e.message)
            return
        except Exception as e:
            logger.exception(f"Restore of {path} failed")
            self._error(result, path, str(e))
            return

        result.details[path] = {"message": outcome.message, **outcome.details}
        if outcome.skipped:
            result.skipped.append(path)
            self._log(f"Skipped {path}: {outcome.message}")
        else:
            result.restored.append(path)
            self._log(f"Restored {path}: {outcome.message}")

    def _error(self, result: RestoreResult, path: str, message: str) -> None:
        result.errors.append(f"{path}: {message}")
        self._log(f"Error restoring {path}: {message}")

    def _progress(self, progress: int, message: str) -> None:
        self.events.emit(RESTORE_PROGRESS, {"progress": progress, "message": message})

    def _log(self, message: str) -> None:
        self.events.emit(RESTORE_LOG, {"message": message})
