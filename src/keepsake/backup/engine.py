"""
Backup engine facade.

The single entry point callers (the CLI, or any front-end) use to create,
cancel, list, inspect, verify, restore and delete backups on a target.
Backup and restore hold the target's exclusive lock for their duration;
listing, verification and deletion do not.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any

from keepsake.backup.pipeline import BackupPipeline, BackupResult, PipelineState
from keepsake.backup.restore import RestoreEngine, RestoreResult
from keepsake.backup.verification import VerificationEngine, VerifyResult
from keepsake.collectors.collector import SourceCollector
from keepsake.concurrency import CancellationToken
from keepsake.config.settings import Settings
from keepsake.config.signing import ManifestSigner, SigningError
from keepsake.storage.catalog import Catalog
from keepsake.storage.lock import TargetLock
from keepsake.storage.manifest_store import ManifestStore
from keepsake.storage.models import BackupManifest, BackupSummary
from keepsake.system.paths import get_home
from keepsake.system.permissions import PermissionCheckResult, check_read_permission
from keepsake.system.tools import SystemTools
from keepsake.system.volumes import Volume, list_volumes

logger = logging.getLogger(__name__)


class BackupEngine:
    """
    Boundary operations over backups on target volumes.

    Usage:
        engine = BackupEngine(load_config())
        result = engine.create_backup(Path("/Volumes/Backup"), ["~/Documents"])
        if result.success:
            engine.verify_backup(Path("/Volumes/Backup"), result.timestamp)

    Args:
        settings: Settings object.
        tools: External command wrapper (replaceable in tests).
        store: Manifest store.
        home: Home directory "~" resolves against.
        signer: Manifest signer; by default loaded from settings.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        tools: SystemTools | None = None,
        store: ManifestStore | None = None,
        home: Path | None = None,
        signer: ManifestSigner | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.tools = tools or SystemTools()
        self.store = store or ManifestStore()
        self.catalog = Catalog(self.store)
        self.home = home if home is not None else get_home()
        self._signer = signer
        self._signer_loaded = signer is not None
        self._tokens: set[CancellationToken] = set()
        self._tokens_lock = threading.Lock()

    @property
    def signer(self) -> ManifestSigner | None:
        """Manifest signer, loaded on first use; None if disabled or unavailable."""
        if not self._signer_loaded:
            self._signer_loaded = True
            try:
                self._signer = ManifestSigner.from_settings(self.settings)
            except SigningError as e:
                logger.warning(f"Manifest signing unavailable: {e.message}")
                self._signer = None
        return self._signer

    def create_backup(
        self,
        target_path: Path,
        directories: list[str] | None = None,
        events: Any = None,
        token: CancellationToken | None = None,
    ) -> BackupResult:
        """
        Run a backup to target_path.

        Args:
            target_path: Directory on the target volume.
            directories: Directories to back up; defaults to the configured ones.
            events: Event sink for progress and log events.
            token: Cancellation token; one is created if not given.

        Returns:
            BackupResult in a terminal state.

        Raises:
            TargetBusyError: If a backup or restore already runs on the target.
        """
        target = Path(target_path)
        if not target.is_dir():
            return BackupResult(
                state=PipelineState.FAILED,
                error=f"Target does not exist: {target}",
                failed_paths=[str(target)],
            )

        if directories is None:
            directories = self.settings.backup_directories()
        token = token or CancellationToken()

        with TargetLock(target, "backup", self.store):
            with self._tokens_lock:
                self._tokens.add(token)
            try:
                collector = SourceCollector(self.settings, self.tools, self.home, events)
                pipeline = BackupPipeline(
                    self.store, collector, self.settings, self.signer, events
                )
                return pipeline.run(target, list(directories), token)
            finally:
                with self._tokens_lock:
                    self._tokens.discard(token)

    def cancel_backup(self) -> bool:
        """
        Cancel every in-flight backup started by this engine.

        Returns:
            True if a backup was running.
        """
        with self._tokens_lock:
            tokens = list(self._tokens)
        for token in tokens:
            token.cancel()
        if tokens:
            logger.info("Backup cancellation requested")
        return bool(tokens)

    def list_backups(self, target_path: Path) -> list[BackupSummary]:
        return self.catalog.list_backups(Path(target_path))

    def get_backup_details(self, target_path: Path, timestamp: str) -> BackupManifest:
        """
        Raises:
            BackupNotFoundError: If the backup does not exist.
        """
        return self.catalog.get_details(Path(target_path), timestamp)

    def verify_backup(
        self, target_path: Path, timestamp: str, events: Any = None
    ) -> VerifyResult:
        """
        Verify a backup and mark it verified on success.

        Raises:
            BackupNotFoundError: If the backup does not exist.
        """
        target = Path(target_path)
        manifest = self.catalog.get_manifest(target, timestamp)
        verifier = VerificationEngine(
            self.store,
            self.settings.workers.verify,
            self.signer,
            events,
            require_signature=self.settings.signing.require_signature,
        )
        result = verifier.verify(target, manifest)
        if result.success:
            self.store.mark_verified(target, timestamp)
        return result

    def restore_items(
        self,
        target_path: Path,
        timestamp: str,
        items: list[str] | None,
        overwrite: bool,
        restore_root: Path | None = None,
        events: Any = None,
    ) -> RestoreResult:
        """
        Restore selected items of a backup.

        Args:
            items: Logical paths to restore; None restores every entry.

        Raises:
            BackupNotFoundError: If the backup does not exist.
            TargetBusyError: If a backup or restore already runs on the target.
        """
        target = Path(target_path)
        manifest = self.catalog.get_manifest(target, timestamp)
        selection = [entry.path for entry in manifest.items] if items is None else list(items)

        with TargetLock(target, "restore", self.store):
            engine = RestoreEngine(self.store, self.tools, self.settings, events, self.home)
            return engine.restore(target, manifest, selection, overwrite, restore_root)

    def quick_restore_essentials(
        self, target_path: Path, timestamp: str, events: Any = None
    ) -> RestoreResult:
        """
        Reinstall the essential Homebrew packages recorded in a backup.

        Raises:
            BackupNotFoundError: If the backup does not exist.
            TargetBusyError: If a backup or restore already runs on the target.
        """
        target = Path(target_path)
        manifest = self.catalog.get_manifest(target, timestamp)

        with TargetLock(target, "restore", self.store):
            engine = RestoreEngine(self.store, self.tools, self.settings, events, self.home)
            return engine.restore_essentials(target, manifest)

    def delete_backup(self, target_path: Path, timestamp: str) -> None:
        """
        Raises:
            BackupNotFoundError: If the backup does not exist or was already deleted.
        """
        self.catalog.delete_backup(Path(target_path), timestamp)

    def get_manual_apps(self, target_path: Path, timestamp: str) -> list[str]:
        return self.catalog.get_manual_apps(Path(target_path), timestamp)

    def list_volumes(self) -> list[Volume]:
        return list_volumes()

    def check_read_permission(self, path: str) -> PermissionCheckResult:
        return check_read_permission(path, self.home)
