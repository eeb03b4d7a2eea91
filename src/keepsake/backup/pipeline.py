"""
Backup pipeline.

Drives one backup run from collection to committed manifest:

    IDLE -> RUNNING -> COMPLETED | CANCELLED | FAILED

Each collected item is packed into its own archive and digested. The
manifest is committed only after every item succeeded; a cancelled or
failed run removes its whole backup directory, so a manifest on disk
always describes a complete backup.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from keepsake.archive.codec import ArchiveError, pack
from keepsake.collectors.base import SourceItem
from keepsake.collectors.collector import SourceCollector
from keepsake.concurrency import CancellationToken, TaskOutcome, run_bounded
from keepsake.config.settings import Settings
from keepsake.config.signing import ManifestSigner, SigningError
from keepsake.errors import BackupCancelledError, BackupFailedError, KeepsakeError
from keepsake.events import BACKUP_LOG, BACKUP_PROGRESS, NullEventSink
from keepsake.storage.manifest_store import ManifestError, ManifestStore
from keepsake.storage.models import ArchiveEntry, BackupManifest

logger = logging.getLogger(__name__)

PROGRESS_START = 1
PROGRESS_COLLECTED = 15
PROGRESS_ARCHIVED = 95
PROGRESS_DONE = 100


class PipelineState(Enum):
    """Lifecycle of a backup run."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class BackupResult:
    """
    Terminal outcome of a backup run.

    Attributes:
        state: COMPLETED, CANCELLED or FAILED.
        timestamp: Backup id, if a backup directory was allocated.
        manifest: Committed manifest on success.
        error: Human-readable failure message.
        failed_paths: Paths affected by the failure.
        skipped: (path, reason) pairs left out during collection.
    """

    state: PipelineState
    timestamp: str | None = None
    manifest: BackupManifest | None = None
    error: str | None = None
    failed_paths: list[str] = field(default_factory=list)
    skipped: list[tuple[str, str]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.state == PipelineState.COMPLETED

    def raise_for_state(self) -> None:
        """Raise BackupCancelledError or BackupFailedError for unsuccessful runs."""
        if self.state == PipelineState.CANCELLED:
            raise BackupCancelledError(self.error or "Backup cancelled", self.failed_paths)
        if self.state == PipelineState.FAILED:
            raise BackupFailedError(self.error or "Backup failed", self.failed_paths)

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "timestamp": self.timestamp,
            "manifest": self.manifest.to_dict() if self.manifest else None,
            "error": self.error,
            "failed_paths": self.failed_paths,
            "skipped": [{"path": p, "reason": r} for p, r in self.skipped],
        }


class BackupPipeline:
    """
    Single-use backup run.

    Args:
        store: Manifest store for the target layout.
        collector: Source collector producing the items.
        settings: Settings (compression, worker count).
        signer: Optional manifest signer.
        events: Event sink for backup-progress and backup-log events.
        clock: Returns the current local time; injectable for tests.
    """

    def __init__(
        self,
        store: ManifestStore,
        collector: SourceCollector,
        settings: Settings,
        signer: ManifestSigner | None = None,
        events: Any = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.store = store
        self.collector = collector
        self.settings = settings
        self.signer = signer
        self.events = events if events is not None else NullEventSink()
        self.clock = clock
        self.state = PipelineState.IDLE
        self._progress_lock = threading.Lock()

    def run(
        self,
        target_path: Path,
        directories: list[str],
        token: CancellationToken | None = None,
    ) -> BackupResult:
        """
        Run the backup.

        Cancellation and archive, manifest or I/O errors come back as a
        CANCELLED or FAILED result after cleanup. Any other exception is
        re-raised after cleanup.
        """
        if self.state != PipelineState.IDLE:
            raise RuntimeError("A BackupPipeline can only be run once")
        self.state = PipelineState.RUNNING
        token = token or CancellationToken()
        target = Path(target_path)

        self._progress(PROGRESS_START, "Starting backup")
        started = self.clock()

        try:
            timestamp, backup_dir = self.store.allocate(target, started)
        except (ManifestError, OSError) as e:
            return self._finish(PipelineState.FAILED, None, f"Cannot create backup directory: {e}", [str(target)])

        self._log(f"Backup {timestamp} started")

        try:
            with tempfile.TemporaryDirectory(prefix="keepsake-staging-") as staging:
                token.raise_if_cancelled()
                items = self.collector.collect(directories, Path(staging))
                manual_apps = self.collector.collect_manual_apps(Path(staging))
                if not items:
                    raise BackupFailedError("Nothing to back up", list(directories))

                self._progress(PROGRESS_COLLECTED, f"Collected {len(items)} items")
                entries = self._archive_items(items, backup_dir, token)

                inventory = [path for item in items for path in item.inventory]
                if manual_apps is not None:
                    inventory.append(manual_apps)
                self._copy_inventory(inventory, self.store.inventory_dir(target, timestamp))

            token.raise_if_cancelled()
            manifest = self._build_manifest(timestamp, started, entries)
            self.store.commit(target, manifest)

        except BackupCancelledError as e:
            self.store.discard(target, timestamp)
            return self._finish(PipelineState.CANCELLED, timestamp, e.message, e.paths)
        except (BackupFailedError, ArchiveError, ManifestError, SigningError) as e:
            self.store.discard(target, timestamp)
            return self._finish(PipelineState.FAILED, timestamp, e.message, e.paths)
        except OSError as e:
            self.store.discard(target, timestamp)
            paths = [str(p) for p in (e.filename, e.filename2) if p]
            return self._finish(PipelineState.FAILED, timestamp, f"I/O error: {e}", paths)
        except BaseException:
            self.store.discard(target, timestamp)
            self.state = PipelineState.FAILED
            logger.exception(f"Backup {timestamp} failed unexpectedly")
            raise

        self._progress(PROGRESS_DONE, "Backup complete")
        self._log(
            f"Backup {timestamp} complete: {len(manifest.items)} items, "
            f"{manifest.total_source_size_bytes:,} bytes"
        )
        result = self._finish(PipelineState.COMPLETED, timestamp, None, [])
        result.manifest = manifest
        return result

    def _archive_items(
        self,
        items: list[SourceItem],
        backup_dir: Path,
        token: CancellationToken,
    ) -> list[ArchiveEntry]:
        """Pack every item; the first failure aborts items not yet started."""
        abort = threading.Event()
        total = sum(max(item.size_hint, 1) for item in items)
        done = 0

        def check() -> None:
            token.raise_if_cancelled()
            if abort.is_set():
                raise BackupCancelledError("Aborted after another item failed")

        def archive(item: SourceItem) -> ArchiveEntry:
            check()
            self._log(f"Archiving {item.logical_path}")
            result = pack(
                item.members,
                backup_dir,
                item.archive_base,
                self.settings.compression,
                check_cancelled=check,
            )
            return ArchiveEntry(
                path=item.logical_path,
                archive=result.archive_name,
                kind=item.kind,
                hash=result.digest,
                archive_size_bytes=result.archive_size_bytes,
                source_size_bytes=result.source_size_bytes,
            )

        def report(outcome: TaskOutcome) -> None:
            nonlocal done
            if not outcome.ok:
                abort.set()
                return
            done += max(outcome.item.size_hint, 1)
            span = PROGRESS_ARCHIVED - PROGRESS_COLLECTED
            self._progress(
                PROGRESS_COLLECTED + int(span * done / total),
                f"Archived {outcome.item.logical_path}",
            )

        outcomes = run_bounded(archive, items, self.settings.workers.backup, on_complete=report)

        token.raise_if_cancelled()
        for outcome in outcomes:
            if outcome.ok or isinstance(outcome.error, BackupCancelledError):
                continue
            error = outcome.error
            if isinstance(error, KeepsakeError) and not error.paths:
                error.paths = [outcome.item.logical_path]
            raise error
        for outcome in outcomes:
            if not outcome.ok:
                raise outcome.error

        entries = [outcome.result for outcome in outcomes]
        return sorted(entries, key=lambda entry: entry.path)

    def _build_manifest(
        self, timestamp: str, started: datetime, entries: list[ArchiveEntry]
    ) -> BackupManifest:
        finished = self.clock()
        manifest = BackupManifest(
            timestamp=timestamp,
            items=entries,
            start_time=started.isoformat(),
            end_time=finished.isoformat(),
            duration_seconds=max(0, int((finished - started).total_seconds())),
            source_home=str(self.collector.home),
        )
        if self.signer is not None:
            manifest.signature = self.signer.sign(manifest)
        return manifest

    def _copy_inventory(self, files: list[Path], inventory_dir: Path) -> None:
        if not files:
            return
        inventory_dir.mkdir(parents=True, exist_ok=True)
        for path in files:
            shutil.copy2(path, inventory_dir / path.name)

    def _finish(
        self,
        state: PipelineState,
        timestamp: str | None,
        error: str | None,
        failed_paths: list[str],
    ) -> BackupResult:
        self.state = state
        if state == PipelineState.CANCELLED:
            logger.info(f"Backup {timestamp} cancelled")
            self._log("Backup cancelled")
        elif state == PipelineState.FAILED:
            logger.error(f"Backup {timestamp} failed: {error}")
            self._log(f"Backup failed: {error}")
        return BackupResult(
            state=state,
            timestamp=timestamp,
            error=error,
            failed_paths=list(failed_paths),
            skipped=list(self.collector.skipped),
        )

    def _progress(self, progress: int, message: str) -> None:
        with self._progress_lock:
            self.events.emit(BACKUP_PROGRESS, {"progress": progress, "message": message})

    def _log(self, message: str) -> None:
        self.events.emit(BACKUP_LOG, {"message": message})
