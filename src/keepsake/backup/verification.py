"""
Verification engine.

Recomputes the SHA-256 digest of every archive in a backup and compares
it with the digest recorded in the manifest. Entries are checked
independently on a bounded pool; a missing or unreadable archive is a
reported failure, never a crash. When a signer is configured and the
manifest is signed, the signature is checked as well; an unsigned manifest
fails only when a signature is required.

Verification is read-only: marking a backup as verified is a separate,
explicit call on the manifest store.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from keepsake.archive.codec import file_digest
from keepsake.concurrency import TaskOutcome, run_bounded
from keepsake.config.signing import ManifestSigner
from keepsake.errors import KeepsakeError
from keepsake.events import VERIFY_PROGRESS, NullEventSink
from keepsake.storage.manifest_store import MANIFEST_FILE, ManifestStore
from keepsake.storage.models import ArchiveEntry, BackupManifest

logger = logging.getLogger(__name__)


class HashMismatchError(KeepsakeError):
    """An archive's digest differs from the one recorded in the manifest."""

    def __init__(self, path: str, expected: str, actual: str) -> None:
        super().__init__(
            f"Hash mismatch: expected {expected[:16]}..., got {actual[:16]}...",
            [path],
        )
        self.expected = expected
        self.actual = actual


@dataclass
class VerifyResult:
    """
    Outcome of verifying one backup.

    Attributes:
        success: True if every archive (and the signature, if checked) is intact.
        total_count: Number of manifest entries.
        verified_count: Entries whose digest matched.
        failed_paths: Logical paths that failed, in manifest order.
        failures: Reason per failed path.
        signed: True if the manifest signature was checked and matched.
        message: Human-readable summary.
    """

    success: bool
    total_count: int
    verified_count: int
    failed_paths: list[str] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)
    signed: bool = False
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "total_count": self.total_count,
            "verified_count": self.verified_count,
            "failed_paths": self.failed_paths,
            "failures": self.failures,
            "signed": self.signed,
            "message": self.message,
        }


class VerificationEngine:
    """Checks archive digests and manifest signatures."""

    def __init__(
        self,
        store: ManifestStore,
        max_workers: int = 4,
        signer: ManifestSigner | None = None,
        events: Any = None,
        require_signature: bool = False,
    ) -> None:
        self.store = store
        self.max_workers = max_workers
        self.signer = signer
        self.events = events if events is not None else NullEventSink()
        self.require_signature = require_signature

    def verify(self, target_path: Path, manifest: BackupManifest) -> VerifyResult:
        """Verify every entry of manifest against the archives on target_path."""
        backup_dir = self.store.backup_dir(Path(target_path), manifest.timestamp)
        total = len(manifest.items)
        completed = 0

        def check(entry: ArchiveEntry) -> str:
            name = entry.archive
            if not name or Path(name).name != name or name in (".", ".."):
                raise KeepsakeError(f"Unsafe archive name in manifest: {name!r}", [entry.path])
            archive_path = backup_dir / name
            if not archive_path.is_file():
                raise KeepsakeError(f"Archive not found: {name}", [entry.path])
            try:
                actual = file_digest(archive_path)
            except OSError as e:
                raise KeepsakeError(f"Cannot read archive {name}: {e}", [entry.path]) from e
            if actual != entry.hash:
                raise HashMismatchError(entry.path, entry.hash, actual)
            return entry.path

        def report(outcome: TaskOutcome) -> None:
            nonlocal completed
            completed += 1
            status = "ok" if outcome.ok else "failed"
            self.events.emit(
                VERIFY_PROGRESS,
                {
                    "progress": int(100 * completed / total),
                    "message": f"{outcome.item.path}: {status}",
                },
            )

        outcomes = run_bounded(check, manifest.items, self.max_workers, on_complete=report)

        failed_paths: list[str] = []
        failures: dict[str, str] = {}
        for outcome in outcomes:
            if outcome.ok:
                continue
            path = outcome.item.path
            error = outcome.error
            failed_paths.append(path)
            failures[path] = getattr(error, "message", str(error))
            logger.warning(f"Verification failed for {path}: {failures[path]}")

        signed = False
        if self.signer is not None:
            if manifest.signature:
                signed = self.signer.verify(manifest)
                if not signed:
                    failed_paths.append(MANIFEST_FILE)
                    failures[MANIFEST_FILE] = "Manifest signature does not match"
                    logger.warning(f"Manifest signature mismatch for {manifest.timestamp}")
            elif self.require_signature:
                failed_paths.append(MANIFEST_FILE)
                failures[MANIFEST_FILE] = "Manifest is not signed"
                logger.warning(f"Backup {manifest.timestamp} is unsigned but a signature is required")
            else:
                logger.info(f"Backup {manifest.timestamp} is unsigned; skipping signature check")

        verified = total - sum(1 for o in outcomes if not o.ok)
        success = not failed_paths
        if success:
            message = f"All {total} archives verified"
        else:
            message = f"{len(failed_paths)} of {total} items failed verification"
            if MANIFEST_FILE in failures:
                message += " (manifest signature missing or invalid)"

        return VerifyResult(
            success=success,
            total_count=total,
            verified_count=verified,
            failed_paths=failed_paths,
            failures=failures,
            message=message,
            signed=signed,
        )
