"""
Data models for backup manifests.

This module defines the dataclasses persisted in each backup's
metadata.json and the summaries returned when listing a target.

Schema Design Decisions:
    - Backup directories are named by a fixed-width sortable local timestamp
    - Item order is deterministic: entries are sorted by logical path
    - Totals are derived from the entries, never stored independently
    - Digests are SHA-256 hex strings of the archive files
    - The signature covers everything except the signature itself and the
      hash_verified flag, which a verification pass may set later
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

MANIFEST_FORMAT_VERSION = 1
HASH_ALGORITHM = "sha256"
TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"
TIMESTAMP_PATTERN = re.compile(r"^\d{8}-\d{6}$")


class SourceKind(Enum):
    """
    Closed set of backup item variants.

    Each variant has its own collect and restore strategy.
    """

    FILESYSTEM = "filesystem"
    PACKAGE_INVENTORY = "package_inventory"
    APP_INVENTORY = "app_inventory"
    EXTENSION_INVENTORY = "extension_inventory"
    BROWSER_SETTINGS = "browser_settings"


# Logical paths of the special sources, as recorded in manifests.
SYNTHETIC_KEYS: dict[SourceKind, str] = {
    SourceKind.PACKAGE_INVENTORY: "homebrew-packages",
    SourceKind.APP_INVENTORY: "mas-apps",
    SourceKind.EXTENSION_INVENTORY: "vscode-extensions",
    SourceKind.BROWSER_SETTINGS: "browser-settings",
}

# Older manifests used these keys before the kind field existed.
_LEGACY_KEYS: dict[str, SourceKind] = {
    "homebrew-cache": SourceKind.PACKAGE_INVENTORY,
    "safari-settings": SourceKind.BROWSER_SETTINGS,
}


def infer_kind(path: str) -> SourceKind:
    """Infer the kind of an entry from its logical path."""
    for kind, key in SYNTHETIC_KEYS.items():
        if path == key:
            return kind
    return _LEGACY_KEYS.get(path, SourceKind.FILESYSTEM)


def is_valid_timestamp(value: str) -> bool:
    """Check that value is a well-formed backup timestamp."""
    if not isinstance(value, str) or not TIMESTAMP_PATTERN.match(value):
        return False
    try:
        datetime.strptime(value, TIMESTAMP_FORMAT)
    except ValueError:
        return False
    return True


@dataclass
class ArchiveEntry:
    """
    One backed-up source item.

    Attributes:
        path: Logical source identifier, either a directory as configured
            (e.g. "~/Documents") or a synthetic key (e.g. "homebrew-packages").
        archive: File name of the archive within the backup directory.
        kind: Which collect/restore strategy produced the entry.
        hash: SHA-256 hex digest of the archive file.
        archive_size_bytes: Size of the archive file.
        source_size_bytes: Total size of the regular files archived.
    """

    path: str
    archive: str
    kind: SourceKind
    hash: str
    archive_size_bytes: int
    source_size_bytes: int

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "path": self.path,
            "archive": self.archive,
            "kind": self.kind.value,
            "hash": self.hash,
            "archive_size_bytes": self.archive_size_bytes,
            "source_size_bytes": self.source_size_bytes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ArchiveEntry:
        """Create from dictionary, inferring kind for older manifests."""
        kind_value = data.get("kind")
        kind = SourceKind(kind_value) if kind_value else infer_kind(data["path"])
        return cls(
            path=data["path"],
            archive=data["archive"],
            kind=kind,
            hash=data.get("hash", ""),
            archive_size_bytes=int(data.get("archive_size_bytes", 0)),
            source_size_bytes=int(data.get("source_size_bytes", 0)),
        )


@dataclass
class BackupManifest:
    """
    Record of one completed backup run.

    A manifest on disk implies every entry it lists was archived
    successfully. Totals are computed from the entries.

    Attributes:
        timestamp: Backup identifier, YYYYMMDD-HHMMSS local time at start.
        items: Archive entries sorted by logical path.
        start_time: ISO-8601 start time.
        end_time: ISO-8601 end time.
        duration_seconds: Whole seconds between start and end.
        hash_verified: Set once by an explicit verification pass.
        source_home: Home directory of the machine that made the backup.
        signature: Hex HMAC-SHA256 of the signing payload, or empty.
        hash_algorithm: Digest algorithm used for entry hashes.
        format_version: Manifest schema version.
    """

    timestamp: str
    items: list[ArchiveEntry] = field(default_factory=list)
    start_time: str = ""
    end_time: str = ""
    duration_seconds: int = 0
    hash_verified: bool = False
    source_home: str = ""
    signature: str = ""
    hash_algorithm: str = HASH_ALGORITHM
    format_version: int = MANIFEST_FORMAT_VERSION

    @property
    def total_source_size_bytes(self) -> int:
        return sum(item.source_size_bytes for item in self.items)

    @property
    def total_archive_size_bytes(self) -> int:
        return sum(item.archive_size_bytes for item in self.items)

    def find_entry(self, path: str) -> ArchiveEntry | None:
        """Return the entry with the given logical path, if any."""
        for item in self.items:
            if item.path == path:
                return item
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "format_version": self.format_version,
            "timestamp": self.timestamp,
            "items": [item.to_dict() for item in self.items],
            "hash_algorithm": self.hash_algorithm,
            "total_source_size_bytes": self.total_source_size_bytes,
            "total_archive_size_bytes": self.total_archive_size_bytes,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration_seconds": self.duration_seconds,
            "hash_verified": self.hash_verified,
            "source_home": self.source_home,
            "signature": self.signature,
        }

    def signing_payload(self) -> bytes:
        """Canonical bytes covered by the manifest signature."""
        data = self.to_dict()
        data.pop("signature")
        data.pop("hash_verified")
        return json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackupManifest:
        """Create from dictionary, tolerating fields missing from older manifests."""
        return cls(
            timestamp=data["timestamp"],
            items=[ArchiveEntry.from_dict(item) for item in data.get("items", [])],
            start_time=data.get("start_time", ""),
            end_time=data.get("end_time", ""),
            duration_seconds=int(data.get("duration_seconds", 0)),
            hash_verified=bool(data.get("hash_verified", False)),
            source_home=data.get("source_home", ""),
            signature=data.get("signature", ""),
            hash_algorithm=data.get("hash_algorithm", HASH_ALGORITHM),
            format_version=int(data.get("format_version", MANIFEST_FORMAT_VERSION)),
        )


@dataclass
class BackupSummary:
    """Summary of one backup returned when listing a target."""

    timestamp: str
    hash_verified: bool
    item_count: int = 0
    total_source_size_bytes: int = 0
    total_archive_size_bytes: int = 0

    @classmethod
    def from_manifest(cls, manifest: BackupManifest) -> BackupSummary:
        return cls(
            timestamp=manifest.timestamp,
            hash_verified=manifest.hash_verified,
            item_count=len(manifest.items),
            total_source_size_bytes=manifest.total_source_size_bytes,
            total_archive_size_bytes=manifest.total_archive_size_bytes,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "hash_verified": self.hash_verified,
            "item_count": self.item_count,
            "total_source_size_bytes": self.total_source_size_bytes,
            "total_archive_size_bytes": self.total_archive_size_bytes,
        }
