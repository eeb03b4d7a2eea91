"""
Base source strategy interface for backup items.

Every backup item is one of a closed set of kinds (see SourceKind). Each
kind has a strategy class that knows how to collect it into archive
members and how to reconstruct it on restore. Strategies register
themselves with the StrategyRegistry so the restore engine can dispatch
on the kind recorded in the manifest rather than on the logical path.

Design Principles:
    - Collection never modifies the source
    - A missing tool or an unreadable path skips the item, it never fails
      the whole backup
    - Restore of one item never aborts restore of another
    - All external commands go through SystemTools so tests can fake them
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from keepsake.archive.codec import ArchiveMember
from keepsake.errors import KeepsakeError
from keepsake.storage.models import ArchiveEntry, BackupManifest, SourceKind

if TYPE_CHECKING:
    from keepsake.config.settings import Settings
    from keepsake.system.tools import SystemTools


# -----------------------------------------------------------------------------
# Error Classes
# -----------------------------------------------------------------------------


class CollectorError(KeepsakeError):
    """Base exception for collect and restore strategy errors."""

    def __init__(
        self,
        message: str,
        source: str | None = None,
        paths: list[str] | None = None,
    ) -> None:
        super().__init__(message, paths)
        self.source = source

    def __str__(self) -> str:
        return f"[{self.source}] {self.message}" if self.source else self.message


class PermissionDeniedError(CollectorError):
    """
    Raised when a source path cannot be read.

    Recoverable: the collector logs it and skips the item.
    """

    pass


# -----------------------------------------------------------------------------
# Data Structures
# -----------------------------------------------------------------------------


@dataclass
class SourceItem:
    """
    One unit of work for the backup pipeline.

    Attributes:
        kind: Strategy that produced the item.
        logical_path: Identifier recorded in the manifest.
        members: Files and directories to archive.
        size_hint: Approximate source size in bytes, used for progress.
        archive_base: Archive file name without extension.
        inventory: Plain-text files copied into the backup's inventory folder.
    """

    kind: SourceKind
    logical_path: str
    members: list[ArchiveMember]
    size_hint: int = 0
    archive_base: str = ""
    inventory: list[Path] = field(default_factory=list)


@dataclass
class RestoreContext:
    """Everything a strategy needs to restore one manifest entry."""

    entry: ArchiveEntry
    archive_path: Path
    manifest: BackupManifest
    overwrite: bool
    home: Path
    restore_root: Path | None = None
    log: Callable[[str], None] = lambda message: None


@dataclass
class RestoreOutcome:
    """
    Result of restoring one entry.

    Attributes:
        skipped: True if nothing was written because the destination exists.
        message: Human-readable summary.
        details: Per-strategy counters (installed, failed, ...).
    """

    skipped: bool = False
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def archive_base_name(name: str) -> str:
    """Archive base name for a source: lower-case, spaces to '-', dots to '_'."""
    base = name.strip().lower().replace(" ", "-").replace(".", "_")
    base = base.replace("/", "_").replace("\\", "_")
    return base or "root"


def directory_size(path: Path) -> int:
    """Total size of regular files under path (or of path itself)."""
    path = Path(path)
    if path.is_symlink():
        return 0
    if path.is_file():
        return path.stat().st_size

    total = 0
    for root, _dirs, files in os.walk(path, onerror=lambda e: None):
        for name in files:
            file_path = os.path.join(root, name)
            try:
                if not os.path.islink(file_path):
                    total += os.path.getsize(file_path)
            except OSError:
                continue
    return total


# -----------------------------------------------------------------------------
# Strategy Interfaces
# -----------------------------------------------------------------------------


class SourceStrategy(ABC):
    """
    Abstract base class for per-kind collect and restore logic.

    Attributes:
        kind: SourceKind handled by the strategy.
        name: Short name used for logging.
        settings: Settings object.
        tools: External command wrapper.
        logger: Logger instance for this strategy.
    """

    kind: SourceKind
    name: str = "base"

    def __init__(self, settings: Settings, tools: SystemTools) -> None:
        self.settings = settings
        self.tools = tools
        self.logger = logging.getLogger(f"keepsake.collectors.{self.name}")

    @abstractmethod
    def restore(self, context: RestoreContext) -> RestoreOutcome:
        """
        Reconstruct one manifest entry.

        Raises:
            CollectorError: If the entry could not be restored.
        """
        pass


class SpecialSource(SourceStrategy):
    """
    Strategy for a synthetic source (inventories and settings).

    Special sources run after filesystem directories, in a fixed order.
    """

    # Command the source needs at collection time, if any
    required_tool: str | None = None

    @abstractmethod
    def is_enabled(self) -> bool:
        """Whether the source is switched on in settings."""
        pass

    @abstractmethod
    def collect(self, staging_dir: Path, home: Path) -> SourceItem | None:
        """
        Gather the source into staging_dir.

        Returns:
            The item to archive, or None if there is nothing to back up.

        Raises:
            CollectorError: If collection failed (logged and skipped).
        """
        pass


class StrategyRegistry:
    """
    Registry mapping each SourceKind to its strategy class.

    Example:
        @StrategyRegistry.register
        class VSCodeSource(SpecialSource):
            kind = SourceKind.EXTENSION_INVENTORY

        strategy = StrategyRegistry.create(SourceKind.EXTENSION_INVENTORY,
                                           settings, tools)
    """

    _strategies: dict[SourceKind, type[SourceStrategy]] = {}

    @classmethod
    def register(cls, strategy_class: type[SourceStrategy]) -> type[SourceStrategy]:
        """
        Register a strategy class. Usable as a decorator.

        Raises:
            ValueError: If the class does not define a kind.
        """
        kind = getattr(strategy_class, "kind", None)
        if not isinstance(kind, SourceKind):
            raise ValueError(f"Strategy class {strategy_class.__name__} must define 'kind'")
        cls._strategies[kind] = strategy_class
        logging.getLogger("keepsake.collectors.registry").debug(
            f"Registered strategy: {kind.value} -> {strategy_class.__name__}"
        )
        return strategy_class

    @classmethod
    def get_strategy_class(cls, kind: SourceKind) -> type[SourceStrategy] | None:
        return cls._strategies.get(kind)

    @classmethod
    def create(cls, kind: SourceKind, settings: Settings, tools: SystemTools) -> SourceStrategy:
        """
        Instantiate the strategy for a kind.

        Raises:
            ValueError: If no strategy is registered for the kind.
        """
        strategy_class = cls._strategies.get(kind)
        if strategy_class is None:
            raise ValueError(f"No strategy registered for {kind.value}")
        return strategy_class(settings, tools)

    @classmethod
    def kinds(cls) -> list[SourceKind]:
        return list(cls._strategies)
