"""
Source collector: turns configured directories and enabled special sources
into the ordered list of items the backup pipeline archives.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from keepsake.collectors.appstore import (
    APPLICATIONS_DIR,
    MANUAL_APPS_FILE,
    find_manual_apps,
    installed_app_store_apps,
    installed_casks,
)
from keepsake.collectors.base import (
    CollectorError,
    PermissionDeniedError,
    SourceItem,
    SpecialSource,
    StrategyRegistry,
)
from keepsake.collectors.filesystem import FilesystemSource
from keepsake.config.settings import Settings
from keepsake.events import BACKUP_LOG, NullEventSink
from keepsake.storage.models import SYNTHETIC_KEYS, SourceKind
from keepsake.system.paths import get_home
from keepsake.system.tools import SystemTools

logger = logging.getLogger(__name__)

# Special sources always run after directories, in this order.
SPECIAL_ORDER = (
    SourceKind.PACKAGE_INVENTORY,
    SourceKind.APP_INVENTORY,
    SourceKind.EXTENSION_INVENTORY,
    SourceKind.BROWSER_SETTINGS,
)


class SourceCollector:
    """
    Enumerates backup items.

    Filesystem directories come first, in the order the caller gave them,
    followed by the enabled special sources. Unreadable directories and
    failing special sources are skipped with a warning; the reasons are
    kept in ``skipped`` for the caller to report.

    Attributes:
        settings: Settings object.
        tools: External command wrapper.
        home: Home directory "~" resolves against.
        skipped: (path, reason) pairs for items left out of the last collect.
    """

    def __init__(
        self,
        settings: Settings,
        tools: SystemTools | None = None,
        home: Path | None = None,
        events: Any = None,
        applications_dir: Path = APPLICATIONS_DIR,
    ) -> None:
        self.settings = settings
        self.tools = tools or SystemTools()
        self.home = home if home is not None else get_home()
        self.events = events if events is not None else NullEventSink()
        self.applications_dir = applications_dir
        self.skipped: list[tuple[str, str]] = []

    def special_sources(self) -> list[SpecialSource]:
        """Enabled special sources, in collection order."""
        sources = []
        for kind in SPECIAL_ORDER:
            strategy = StrategyRegistry.create(kind, self.settings, self.tools)
            if isinstance(strategy, SpecialSource) and strategy.is_enabled():
                sources.append(strategy)
        return sources

    def collect(self, directories: list[str], staging_dir: Path) -> list[SourceItem]:
        """
        Build the ordered item list.

        Args:
            directories: Directories as configured (may start with "~").
            staging_dir: Scratch directory for generated inventories.

        Returns:
            Items to archive, directories first.
        """
        self.skipped = []
        items: list[SourceItem] = []
        seen_paths: set[str] = set()
        used_bases: set[str] = set(SYNTHETIC_KEYS.values())

        filesystem = FilesystemSource(self.settings, self.tools)
        for directory in directories:
            if directory in seen_paths:
                logger.warning(f"Ignoring duplicate directory {directory}")
                continue
            seen_paths.add(directory)

            try:
                item = filesystem.collect_directory(directory, self.home)
            except PermissionDeniedError as e:
                self._skip(directory, e.message)
                continue

            item.archive_base = _unique_base(item.archive_base, used_bases)
            items.append(item)

        for source in self.special_sources():
            try:
                item = source.collect(Path(staging_dir), self.home)
            except CollectorError as e:
                self._skip(SYNTHETIC_KEYS[source.kind], e.message)
                continue
            if item is not None:
                items.append(item)
                self.events.emit(BACKUP_LOG, {"message": f"Collected {item.logical_path}"})

        logger.info(f"Collected {len(items)} items ({len(self.skipped)} skipped)")
        return items

    def collect_manual_apps(self, staging_dir: Path) -> Path | None:
        """
        Write the manual apps inventory into staging_dir.

        Returns:
            Path of the written file, or None when disabled or there is no
            applications directory.
        """
        if not self.settings.sources.manual_apps or not self.applications_dir.is_dir():
            return None

        store_names = [app.name for app in installed_app_store_apps(self.tools)]
        apps = find_manual_apps(self.applications_dir, installed_casks(self.tools), store_names)
        path = Path(staging_dir) / MANUAL_APPS_FILE
        path.write_text("\n".join(apps) + ("\n" if apps else ""), encoding="utf-8")
        self.events.emit(BACKUP_LOG, {"message": f"Manually installed apps: {len(apps)}"})
        return path

    def _skip(self, path: str, reason: str) -> None:
        logger.warning(f"Skipping {path}: {reason}")
        self.skipped.append((path, reason))
        self.events.emit(BACKUP_LOG, {"message": f"Skipped {path}: {reason}"})


def _unique_base(base: str, used: set[str]) -> str:
    candidate = base
    suffix = 2
    while candidate in used:
        candidate = f"{base}-{suffix}"
        suffix += 1
    used.add(candidate)
    return candidate
