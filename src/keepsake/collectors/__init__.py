"""
Backup source collectors.

Each kind of backup item has a strategy that collects it into archive
members and reconstructs it on restore:

Supported sources:
    - Filesystem directories (any path, "~" relative to the current home)
    - Homebrew packages (Brewfile, optionally with the download cache)
    - Mac App Store apps (via mas)
    - VS Code extensions (via the code command line tool)
    - Safari settings and bookmarks

All strategies inherit from SourceStrategy and register themselves with
the StrategyRegistry, keyed by SourceKind.
"""

# Import strategies to trigger registration
from keepsake.collectors.appstore import AppStoreSource, find_manual_apps
from keepsake.collectors.base import (
    CollectorError,
    PermissionDeniedError,
    RestoreContext,
    RestoreOutcome,
    SourceItem,
    SourceStrategy,
    SpecialSource,
    StrategyRegistry,
    archive_base_name,
)
from keepsake.collectors.browser import BrowserSettingsSource
from keepsake.collectors.collector import SourceCollector
from keepsake.collectors.filesystem import FilesystemSource, resolve_restore_destination
from keepsake.collectors.homebrew import HomebrewSource
from keepsake.collectors.vscode import VSCodeSource

__all__ = [
    # Base classes and types
    "SourceStrategy",
    "SpecialSource",
    "StrategyRegistry",
    "SourceItem",
    "RestoreContext",
    "RestoreOutcome",
    "archive_base_name",
    # Exceptions
    "CollectorError",
    "PermissionDeniedError",
    # Collector
    "SourceCollector",
    "find_manual_apps",
    "resolve_restore_destination",
    # Strategies
    "FilesystemSource",
    "HomebrewSource",
    "AppStoreSource",
    "VSCodeSource",
    "BrowserSettingsSource",
]
