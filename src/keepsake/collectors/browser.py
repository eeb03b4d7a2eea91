"""
Safari settings source.

Archives Safari's bookmarks, reading list, extensions, top sites, last
session and preferences with home-relative names, so restore maps them
back under the current user's home. Safari's data folder is protected on
macOS; paths the process cannot read are skipped individually.
"""

from __future__ import annotations

from pathlib import Path

from keepsake.archive.codec import ArchiveMember, unpack
from keepsake.collectors.base import (
    RestoreContext,
    RestoreOutcome,
    SourceItem,
    SpecialSource,
    StrategyRegistry,
    directory_size,
)
from keepsake.storage.models import SYNTHETIC_KEYS, SourceKind
from keepsake.system.permissions import check_read_permission

SAFARI_PATHS = (
    "Library/Safari/Bookmarks.plist",
    "Library/Safari/ReadingListArchives",
    "Library/Safari/Extensions",
    "Library/Safari/TopSites.plist",
    "Library/Safari/LastSession.plist",
    "Library/Safari/Favicon Cache",
    "Library/Preferences/com.apple.Safari.plist",
    "Library/Containers/com.apple.Safari/Data/Library/Preferences",
)


@StrategyRegistry.register
class BrowserSettingsSource(SpecialSource):
    """Strategy for Safari settings and bookmarks."""

    kind = SourceKind.BROWSER_SETTINGS
    name = "browser"

    def is_enabled(self) -> bool:
        return self.settings.sources.browser_settings

    def collect(self, staging_dir: Path, home: Path) -> SourceItem | None:
        members = []
        size_hint = 0
        for relative in SAFARI_PATHS:
            path = home / relative
            if not path.exists():
                continue
            check = check_read_permission(str(path))
            if not check.readable:
                self.logger.warning(f"Skipping {relative}: {check.error_message}")
                continue
            members.append(ArchiveMember(path, relative))
            size_hint += directory_size(path)

        if not members:
            self.logger.info("No readable Safari settings found")
            return None

        return SourceItem(
            kind=self.kind,
            logical_path=SYNTHETIC_KEYS[self.kind],
            members=members,
            size_hint=size_hint,
            archive_base=SYNTHETIC_KEYS[self.kind],
        )

    def restore(self, context: RestoreContext) -> RestoreOutcome:
        destination = context.restore_root if context.restore_root is not None else context.home
        result = unpack(context.archive_path, destination, overwrite=context.overwrite)
        context.log(
            f"Safari settings: {result.extracted} files restored, {result.skipped} kept"
        )
        return RestoreOutcome(
            skipped=result.extracted == 0 and result.skipped > 0,
            message=f"Restored {result.extracted} Safari files into {destination}",
            details={
                "destination": str(destination),
                "files_extracted": result.extracted,
                "files_skipped": result.skipped,
            },
        )
