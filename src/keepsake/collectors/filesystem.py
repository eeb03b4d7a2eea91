"""
Filesystem directory source.

Collects a configured directory (or single file) as one archive whose
top-level member is the directory's own name, and restores it through
the destination remapping policy:

    "~" and "~/x"                    -> current home (or restore root)
    absolute under the backup's home -> same relative path under current home
    any other absolute path          -> unchanged
    bare relative path               -> under current home

With a restore root, home-relative destinations land directly below the
root and other absolute paths are re-rooted with their anchor stripped.
"""

from __future__ import annotations

from pathlib import Path, PurePath

from keepsake.archive.codec import ArchiveMember, unpack
from keepsake.collectors.base import (
    CollectorError,
    PermissionDeniedError,
    RestoreContext,
    RestoreOutcome,
    SourceItem,
    SourceStrategy,
    StrategyRegistry,
    archive_base_name,
    directory_size,
)
from keepsake.storage.models import SourceKind
from keepsake.system.paths import expand_home
from keepsake.system.permissions import check_read_permission


def _home_relative(logical_path: str, source_home: str) -> PurePath | None:
    """Path relative to the home the backup was made from, if it is one."""
    if logical_path == "~":
        return PurePath()
    if logical_path.startswith("~/"):
        return PurePath(logical_path[2:])

    path = PurePath(logical_path)
    if not path.is_absolute():
        return path
    if source_home:
        try:
            return path.relative_to(PurePath(source_home))
        except ValueError:
            return None
    return None


def resolve_restore_destination(
    logical_path: str,
    source_home: str,
    home: Path,
    restore_root: Path | None = None,
) -> Path:
    """
    Where a filesystem entry is restored to on this machine.

    Args:
        logical_path: Path recorded in the manifest.
        source_home: Home directory recorded at backup time.
        home: Current home directory.
        restore_root: Optional directory to re-root every destination under.
    """
    relative = _home_relative(logical_path, source_home)
    if relative is not None:
        base = restore_root if restore_root is not None else home
        return Path(base) / relative

    path = Path(logical_path)
    if restore_root is None:
        return path
    return Path(restore_root) / path.relative_to(path.anchor)


@StrategyRegistry.register
class FilesystemSource(SourceStrategy):
    """Strategy for configured directories."""

    kind = SourceKind.FILESYSTEM
    name = "filesystem"

    def collect_directory(self, logical_path: str, home: Path) -> SourceItem:
        """
        Prepare one configured directory for archiving.

        Raises:
            PermissionDeniedError: If the path is missing or unreadable.
        """
        check = check_read_permission(logical_path, home)
        if not check.readable:
            raise PermissionDeniedError(
                check.error_message or "Not readable", source=self.name, paths=[logical_path]
            )

        resolved = expand_home(logical_path, home)
        arcname = resolved.name or resolved.anchor.strip("/\\:") or "root"
        return SourceItem(
            kind=self.kind,
            logical_path=logical_path,
            members=[ArchiveMember(resolved, arcname)],
            size_hint=directory_size(resolved),
            archive_base=archive_base_name(arcname),
        )

    def restore(self, context: RestoreContext) -> RestoreOutcome:
        destination = resolve_restore_destination(
            context.entry.path,
            context.manifest.source_home,
            context.home,
            context.restore_root,
        )

        if (destination.exists() or destination.is_symlink()) and not context.overwrite:
            self.logger.info(f"Skipping {context.entry.path}: {destination} exists")
            return RestoreOutcome(
                skipped=True,
                message=f"{destination} already exists",
                details={"destination": str(destination)},
            )

        if destination.name == "":
            raise CollectorError(
                f"Cannot restore into filesystem root {destination}",
                source=self.name,
                paths=[str(destination)],
            )

        result = unpack(
            context.archive_path,
            destination.parent,
            overwrite=context.overwrite,
            root_name=destination.name,
        )
        context.log(f"Restored {context.entry.path} to {destination}")
        return RestoreOutcome(
            message=f"Restored to {destination}",
            details={
                "destination": str(destination),
                "files_extracted": result.extracted,
                "files_skipped": result.skipped,
            },
        )
