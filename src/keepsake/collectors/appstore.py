"""
Mac App Store inventory source.

The inventory is a list of `mas "<name>", id: <id>` lines, taken from the
Brewfile dump when Homebrew already recorded them, otherwise from
`mas list`. Restore installs every app id that is not already installed.

This module also computes the manual apps inventory: applications in
/Applications that neither a Homebrew cask nor the App Store accounts
for, which therefore have to be reinstalled by hand.
"""

from __future__ import annotations

import re
import tempfile
from dataclasses import dataclass
from pathlib import Path

from keepsake.archive.codec import ArchiveMember, unpack
from keepsake.collectors.base import (
    CollectorError,
    RestoreContext,
    RestoreOutcome,
    SourceItem,
    SpecialSource,
    StrategyRegistry,
)
from keepsake.collectors.homebrew import BREWFILE
from keepsake.concurrency import run_bounded
from keepsake.storage.models import SYNTHETIC_KEYS, SourceKind
from keepsake.system.tools import SystemTools, ToolError

INVENTORY_FILE = "mas_apps.txt"
MANUAL_APPS_FILE = "manual_apps.txt"
APPLICATIONS_DIR = Path("/Applications")

_MAS_LINE = re.compile(r'^mas\s+"(?P<name>[^"]*)",\s*id:\s*(?P<id>\d+)')
_MAS_LIST_LINE = re.compile(r"^\s*(?P<id>\d+)\s+(?P<name>.+?)(?:\s+\([^)]*\))?\s*$")


@dataclass
class AppStoreApp:
    """An App Store application."""

    app_id: str
    name: str

    def to_line(self) -> str:
        return f'mas "{self.name}", id: {self.app_id}'


def parse_mas_lines(text: str) -> list[AppStoreApp]:
    """Parse `mas "<name>", id: <id>` lines (Brewfile syntax)."""
    apps = []
    for line in text.splitlines():
        match = _MAS_LINE.match(line.strip())
        if match:
            apps.append(AppStoreApp(app_id=match["id"], name=match["name"]))
    return apps


def parse_mas_list(text: str) -> list[AppStoreApp]:
    """Parse `mas list` output: "<id>  <name>  (<version>)" per line."""
    apps = []
    for line in text.splitlines():
        match = _MAS_LIST_LINE.match(line)
        if match:
            apps.append(AppStoreApp(app_id=match["id"], name=match["name"].strip()))
    return apps


def installed_app_store_apps(tools: SystemTools) -> list[AppStoreApp]:
    """Apps reported by `mas list`; empty if mas is missing or fails."""
    if not tools.available("mas"):
        return []
    try:
        result = tools.run(["mas", "list"], timeout=60)
    except ToolError:
        return []
    return parse_mas_list(result.stdout) if result.ok else []


def installed_casks(tools: SystemTools) -> list[str]:
    """Casks reported by `brew list --cask`; empty if brew is missing or fails."""
    if not tools.available("brew"):
        return []
    try:
        result = tools.run(["brew", "list", "--cask"], timeout=60)
    except ToolError:
        return []
    if not result.ok:
        return []
    return [line.strip().lower() for line in result.stdout.split() if line.strip()]


def _matches_cask(app: str, casks: list[str]) -> bool:
    for cask in casks:
        if not cask:
            continue
        if app in cask or cask in app:
            return True
        if app.replace(" ", "-") == cask or app.replace(" ", "") == cask.replace("-", ""):
            return True
    return False


def _matches_app_store(app: str, names: list[str]) -> bool:
    return any(name and (app == name or name in app or app in name) for name in names)


def find_manual_apps(
    applications_dir: Path,
    casks: list[str],
    app_store_names: list[str],
) -> list[str]:
    """
    Applications not accounted for by a cask or an App Store install.

    Names are compared case-insensitively, and loosely: one containing the
    other counts as a match, as does a cask token equal to the app name with
    spaces turned into dashes or removed.

    Returns:
        Application names (bundle stem), sorted case-insensitively.
    """
    if not applications_dir.is_dir():
        return []

    cask_names = [c.lower() for c in casks]
    store_names = [n.lower() for n in app_store_names]
    manual = []
    for entry in applications_dir.iterdir():
        if entry.suffix != ".app":
            continue
        app = entry.stem
        lowered = app.lower()
        if _matches_cask(lowered, cask_names) or _matches_app_store(lowered, store_names):
            continue
        manual.append(app)
    return sorted(manual, key=str.lower)


@StrategyRegistry.register
class AppStoreSource(SpecialSource):
    """Strategy for the Mac App Store inventory."""

    kind = SourceKind.APP_INVENTORY
    name = "appstore"
    required_tool = "mas"

    def is_enabled(self) -> bool:
        return self.settings.sources.app_store

    def collect(self, staging_dir: Path, home: Path) -> SourceItem | None:
        staging_dir = Path(staging_dir)
        apps: list[AppStoreApp] = []

        brewfile = staging_dir / BREWFILE
        if brewfile.is_file():
            apps = parse_mas_lines(brewfile.read_text(encoding="utf-8"))

        if not apps:
            if not self.tools.available("mas"):
                self.logger.info("mas not installed, skipping App Store inventory")
                return None
            try:
                result = self.tools.run(["mas", "list"], timeout=60)
            except ToolError as e:
                raise CollectorError(e.message, source=self.name) from e
            if not result.ok:
                raise CollectorError(
                    f"mas list failed: {result.stderr.strip()}", source=self.name
                )
            apps = parse_mas_list(result.stdout)

        if not apps:
            self.logger.info("No App Store apps found")
            return None

        inventory = staging_dir / INVENTORY_FILE
        inventory.write_text("\n".join(app.to_line() for app in apps) + "\n", encoding="utf-8")
        return SourceItem(
            kind=self.kind,
            logical_path=SYNTHETIC_KEYS[self.kind],
            members=[ArchiveMember(inventory, INVENTORY_FILE)],
            size_hint=inventory.stat().st_size,
            archive_base=SYNTHETIC_KEYS[self.kind],
            inventory=[inventory],
        )

    def restore(self, context: RestoreContext) -> RestoreOutcome:
        if not self.tools.available("mas"):
            raise CollectorError(
                "mas is not installed; run 'brew install mas' first", source=self.name
            )

        with tempfile.TemporaryDirectory(prefix="keepsake-mas-") as temp_dir:
            unpack(context.archive_path, Path(temp_dir), overwrite=True)
            inventory = Path(temp_dir) / INVENTORY_FILE
            if not inventory.is_file():
                raise CollectorError("Archive has no App Store inventory", source=self.name)
            apps = parse_mas_lines(inventory.read_text(encoding="utf-8"))

        installed_ids = {app.app_id for app in installed_app_store_apps(self.tools)}
        if context.overwrite:
            pending = list(apps)
            already = []
        else:
            pending = [app for app in apps if app.app_id not in installed_ids]
            already = [app.name for app in apps if app.app_id in installed_ids]

        def install(app: AppStoreApp) -> str:
            args = ["mas", "install", app.app_id]
            if context.overwrite:
                args.append("--force")
            result = self.tools.run(args)
            if not result.ok:
                raise CollectorError(
                    (result.stderr or result.stdout).strip() or "install failed",
                    source=self.name,
                )
            return app.name

        def report(outcome) -> None:
            if outcome.ok:
                context.log(f"Installed {outcome.item.name}")
            else:
                context.log(f"Failed to install {outcome.item.name}: {outcome.error}")

        outcomes = run_bounded(
            install, pending, self.settings.workers.package_install, on_complete=report
        )
        installed = [o.result for o in outcomes if o.ok]
        failed = {o.item.name: getattr(o.error, "message", str(o.error)) for o in outcomes if not o.ok}

        if pending and not installed:
            raise CollectorError(
                f"No App Store apps could be installed ({len(failed)} failed)",
                source=self.name,
                paths=sorted(failed),
            )

        message = f"Installed {len(installed)} of {len(apps)} App Store apps"
        if already:
            message += f", {len(already)} already installed"
        if failed:
            message += f", {len(failed)} failed"
        return RestoreOutcome(
            skipped=not pending,
            message=message,
            details={"installed": installed, "already_installed": already, "failed": failed},
        )
