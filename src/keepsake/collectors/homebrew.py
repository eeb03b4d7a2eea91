"""
Homebrew package inventory source.

Collects the output of `brew bundle dump` as a Brewfile, optionally
bundled with the Homebrew download cache (only when it fits under the
configured ceiling, so a restore can skip re-downloading bottles).

Restore installs taps one at a time, then formulae and casks on a
bounded pool. Without overwrite only packages that are missing are
installed; with overwrite installed packages are reinstalled. A quick restore
installs only the essential formulae and casks the Brewfile lists.
"""

from __future__ import annotations

import re
import shutil
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
    directory_size,
)
from keepsake.concurrency import run_bounded
from keepsake.storage.models import SYNTHETIC_KEYS, SourceKind
from keepsake.system.tools import ToolError

BREWFILE = "Brewfile"
CACHE_ARCNAME = "cache"
FALLBACK_CACHE_DIRS = (
    "/opt/homebrew/var/homebrew/cache",
    "/usr/local/var/homebrew/cache",
    "~/Library/Caches/Homebrew",
)

_ENTRY_PATTERN = re.compile(r'^(tap|brew|cask)\s+"([^"]+)"')

# Keep concurrent installs from each triggering an auto-update.
INSTALL_ENV = {"HOMEBREW_NO_AUTO_UPDATE": "1", "HOMEBREW_NO_INSTALL_CLEANUP": "1"}

# Installed first by a quick restore, when the backup lists them.
ESSENTIAL_FORMULAE = (
    "git", "vim", "python", "node", "curl", "wget", "htop",
    "tree", "jq", "ripgrep", "fd", "bat", "fzf",
)
ESSENTIAL_CASKS = (
    "visual-studio-code", "iterm2", "google-chrome", "firefox",
    "1password", "rectangle", "alfred",
)


@dataclass
class BrewfileEntries:
    """Packages listed in a Brewfile, in file order."""

    taps: list[str]
    formulae: list[str]
    casks: list[str]

    @property
    def total(self) -> int:
        return len(self.taps) + len(self.formulae) + len(self.casks)


def parse_brewfile(text: str) -> BrewfileEntries:
    """Extract tap, brew and cask entries; other lines are ignored."""
    entries = BrewfileEntries(taps=[], formulae=[], casks=[])
    for line in text.splitlines():
        match = _ENTRY_PATTERN.match(line.strip())
        if not match:
            continue
        kind, name = match.groups()
        if kind == "tap":
            entries.taps.append(name)
        elif kind == "brew":
            entries.formulae.append(name)
        else:
            entries.casks.append(name)
    return entries


def essential_entries(entries: BrewfileEntries) -> BrewfileEntries:
    """
    Essential formulae and casks listed in a Brewfile.

    A package counts as essential when its short name, without tap prefix
    or "@version" suffix, is in the essential list. Only the taps that the
    selected packages come from are kept.
    """
    formulae = [n for n in entries.formulae if _short_name(n) in ESSENTIAL_FORMULAE]
    casks = [n for n in entries.casks if _short_name(n) in ESSENTIAL_CASKS]
    needed_taps = {n.rsplit("/", 1)[0] for n in formulae + casks if n.count("/") == 2}
    taps = [tap for tap in entries.taps if tap in needed_taps]
    return BrewfileEntries(taps=taps, formulae=formulae, casks=casks)


def _short_name(name: str) -> str:
    return name.rsplit("/", 1)[-1].split("@", 1)[0]


@StrategyRegistry.register
class HomebrewSource(SpecialSource):
    """Strategy for the Homebrew package inventory."""

    kind = SourceKind.PACKAGE_INVENTORY
    name = "homebrew"
    required_tool = "brew"

    def is_enabled(self) -> bool:
        return self.settings.sources.homebrew

    def collect(self, staging_dir: Path, home: Path) -> SourceItem | None:
        if not self.tools.available("brew"):
            self.logger.info("Homebrew not installed, skipping package inventory")
            return None

        try:
            result = self.tools.run(["brew", "bundle", "dump", "--file=-"])
        except ToolError as e:
            raise CollectorError(e.message, source=self.name) from e
        if not result.ok:
            raise CollectorError(
                f"brew bundle dump failed: {result.stderr.strip()}", source=self.name
            )

        brewfile = Path(staging_dir) / BREWFILE
        brewfile.write_text(result.stdout, encoding="utf-8")
        members = [ArchiveMember(brewfile, BREWFILE)]
        size_hint = brewfile.stat().st_size

        if self.settings.sources.homebrew_cache:
            cache_dir = self._cache_dir(home)
            if cache_dir is not None:
                cache_size = directory_size(cache_dir)
                ceiling = self.settings.sources.homebrew_cache_max_bytes
                if cache_size == 0:
                    self.logger.info("Homebrew cache is empty, not bundling it")
                elif cache_size > ceiling:
                    self.logger.warning(
                        f"Homebrew cache is {cache_size:,} bytes, over the "
                        f"{ceiling:,} byte limit; not bundling it"
                    )
                else:
                    members.append(ArchiveMember(cache_dir, CACHE_ARCNAME))
                    size_hint += cache_size

        return SourceItem(
            kind=self.kind,
            logical_path=SYNTHETIC_KEYS[self.kind],
            members=members,
            size_hint=size_hint,
            archive_base=SYNTHETIC_KEYS[self.kind],
            inventory=[brewfile],
        )

    def restore(self, context: RestoreContext) -> RestoreOutcome:
        self._require_brew()

        with tempfile.TemporaryDirectory(prefix="keepsake-brew-") as temp_dir:
            temp_path = Path(temp_dir)
            entries = self._unpack_brewfile(context.archive_path, temp_path)

            cache_source = temp_path / CACHE_ARCNAME
            copied = 0
            if cache_source.is_dir():
                cache_dir = self._cache_dir(context.home, create=True)
                if cache_dir is not None:
                    copied = _merge_tree(cache_source, cache_dir, context.overwrite)
                    context.log(f"Restored {copied} cached downloads to {cache_dir}")

        return self._install(entries, context, copied)

    def restore_essentials(self, context: RestoreContext) -> RestoreOutcome:
        """
        Install only the essential formulae and casks the backup lists.

        Packages already installed are left alone and the download cache
        is not restored.
        """
        self._require_brew()

        with tempfile.TemporaryDirectory(prefix="keepsake-brew-") as temp_dir:
            entries = self._unpack_brewfile(context.archive_path, Path(temp_dir))

        essentials = essential_entries(entries)
        if essentials.total == 0:
            context.log("No essential packages in backup")
            return RestoreOutcome(
                skipped=True,
                message="No essential Homebrew packages in backup",
                details={"installed": [], "already_installed": [], "failed": {}},
            )

        context.log(f"Quick restore: installing {essentials.total} essential packages")
        return self._install(essentials, context, 0)

    def _require_brew(self) -> None:
        if not self.tools.available("brew"):
            raise CollectorError(
                "Homebrew is not installed; install it from https://brew.sh first",
                source=self.name,
            )

    def _unpack_brewfile(self, archive_path: Path, temp_path: Path) -> BrewfileEntries:
        unpack(archive_path, temp_path, overwrite=True)
        brewfile = temp_path / BREWFILE
        if not brewfile.is_file():
            raise CollectorError("Archive has no Brewfile", source=self.name)
        return parse_brewfile(brewfile.read_text(encoding="utf-8"))

    def _install(
        self, entries: BrewfileEntries, context: RestoreContext, cache_files: int
    ) -> RestoreOutcome:
        installed: list[str] = []
        already: list[str] = []
        failed: dict[str, str] = {}

        for tap in entries.taps:
            try:
                result = self.tools.run(["brew", "tap", tap], env=INSTALL_ENV)
            except ToolError as e:
                failed[f"tap:{tap}"] = e.message
                continue
            if result.ok:
                installed.append(f"tap:{tap}")
            else:
                failed[f"tap:{tap}"] = _first_line(result.stderr)

        present = set()
        if not context.overwrite:
            present = self._installed("--formula") | self._installed("--cask")

        work = [("formula", name) for name in entries.formulae]
        work += [("cask", name) for name in entries.casks]
        pending = []
        for package_type, name in work:
            if name in present or name.rsplit("/", 1)[-1] in present:
                already.append(f"{package_type}:{name}")
            else:
                pending.append((package_type, name))

        def install(package: tuple[str, str]) -> str:
            package_type, name = package
            verb = "reinstall" if context.overwrite else "install"
            result = self.tools.run(["brew", verb, f"--{package_type}", name], env=INSTALL_ENV)
            if not result.ok and "already installed" not in result.stderr:
                raise CollectorError(_first_line(result.stderr), source=self.name)
            return f"{package_type}:{name}"

        def report(outcome) -> None:
            package_type, name = outcome.item
            if outcome.ok:
                context.log(f"Installed {package_type} {name}")
            else:
                context.log(f"Failed to install {package_type} {name}: {outcome.error}")

        outcomes = run_bounded(
            install,
            pending,
            self.settings.workers.package_install,
            on_complete=report,
        )
        for outcome in outcomes:
            package_type, name = outcome.item
            if outcome.ok:
                installed.append(outcome.result)
            else:
                error = outcome.error
                failed[f"{package_type}:{name}"] = getattr(error, "message", str(error))

        details = {
            "installed": installed,
            "already_installed": already,
            "failed": failed,
            "cache_files_restored": cache_files,
        }
        if failed and not installed and not already:
            raise CollectorError(
                f"No Homebrew packages could be installed ({len(failed)} failed)",
                source=self.name,
                paths=sorted(failed),
            )

        message = f"Installed {len(installed)} of {entries.total} Homebrew entries"
        if already:
            message += f", {len(already)} already installed"
        if failed:
            message += f", {len(failed)} failed"
        return RestoreOutcome(message=message, details=details)

    def _installed(self, flag: str) -> set[str]:
        try:
            result = self.tools.run(["brew", "list", flag, "-1"])
        except ToolError:
            return set()
        if not result.ok:
            return set()
        return {line.strip() for line in result.stdout.splitlines() if line.strip()}

    def _cache_dir(self, home: Path, create: bool = False) -> Path | None:
        """Homebrew download cache, as reported by brew or a known default."""
        try:
            result = self.tools.run(["brew", "--cache"], timeout=30)
            if result.ok and result.stdout.strip():
                path = Path(result.stdout.strip())
                if path.is_dir() or create:
                    if create:
                        path.mkdir(parents=True, exist_ok=True)
                    return path
        except ToolError as e:
            self.logger.debug(f"brew --cache failed: {e.message}")

        for candidate in FALLBACK_CACHE_DIRS:
            path = home / candidate[2:] if candidate.startswith("~/") else Path(candidate)
            if path.is_dir():
                return path
        return None


def _merge_tree(source: Path, destination: Path, overwrite: bool) -> int:
    """Copy files from source into destination; returns the number copied."""
    copied = 0
    for path in source.rglob("*"):
        if path.is_dir() or path.is_symlink():
            continue
        target = destination / path.relative_to(source)
        if target.exists() and not overwrite:
            continue
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(path, target)
        copied += 1
    return copied


def _first_line(text: str) -> str:
    for line in text.splitlines():
        if line.strip():
            return line.strip()
    return "unknown error"
