"""
Tests for the source collectors and restore strategies.

Uses Python's unittest module.
External commands are replaced by FakeTools so no package manager,
editor or app store client is ever invoked.
"""

from __future__ import annotations

import tempfile
import threading
import unittest
from collections.abc import Sequence
from pathlib import Path

from keepsake.archive.codec import pack
from keepsake.collectors import (
    CollectorError,
    FilesystemSource,
    SourceCollector,
    StrategyRegistry,
    VSCodeSource,
    archive_base_name,
    find_manual_apps,
    resolve_restore_destination,
)
from keepsake.collectors.appstore import AppStoreSource, parse_mas_lines, parse_mas_list
from keepsake.collectors.base import PermissionDeniedError, RestoreContext
from keepsake.collectors.homebrew import HomebrewSource, essential_entries, parse_brewfile
from keepsake.collectors.vscode import parse_extensions
from keepsake.config.settings import Settings
from keepsake.storage.models import ArchiveEntry, BackupManifest, SourceKind
from keepsake.system.tools import CommandResult, SystemTools, ToolError


class FakeTools(SystemTools):
    """SystemTools double answering from a table of canned results."""

    def __init__(self, installed: Sequence[str] = (), responses: dict | None = None) -> None:
        super().__init__(search_dirs=())
        self.installed = set(installed)
        self.responses = responses or {}
        self.calls: list[list[str]] = []
        self._lock = threading.Lock()

    def find(self, name: str) -> str | None:
        return f"/fake/bin/{name}" if name in self.installed else None

    def run(self, args, timeout=None, env=None) -> CommandResult:
        if args[0] not in self.installed:
            raise ToolError(f"Command not found: {args[0]}", tool=args[0])
        with self._lock:
            self.calls.append(list(args))
        key = " ".join(args)
        response = self.responses.get(key, (0, "", ""))
        returncode, stdout, stderr = response
        return CommandResult(list(args), returncode, stdout, stderr)


def quiet_settings() -> Settings:
    """Settings with signing off and only filesystem sources."""
    settings = Settings()
    settings.signing.enabled = False
    settings.sources.manual_apps = False
    return settings


BREWFILE_TEXT = """tap "homebrew/bundle"
brew "git"
brew "jq"
cask "firefox"
mas "Xcode", id: 497799835
vscode "ms-python.python"
"""

ESSENTIAL_BREWFILE = """tap "homebrew/bundle"
tap "acme/tools"
brew "git"
brew "gitleaks"
brew "python@3.12"
brew "acme/tools/fzf"
cask "firefox"
cask "slack"
"""


class TestHelpers(unittest.TestCase):
    """Tests for parsing and naming helpers."""

    def test_archive_base_name(self) -> None:
        self.assertEqual(archive_base_name("My Files"), "my-files")
        self.assertEqual(archive_base_name(".config"), "_config")
        self.assertEqual(archive_base_name(""), "root")

    def test_parse_brewfile(self) -> None:
        entries = parse_brewfile(BREWFILE_TEXT)

        self.assertEqual(entries.taps, ["homebrew/bundle"])
        self.assertEqual(entries.formulae, ["git", "jq"])
        self.assertEqual(entries.casks, ["firefox"])
        self.assertEqual(entries.total, 4)

    def test_essential_entries(self) -> None:
        entries = parse_brewfile(ESSENTIAL_BREWFILE)

        essentials = essential_entries(entries)

        self.assertEqual(essentials.taps, ["acme/tools"])
        self.assertEqual(essentials.formulae, ["git", "python@3.12", "acme/tools/fzf"])
        self.assertEqual(essentials.casks, ["firefox"])

    def test_parse_mas_lines(self) -> None:
        apps = parse_mas_lines(BREWFILE_TEXT)
        self.assertEqual([(a.app_id, a.name) for a in apps], [("497799835", "Xcode")])

    def test_parse_mas_list(self) -> None:
        apps = parse_mas_list("497799835  Xcode  (15.0)\n409183694  Keynote (13.1)\n\n")
        self.assertEqual([a.name for a in apps], ["Xcode", "Keynote"])
        self.assertEqual(apps[0].to_line(), 'mas "Xcode", id: 497799835')

    def test_parse_extensions(self) -> None:
        text = "ms-python.python\n\n# comment\nesbenp.prettier-vscode\n"
        self.assertEqual(parse_extensions(text), ["ms-python.python", "esbenp.prettier-vscode"])

    def test_every_kind_has_a_strategy(self) -> None:
        for kind in SourceKind:
            self.assertIsNotNone(StrategyRegistry.get_strategy_class(kind), kind)


class TestRestoreDestination(unittest.TestCase):
    """Tests for the destination remapping policy."""

    home = Path("/Users/bob")

    def test_tilde_paths(self) -> None:
        self.assertEqual(
            resolve_restore_destination("~/Documents", "/Users/alice", self.home),
            Path("/Users/bob/Documents"),
        )
        self.assertEqual(resolve_restore_destination("~", "/Users/alice", self.home), self.home)

    def test_absolute_under_source_home(self) -> None:
        self.assertEqual(
            resolve_restore_destination("/Users/alice/Projects/x", "/Users/alice", self.home),
            Path("/Users/bob/Projects/x"),
        )

    def test_other_absolute_unchanged(self) -> None:
        self.assertEqual(
            resolve_restore_destination("/opt/data", "/Users/alice", self.home),
            Path("/opt/data"),
        )

    def test_relative_goes_under_home(self) -> None:
        self.assertEqual(
            resolve_restore_destination("Music", "/Users/alice", self.home),
            Path("/Users/bob/Music"),
        )

    def test_restore_root(self) -> None:
        root = Path("/tmp/restore")
        self.assertEqual(
            resolve_restore_destination("~/Documents", "/Users/alice", self.home, root),
            root / "Documents",
        )
        self.assertEqual(
            resolve_restore_destination("/opt/data", "/Users/alice", self.home, root),
            root / "opt" / "data",
        )


class TestManualApps(unittest.TestCase):
    """Tests for find_manual_apps."""

    def test_unmanaged_apps_reported(self) -> None:
        with tempfile.TemporaryDirectory() as temp:
            apps_dir = Path(temp)
            for name in ("Firefox", "Visual Studio Code", "Xcode", "Blender", "affinity"):
                (apps_dir / f"{name}.app").mkdir()
            (apps_dir / "README.txt").write_text("not an app")

            manual = find_manual_apps(
                apps_dir,
                casks=["firefox", "visual-studio-code"],
                app_store_names=["Xcode"],
            )

        self.assertEqual(manual, ["affinity", "Blender"])

    def test_missing_directory(self) -> None:
        self.assertEqual(find_manual_apps(Path("/nonexistent/Applications"), [], []), [])


class CollectorTestCase(unittest.TestCase):
    """Base class with a temporary home and staging directory."""

    def setUp(self) -> None:
        self._temp = tempfile.TemporaryDirectory()
        root = Path(self._temp.name)
        self.home = root / "home"
        self.staging = root / "staging"
        self.work = root / "work"
        for path in (self.home, self.staging, self.work):
            path.mkdir()
        (self.home / "Documents").mkdir()
        (self.home / "Documents" / "letter.txt").write_text("dear bob")
        self.settings = quiet_settings()

    def tearDown(self) -> None:
        self._temp.cleanup()


class TestSourceCollector(CollectorTestCase):
    """Tests for SourceCollector."""

    def test_directories_then_special_sources(self) -> None:
        tools = FakeTools(
            installed=["code"],
            responses={"code --list-extensions": (0, "ms-python.python\n", "")},
        )
        collector = SourceCollector(self.settings, tools, self.home)

        items = collector.collect(["~/Documents"], self.staging)

        self.assertEqual([i.logical_path for i in items], ["~/Documents", "vscode-extensions"])
        self.assertEqual(items[0].kind, SourceKind.FILESYSTEM)
        self.assertEqual(items[0].members[0].arcname, "Documents")
        self.assertEqual(items[0].archive_base, "documents")
        self.assertEqual(items[1].kind, SourceKind.EXTENSION_INVENTORY)

    def test_missing_tools_skip_special_sources(self) -> None:
        collector = SourceCollector(self.settings, FakeTools(), self.home)

        items = collector.collect(["~/Documents"], self.staging)

        self.assertEqual([i.logical_path for i in items], ["~/Documents"])
        self.assertEqual(collector.skipped, [])

    def test_unreadable_directory_skipped(self) -> None:
        collector = SourceCollector(self.settings, FakeTools(), self.home)

        items = collector.collect(["~/Missing", "~/Documents"], self.staging)

        self.assertEqual([i.logical_path for i in items], ["~/Documents"])
        self.assertEqual(collector.skipped[0][0], "~/Missing")
        self.assertIn("does not exist", collector.skipped[0][1])

    def test_duplicates_and_name_clashes(self) -> None:
        """Duplicate paths collapse; equal base names get distinct archives."""
        (self.home / "a" / "Docs").mkdir(parents=True)
        (self.home / "b" / "Docs").mkdir(parents=True)
        collector = SourceCollector(self.settings, FakeTools(), self.home)

        items = collector.collect(["~/a/Docs", "~/b/Docs", "~/a/Docs"], self.staging)

        self.assertEqual([i.logical_path for i in items], ["~/a/Docs", "~/b/Docs"])
        self.assertEqual([i.archive_base for i in items], ["docs", "docs-2"])

    def test_failing_special_source_recorded(self) -> None:
        tools = FakeTools(
            installed=["code"],
            responses={"code --list-extensions": (1, "", "boom")},
        )
        collector = SourceCollector(self.settings, tools, self.home)

        items = collector.collect(["~/Documents"], self.staging)

        self.assertEqual(len(items), 1)
        self.assertEqual(collector.skipped[0][0], "vscode-extensions")

    def test_manual_apps_inventory(self) -> None:
        apps_dir = self.work / "Applications"
        apps_dir.mkdir()
        (apps_dir / "Blender.app").mkdir()
        self.settings.sources.manual_apps = True
        collector = SourceCollector(self.settings, FakeTools(), self.home, applications_dir=apps_dir)

        path = collector.collect_manual_apps(self.staging)

        self.assertEqual(path.read_text(), "Blender\n")


class TestFilesystemSource(CollectorTestCase):
    """Tests for FilesystemSource."""

    def test_collect_missing_raises(self) -> None:
        source = FilesystemSource(self.settings, FakeTools())
        with self.assertRaises(PermissionDeniedError):
            source.collect_directory("~/Nope", self.home)

    def test_restore_skips_existing(self) -> None:
        source = FilesystemSource(self.settings, FakeTools())
        item = source.collect_directory("~/Documents", self.home)
        result = pack(item.members, self.work, item.archive_base, "gz")
        context = self._context(result.archive_path, "~/Documents", overwrite=False)

        outcome = source.restore(context)

        self.assertTrue(outcome.skipped)
        self.assertEqual((self.home / "Documents" / "letter.txt").read_text(), "dear bob")

    def test_restore_with_overwrite(self) -> None:
        source = FilesystemSource(self.settings, FakeTools())
        item = source.collect_directory("~/Documents", self.home)
        result = pack(item.members, self.work, item.archive_base, "gz")
        (self.home / "Documents" / "letter.txt").write_text("changed")
        context = self._context(result.archive_path, "~/Documents", overwrite=True)

        outcome = source.restore(context)

        self.assertFalse(outcome.skipped)
        self.assertEqual((self.home / "Documents" / "letter.txt").read_text(), "dear bob")

    def _context(self, archive_path: Path, path: str, overwrite: bool) -> RestoreContext:
        entry = ArchiveEntry(path, archive_path.name, SourceKind.FILESYSTEM, "", 0, 0)
        manifest = BackupManifest(timestamp="20240101-000000", items=[entry], source_home=str(self.home))
        return RestoreContext(entry, archive_path, manifest, overwrite, self.home)


class TestSpecialSources(CollectorTestCase):
    """Tests for the inventory strategies."""

    def _restore_context(self, item, overwrite: bool = False) -> RestoreContext:
        result = pack(item.members, self.work, item.archive_base, "gz")
        entry = ArchiveEntry(
            item.logical_path, result.archive_name, item.kind, result.digest, 0, 0
        )
        manifest = BackupManifest(timestamp="20240101-000000", items=[entry])
        return RestoreContext(entry, result.archive_path, manifest, overwrite, self.home)

    def test_homebrew_collect(self) -> None:
        tools = FakeTools(
            installed=["brew"],
            responses={"brew bundle dump --file=-": (0, BREWFILE_TEXT, "")},
        )
        item = HomebrewSource(self.settings, tools).collect(self.staging, self.home)

        self.assertEqual(item.logical_path, "homebrew-packages")
        self.assertEqual((self.staging / "Brewfile").read_text(), BREWFILE_TEXT)
        self.assertEqual([m.arcname for m in item.members], ["Brewfile"])

    def test_homebrew_restore_installs_missing_packages(self) -> None:
        tools = FakeTools(
            installed=["brew"],
            responses={
                "brew bundle dump --file=-": (0, BREWFILE_TEXT, ""),
                "brew list --formula -1": (0, "git\n", ""),
            },
        )
        source = HomebrewSource(self.settings, tools)
        context = self._restore_context(source.collect(self.staging, self.home))

        outcome = source.restore(context)

        self.assertIn("formula:jq", outcome.details["installed"])
        self.assertIn("cask:firefox", outcome.details["installed"])
        self.assertEqual(outcome.details["already_installed"], ["formula:git"])
        self.assertNotIn(["brew", "install", "--formula", "git"], tools.calls)

    def test_homebrew_quick_restore_installs_only_essentials(self) -> None:
        tools = FakeTools(
            installed=["brew"],
            responses={
                "brew bundle dump --file=-": (0, ESSENTIAL_BREWFILE, ""),
                "brew list --formula -1": (0, "git\n", ""),
            },
        )
        source = HomebrewSource(self.settings, tools)
        context = self._restore_context(source.collect(self.staging, self.home))

        outcome = source.restore_essentials(context)

        self.assertFalse(outcome.skipped)
        self.assertEqual(
            sorted(outcome.details["installed"]),
            ["cask:firefox", "formula:acme/tools/fzf", "formula:python@3.12", "tap:acme/tools"],
        )
        self.assertEqual(outcome.details["already_installed"], ["formula:git"])
        self.assertNotIn(["brew", "install", "--formula", "gitleaks"], tools.calls)
        self.assertNotIn(["brew", "install", "--cask", "slack"], tools.calls)
        self.assertNotIn(["brew", "tap", "homebrew/bundle"], tools.calls)

    def test_homebrew_quick_restore_without_essentials(self) -> None:
        tools = FakeTools(
            installed=["brew"],
            responses={"brew bundle dump --file=-": (0, 'brew "gitleaks"\n', "")},
        )
        source = HomebrewSource(self.settings, tools)
        context = self._restore_context(source.collect(self.staging, self.home))

        outcome = source.restore_essentials(context)

        self.assertTrue(outcome.skipped)
        self.assertFalse([call for call in tools.calls if call[1] == "install"])

    def test_homebrew_restore_requires_brew(self) -> None:
        tools = FakeTools(
            installed=["brew"],
            responses={"brew bundle dump --file=-": (0, BREWFILE_TEXT, "")},
        )
        item = HomebrewSource(self.settings, tools).collect(self.staging, self.home)
        context = self._restore_context(item)

        with self.assertRaises(CollectorError):
            HomebrewSource(self.settings, FakeTools()).restore(context)

    def test_app_store_reuses_brewfile(self) -> None:
        (self.staging / "Brewfile").write_text(BREWFILE_TEXT)
        tools = FakeTools(installed=["mas"])

        item = AppStoreSource(self.settings, tools).collect(self.staging, self.home)

        self.assertEqual(item.logical_path, "mas-apps")
        self.assertEqual(tools.calls, [])

    def test_app_store_restore_skips_installed(self) -> None:
        (self.staging / "Brewfile").write_text(BREWFILE_TEXT)
        tools = FakeTools(
            installed=["mas"],
            responses={"mas list": (0, "497799835  Xcode  (15.0)\n", "")},
        )
        source = AppStoreSource(self.settings, tools)
        context = self._restore_context(source.collect(self.staging, self.home))

        outcome = source.restore(context)

        self.assertTrue(outcome.skipped)
        self.assertNotIn(["mas", "install", "497799835"], tools.calls)

    def test_vscode_restore(self) -> None:
        tools = FakeTools(
            installed=["code"],
            responses={
                "code --list-extensions": (0, "a.one\nb.two\n", ""),
                "code --install-extension b.two": (1, "", "network down"),
            },
        )
        source = VSCodeSource(self.settings, tools)
        context = self._restore_context(source.collect(self.staging, self.home))

        outcome = source.restore(context)

        self.assertEqual(outcome.details["installed"], ["a.one"])
        self.assertEqual(outcome.details["failed"], {"b.two": "network down"})

    def test_vscode_restore_all_failed(self) -> None:
        tools = FakeTools(
            installed=["code"],
            responses={
                "code --list-extensions": (0, "a.one\n", ""),
                "code --install-extension a.one": (1, "", "nope"),
            },
        )
        source = VSCodeSource(self.settings, tools)
        context = self._restore_context(source.collect(self.staging, self.home))

        with self.assertRaises(CollectorError):
            source.restore(context)


if __name__ == "__main__":
    unittest.main()
