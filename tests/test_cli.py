"""
Tests for the CLI commands.

Uses Python's unittest module.
Tests argument parsing and runs the commands end to end against a
temporary home, target and config file.
"""

from __future__ import annotations

import io
import json
import os
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path
from unittest.mock import patch

import yaml

from keepsake.cli import create_parser, format_size, main
from keepsake.config.settings import load_config


class TestArgumentParser(unittest.TestCase):
    """Tests for CLI argument parsing."""

    def setUp(self) -> None:
        """Set up parser for tests."""
        self.parser = create_parser()

    def test_version_argument(self) -> None:
        """Test --version argument."""
        with self.assertRaises(SystemExit) as cm:
            with redirect_stdout(io.StringIO()):
                self.parser.parse_args(["--version"])

        self.assertEqual(cm.exception.code, 0)

    def test_no_command_defaults(self) -> None:
        """Test parsing with no command."""
        args = self.parser.parse_args([])

        self.assertIsNone(args.command)
        self.assertEqual(args.verbose, 0)
        self.assertFalse(args.quiet)

    def test_verbose_flag(self) -> None:
        """Test -v verbose flag."""
        self.assertEqual(self.parser.parse_args(["-vv"]).verbose, 2)

    def test_backup_command(self) -> None:
        """Test backup command with directories and target."""
        args = self.parser.parse_args(["backup", "~/Documents", "~/Music", "-t", "/Volumes/B"])

        self.assertEqual(args.directories, ["~/Documents", "~/Music"])
        self.assertEqual(args.target, "/Volumes/B")
        self.assertTrue(hasattr(args, "func"))

    def test_restore_command(self) -> None:
        """Test restore command options."""
        args = self.parser.parse_args(
            ["restore", "20240101-000000", "~/Documents", "--overwrite", "--restore-root", "/tmp/r"]
        )

        self.assertEqual(args.timestamp, "20240101-000000")
        self.assertEqual(args.items, ["~/Documents"])
        self.assertTrue(args.overwrite)
        self.assertFalse(args.all)
        self.assertEqual(args.restore_root, "/tmp/r")

    def test_every_command_has_handler(self) -> None:
        """Test each command dispatches to a function."""
        commands = [
            ["volumes"],
            ["check", "~"],
            ["list"],
            ["show", "20240101-000000"],
            ["verify", "20240101-000000"],
            ["delete", "20240101-000000", "--force"],
            ["manual-apps", "20240101-000000"],
            ["quick-restore", "20240101-000000"],
            ["config", "show"],
        ]
        for argv in commands:
            with self.subTest(argv=argv):
                self.assertTrue(hasattr(self.parser.parse_args(argv), "func"))

    def test_format_size(self) -> None:
        self.assertEqual(format_size(512), "512 B")
        self.assertEqual(format_size(2048), "2.0 KB")
        self.assertEqual(format_size(5 * 1024 * 1024), "5.0 MB")


class TestCommands(unittest.TestCase):
    """End-to-end tests running main() against temporary directories."""

    def setUp(self) -> None:
        self._temp = tempfile.TemporaryDirectory()
        root = Path(self._temp.name)
        self.home = root / "home"
        self.target = root / "target"
        self.restore_root = root / "restored"
        self.home.mkdir()
        self.target.mkdir()
        (self.home / "Documents").mkdir()
        (self.home / "Documents" / "todo.txt").write_text("buy milk\n")

        self.config_path = root / "config.yaml"
        self.config_path.write_text(
            yaml.safe_dump(
                {
                    "keepsake": {"log_level": "WARNING", "compression": "gz"},
                    "target": {"volume": str(self.target)},
                    "directories": ["~/Documents"],
                    "sources": {
                        "homebrew": False,
                        "app_store": False,
                        "manual_apps": False,
                        "vscode": False,
                        "browser_settings": False,
                    },
                    "signing": {"enabled": False},
                }
            )
        )

        env = {key: value for key, value in os.environ.items() if not key.startswith("KEEPSAKE_")}
        env["KEEPSAKE_HOME"] = str(self.home)
        self._env = patch.dict(os.environ, env, clear=True)
        self._env.start()

    def tearDown(self) -> None:
        self._env.stop()
        self._temp.cleanup()

    def run_cli(self, *argv: str) -> tuple[int, str, str]:
        stdout = io.StringIO()
        stderr = io.StringIO()
        with redirect_stdout(stdout), redirect_stderr(stderr):
            with self.assertRaises(SystemExit) as cm:
                main(["--config", str(self.config_path), *argv])
        return cm.exception.code, stdout.getvalue(), stderr.getvalue()

    def backup(self) -> str:
        code, _, err = self.run_cli("backup")
        self.assertEqual(code, 0, err)
        code, out, _ = self.run_cli("list", "--json")
        self.assertEqual(code, 0)
        return json.loads(out)[0]["timestamp"]

    def test_no_command_prints_help(self) -> None:
        code, out, _ = self.run_cli()
        self.assertEqual(code, 0)
        self.assertIn("usage:", out)

    def test_backup_list_show(self) -> None:
        timestamp = self.backup()

        code, out, _ = self.run_cli("show", timestamp, "--json")

        self.assertEqual(code, 0)
        manifest = json.loads(out)
        self.assertEqual([i["path"] for i in manifest["items"]], ["~/Documents"])
        self.assertEqual(manifest["total_source_size_bytes"], len("buy milk\n"))

    def test_backup_prints_progress(self) -> None:
        code, out, err = self.run_cli("backup")

        self.assertEqual(code, 0, err)
        self.assertIn("[100%] Backup complete", out)

    def test_quick_restore_without_homebrew_inventory(self) -> None:
        timestamp = self.backup()

        code, _, err = self.run_cli("quick-restore", timestamp)

        self.assertEqual(code, 1)
        self.assertIn("homebrew-packages: not found in backup", err)

    def test_verify_then_restore(self) -> None:
        timestamp = self.backup()

        code, out, _ = self.run_cli("verify", timestamp)
        self.assertEqual(code, 0)
        self.assertIn("verified", out)

        code, out, _ = self.run_cli(
            "restore", timestamp, "--all", "--restore-root", str(self.restore_root), "--json"
        )
        self.assertEqual(code, 0)
        self.assertEqual(json.loads(out)["restored"], ["~/Documents"])
        self.assertEqual(
            (self.restore_root / "Documents" / "todo.txt").read_text(), "buy milk\n"
        )

    def test_restore_requires_selection(self) -> None:
        timestamp = self.backup()
        code, _, err = self.run_cli("restore", timestamp)
        self.assertEqual(code, 2)
        self.assertIn("--all", err)

    def test_verify_corrupted_backup_fails(self) -> None:
        timestamp = self.backup()
        backup_dir = self.target / "keepsake" / "data" / timestamp
        archive = next(p for p in backup_dir.iterdir() if p.name.endswith(".tar.gz"))
        archive.write_bytes(b"corrupted")

        code, _, err = self.run_cli("verify", timestamp)

        self.assertEqual(code, 1)
        self.assertIn("~/Documents", err)

    def test_delete_then_not_found(self) -> None:
        timestamp = self.backup()

        code, _, _ = self.run_cli("delete", timestamp, "--force")
        self.assertEqual(code, 0)

        code, _, err = self.run_cli("delete", timestamp, "--force")
        self.assertEqual(code, 1)
        self.assertIn("not found", err.lower())

    def test_missing_target_is_configuration_error(self) -> None:
        self.config_path.write_text(yaml.safe_dump({"signing": {"enabled": False}}))

        code, _, err = self.run_cli("list")

        self.assertEqual(code, 2)
        self.assertIn("No target configured", err)

    def test_check_command(self) -> None:
        code, out, _ = self.run_cli("check", "~/Documents")
        self.assertEqual(code, 0)
        self.assertIn("readable", out)

        code, _, err = self.run_cli("check", "~/Nowhere")
        self.assertEqual(code, 1)
        self.assertIn("does not exist", err)

    def test_config_directories(self) -> None:
        code, _, _ = self.run_cli("config", "add-dir", "~/Code")
        self.assertEqual(code, 0)
        self.assertEqual(load_config(self.config_path).directories, ["~/Documents", "~/Code"])

        code, _, _ = self.run_cli("config", "remove-dir", "~/Documents")
        self.assertEqual(code, 0)
        self.assertEqual(load_config(self.config_path).directories, ["~/Code"])

        code, _, _ = self.run_cli("config", "remove-dir", "~/Documents")
        self.assertEqual(code, 1)

    def test_config_init(self) -> None:
        self.config_path.unlink()

        code, _, _ = self.run_cli("config", "init", "--target", str(self.target))
        self.assertEqual(code, 0)
        self.assertEqual(load_config(self.config_path).target_volume, str(self.target))

        code, _, _ = self.run_cli("config", "init")
        self.assertEqual(code, 1)


if __name__ == "__main__":
    unittest.main()
