"""Tests for home resolution, permission probes, volumes and external tools."""

import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from keepsake.system.paths import expand_home, get_home
from keepsake.system.permissions import check_read_permission
from keepsake.system.tools import SystemTools, ToolError
from keepsake.system.volumes import is_internal_volume, list_volumes


class TestPaths(unittest.TestCase):
    """Tests for home directory helpers."""

    def test_home_override(self) -> None:
        with patch.dict(os.environ, {"KEEPSAKE_HOME": "/tmp/fakehome"}):
            self.assertEqual(get_home(), Path("/tmp/fakehome"))

    def test_expand_home(self) -> None:
        home = Path("/Users/alice")
        self.assertEqual(expand_home("~", home), home)
        self.assertEqual(expand_home("~/Documents", home), home / "Documents")
        self.assertEqual(expand_home("/opt/data", home), Path("/opt/data"))
        self.assertEqual(expand_home("~bob/x", home), Path("~bob/x"))
        self.assertEqual(expand_home("Documents", home), home / "Documents")
        self.assertEqual(expand_home("./Code/x", home), home / "Code" / "x")


class TestPermissions(unittest.TestCase):
    """Tests for check_read_permission."""

    def test_readable_and_missing(self) -> None:
        with tempfile.TemporaryDirectory() as temp:
            home = Path(temp)
            (home / "Documents").mkdir()

            self.assertTrue(check_read_permission("~/Documents", home).readable)
            missing = check_read_permission("~/Missing", home)

        self.assertFalse(missing.readable)
        self.assertEqual(missing.error_message, "Path does not exist")

    @unittest.skipIf(os.name != "posix" or os.geteuid() == 0, "needs a non-root POSIX user")
    def test_permission_denied(self) -> None:
        with tempfile.TemporaryDirectory() as temp:
            locked = Path(temp) / "locked"
            locked.mkdir()
            locked.chmod(0)
            try:
                result = check_read_permission(str(locked))
            finally:
                locked.chmod(0o700)

        self.assertFalse(result.readable)
        self.assertIn("Full Disk Access", result.error_message)


class TestVolumes(unittest.TestCase):
    """Tests for list_volumes."""

    def test_lists_writable_volumes(self) -> None:
        with tempfile.TemporaryDirectory() as temp:
            root = Path(temp)
            (root / "Backup Drive").mkdir()
            (root / "Macintosh HD").mkdir()
            (root / ".hidden").mkdir()
            (root / "TM").mkdir()
            (root / "TM" / "Backups.backupdb").mkdir()
            (root / "file.txt").write_text("x")

            volumes = list_volumes([root])

        self.assertEqual([v.name for v in volumes], ["Backup Drive"])
        self.assertTrue(volumes[0].writable)
        self.assertFalse(volumes[0].is_internal)

    def test_missing_root(self) -> None:
        self.assertEqual(list_volumes([Path("/nonexistent/volumes")]), [])

    def test_internal_names(self) -> None:
        self.assertTrue(is_internal_volume("com.apple.TimeMachine.localsnapshots"))
        self.assertTrue(is_internal_volume("Preboot"))
        self.assertFalse(is_internal_volume("Photos"))


class TestSystemTools(unittest.TestCase):
    """Tests for SystemTools."""

    def test_missing_command(self) -> None:
        tools = SystemTools(search_dirs=())
        self.assertFalse(tools.available("keepsake-no-such-command"))
        with self.assertRaises(ToolError) as ctx:
            tools.run(["keepsake-no-such-command"])
        self.assertEqual(ctx.exception.tool, "keepsake-no-such-command")

    def test_run_captures_output(self) -> None:
        tools = SystemTools(search_dirs=(str(Path(sys.executable).parent),))
        name = Path(sys.executable).name

        result = tools.run([name, "-c", "import sys; print('out'); sys.exit(3)"])

        self.assertEqual(result.returncode, 3)
        self.assertFalse(result.ok)
        self.assertEqual(result.stdout.strip(), "out")


if __name__ == "__main__":
    unittest.main()
