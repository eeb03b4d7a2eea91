"""Tests for configuration modules (settings and manifest signing)."""

import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

import yaml

from keepsake.config.settings import (
    DEFAULT_CONFIG_FILE,
    DEFAULT_DIRECTORIES,
    ConfigurationError,
    Settings,
    _apply_environment_overrides,
    _set_nested_attr,
    _validate_config,
    get_config_path,
    load_config,
    save_config,
    settings_to_dict,
)
from keepsake.config.signing import ManifestSigner, SigningError
from keepsake.storage.models import ArchiveEntry, BackupManifest, SourceKind


class TestSettings(unittest.TestCase):
    """Tests for the Settings dataclass."""

    def test_defaults(self) -> None:
        settings = Settings()

        self.assertEqual(settings.log_level, "INFO")
        self.assertEqual(settings.compression, "auto")
        self.assertIsNone(settings.target_path)
        self.assertEqual(settings.backup_directories(), DEFAULT_DIRECTORIES)
        self.assertEqual(settings.workers.verify, 4)
        self.assertEqual(settings.workers.package_install, 4)
        self.assertEqual(settings.workers.extension_install, 6)
        self.assertTrue(settings.signing.enabled)

    def test_configured_directories_win(self) -> None:
        settings = Settings(directories=["~/Projects"])
        self.assertEqual(settings.backup_directories(), ["~/Projects"])

    def test_target_path(self) -> None:
        settings = Settings(target_volume="/Volumes/Backup", target_directory="mac")
        self.assertEqual(settings.target_path, Path("/Volumes/Backup/mac"))


class TestLoadConfig(unittest.TestCase):
    """Tests for loading and saving configuration files."""

    def setUp(self) -> None:
        self._temp = tempfile.TemporaryDirectory()
        self.config_path = Path(self._temp.name) / "config.yaml"

    def tearDown(self) -> None:
        self._temp.cleanup()

    def write(self, data) -> None:
        self.config_path.write_text(yaml.safe_dump(data))

    def test_missing_file_gives_defaults(self) -> None:
        settings = load_config(self.config_path)
        self.assertEqual(settings.compression, "auto")

    def test_load_sections(self) -> None:
        self.write(
            {
                "keepsake": {"log_level": "debug", "compression": "XZ"},
                "target": {"volume": "/Volumes/Backup"},
                "directories": ["~/Documents", "~/Pictures"],
                "sources": {"homebrew_cache": "yes", "vscode": False},
                "workers": {"verify": "8"},
                "signing": {"enabled": False},
            }
        )

        settings = load_config(self.config_path)

        self.assertEqual(settings.log_level, "DEBUG")
        self.assertEqual(settings.compression, "xz")
        self.assertEqual(settings.target_volume, "/Volumes/Backup")
        self.assertEqual(settings.directories, ["~/Documents", "~/Pictures"])
        self.assertTrue(settings.sources.homebrew_cache)
        self.assertFalse(settings.sources.vscode)
        self.assertEqual(settings.workers.verify, 8)
        self.assertFalse(settings.signing.enabled)

    def test_invalid_yaml(self) -> None:
        self.config_path.write_text("keepsake: [unclosed")
        with self.assertRaises(ConfigurationError):
            load_config(self.config_path)

    def test_top_level_must_be_mapping(self) -> None:
        self.config_path.write_text("- a\n- b\n")
        with self.assertRaises(ConfigurationError):
            load_config(self.config_path)

    def test_invalid_section_value(self) -> None:
        self.write({"workers": {"verify": "many"}})
        with self.assertRaises(ConfigurationError):
            load_config(self.config_path)

    def test_directories_must_be_list(self) -> None:
        self.write({"directories": "~/Documents"})
        with self.assertRaises(ConfigurationError):
            load_config(self.config_path)

    def test_save_and_reload(self) -> None:
        settings = Settings(target_volume="/Volumes/T", directories=["~/Code"])
        settings.workers.backup = 2
        settings.signing.require_signature = True

        save_config(settings, self.config_path)
        loaded = load_config(self.config_path)

        self.assertEqual(loaded.target_volume, "/Volumes/T")
        self.assertEqual(loaded.directories, ["~/Code"])
        self.assertEqual(loaded.workers.backup, 2)
        self.assertTrue(loaded.signing.require_signature)
        self.assertEqual(settings_to_dict(loaded), settings_to_dict(settings))


class TestEnvironmentOverrides(unittest.TestCase):
    """Tests for KEEPSAKE_* environment variables."""

    def test_config_path_override(self) -> None:
        with patch.dict(os.environ, {"KEEPSAKE_CONFIG": "/tmp/other.yaml"}):
            self.assertEqual(get_config_path(), Path("/tmp/other.yaml"))

    def test_default_config_path(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            self.assertEqual(get_config_path(), DEFAULT_CONFIG_FILE)

    def test_overrides_applied(self) -> None:
        env = {
            "KEEPSAKE_TARGET": "/Volumes/X",
            "KEEPSAKE_DIRECTORIES": "~/A, ~/B",
            "KEEPSAKE_VERIFY_WORKERS": "2",
            "KEEPSAKE_SIGNING_ENABLED": "false",
            "KEEPSAKE_SIGNING_REQUIRED": "yes",
            "KEEPSAKE_LOG_LEVEL": "warning",
        }
        with patch.dict(os.environ, env):
            settings = _apply_environment_overrides(Settings())

        self.assertEqual(settings.target_volume, "/Volumes/X")
        self.assertEqual(settings.directories, ["~/A", "~/B"])
        self.assertEqual(settings.workers.verify, 2)
        self.assertFalse(settings.signing.enabled)
        self.assertTrue(settings.signing.require_signature)
        self.assertEqual(settings.log_level, "WARNING")

    def test_bad_override(self) -> None:
        with patch.dict(os.environ, {"KEEPSAKE_VERIFY_WORKERS": "lots"}):
            with self.assertRaises(ConfigurationError):
                _apply_environment_overrides(Settings())

    def test_set_nested_attr(self) -> None:
        settings = Settings()
        _set_nested_attr(settings, "workers.backup", 3)
        self.assertEqual(settings.workers.backup, 3)


class TestValidation(unittest.TestCase):
    """Tests for _validate_config."""

    def test_valid_defaults(self) -> None:
        _validate_config(Settings())

    def test_bad_compression(self) -> None:
        with self.assertRaises(ConfigurationError):
            _validate_config(Settings(compression="rar"))

    def test_bad_log_level(self) -> None:
        with self.assertRaises(ConfigurationError):
            _validate_config(Settings(log_level="LOUD"))

    def test_workers_at_least_one(self) -> None:
        settings = Settings()
        settings.workers.verify = 0
        with self.assertRaises(ConfigurationError):
            _validate_config(settings)


class TestManifestSigner(unittest.TestCase):
    """Tests for ManifestSigner."""

    def setUp(self) -> None:
        self.manifest = BackupManifest(
            timestamp="20240102-030405",
            items=[ArchiveEntry("~/A", "a.tar.gz", SourceKind.FILESYSTEM, "ab" * 32, 5, 10)],
        )

    def test_sign_and_verify(self) -> None:
        signer = ManifestSigner(b"s" * 32)
        self.manifest.signature = signer.sign(self.manifest)

        self.assertTrue(signer.verify(self.manifest))

    def test_tampering_detected(self) -> None:
        signer = ManifestSigner(b"s" * 32)
        self.manifest.signature = signer.sign(self.manifest)
        self.manifest.items[0].hash = "cd" * 32

        self.assertFalse(signer.verify(self.manifest))

    def test_other_key_rejected(self) -> None:
        self.manifest.signature = ManifestSigner(b"s" * 32).sign(self.manifest)
        self.assertFalse(ManifestSigner(b"t" * 32).verify(self.manifest))

    def test_unsigned_and_malformed(self) -> None:
        signer = ManifestSigner(b"s" * 32)
        self.assertFalse(signer.verify(self.manifest))
        self.manifest.signature = "not-hex"
        self.assertFalse(signer.verify(self.manifest))

    def test_short_key_rejected(self) -> None:
        with self.assertRaises(SigningError):
            ManifestSigner(b"short")

    def test_load_or_create(self) -> None:
        with tempfile.TemporaryDirectory() as temp:
            key_file = Path(temp) / "keys" / "signing.key"

            first = ManifestSigner.load_or_create(key_file)
            second = ManifestSigner.load_or_create(key_file)

            self.assertTrue(key_file.is_file())
            if os.name == "posix":
                self.assertEqual(key_file.stat().st_mode & 0o777, 0o600)
            self.assertEqual(first.sign(self.manifest), second.sign(self.manifest))

    def test_from_settings_disabled(self) -> None:
        settings = Settings()
        settings.signing.enabled = False
        self.assertIsNone(ManifestSigner.from_settings(settings))


if __name__ == "__main__":
    unittest.main()
