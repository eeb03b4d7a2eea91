"""
Configuration settings management for Keepsake.

This module handles loading, validating, and saving configuration settings
from YAML files with support for environment variable overrides.

Configuration is loaded from ~/.keepsake/config.yaml by default, with the
path overridable via the KEEPSAKE_CONFIG environment variable.
"""

import os
from collections.abc import Callable
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from keepsake.errors import KeepsakeError

# Default configuration directory
DEFAULT_CONFIG_DIR = Path.home() / ".keepsake"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"
DEFAULT_SIGNING_KEY_FILE = DEFAULT_CONFIG_DIR / "signing.key"

DEFAULT_DIRECTORIES = ["~/Documents", "~/Desktop"]
DEFAULT_HOMEBREW_CACHE_MAX_BYTES = 2 * 1024 * 1024 * 1024  # 2 GiB

VALID_COMPRESSION = ("auto", "zst", "xz", "gz")
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class SourcesConfig:
    """Which special sources are collected alongside directories."""

    homebrew: bool = True
    homebrew_cache: bool = False
    homebrew_cache_max_bytes: int = DEFAULT_HOMEBREW_CACHE_MAX_BYTES
    app_store: bool = True
    manual_apps: bool = True
    vscode: bool = True
    browser_settings: bool = False


@dataclass
class WorkersConfig:
    """Bounded worker pool sizes."""

    backup: int = 1
    verify: int = 4
    package_install: int = 4
    extension_install: int = 6


@dataclass
class EventsConfig:
    """Progress event channel settings."""

    buffer_size: int = 256


@dataclass
class SigningConfig:
    """Manifest signing settings. require_signature rejects unsigned manifests on verify."""

    enabled: bool = True
    key_file: str = str(DEFAULT_SIGNING_KEY_FILE)
    require_signature: bool = False


@dataclass
class Settings:
    """
    Complete Keepsake configuration settings.

    Settings are loaded from a YAML configuration file and can be overridden
    by environment variables prefixed with KEEPSAKE_.

    Attributes:
        target_volume: Mount point of the volume backups are written to.
        target_directory: Optional subdirectory of the volume.
        directories: Directories to back up.
        default_directories: Directories used when none are configured.
        log_level: Logging verbosity (DEBUG, INFO, WARNING, ERROR).
        compression: "auto" or the preferred archive format.
        sources: Special source collection switches.
        workers: Worker pool sizes.
        events: Event channel settings.
        signing: Manifest signing settings.
    """

    target_volume: str = ""
    target_directory: str = ""
    directories: list[str] = field(default_factory=list)
    default_directories: list[str] = field(default_factory=lambda: list(DEFAULT_DIRECTORIES))
    log_level: str = "INFO"
    compression: str = "auto"

    sources: SourcesConfig = field(default_factory=SourcesConfig)
    workers: WorkersConfig = field(default_factory=WorkersConfig)
    events: EventsConfig = field(default_factory=EventsConfig)
    signing: SigningConfig = field(default_factory=SigningConfig)

    @property
    def target_path(self) -> Path | None:
        """Volume joined with the optional directory, or None if unset."""
        if not self.target_volume:
            return None
        path = Path(self.target_volume).expanduser()
        if self.target_directory:
            path = path / self.target_directory
        return path

    def backup_directories(self) -> list[str]:
        """Configured directories, or the defaults when none are configured."""
        return list(self.directories) if self.directories else list(self.default_directories)


class ConfigurationError(KeepsakeError):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


def get_config_path() -> Path:
    """
    Get the configuration file path.

    Returns the path from KEEPSAKE_CONFIG environment variable if set,
    otherwise returns the default path (~/.keepsake/config.yaml).

    Returns:
        Path to the configuration file.
    """
    env_path = os.environ.get("KEEPSAKE_CONFIG")
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_FILE


def load_config(config_path: Path | None = None) -> Settings:
    """
    Load configuration from YAML file.

    Reads configuration from the specified path (or default if not provided),
    applies environment variable overrides, and validates the configuration.

    Args:
        config_path: Optional path to configuration file. If not provided,
                    uses KEEPSAKE_CONFIG environment variable or default path.

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If the configuration file cannot be read or
                          contains invalid settings.
    """
    if config_path is None:
        config_path = get_config_path()

    settings = Settings()

    if config_path.exists():
        try:
            with open(config_path) as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}", [str(config_path)]) from e
        except OSError as e:
            raise ConfigurationError(f"Cannot read config file: {e}", [str(config_path)]) from e

        if not isinstance(config_data, dict):
            raise ConfigurationError(
                "Config file must contain a mapping at the top level", [str(config_path)]
            )
        settings = _apply_config_data(settings, config_data)

    settings = _apply_environment_overrides(settings)

    _validate_config(settings)

    return settings


def save_config(settings: Settings, config_path: Path | None = None) -> None:
    """
    Save configuration to YAML file.

    Args:
        settings: Settings instance to save.
        config_path: Optional path to configuration file.

    Raises:
        ConfigurationError: If the configuration cannot be written.
    """
    if config_path is None:
        config_path = get_config_path()

    config_path.parent.mkdir(parents=True, exist_ok=True)

    config_data = settings_to_dict(settings)

    try:
        with open(config_path, "w") as f:
            yaml.safe_dump(config_data, f, default_flow_style=False, sort_keys=False)
    except OSError as e:
        raise ConfigurationError(f"Cannot write config file: {e}", [str(config_path)]) from e


def _apply_config_data(settings: Settings, data: dict[str, Any]) -> Settings:
    """Apply configuration data from parsed YAML to settings."""
    keepsake_data = data.get("keepsake") or {}

    if "log_level" in keepsake_data:
        settings.log_level = str(keepsake_data["log_level"]).upper()
    if "compression" in keepsake_data:
        settings.compression = str(keepsake_data["compression"]).lower()

    target = data.get("target") or {}
    if "volume" in target:
        settings.target_volume = str(target["volume"] or "")
    if "directory" in target:
        settings.target_directory = str(target["directory"] or "")

    if "directories" in data:
        settings.directories = _string_list(data["directories"], "directories")
    if "default_directories" in data:
        settings.default_directories = _string_list(
            data["default_directories"], "default_directories"
        )

    _apply_section(settings.sources, data.get("sources") or {}, "sources")
    _apply_section(settings.workers, data.get("workers") or {}, "workers")
    _apply_section(settings.events, data.get("events") or {}, "events")
    _apply_section(settings.signing, data.get("signing") or {}, "signing")

    return settings


def _apply_section(section: Any, data: dict[str, Any], name: str) -> None:
    """Copy known keys of a YAML mapping onto a settings section."""
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config section '{name}' must be a mapping")
    for f in fields(section):
        if f.name not in data:
            continue
        current = getattr(section, f.name)
        value = data[f.name]
        try:
            if isinstance(current, bool):
                value = _parse_bool(value)
            elif isinstance(current, int):
                value = int(value)
            else:
                value = str(value)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid value for {name}.{f.name}: {value!r}") from e
        setattr(section, f.name, value)


def _string_list(value: Any, name: str) -> list[str]:
    if not isinstance(value, list):
        raise ConfigurationError(f"'{name}' must be a list of paths")
    return [str(item) for item in value]


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _apply_environment_overrides(settings: Settings) -> Settings:
    """Apply environment variable overrides to settings."""
    env_map: dict[str, tuple[str, Callable[[str], Any]]] = {
        "KEEPSAKE_LOG_LEVEL": ("log_level", lambda x: x.upper()),
        "KEEPSAKE_TARGET": ("target_volume", str),
        "KEEPSAKE_TARGET_DIRECTORY": ("target_directory", str),
        "KEEPSAKE_DIRECTORIES": (
            "directories",
            lambda x: [p.strip() for p in x.split(",") if p.strip()],
        ),
        "KEEPSAKE_COMPRESSION": ("compression", lambda x: x.lower()),
        "KEEPSAKE_BACKUP_WORKERS": ("workers.backup", int),
        "KEEPSAKE_VERIFY_WORKERS": ("workers.verify", int),
        "KEEPSAKE_PACKAGE_WORKERS": ("workers.package_install", int),
        "KEEPSAKE_EXTENSION_WORKERS": ("workers.extension_install", int),
        "KEEPSAKE_SIGNING_ENABLED": ("signing.enabled", _parse_bool),
        "KEEPSAKE_SIGNING_KEY_FILE": ("signing.key_file", str),
        "KEEPSAKE_SIGNING_REQUIRED": ("signing.require_signature", _parse_bool),
    }

    for env_var, (attr_path, converter) in env_map.items():
        value = os.environ.get(env_var)
        if value is not None:
            try:
                converted = converter(value)
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {env_var}: {value!r}") from e
            _set_nested_attr(settings, attr_path, converted)

    return settings


def _set_nested_attr(obj: Any, path: str, value: Any) -> None:
    """Set a nested attribute on an object using dot notation."""
    parts = path.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    setattr(obj, parts[-1], value)


def _validate_config(settings: Settings) -> None:
    """
    Validate configuration settings.

    Raises:
        ConfigurationError: If configuration is invalid.
    """
    if settings.log_level not in VALID_LOG_LEVELS:
        raise ConfigurationError(
            f"Invalid log_level: {settings.log_level}. "
            f"Must be one of: {', '.join(VALID_LOG_LEVELS)}"
        )

    if settings.compression not in VALID_COMPRESSION:
        raise ConfigurationError(
            f"Invalid compression: {settings.compression}. "
            f"Must be one of: {', '.join(VALID_COMPRESSION)}"
        )

    for f in fields(settings.workers):
        if getattr(settings.workers, f.name) < 1:
            raise ConfigurationError(f"workers.{f.name} must be at least 1")

    if settings.events.buffer_size < 1:
        raise ConfigurationError("events.buffer_size must be at least 1")

    if settings.sources.homebrew_cache_max_bytes < 0:
        raise ConfigurationError("sources.homebrew_cache_max_bytes must not be negative")

    if settings.signing.enabled and not settings.signing.key_file:
        raise ConfigurationError("signing.key_file is required when signing is enabled")


def settings_to_dict(settings: Settings) -> dict[str, Any]:
    """Convert Settings instance to dictionary for YAML serialization."""
    return {
        "keepsake": {
            "log_level": settings.log_level,
            "compression": settings.compression,
        },
        "target": {
            "volume": settings.target_volume,
            "directory": settings.target_directory,
        },
        "directories": list(settings.directories),
        "default_directories": list(settings.default_directories),
        "sources": {
            "homebrew": settings.sources.homebrew,
            "homebrew_cache": settings.sources.homebrew_cache,
            "homebrew_cache_max_bytes": settings.sources.homebrew_cache_max_bytes,
            "app_store": settings.sources.app_store,
            "manual_apps": settings.sources.manual_apps,
            "vscode": settings.sources.vscode,
            "browser_settings": settings.sources.browser_settings,
        },
        "workers": {
            "backup": settings.workers.backup,
            "verify": settings.workers.verify,
            "package_install": settings.workers.package_install,
            "extension_install": settings.workers.extension_install,
        },
        "events": {
            "buffer_size": settings.events.buffer_size,
        },
        "signing": {
            "enabled": settings.signing.enabled,
            "key_file": settings.signing.key_file,
            "require_signature": settings.signing.require_signature,
        },
    }
