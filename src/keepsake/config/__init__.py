"""
Configuration management for Keepsake.

This module handles loading, validating, and saving configuration settings,
as well as the local key used to sign backup manifests.
"""

from keepsake.config.settings import (
    ConfigurationError,
    Settings,
    load_config,
    save_config,
    settings_to_dict,
)
from keepsake.config.signing import ManifestSigner, SigningError

__all__ = [
    # Settings
    "Settings",
    "load_config",
    "save_config",
    "settings_to_dict",
    "ConfigurationError",
    # Signing
    "ManifestSigner",
    "SigningError",
]
