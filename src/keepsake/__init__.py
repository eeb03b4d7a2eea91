"""
Keepsake - Desktop Backup, Verification and Restore

Backs up chosen directories and machine state to an external or internal
volume as a set of timestamped, digest-verified archives, and restores
selected items later.

Key Features:
    - One compressed archive per directory or special source
    - Signed JSON manifest written atomically after every archive succeeded
    - Package-manager, app store, editor extension and browser inventories
    - Parallel SHA-256 verification of every archive
    - Selective restore with an explicit overwrite policy
    - Cooperative cancellation that never leaves a partial backup behind

Design Principles:
    - A manifest on disk means a complete backup
    - One writer per target at a time
    - Every failure is reported with the paths it affects
"""

__version__ = "0.1.0"

from keepsake.config.settings import Settings, load_config

__all__ = [
    "__version__",
    "Settings",
    "load_config",
]
