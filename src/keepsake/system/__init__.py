"""
Host system collaborators.

Home directory resolution, read-permission probing, volume enumeration
and the external command wrapper used to drive package managers and
editors.
"""

from keepsake.system.paths import expand_home, get_home
from keepsake.system.permissions import PermissionCheckResult, check_read_permission
from keepsake.system.tools import CommandResult, SystemTools, ToolError
from keepsake.system.volumes import Volume, list_volumes

__all__ = [
    "get_home",
    "expand_home",
    "check_read_permission",
    "PermissionCheckResult",
    "list_volumes",
    "Volume",
    "SystemTools",
    "CommandResult",
    "ToolError",
]
