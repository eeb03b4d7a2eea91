"""
External command wrapper.

Package managers and editors are invoked as black boxes. Commands are
looked up in the well-known Homebrew prefixes first (GUI-launched
processes often have a minimal PATH), then on PATH.
"""

import logging
import os
import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from keepsake.errors import KeepsakeError

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_DIRS = ("/opt/homebrew/bin", "/usr/local/bin")
DEFAULT_TIMEOUT_SECONDS = 600


class ToolError(KeepsakeError):
    """
    Raised when an external command is missing, times out or cannot start.

    Attributes:
        tool: Name of the command.
    """

    def __init__(self, message: str, tool: str, paths: list[str] | None = None) -> None:
        super().__init__(message, paths)
        self.tool = tool


@dataclass
class CommandResult:
    """Completed external command."""

    args: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class SystemTools:
    """
    Finds and runs external commands.

    Tests substitute a subclass overriding find() and run().
    """

    def __init__(
        self,
        search_dirs: Sequence[str] = DEFAULT_SEARCH_DIRS,
        timeout: int = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.search_dirs = tuple(search_dirs)
        self.timeout = timeout

    def find(self, name: str) -> str | None:
        """Absolute path of a command, or None if it is not installed."""
        for directory in self.search_dirs:
            candidate = Path(directory) / name
            if candidate.is_file() and os.access(candidate, os.X_OK):
                return str(candidate)
        return shutil.which(name)

    def available(self, name: str) -> bool:
        return self.find(name) is not None

    def run(
        self,
        args: Sequence[str],
        timeout: int | None = None,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        """
        Run a command and capture its output.

        A non-zero exit status is returned, not raised.

        Args:
            args: Command name followed by its arguments.
            timeout: Seconds before the command is killed.
            env: Extra environment variables layered over os.environ.

        Raises:
            ToolError: If the command is not installed, cannot be started
                or times out.
        """
        name = args[0]
        executable = self.find(name)
        if executable is None:
            raise ToolError(f"Command not found: {name}", tool=name)

        full_env = None
        if env:
            full_env = dict(os.environ)
            full_env.update(env)

        command = [executable, *args[1:]]
        logger.debug(f"Running: {' '.join(command)}")
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=timeout or self.timeout,
                env=full_env,
            )
        except subprocess.TimeoutExpired as e:
            raise ToolError(f"{name} timed out after {e.timeout} seconds", tool=name) from e
        except (subprocess.SubprocessError, OSError) as e:
            raise ToolError(f"Failed to run {name}: {e}", tool=name) from e

        return CommandResult(
            args=list(args),
            returncode=result.returncode,
            stdout=result.stdout or "",
            stderr=result.stderr or "",
        )
