"""
Exclusive per-target lock for backup and restore runs.

Two layers guard a target:
    - An in-process registry, so two threads of one engine cannot both
      write to the same target.
    - A .lock file created with O_EXCL and holding the owner's pid, so two
      processes cannot either. A lock file whose pid is no longer alive is
      stale and is taken over.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType

from keepsake.errors import TargetBusyError
from keepsake.storage.manifest_store import ManifestStore

logger = logging.getLogger(__name__)

STALE_UNREADABLE_SECONDS = 5

_registry: set[str] = set()
_registry_lock = threading.Lock()


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    if os.name == "nt":
        # No cheap liveness probe; treat the holder as alive.
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


class TargetLock:
    """
    Context manager holding exclusive ownership of a target.

    Usage:
        with TargetLock(target, "backup"):
            ...

    Raises:
        TargetBusyError: On enter, if another backup or restore holds the target.
    """

    def __init__(
        self,
        target: Path,
        operation: str,
        store: ManifestStore | None = None,
    ) -> None:
        self.target = Path(target)
        self.operation = operation
        self.store = store or ManifestStore()
        self.path = self.store.lock_path(self.target)
        self._key = str(self.target.resolve())
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self) -> None:
        with _registry_lock:
            if self._key in _registry:
                raise TargetBusyError(
                    f"Another backup or restore is running on {self.target}",
                    [str(self.target)],
                    holder="this process",
                )
            _registry.add(self._key)

        try:
            self._create_lock_file()
        except BaseException:
            with _registry_lock:
                _registry.discard(self._key)
            raise

        self._held = True
        logger.debug(f"Acquired {self.operation} lock on {self.target}")

    def release(self) -> None:
        if not self._held:
            return
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove lock file {self.path}: {e}")
        with _registry_lock:
            _registry.discard(self._key)
        self._held = False
        logger.debug(f"Released {self.operation} lock on {self.target}")

    def _create_lock_file(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(
            {
                "pid": os.getpid(),
                "operation": self.operation,
                "acquired_at": datetime.now(UTC).isoformat(),
            }
        )

        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                holder = self._read_holder()
                pid = holder.get("pid", 0) if holder else 0
                alive = _pid_alive(int(pid)) if holder is not None else self._recent()
                if alive:
                    operation = holder.get("operation", "operation") if holder else "operation"
                    raise TargetBusyError(
                        f"Another {operation} is running "
                        f"on {self.target} (pid {pid})",
                        [str(self.target)],
                        holder=f"pid {pid}",
                    ) from None
                logger.warning(f"Removing stale lock file {self.path}")
                self.path.unlink(missing_ok=True)
                continue
            with os.fdopen(fd, "w") as f:
                f.write(payload)
            return

        raise TargetBusyError(
            f"Could not acquire lock on {self.target}", [str(self.target)]
        )

    def _recent(self) -> bool:
        # An unreadable lock file may still be mid-write by its owner.
        try:
            age = datetime.now().timestamp() - self.path.stat().st_mtime
        except OSError:
            return False
        return age < STALE_UNREADABLE_SECONDS

    def _read_holder(self) -> dict | None:
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError):
            return None
        return data if isinstance(data, dict) else None

    def __enter__(self) -> TargetLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()
