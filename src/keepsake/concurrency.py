"""
Bounded worker pools and cooperative cancellation.

Independent units of work (archive digests, package installs, extension
installs, backup items) run on a fixed-size thread pool. Every task's
outcome is captured, including exceptions raised inside the worker, and
attributed to the item it was submitted for. Results come back in input
order regardless of completion order.

Usage:
    from keepsake.concurrency import run_bounded

    outcomes = run_bounded(install, extensions, max_workers=6)
    failed = [o.item for o in outcomes if not o.ok]
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any

from keepsake.errors import BackupCancelledError

logger = logging.getLogger(__name__)


@dataclass
class TaskOutcome:
    """
    Outcome of one task run on a bounded pool.

    Attributes:
        item: The input item the task was submitted for.
        index: Position of the item in the input sequence.
        result: Return value of the task, or None if it raised.
        error: Exception raised by the task, or None on success.
    """

    item: Any
    index: int
    result: Any = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        """True if the task returned without raising."""
        return self.error is None


def run_bounded(
    func: Callable[[Any], Any],
    items: Iterable[Any],
    max_workers: int,
    on_complete: Callable[[TaskOutcome], None] | None = None,
) -> list[TaskOutcome]:
    """
    Run func over items with at most max_workers concurrent tasks.

    The pool is joined before returning. Anything raised by func, including
    BaseException subclasses such as KeyboardInterrupt, is captured in the
    corresponding TaskOutcome and never propagated, so one failing unit
    cannot drop out of the aggregate. Callers decide whether to re-raise.

    Args:
        func: Callable invoked once per item.
        items: Work items.
        max_workers: Upper bound on concurrent tasks (values below 1 mean 1).
        on_complete: Optional callback invoked on the calling thread as
            each task finishes, in completion order.

    Returns:
        One TaskOutcome per item, in input order.
    """
    work = list(items)
    if not work:
        return []

    outcomes: list[TaskOutcome | None] = [None] * len(work)
    workers = max(1, min(int(max_workers), len(work)))

    with ThreadPoolExecutor(max_workers=workers) as executor:
        future_to_index = {
            executor.submit(func, item): index for index, item in enumerate(work)
        }
        for future in as_completed(future_to_index):
            index = future_to_index[future]
            try:
                outcome = TaskOutcome(item=work[index], index=index, result=future.result())
            except BaseException as e:
                logger.debug(f"Task for {work[index]!r} raised: {e}")
                outcome = TaskOutcome(item=work[index], index=index, error=e)
            outcomes[index] = outcome
            if on_complete is not None:
                on_complete(outcome)

    return [outcome for outcome in outcomes if outcome is not None]


class CancellationToken:
    """
    Cancellation flag scoped to a single backup run.

    The token is checked cooperatively at item boundaries and between
    archive members; setting it never interrupts a running system call.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        """Request cancellation."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, paths: list[str] | None = None) -> None:
        """
        Raise BackupCancelledError if cancellation was requested.

        Args:
            paths: Paths being processed when the check happened.
        """
        if self._event.is_set():
            raise BackupCancelledError("Backup cancelled", paths)
