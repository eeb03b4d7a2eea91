"""
Tests for bounded worker pools, cancellation tokens and the event channel.

Uses Python's unittest module.
"""

from __future__ import annotations

import threading
import time
import unittest

from keepsake.concurrency import CancellationToken, TaskOutcome, run_bounded
from keepsake.errors import BackupCancelledError
from keepsake.events import BACKUP_LOG, BACKUP_PROGRESS, EventChannel


class TestRunBounded(unittest.TestCase):
    """Tests for run_bounded."""

    def test_results_in_input_order(self) -> None:
        """Outcomes come back in input order regardless of completion order."""

        def slow_square(n: int) -> int:
            time.sleep(0.01 * (5 - n))
            return n * n

        outcomes = run_bounded(slow_square, [1, 2, 3, 4], max_workers=4)

        self.assertEqual([o.result for o in outcomes], [1, 4, 9, 16])
        self.assertEqual([o.index for o in outcomes], [0, 1, 2, 3])
        self.assertTrue(all(o.ok for o in outcomes))

    def test_exceptions_are_captured(self) -> None:
        """A failing task is attributed to its item and does not stop the others."""

        def check(n: int) -> int:
            if n == 2:
                raise ValueError("bad item")
            return n

        outcomes = run_bounded(check, [1, 2, 3], max_workers=2)

        self.assertTrue(outcomes[0].ok)
        self.assertFalse(outcomes[1].ok)
        self.assertIsInstance(outcomes[1].error, ValueError)
        self.assertEqual(outcomes[1].item, 2)
        self.assertTrue(outcomes[2].ok)

    def test_base_exceptions_are_captured(self) -> None:
        """A worker raising a BaseException keeps every other outcome."""

        class Abort(BaseException):
            pass

        def check(n: int) -> int:
            if n == 1:
                raise Abort()
            return n

        outcomes = run_bounded(check, [0, 1, 2, 3], max_workers=2)

        self.assertEqual(len(outcomes), 4)
        self.assertIsInstance(outcomes[1].error, Abort)
        self.assertEqual([o.result for o in outcomes if o.ok], [0, 2, 3])

    def test_concurrency_is_bounded(self) -> None:
        """No more than max_workers tasks run at once."""
        lock = threading.Lock()
        running = 0
        peak = 0

        def task(_: int) -> None:
            nonlocal running, peak
            with lock:
                running += 1
                peak = max(peak, running)
            time.sleep(0.02)
            with lock:
                running -= 1

        run_bounded(task, range(10), max_workers=3)

        self.assertLessEqual(peak, 3)

    def test_on_complete_called_per_item(self) -> None:
        """The completion callback sees every outcome."""
        seen: list[TaskOutcome] = []

        run_bounded(lambda n: n, [1, 2, 3], max_workers=2, on_complete=seen.append)

        self.assertEqual(sorted(o.item for o in seen), [1, 2, 3])

    def test_empty_input(self) -> None:
        """No items means no outcomes."""
        self.assertEqual(run_bounded(lambda n: n, [], max_workers=4), [])

    def test_zero_workers_treated_as_one(self) -> None:
        """A worker count below one still runs the work."""
        outcomes = run_bounded(lambda n: n + 1, [1], max_workers=0)
        self.assertEqual(outcomes[0].result, 2)


class TestCancellationToken(unittest.TestCase):
    """Tests for CancellationToken."""

    def test_not_cancelled_initially(self) -> None:
        token = CancellationToken()
        self.assertFalse(token.cancelled)
        token.raise_if_cancelled()

    def test_cancel_raises(self) -> None:
        """raise_if_cancelled raises once cancel() was called."""
        token = CancellationToken()
        token.cancel()

        self.assertTrue(token.cancelled)
        with self.assertRaises(BackupCancelledError) as ctx:
            token.raise_if_cancelled(["~/Documents"])
        self.assertEqual(ctx.exception.paths, ["~/Documents"])


class TestEventChannel(unittest.TestCase):
    """Tests for EventChannel."""

    def test_events_in_order(self) -> None:
        """Events are delivered in emission order with increasing sequence."""
        channel = EventChannel(maxsize=10)
        channel.emit(BACKUP_PROGRESS, {"progress": 1, "message": "start"})
        channel.emit(BACKUP_LOG, {"message": "hello"})

        first = channel.get(timeout=0)
        second = channel.get(timeout=0)

        self.assertEqual(first.kind, BACKUP_PROGRESS)
        self.assertEqual(second.kind, BACKUP_LOG)
        self.assertLess(first.sequence, second.sequence)

    def test_drop_oldest_when_full(self) -> None:
        """A full buffer discards the oldest event and counts the drop."""
        channel = EventChannel(maxsize=2)
        for i in range(5):
            channel.emit(BACKUP_LOG, {"message": str(i)})

        events = channel.drain()

        self.assertEqual([e.payload["message"] for e in events], ["3", "4"])
        self.assertEqual(channel.dropped, 3)

    def test_emit_never_blocks_without_consumer(self) -> None:
        """Emitting many events with nobody reading returns promptly."""
        channel = EventChannel(maxsize=4)
        start = time.monotonic()
        for i in range(1000):
            channel.emit(BACKUP_LOG, {"message": str(i)})
        self.assertLess(time.monotonic() - start, 5)
        self.assertEqual(len(channel), 4)

    def test_get_times_out(self) -> None:
        """get() returns None when nothing arrives in time."""
        channel = EventChannel()
        self.assertIsNone(channel.get(timeout=0.01))

    def test_close_ends_iteration(self) -> None:
        """Iteration yields buffered events, then stops once closed."""
        channel = EventChannel()
        channel.emit(BACKUP_LOG, {"message": "a"})
        channel.close()
        channel.emit(BACKUP_LOG, {"message": "ignored"})

        self.assertEqual([e.payload["message"] for e in channel], ["a"])

    def test_listener_failure_does_not_propagate(self) -> None:
        """A raising listener is logged, not raised into the producer."""
        channel = EventChannel()
        received = []

        def broken(event) -> None:
            raise RuntimeError("listener bug")

        channel.subscribe(broken)
        channel.subscribe(received.append)
        with self.assertLogs("keepsake.events", level="WARNING"):
            channel.emit(BACKUP_LOG, {"message": "x"})

        self.assertEqual(len(received), 1)

    def test_invalid_size(self) -> None:
        with self.assertRaises(ValueError):
            EventChannel(maxsize=0)


if __name__ == "__main__":
    unittest.main()
