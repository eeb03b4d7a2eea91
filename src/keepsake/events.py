"""
Progress and log event delivery.

The backup pipeline and restore engine report progress through an event
sink: any object with an ``emit(kind, payload)`` method. EventChannel is
the standard sink, a bounded buffer between a producer thread and its
consumer. Producers never block; when the buffer is full the oldest event
is discarded so a slow or absent consumer cannot stall a run.

Event kinds:
    backup-progress   {"progress": int, "message": str}
    backup-log        {"message": str}
    restore-progress  {"progress": int, "message": str}
    restore-log       {"message": str}
    verify-progress   {"progress": int, "message": str}

Usage:
    channel = EventChannel(maxsize=256)
    worker = threading.Thread(target=engine.create_backup, args=(...))
    worker.start()
    for event in channel:
        print(event.kind, event.payload)
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

BACKUP_PROGRESS = "backup-progress"
BACKUP_LOG = "backup-log"
RESTORE_PROGRESS = "restore-progress"
RESTORE_LOG = "restore-log"
VERIFY_PROGRESS = "verify-progress"


@dataclass
class Event:
    """A single progress or log event."""

    kind: str
    payload: dict[str, Any]
    sequence: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "payload": self.payload,
            "sequence": self.sequence,
            "created_at": self.created_at.isoformat(),
        }


class NullEventSink:
    """Event sink that discards everything."""

    def emit(self, kind: str, payload: dict[str, Any]) -> None:
        pass


class EventChannel:
    """
    Bounded, thread-safe, drop-oldest event buffer.

    Attributes:
        maxsize: Capacity of the buffer.
        dropped: Number of events discarded because the buffer was full.
    """

    def __init__(self, maxsize: int = 256) -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        self.maxsize = maxsize
        self.dropped = 0
        self._buffer: deque[Event] = deque(maxlen=maxsize)
        self._condition = threading.Condition()
        self._listeners: list[Callable[[Event], None]] = []
        self._sequence = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, kind: str, payload: dict[str, Any]) -> None:
        """
        Publish an event without blocking.

        Events emitted after close() are ignored.
        """
        with self._condition:
            if self._closed:
                return
            self._sequence += 1
            event = Event(kind=kind, payload=dict(payload), sequence=self._sequence)
            if len(self._buffer) == self.maxsize:
                self.dropped += 1
            self._buffer.append(event)
            listeners = list(self._listeners)
            self._condition.notify_all()

        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"Event listener failed for {kind}: {e}")

    def subscribe(self, listener: Callable[[Event], None]) -> None:
        """Register a callback invoked on the producer thread for every event."""
        with self._condition:
            self._listeners.append(listener)

    def get(self, timeout: float | None = None) -> Event | None:
        """
        Take the oldest buffered event.

        Args:
            timeout: Seconds to wait for an event; None waits until one
                arrives or the channel is closed.

        Returns:
            The event, or None on timeout or when the channel is closed
            and empty.
        """
        with self._condition:
            if not self._buffer and not self._closed:
                self._condition.wait_for(
                    lambda: bool(self._buffer) or self._closed, timeout=timeout
                )
            if self._buffer:
                return self._buffer.popleft()
            return None

    def drain(self) -> list[Event]:
        """Take every buffered event without waiting."""
        with self._condition:
            events = list(self._buffer)
            self._buffer.clear()
            return events

    def close(self) -> None:
        """Stop accepting events and wake any waiting consumer."""
        with self._condition:
            self._closed = True
            self._condition.notify_all()

    def __len__(self) -> int:
        with self._condition:
            return len(self._buffer)

    def __iter__(self) -> Iterator[Event]:
        """Yield events until the channel is closed and empty."""
        while True:
            event = self.get()
            if event is None:
                return
            yield event
