"""Error and observability events reported by the engine.

Nothing here is fatal: every event is logged and, when the application
injects a sink, handed to it. ``EventLog`` is a bounded sink that callers
poll instead of reacting inline.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter, deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable

logger = logging.getLogger(__name__)


class EventKind(Enum):
    HEAD_CHECKSUM_ERROR = "head_checksum_error"
    BODY_CHECKSUM_ERROR = "body_checksum_error"
    PAYLOAD_TOO_LONG = "payload_too_long"
    PARSER_TIMEOUT = "parser_timeout"
    LISTENER_TABLE_FULL = "listener_table_full"
    LISTENER_NOT_FOUND = "listener_not_found"
    ID_LISTENER_EXISTS = "id_listener_exists"
    TX_CLAIM_UNAVAILABLE = "tx_claim_unavailable"
    WRITE_FAILED = "write_failed"
    MULTIPART_NOT_STARTED = "multipart_not_started"
    LENGTH_MISMATCH = "length_mismatch"
    UNHANDLED_MESSAGE = "unhandled_message"
    LISTENER_ERROR = "listener_error"
    ID_LISTENER_EXPIRED = "id_listener_expired"


# Expected outcomes, logged below warning level.
_QUIET_KINDS = frozenset(
    {
        EventKind.UNHANDLED_MESSAGE,
        EventKind.ID_LISTENER_EXPIRED,
        EventKind.LISTENER_NOT_FOUND,
    }
)


@dataclass(frozen=True)
class Event:
    kind: EventKind
    message: str
    frame_id: int | None = None
    type: int | None = None

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "frame_id": self.frame_id,
            "type": self.type,
        }


EventSink = Callable[[Event], None]


class EventReporter:
    """Logs events and forwards them to an optional sink."""

    def __init__(self, sink: EventSink | None = None) -> None:
        self._sink = sink

    def report(
        self,
        kind: EventKind,
        message: str,
        frame_id: int | None = None,
        type: int | None = None,
    ) -> Event:
        event = Event(kind=kind, message=message, frame_id=frame_id, type=type)
        if kind in _QUIET_KINDS:
            logger.debug("%s: %s", kind.value, message)
        else:
            logger.warning("%s: %s", kind.value, message)
        if self._sink is not None:
            try:
                self._sink(event)
            except Exception as e:
                logger.warning("Event sink failed on %s: %s", kind.value, e)
        return event


class EventLog:
    """Thread-safe bounded history of events, usable as a sink.

    Usage::

        log = EventLog(maxlen=64)
        engine = FrameEngine(config, write, events=log)
        ...
        for event in log.drain():
            print(event.kind, event.message)
    """

    def __init__(self, maxlen: int = 256) -> None:
        self._events: deque[Event] = deque(maxlen=maxlen)
        self._totals: Counter[EventKind] = Counter()
        self._lock = threading.Lock()

    def __call__(self, event: Event) -> None:
        with self._lock:
            self._events.append(event)
            self._totals[event.kind] += 1

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def snapshot(self) -> list[Event]:
        with self._lock:
            return list(self._events)

    def drain(self) -> list[Event]:
        """Return and forget the buffered events. Totals are kept."""
        with self._lock:
            events = list(self._events)
            self._events.clear()
            return events

    def count(self, kind: EventKind) -> int:
        """Total number of ``kind`` events seen, including drained ones."""
        with self._lock:
            return self._totals[kind]

    def totals(self) -> dict[str, int]:
        with self._lock:
            return {kind.value: n for kind, n in self._totals.items()}
