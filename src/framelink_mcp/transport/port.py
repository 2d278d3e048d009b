"""Bridge between a byte transport and a ``FrameEngine``.

The port owns the engine, pumps received bytes into it from a reader
thread and drives its clock from a tick thread. Frames nobody else claims
land in a bounded history and are fanned out to subscribers.

Any connection object with ``write(bytes)``, ``read(timeout_ms)`` and a
``connected`` attribute will do; ``USBConnection`` is one.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Any, Callable

from ..engine import FrameEngine
from ..protocol.config import FrameConfig
from ..protocol.events import Event, EventLog
from ..protocol.message import ListenerResult, Message
from ..utils.dump import dump_frame

logger = logging.getLogger(__name__)

DEFAULT_TICK_INTERVAL = 0.001
DEFAULT_READ_TIMEOUT_MS = 50
DEFAULT_HISTORY = 64


class FramePort:
    """Runs a ``FrameEngine`` over a connection.

    Usage::

        port = FramePort(USBConnection(), FrameConfig())
        port.start()
        port.subscribe(lambda msg: print(msg))
        reply = port.request(0x01, b"\\x04", timeout_ticks=500)
        port.stop()
    """

    def __init__(
        self,
        connection: Any,
        config: FrameConfig | None = None,
        tick_interval: float = DEFAULT_TICK_INTERVAL,
        read_timeout_ms: int = DEFAULT_READ_TIMEOUT_MS,
        history: int = DEFAULT_HISTORY,
    ) -> None:
        self._connection = connection
        self._tick_interval = tick_interval
        self._read_timeout_ms = read_timeout_ms
        self.events = EventLog()
        self.engine = FrameEngine(config, write=self._write, events=self.events)
        self.engine.add_generic_listener(self._on_frame)

        self._history: deque[Message] = deque(maxlen=history)
        self._history_lock = threading.Lock()
        self._subscribers: list[Callable[[Message], None]] = []
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    @property
    def connection(self) -> Any:
        return self._connection

    @property
    def tick_interval(self) -> float:
        """Seconds between engine ticks; one tick is the unit of every timeout."""
        return self._tick_interval

    def start(self) -> None:
        """Start the reader and tick threads."""
        if self.running:
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._read_loop, name="framelink-rx", daemon=True),
            threading.Thread(target=self._tick_loop, name="framelink-tick", daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Port started, tick every %.3f ms", self._tick_interval * 1000)

    def stop(self, timeout: float = 1.0) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        self.engine.reset_parser()
        logger.info("Port stopped")

    # ─── SENDING ─────────────────────────────────────────────────────

    def send_frame(self, frame_type: int, payload: bytes = b"") -> bool:
        """Send one frame. Returns False if the link is down or busy."""
        if not self._connection.connected:
            logger.error("Link not connected, cannot send type 0x%02X", frame_type)
            return False
        ok = self.engine.send_simple(frame_type, payload)
        if ok:
            logger.debug("Sent frame: type=0x%02X, len=%d", frame_type, len(payload))
        else:
            logger.error("Sending frame type 0x%02X failed", frame_type)
        return ok

    def request(
        self,
        frame_type: int,
        payload: bytes = b"",
        timeout_ticks: int = 1000,
    ) -> Message | None:
        """Send a query and block until its response or timeout.

        Returns:
            The response message, or None on timeout or send failure.
        """
        if not self._connection.connected:
            logger.error("Link not connected, cannot query type 0x%02X", frame_type)
            return None

        done = threading.Event()
        replies: list[Message] = []

        def on_reply(engine: FrameEngine, msg: Message) -> ListenerResult:
            replies.append(msg)
            self._record(msg)
            done.set()
            return ListenerResult.CLOSE

        def on_timeout(engine: FrameEngine) -> None:
            done.set()

        query = Message(type=frame_type, payload=payload)
        if not self.engine.query(query, on_reply, on_timeout, timeout_ticks):
            return None

        # wall-clock guard in case the tick thread is not running
        done.wait(max(timeout_ticks * self._tick_interval * 2, 0.5))
        if not replies:
            if self.engine.remove_id_listener(query.frame_id):
                logger.debug("Query 0x%X abandoned without a tick timeout", query.frame_id)
            return None
        return replies[0]

    # ─── RECEIVING ───────────────────────────────────────────────────

    def subscribe(self, callback: Callable[[Message], None]) -> Callable[[], None]:
        """Register a callback for unclaimed frames; returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def recent_frames(self, limit: int | None = None) -> list[Message]:
        with self._history_lock:
            frames = list(self._history)
        return frames[-limit:] if limit else frames

    def recent_events(self, limit: int | None = None) -> list[Event]:
        events = self.events.snapshot()
        return events[-limit:] if limit else events

    def status(self) -> dict[str, Any]:
        return {
            "connected": bool(self._connection.connected),
            "running": self.running,
            "tx_busy": self.engine.tx_busy,
            "parser_state": self.engine.parser_state.value,
            "listeners": self.engine.listener_counts(),
            "frames_received": len(self.recent_frames()),
            "event_totals": self.events.totals(),
        }

    def _on_frame(self, engine: FrameEngine, msg: Message) -> ListenerResult:
        logger.debug("Received frame: type=0x%02X, len=%d", msg.type, msg.length)
        self._record(msg)
        for callback in list(self._subscribers):
            try:
                callback(msg)
            except Exception as e:
                logger.warning("Subscriber %r failed: %s", callback, e)
        return ListenerResult.STAY

    def _record(self, msg: Message) -> None:
        with self._history_lock:
            self._history.append(msg)

    # ─── THREADS ─────────────────────────────────────────────────────

    def _write(self, data: bytes) -> None:
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("Tx %d bytes\n%s", len(data), dump_frame(data))
        self._connection.write(data)

    def _read_loop(self) -> None:
        while not self._stop.is_set():
            try:
                data = self._connection.read(self._read_timeout_ms)
            except ConnectionError as e:
                logger.warning("Read loop stopping: %s", e)
                break
            if data:
                logger.debug("Rx %d raw bytes", len(data))
                self.engine.accept(data)

    def _tick_loop(self) -> None:
        while not self._stop.wait(self._tick_interval):
            self.engine.tick()
