"""Framing engine facade.

``FrameEngine`` ties the parser, composer and listener tables together and
is the one object applications hold::

    engine = FrameEngine(FrameConfig(checksum=ChecksumType.CRC16), write=link.write)
    engine.add_type_listener(0x10, on_servo)
    engine.query_simple(0x01, b"\\x04", on_info, on_timeout, timeout=500)

    # transport side
    engine.accept(received_bytes)   # whenever bytes arrive
    engine.tick()                   # on a steady cadence, e.g. every 1 ms

All failures are reported through the event sink and returned as ``False``;
only invalid arguments raise.
"""

from __future__ import annotations

import logging
from typing import Callable

from .protocol.claim import make_claim
from .protocol.config import FrameConfig
from .protocol.events import EventKind, EventReporter, EventSink
from .protocol.framing import FrameComposer, TransmitError
from .protocol.listeners import ListenerRegistry
from .protocol.message import Listener, Message, TimeoutListener
from .protocol.parser import FrameParser, ParserState

logger = logging.getLogger(__name__)


class FrameEngine:
    """One end of a framed link.

    Args:
        config: Wire format, limits and peer role.
        write: Transport callback, called with each chunk of encoded bytes.
            It must keep byte order and not drop data.
        events: Optional sink receiving every reported ``Event``.
    """

    def __init__(
        self,
        config: FrameConfig | None = None,
        write: Callable[[bytes], object] | None = None,
        events: EventSink | None = None,
    ) -> None:
        if write is None:
            raise ValueError("A transport write callback is required")
        self.config = config or FrameConfig()
        self._reporter = EventReporter(events)
        self._registry = ListenerRegistry(self.config, self._reporter)
        self._composer = FrameComposer(
            self.config,
            write,
            claim=make_claim(self.config),
            in_use=self._registry.has_id_listener,
        )
        self._parser = FrameParser(self.config, self._handle_message, self._reporter)
        self._multipart_open = False
        self._multipart_query_id: int | None = None

    # ─── RECEIVE ─────────────────────────────────────────────────────

    def accept(self, data: bytes) -> None:
        """Feed received bytes, in any chunking."""
        self._parser.accept(data)

    def accept_byte(self, byte: int) -> None:
        self._parser.accept_byte(byte)

    def reset_parser(self) -> None:
        """Abandon any partially received frame."""
        self._parser.reset()

    @property
    def parser_state(self) -> ParserState:
        return self._parser.state

    def _handle_message(self, msg: Message) -> None:
        self._registry.dispatch(self, msg)

    # ─── SEND ────────────────────────────────────────────────────────

    @property
    def tx_busy(self) -> bool:
        """True while a frame (possibly multipart) is being sent."""
        return self._composer.in_progress

    @property
    def next_id(self) -> int:
        """Sequence value the next new frame will be allocated from."""
        return self._composer.next_id

    def send(self, msg: Message) -> bool:
        """Send a message. ``msg.frame_id`` is set to the ID used."""
        return self._send_frame(msg, None, None, 0)

    def send_simple(self, frame_type: int, payload: bytes = b"") -> bool:
        return self.send(Message(type=frame_type, payload=payload))

    def query(
        self,
        msg: Message,
        listener: Listener,
        timeout_listener: TimeoutListener | None = None,
        timeout: int = 0,
    ) -> bool:
        """Send a message and listen for frames carrying the same ID.

        Args:
            msg: The request. Its userdata slots are handed to ``listener``.
            listener: Called for each frame with the request's ID.
            timeout_listener: Called once if ``timeout`` ticks pass unanswered.
            timeout: Ticks before the listener expires; 0 never expires.
        """
        return self._send_frame(msg, listener, timeout_listener, timeout)

    def query_simple(
        self,
        frame_type: int,
        payload: bytes,
        listener: Listener,
        timeout_listener: TimeoutListener | None = None,
        timeout: int = 0,
    ) -> bool:
        return self.query(
            Message(type=frame_type, payload=payload), listener, timeout_listener, timeout
        )

    def respond(self, msg: Message) -> bool:
        """Send ``msg`` reusing its ``frame_id``, as a reply to a query."""
        msg.is_response = True
        return self.send(msg)

    def _send_frame(
        self,
        msg: Message,
        listener: Listener | None,
        timeout_listener: TimeoutListener | None,
        timeout: int,
    ) -> bool:
        if len(msg.payload) != msg.length:
            raise ValueError(
                f"Payload is {len(msg.payload)} bytes but length says {msg.length}"
            )
        if not self._begin(msg, listener, timeout_listener, timeout):
            return False
        try:
            self._composer.payload(msg.payload)
            self._composer.end()
        except TransmitError as e:
            self._write_failed(msg.frame_id, str(e), listener is not None)
            return False
        return True

    def _begin(
        self,
        msg: Message,
        listener: Listener | None,
        timeout_listener: TimeoutListener | None,
        timeout: int,
    ) -> bool:
        if not self._composer.begin(msg):
            self._reporter.report(
                EventKind.TX_CLAIM_UNAVAILABLE,
                "Failed to claim TX, another frame is being sent",
                type=msg.type,
            )
            return False
        if listener is not None and not self._registry.add_id_listener(
            msg, listener, timeout_listener, timeout
        ):
            self._composer.abort()
            return False
        return True

    def _write_failed(self, frame_id: int, reason: str, drop_listener: bool) -> None:
        self._reporter.report(EventKind.WRITE_FAILED, reason, frame_id=frame_id)
        if drop_listener and self._registry.has_id_listener(frame_id):
            self._registry.remove_id_listener(frame_id)

    # ─── MULTIPART ───────────────────────────────────────────────────

    def send_multipart_begin(self, msg: Message) -> bool:
        """Start a frame whose ``msg.length`` payload bytes follow in chunks.

        Any bytes already in ``msg.payload`` are sent as the first chunk.
        The transmitter stays claimed until ``send_multipart_end``.
        """
        return self._multipart_begin(msg, None, None, 0)

    def query_multipart_begin(
        self,
        msg: Message,
        listener: Listener,
        timeout_listener: TimeoutListener | None = None,
        timeout: int = 0,
    ) -> bool:
        return self._multipart_begin(msg, listener, timeout_listener, timeout)

    def respond_multipart_begin(self, msg: Message) -> bool:
        msg.is_response = True
        return self._multipart_begin(msg, None, None, 0)

    def send_multipart_chunk(self, data: bytes) -> bool:
        if not self._multipart_open:
            self._reporter.report(
                EventKind.MULTIPART_NOT_STARTED, "Multipart chunk without an open frame"
            )
            return False
        try:
            self._composer.payload(data)
        except TransmitError as e:
            self._multipart_failed(str(e))
            return False
        return True

    def send_multipart_end(self) -> bool:
        """Close the multipart frame.

        Returns:
            False if the write failed or fewer bytes than declared were
            sent. A short frame is dropped unsent when none of it has left
            the buffer yet. Otherwise it is zero-padded to its declared
            length, with a broken body checksum when checksums are on, so
            the peer stays in step.
        """
        if not self._multipart_open:
            self._reporter.report(
                EventKind.MULTIPART_NOT_STARTED, "Multipart close without an open frame"
            )
            return False
        declared, sent = self._composer.declared_length, self._composer.bytes_sent
        short = sent != declared
        if short:
            self._reporter.report(
                EventKind.LENGTH_MISMATCH,
                f"Multipart frame closed after {sent} of {declared} declared bytes",
                frame_id=self._multipart_query_id,
            )
        try:
            if not short:
                self._composer.end()
            elif self._composer.bytes_flushed:
                self._composer.payload(bytes(declared - sent))
                self._composer.end(spoil_checksum=True)
            else:
                self._composer.abort()
        except TransmitError as e:
            self._multipart_failed(str(e))
            return False
        self._close_multipart(drop_listener=short)
        return not short

    def _multipart_begin(
        self,
        msg: Message,
        listener: Listener | None,
        timeout_listener: TimeoutListener | None,
        timeout: int,
    ) -> bool:
        if not self._begin(msg, listener, timeout_listener, timeout):
            return False
        self._multipart_open = True
        self._multipart_query_id = msg.frame_id if listener is not None else None
        if msg.payload:
            return self.send_multipart_chunk(msg.payload)
        return True

    def _multipart_failed(self, reason: str) -> None:
        self._reporter.report(
            EventKind.WRITE_FAILED, reason, frame_id=self._multipart_query_id
        )
        self._close_multipart(drop_listener=True)

    def _close_multipart(self, drop_listener: bool) -> None:
        query_id = self._multipart_query_id
        self._multipart_open = False
        self._multipart_query_id = None
        if drop_listener and query_id is not None and self._registry.has_id_listener(query_id):
            self._registry.remove_id_listener(query_id)

    # ─── LISTENERS ───────────────────────────────────────────────────

    def add_id_listener(
        self,
        msg: Message,
        listener: Listener,
        timeout_listener: TimeoutListener | None = None,
        timeout: int = 0,
    ) -> bool:
        return self._registry.add_id_listener(msg, listener, timeout_listener, timeout)

    def remove_id_listener(self, frame_id: int) -> bool:
        return self._registry.remove_id_listener(frame_id)

    def renew_id_listener(self, frame_id: int) -> bool:
        return self._registry.renew_id_listener(frame_id)

    def add_type_listener(self, frame_type: int, listener: Listener) -> bool:
        return self._registry.add_type_listener(frame_type, listener)

    def remove_type_listener(self, frame_type: int) -> bool:
        return self._registry.remove_type_listener(frame_type)

    def add_generic_listener(self, listener: Listener) -> bool:
        return self._registry.add_generic_listener(listener)

    def remove_generic_listener(self, listener: Listener) -> bool:
        return self._registry.remove_generic_listener(listener)

    def listener_counts(self) -> dict[str, int]:
        return self._registry.counts()

    # ─── CLOCK ───────────────────────────────────────────────────────

    def tick(self) -> None:
        """Advance the timeout clock by one unit."""
        self._parser.tick()
        self._registry.tick(self)
