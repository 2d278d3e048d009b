"""Receive-side state machine.

Bytes may arrive in any chunking; the parser keeps its position across
``accept`` calls and hands every complete, verified frame to ``on_message``.
Corrupt or oversized frames are reported and dropped, and the parser is
always left ready for the next start of frame.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable

from .config import FrameConfig
from .events import EventKind, EventReporter
from .message import Message
from ..utils.dump import dump_message

logger = logging.getLogger(__name__)


class ParserState(Enum):
    START_OF_FRAME = "sof"
    ID = "id"
    LENGTH = "length"
    TYPE = "type"
    HEADER_CHECKSUM = "header_checksum"
    DATA = "data"
    DATA_CHECKSUM = "data_checksum"


class FrameParser:
    """Decodes frames one byte at a time.

    Args:
        config: Wire format and limits.
        on_message: Called with each decoded message.
        reporter: Receives checksum, length and timeout errors.
    """

    def __init__(
        self,
        config: FrameConfig,
        on_message: Callable[[Message], None],
        reporter: EventReporter | None = None,
    ) -> None:
        self._config = config
        self._checksum = config.resolve_checksum()
        self._on_message = on_message
        self._reporter = reporter or EventReporter()

        self._buffer = bytearray(config.max_payload_rx)
        self._state = ParserState.START_OF_FRAME
        self._stall_ticks = 0
        self._begin_frame()
        self._state = ParserState.START_OF_FRAME

    @property
    def state(self) -> ParserState:
        return self._state

    @property
    def stall_ticks(self) -> int:
        return self._stall_ticks

    @property
    def timed_out(self) -> bool:
        """True when a partial frame has been idle for the full timeout."""
        limit = self._config.parser_timeout_ticks
        return (
            limit > 0
            and self._state is not ParserState.START_OF_FRAME
            and self._stall_ticks >= limit
        )

    def reset(self) -> None:
        self._state = ParserState.START_OF_FRAME
        self._stall_ticks = 0

    def tick(self) -> None:
        """Age the stall timer. The reset itself happens on the next byte."""
        if self._state is ParserState.START_OF_FRAME:
            return
        if self._stall_ticks < self._config.parser_timeout_ticks:
            self._stall_ticks += 1

    def accept(self, data: bytes) -> None:
        for byte in data:
            self.accept_byte(byte)

    def accept_byte(self, byte: int) -> None:
        if self.timed_out:
            self._reporter.report(
                EventKind.PARSER_TIMEOUT,
                f"Parser timeout in state {self._state.value}, "
                f"{self._rxi} bytes into the field",
                frame_id=self._id,
                type=self._type,
            )
            self.reset()
        self._stall_ticks = 0

        state = self._state
        if state is ParserState.START_OF_FRAME:
            if not self._config.use_sof_byte:
                self._begin_frame()
                # without a marker this byte is already the first ID byte
                self._accept_id(byte)
            elif byte == self._config.sof_byte:
                self._begin_frame()
        elif state is ParserState.ID:
            self._accept_id(byte)
        elif state is ParserState.LENGTH:
            self._cksum = self._checksum.add(self._cksum, byte)
            self._length = (self._length << 8) | byte
            self._rxi += 1
            if self._rxi == self._config.len_bytes:
                self._state = ParserState.TYPE
                self._rxi = 0
        elif state is ParserState.TYPE:
            self._cksum = self._checksum.add(self._cksum, byte)
            self._type = (self._type << 8) | byte
            self._rxi += 1
            if self._rxi == self._config.type_bytes:
                self._rxi = 0
                if self._checksum.width == 0:
                    self._header_complete()
                else:
                    self._state = ParserState.HEADER_CHECKSUM
                    self._ref_cksum = 0
        elif state is ParserState.HEADER_CHECKSUM:
            self._ref_cksum = (self._ref_cksum << 8) | byte
            self._rxi += 1
            if self._rxi == self._checksum.width:
                computed = self._checksum.end(self._cksum)
                if computed != self._ref_cksum:
                    self._reporter.report(
                        EventKind.HEAD_CHECKSUM_ERROR,
                        f"Rx head checksum mismatch: got 0x{self._ref_cksum:X}, "
                        f"computed 0x{computed:X}",
                        frame_id=self._id,
                        type=self._type,
                    )
                    self.reset()
                    return
                self._header_complete()
        elif state is ParserState.DATA:
            if not self._discard:
                self._cksum = self._checksum.add(self._cksum, byte)
                self._buffer[self._rxi] = byte
            self._rxi += 1
            if self._rxi == self._length:
                if self._checksum.width == 0:
                    if not self._discard:
                        self._dispatch()
                    self.reset()
                else:
                    self._state = ParserState.DATA_CHECKSUM
                    self._rxi = 0
                    self._ref_cksum = 0
        elif state is ParserState.DATA_CHECKSUM:
            self._ref_cksum = (self._ref_cksum << 8) | byte
            self._rxi += 1
            if self._rxi == self._checksum.width:
                if not self._discard:
                    computed = self._checksum.end(self._cksum)
                    if computed == self._ref_cksum:
                        self._dispatch()
                    else:
                        self._reporter.report(
                            EventKind.BODY_CHECKSUM_ERROR,
                            f"Rx body checksum mismatch: got 0x{self._ref_cksum:X}, "
                            f"computed 0x{computed:X}",
                            frame_id=self._id,
                            type=self._type,
                        )
                self.reset()

    def _begin_frame(self) -> None:
        self._cksum = self._checksum.start()
        if self._config.use_sof_byte:
            self._cksum = self._checksum.add(self._cksum, self._config.sof_byte)
        self._ref_cksum = 0
        self._discard = False
        self._state = ParserState.ID
        self._rxi = 0
        self._id = 0
        self._length = 0
        self._type = 0

    def _accept_id(self, byte: int) -> None:
        self._cksum = self._checksum.add(self._cksum, byte)
        self._id = (self._id << 8) | byte
        self._rxi += 1
        if self._rxi == self._config.id_bytes:
            self._state = ParserState.LENGTH
            self._rxi = 0

    def _header_complete(self) -> None:
        if self._length == 0:
            self._dispatch()
            self.reset()
            return

        self._state = ParserState.DATA
        self._rxi = 0
        self._cksum = self._checksum.start()
        if self._length > self._config.max_payload_rx:
            self._discard = True
            self._reporter.report(
                EventKind.PAYLOAD_TOO_LONG,
                f"Rx payload too long: {self._length} > {self._config.max_payload_rx}",
                frame_id=self._id,
                type=self._type,
            )

    def _dispatch(self) -> None:
        msg = Message(
            type=self._type,
            payload=bytes(self._buffer[: self._length]),
            frame_id=self._id,
            length=self._length,
        )
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("Rx\n%s", dump_message(msg))
        self._on_message(msg)
