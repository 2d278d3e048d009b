"""Transmit path: header composition, payload streaming and ID allocation.

Outgoing bytes go through a small send buffer. The header is composed
into the buffer first, payload bytes are copied in behind it while the
body checksum runs, and the buffer is handed to the transport ``write``
callback each time it fills and once more when the frame is closed::

    begin(msg)      claim the transmitter, allocate the ID, write the header
    payload(data)   stream payload bytes (any number of calls)
    end()           append the body checksum, flush, release the claim

A frame with a declared length of zero has no body checksum.
"""

from __future__ import annotations

import logging
from typing import Callable

from .claim import ExclusiveClaim, FlagClaim
from .config import FrameConfig, Peer
from .message import Message

logger = logging.getLogger(__name__)


class TransmitError(IOError):
    """The transport write callback failed while a frame was being sent."""


class FrameComposer:
    """Builds frames into a bounded buffer and flushes them to ``write``.

    Args:
        config: Wire format and send buffer size.
        write: Transport callback receiving each flushed chunk.
        claim: Single-writer claim; a flag claim when omitted.
        in_use: Predicate telling the ID allocator which IDs are taken.
    """

    def __init__(
        self,
        config: FrameConfig,
        write: Callable[[bytes], object],
        claim: ExclusiveClaim | None = None,
        in_use: Callable[[int], bool] | None = None,
    ) -> None:
        self._config = config
        self._checksum = config.resolve_checksum()
        self._write = write
        self._claim = claim or FlagClaim()
        self._in_use = in_use

        self.next_id = 0
        self._buffer = bytearray(config.sendbuf_len)
        self._pos = 0
        self._cksum = self._checksum.start()
        self._declared = 0
        self._sent = 0
        self._flushed = 0
        self._open = False

    @property
    def in_progress(self) -> bool:
        return self._open

    @property
    def declared_length(self) -> int:
        return self._declared

    @property
    def bytes_sent(self) -> int:
        """Payload bytes streamed into the current frame so far."""
        return self._sent

    @property
    def bytes_flushed(self) -> int:
        """Bytes of the current frame already handed to ``write``."""
        return self._flushed

    def validate(self, msg: Message) -> None:
        """Raise ``ValueError`` if the message does not fit the header fields."""
        if not 0 <= msg.type <= self._config.max_type:
            raise ValueError(
                f"Type must be 0-{self._config.max_type}, got {msg.type}"
            )
        if not 0 <= msg.length <= self._config.max_length:
            raise ValueError(
                f"Length must be 0-{self._config.max_length}, got {msg.length}"
            )
        if len(msg.payload) > msg.length:
            raise ValueError(
                f"Payload of {len(msg.payload)} bytes exceeds declared length {msg.length}"
            )
        if msg.is_response and not 0 <= msg.frame_id < (1 << (self._config.id_bytes * 8)):
            raise ValueError(f"Frame ID 0x{msg.frame_id:X} does not fit the ID field")

    def begin(self, msg: Message) -> bool:
        """Claim the transmitter and compose the header of ``msg``.

        On success ``msg.frame_id`` holds the ID used on the wire and the
        claim stays held until ``end`` or ``abort``.

        Returns:
            False if another frame is already being sent.
        """
        self.validate(msg)
        if not self._claim.acquire():
            return False

        self._open = True
        self._pos = 0
        self._declared = msg.length
        self._sent = 0
        self._flushed = 0

        if not msg.is_response:
            msg.frame_id = self._allocate_id()

        cksum = self._checksum.start()
        if self._config.use_sof_byte:
            self._buffer[self._pos] = self._config.sof_byte
            self._pos += 1
            cksum = self._checksum.add(cksum, self._config.sof_byte)
        cksum = self._put_number(msg.frame_id, self._config.id_bytes, cksum)
        cksum = self._put_number(msg.length, self._config.len_bytes, cksum)
        cksum = self._put_number(msg.type, self._config.type_bytes, cksum)
        if self._checksum.width:
            self._put_number(self._checksum.end(cksum), self._checksum.width)

        self._cksum = self._checksum.start()
        logger.debug(
            "Tx header id=0x%X len=%d type=0x%X", msg.frame_id, msg.length, msg.type
        )
        return True

    def payload(self, data: bytes) -> None:
        """Stream payload bytes into the open frame.

        Raises:
            RuntimeError: If no frame is open.
            ValueError: If the bytes would exceed the declared length.
            TransmitError: If a flush fails; the frame is abandoned.
        """
        if not self._open:
            raise RuntimeError("No frame open for payload")
        if self._sent + len(data) > self._declared:
            raise ValueError(
                f"Payload overruns declared length {self._declared} "
                f"({self._sent} sent, {len(data)} more)"
            )

        size = self._config.sendbuf_len
        offset = 0
        while offset < len(data):
            chunk = data[offset : offset + size - self._pos]
            for byte in chunk:
                self._buffer[self._pos] = byte
                self._pos += 1
                self._cksum = self._checksum.add(self._cksum, byte)
            offset += len(chunk)
            self._sent += len(chunk)
            if self._pos == size:
                self._flush()

    def end(self, spoil_checksum: bool = False) -> None:
        """Append the body checksum, flush and release the claim.

        With ``spoil_checksum`` the body checksum is inverted so the peer
        drops the frame; used to close a frame whose payload is unusable.
        """
        if not self._open:
            raise RuntimeError("No frame open to close")
        try:
            width = self._checksum.width
            if self._declared > 0 and width:
                if self._config.sendbuf_len - self._pos < width:
                    self._flush()
                value = self._checksum.end(self._cksum)
                if spoil_checksum:
                    value ^= (1 << (width * 8)) - 1
                self._put_number(value, width)
            self._flush()
        finally:
            self._release()

    def abort(self) -> None:
        """Drop anything still buffered and release the claim."""
        if self._pos:
            logger.debug("Discarding %d unsent bytes", self._pos)
        self._pos = 0
        self._release()

    def compose(self, msg: Message) -> bool:
        """Send a complete message in one call."""
        if len(msg.payload) != msg.length:
            raise ValueError(
                f"Payload is {len(msg.payload)} bytes but length says {msg.length}"
            )
        if not self.begin(msg):
            return False
        try:
            self.payload(msg.payload)
        except Exception:
            self.abort()
            raise
        self.end()
        return True

    def _allocate_id(self) -> int:
        mask = self._config.id_mask
        peer_bit = self._config.peer_bit if self._config.peer is Peer.MASTER else 0
        frame_id = 0
        for _ in range(mask + 1):
            frame_id = (self.next_id & mask) | peer_bit
            self.next_id = (self.next_id + 1) & mask
            if self._in_use is None or not self._in_use(frame_id):
                break
        return frame_id

    def _put_number(self, value: int, width: int, cksum: int | None = None) -> int | None:
        for shift in range((width - 1) * 8, -1, -8):
            byte = (value >> shift) & 0xFF
            self._buffer[self._pos] = byte
            self._pos += 1
            if cksum is not None:
                cksum = self._checksum.add(cksum, byte)
        return cksum

    def _flush(self) -> None:
        if not self._pos:
            return
        chunk = bytes(self._buffer[: self._pos])
        self._pos = 0
        try:
            self._write(chunk)
        except Exception as e:
            self._release()
            raise TransmitError(f"Write of {len(chunk)} bytes failed: {e}") from e
        self._flushed += len(chunk)

    def _release(self) -> None:
        if self._open:
            self._open = False
            self._claim.release()


def encode_frame(config: FrameConfig, msg: Message) -> bytes:
    """Encode ``msg`` with its own ``frame_id``, without any claim or ID state.

    Useful for building reference frames, e.g. a peer's response.
    """
    out = bytearray()
    composer = FrameComposer(config, out.extend)
    reply = Message(
        type=msg.type,
        payload=msg.payload,
        frame_id=msg.frame_id,
        is_response=True,
        length=msg.length,
    )
    composer.compose(reply)
    return bytes(out)
