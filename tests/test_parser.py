"""Tests for the receive state machine."""

import logging

from framelink_mcp.protocol.config import FrameConfig
from framelink_mcp.protocol.events import EventKind, EventLog, EventReporter
from framelink_mcp.protocol.framing import encode_frame
from framelink_mcp.protocol.message import Message
from framelink_mcp.protocol.parser import FrameParser, ParserState
from framelink_mcp.utils.checksum import ChecksumType

# SOF, id, len, type, data; no checksum
PLAIN_FRAME = bytes([0x01, 0x80, 0x02, 0x10, 0xAA, 0xBB])

# SOF, id, len, type, head xor, data, body xor
XOR_FRAME = bytes([0x01, 0x80, 0x02, 0x10, 0x6C, 0x01, 0x02, 0xFC])


def _make_parser(config: FrameConfig | None = None):
    received: list[Message] = []
    log = EventLog()
    parser = FrameParser(config or FrameConfig(), received.append, EventReporter(log))
    return parser, received, log


def test_decodes_plain_frame():
    """SOF, ID, LEN, TYPE and data decode into a message."""
    parser, received, log = _make_parser()
    parser.accept(PLAIN_FRAME)

    assert len(received) == 1
    msg = received[0]
    assert msg.frame_id == 0x80
    assert msg.type == 0x10
    assert msg.length == 2
    assert msg.payload == b"\xAA\xBB"
    assert parser.state is ParserState.START_OF_FRAME


def test_any_chunking_gives_same_result():
    """Bytes fed one at a time decode exactly like one buffer."""
    parser, received, _ = _make_parser()
    for byte in PLAIN_FRAME:
        parser.accept(bytes([byte]))
    assert len(received) == 1
    assert received[0].payload == b"\xAA\xBB"


def test_bytes_before_sof_are_ignored():
    """Noise before the SOF byte is skipped."""
    parser, received, _ = _make_parser()
    parser.accept(b"\xFF\x00\x42" + PLAIN_FRAME)
    assert len(received) == 1


def test_empty_payload_dispatches_after_header():
    """A zero-length frame is complete once its header is in."""
    parser, received, _ = _make_parser()
    parser.accept(bytes([0x01, 0x05, 0x00, 0x22]))
    assert len(received) == 1
    assert received[0].payload == b""
    assert received[0].length == 0
    assert parser.state is ParserState.START_OF_FRAME


def test_without_sof_marker_first_byte_is_id():
    """Without SOF the first byte of a frame is the ID."""
    parser, received, _ = _make_parser(FrameConfig(use_sof_byte=False))
    parser.accept(bytes([0x80, 0x02, 0x10, 0x01, 0x02]))
    assert len(received) == 1
    assert received[0].frame_id == 0x80
    assert received[0].payload == b"\x01\x02"


def test_multibyte_fields_are_big_endian():
    config = FrameConfig(id_bytes=2, len_bytes=2, type_bytes=2)
    parser, received, _ = _make_parser(config)
    parser.accept(bytes([0x01, 0x80, 0x07, 0x00, 0x01, 0x12, 0x34, 0x99]))
    assert len(received) == 1
    assert received[0].frame_id == 0x8007
    assert received[0].type == 0x1234
    assert received[0].payload == b"\x99"


def test_xor_checksum_frame():
    parser, received, log = _make_parser(FrameConfig(checksum=ChecksumType.XOR))
    parser.accept(XOR_FRAME)
    assert len(received) == 1
    assert received[0].payload == b"\x01\x02"
    assert len(log) == 0


def test_head_checksum_mismatch_drops_frame():
    """A bad header checksum drops the frame and reports it."""
    parser, received, log = _make_parser(FrameConfig(checksum=ChecksumType.XOR))
    bad = bytearray(XOR_FRAME)
    bad[4] ^= 0xFF
    parser.accept(bytes(bad[:5]))

    assert received == []
    assert log.count(EventKind.HEAD_CHECKSUM_ERROR) == 1
    assert parser.state is ParserState.START_OF_FRAME

    parser.accept(XOR_FRAME)
    assert len(received) == 1


def test_body_checksum_mismatch_then_resync():
    """A corrupt payload byte drops the frame; the next frame still decodes."""
    parser, received, log = _make_parser(FrameConfig(checksum=ChecksumType.XOR))
    bad = bytearray(XOR_FRAME)
    bad[5] = 0x03
    parser.accept(bytes(bad) + XOR_FRAME)

    assert log.count(EventKind.BODY_CHECKSUM_ERROR) == 1
    assert len(received) == 1
    assert received[0].payload == b"\x01\x02"


def test_crc16_corrupt_header_of_empty_frame():
    config = FrameConfig(checksum=ChecksumType.CRC16)
    parser, received, log = _make_parser(config)
    good = encode_frame(config, Message(type=0x30, frame_id=0x81))
    bad = bytearray(good)
    bad[3] ^= 0x01  # type byte

    parser.accept(bytes(bad) + good)
    assert log.count(EventKind.HEAD_CHECKSUM_ERROR) == 1
    assert len(received) == 1
    assert received[0].type == 0x30


def test_crc32_round_trip_from_encoder():
    config = FrameConfig(checksum=ChecksumType.CRC32, len_bytes=2)
    parser, received, _ = _make_parser(config)
    payload = bytes(range(200))
    parser.accept(encode_frame(config, Message(type=0x44, payload=payload, frame_id=0x02)))
    assert len(received) == 1
    assert received[0].payload == payload
    assert received[0].frame_id == 0x02


def test_payload_too_long_is_consumed_not_dispatched():
    """An oversized frame is read through but never dispatched."""
    config = FrameConfig(max_payload_rx=4)
    parser, received, log = _make_parser(config)
    oversized = bytes([0x01, 0x80, 0x06, 0x10]) + bytes(6)
    parser.accept(oversized + PLAIN_FRAME)

    assert log.count(EventKind.PAYLOAD_TOO_LONG) == 1
    assert len(received) == 1
    assert received[0].payload == b"\xAA\xBB"


def test_payload_too_long_with_checksum_is_silent_at_the_end():
    """Only the length error is reported for a discarded checksummed frame."""
    config = FrameConfig(checksum=ChecksumType.CRC8, max_payload_rx=4)
    parser, received, log = _make_parser(config)
    big = encode_frame(
        FrameConfig(checksum=ChecksumType.CRC8),
        Message(type=0x10, payload=b"\x10" * 8, frame_id=0x80),
    )
    parser.accept(big)

    assert received == []
    assert log.count(EventKind.PAYLOAD_TOO_LONG) == 1
    assert log.count(EventKind.BODY_CHECKSUM_ERROR) == 0
    assert parser.state is ParserState.START_OF_FRAME


def test_dispatched_payload_is_a_copy():
    """The dispatched payload is independent of the parser buffer."""
    parser, received, _ = _make_parser()
    parser.accept(PLAIN_FRAME)
    parser.accept(bytes([0x01, 0x81, 0x02, 0x10, 0xCC, 0xDD]))
    assert received[0].payload == b"\xAA\xBB"
    assert received[1].payload == b"\xCC\xDD"


def test_stall_timeout_resets_on_next_byte():
    """A stalled frame is dropped when the next byte arrives."""
    parser, received, log = _make_parser(FrameConfig(parser_timeout_ticks=3))
    parser.accept(PLAIN_FRAME[:2])
    assert parser.state is ParserState.LENGTH

    for _ in range(3):
        parser.tick()
    assert parser.timed_out

    parser.accept(PLAIN_FRAME)
    assert log.count(EventKind.PARSER_TIMEOUT) == 1
    assert len(received) == 1
    assert received[0].payload == b"\xAA\xBB"


def test_bytes_clear_stall_timer():
    parser, received, log = _make_parser(FrameConfig(parser_timeout_ticks=3))
    parser.accept(PLAIN_FRAME[:2])
    parser.tick()
    parser.tick()
    parser.accept(PLAIN_FRAME[2:3])
    assert parser.stall_ticks == 0
    parser.tick()
    parser.tick()
    parser.accept(PLAIN_FRAME[3:])

    assert log.count(EventKind.PARSER_TIMEOUT) == 0
    assert len(received) == 1


def test_idle_parser_does_not_time_out():
    """Ticks between frames never report a timeout."""
    parser, received, log = _make_parser(FrameConfig(parser_timeout_ticks=2))
    for _ in range(10):
        parser.tick()
    assert parser.stall_ticks == 0
    parser.accept(PLAIN_FRAME)
    assert log.count(EventKind.PARSER_TIMEOUT) == 0
    assert len(received) == 1


def test_zero_timeout_disables_stall_reset():
    parser, received, log = _make_parser(FrameConfig(parser_timeout_ticks=0))
    parser.accept(PLAIN_FRAME[:3])
    for _ in range(1000):
        parser.tick()
    parser.accept(PLAIN_FRAME[3:])
    assert log.count(EventKind.PARSER_TIMEOUT) == 0
    assert len(received) == 1


def test_debug_log_dumps_received_frame(caplog):
    """At debug level each dispatched frame is logged with its fields."""
    parser, received, _ = _make_parser()
    with caplog.at_level(logging.DEBUG, logger="framelink_mcp.protocol.parser"):
        parser.accept(PLAIN_FRAME)
    assert len(received) == 1
    assert "type: 10h" in caplog.text
    assert "id: 80h" in caplog.text
    assert "data: AA BB" in caplog.text
