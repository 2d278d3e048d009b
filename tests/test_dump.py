"""Tests for hex helpers and frame dumps."""

import pytest

from framelink_mcp.protocol.message import Message
from framelink_mcp.utils.dump import (
    bytes_to_hex,
    describe_payload,
    dump_frame,
    dump_message,
    hex_to_bytes,
)


def test_hex_round_trip_forms():
    """Spaced, prefixed and empty hex all parse."""
    assert hex_to_bytes("01 80 02") == b"\x01\x80\x02"
    assert hex_to_bytes("0x0180") == b"\x01\x80"
    assert hex_to_bytes("") == b""
    assert bytes_to_hex(b"\x01\xab") == "01 ab"
    assert bytes_to_hex(b"\x01\xab", separator="") == "01ab"


def test_hex_rejects_odd_length():
    with pytest.raises(ValueError):
        hex_to_bytes("012")


def test_dump_frame_lines():
    """Each byte gets a decimal, hex and character column."""
    text = dump_frame(b"\x01A")
    lines = text.splitlines()
    assert lines[0] == "  1 01 ."
    assert lines[1] == " 65 41 A"
    assert lines[-1] == "--- end of frame ---"


def test_describe_payload():
    assert describe_payload(b"") == "(empty)"
    assert describe_payload(b"hi") == '"hi"'
    assert describe_payload(b"\x00\xff") == "00 FF"


def test_dump_message_skips_empty_payload():
    text = dump_message(Message(type=0x10, frame_id=0x81))
    assert "type: 10h" in text
    assert "id: 81h" in text
    assert "data:" not in text
    assert "data: AA" in dump_message(Message(type=0x10, payload=b"\xaa"))
