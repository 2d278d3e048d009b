"""Human-readable dumps of raw frames and messages, and hex helpers."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..protocol.message import Message


def bytes_to_hex(data: bytes, separator: str = " ") -> str:
    return data.hex(separator) if separator else data.hex()


def hex_to_bytes(text: str) -> bytes:
    """Parse hex text, ignoring whitespace and an optional ``0x`` prefix.

    Raises:
        ValueError: If the text is not an even number of hex digits.
    """
    clean = "".join(text.split())
    if clean[:2].lower() == "0x":
        clean = clean[2:]
    if len(clean) % 2:
        raise ValueError(f"Hex string must have an even length, got {len(clean)}")
    return bytes.fromhex(clean)


def dump_frame(data: bytes) -> str:
    """One line per byte: decimal, hex and printable character."""
    lines = []
    for byte in data:
        char = chr(byte) if 0x20 <= byte < 0x7F else "."
        lines.append(f"{byte:3d} {byte:02X} {char}")
    lines.append("--- end of frame ---")
    return "\n".join(lines)


def describe_payload(payload: bytes) -> str:
    if not payload:
        return "(empty)"
    if all(0x20 <= b < 0x7F for b in payload):
        return f'"{payload.decode("ascii")}"'
    return payload.hex(" ").upper()


def dump_message(msg: Message) -> str:
    """Message metadata followed by its payload, if any."""
    lines = [
        "Frame info",
        f"  type: {msg.type:02X}h",
        f"   len: {msg.length}",
        f"    id: {msg.frame_id:X}h",
    ]
    if msg.payload:
        lines.append(f"  data: {describe_payload(msg.payload)}")
    return "\n".join(lines)
