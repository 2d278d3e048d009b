"""Incremental checksum strategies for frame headers and bodies.

Both the parser and the composer checksum data as it streams, so every
strategy is expressed as three functions::

    state = checksum.start()
    for byte in data:
        state = checksum.add(state, byte)
    value = checksum.end(state)

The built-in algorithms match the classic TinyFrame variants:

- XOR: 8-bit, inverted xor of all bytes
- CRC8: Dallas/Maxim (reflected polynomial 0x8C)
- CRC16: CRC-16/ARC (reflected polynomial 0xA001)
- CRC32: CRC-32 (reflected polynomial 0xEDB88320, inverted in and out)
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Callable


class ChecksumType(IntEnum):
    """Checksum identifiers, numbered as in TinyFrame."""

    NONE = 0
    CUSTOM8 = 1
    CUSTOM16 = 2
    CUSTOM32 = 3
    XOR = 8
    CRC8 = 9
    CRC16 = 16
    CRC32 = 32


CHECKSUM_WIDTHS: dict[ChecksumType, int] = {
    ChecksumType.NONE: 0,
    ChecksumType.XOR: 1,
    ChecksumType.CRC8: 1,
    ChecksumType.CUSTOM8: 1,
    ChecksumType.CRC16: 2,
    ChecksumType.CUSTOM16: 2,
    ChecksumType.CRC32: 4,
    ChecksumType.CUSTOM32: 4,
}

CUSTOM_TYPES = frozenset(
    {ChecksumType.CUSTOM8, ChecksumType.CUSTOM16, ChecksumType.CUSTOM32}
)


@dataclass(frozen=True)
class Checksum:
    """A checksum algorithm fed one byte at a time."""

    name: str
    width: int
    start: Callable[[], int]
    add: Callable[[int, int], int]
    end: Callable[[int], int]

    def __repr__(self) -> str:
        return f"Checksum({self.name}, width={self.width})"


def _reflected_table(poly: int) -> list[int]:
    table = []
    for i in range(256):
        c = i
        for _ in range(8):
            c = (c >> 1) ^ poly if c & 1 else c >> 1
        table.append(c)
    return table


_CRC8_TABLE = _reflected_table(0x8C)
_CRC16_TABLE = _reflected_table(0xA001)
_CRC32_TABLE = _reflected_table(0xEDB88320)


NONE = Checksum(
    name="none",
    width=0,
    start=lambda: 0,
    add=lambda state, byte: state,
    end=lambda state: 0,
)

XOR = Checksum(
    name="xor",
    width=1,
    start=lambda: 0,
    add=lambda state, byte: state ^ byte,
    end=lambda state: ~state & 0xFF,
)

CRC8 = Checksum(
    name="crc8",
    width=1,
    start=lambda: 0,
    add=lambda state, byte: _CRC8_TABLE[(state ^ byte) & 0xFF],
    end=lambda state: state,
)

CRC16 = Checksum(
    name="crc16",
    width=2,
    start=lambda: 0,
    add=lambda state, byte: (state >> 8) ^ _CRC16_TABLE[(state ^ byte) & 0xFF],
    end=lambda state: state,
)

CRC32 = Checksum(
    name="crc32",
    width=4,
    start=lambda: 0xFFFFFFFF,
    add=lambda state, byte: (state >> 8) ^ _CRC32_TABLE[(state ^ byte) & 0xFF],
    end=lambda state: state ^ 0xFFFFFFFF,
)

_BUILTIN: dict[ChecksumType, Checksum] = {
    ChecksumType.NONE: NONE,
    ChecksumType.XOR: XOR,
    ChecksumType.CRC8: CRC8,
    ChecksumType.CRC16: CRC16,
    ChecksumType.CRC32: CRC32,
}


def checksum_for(kind: ChecksumType, custom: Checksum | None = None) -> Checksum:
    """Resolve a checksum type to its implementation.

    Args:
        kind: The configured checksum type.
        custom: User implementation, required for the CUSTOM* types.

    Raises:
        ValueError: If a custom type lacks an implementation of the right width.
    """
    kind = ChecksumType(kind)
    if kind in CUSTOM_TYPES:
        if custom is None:
            raise ValueError(f"{kind.name} checksum requires a custom implementation")
        if custom.width != CHECKSUM_WIDTHS[kind]:
            raise ValueError(
                f"{kind.name} needs a {CHECKSUM_WIDTHS[kind]}-byte checksum, "
                f"got {custom.width}"
            )
        return custom
    return _BUILTIN[kind]


def compute(checksum: Checksum, data: bytes) -> int:
    """Checksum a complete buffer in one pass."""
    state = checksum.start()
    for byte in data:
        state = checksum.add(state, byte)
    return checksum.end(state)
