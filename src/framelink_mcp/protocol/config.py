"""Engine configuration, fixed at construction.

Frame layout::

    +-----+------+------+------+------------+------------------+------------+
    | SOF |  ID  | LEN  | TYPE | HEAD_CKSUM |      DATA        | DATA_CKSUM |
    | 0-1 | 1-4  | 1-4  | 1-4  |   0-4      |   LEN bytes      |    0-4     |
    +-----+------+------+------+------------+------------------+------------+

- All multi-byte fields are big-endian.
- The top bit of ID marks the peer that allocated it (set for the master).
- HEAD_CKSUM covers SOF..TYPE, DATA_CKSUM covers DATA; both are omitted
  when the checksum type is NONE, DATA_CKSUM also when LEN is zero.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from ..utils.checksum import (
    CHECKSUM_WIDTHS,
    CUSTOM_TYPES,
    Checksum,
    ChecksumType,
    checksum_for,
)

FIELD_WIDTHS = (1, 2, 4)

DEFAULT_MAX_PAYLOAD_RX = 1024
DEFAULT_SENDBUF_LEN = 128
DEFAULT_MAX_ID_LISTENERS = 8
DEFAULT_MAX_TYPE_LISTENERS = 8
DEFAULT_MAX_GENERIC_LISTENERS = 4
DEFAULT_PARSER_TIMEOUT_TICKS = 100
DEFAULT_SOF_BYTE = 0x01


class Peer(Enum):
    """Which end of the link this engine is; selects the ID reservation bit."""

    SLAVE = 0
    MASTER = 1


@dataclass(frozen=True)
class FrameConfig:
    """Wire format and resource limits of one engine instance."""

    id_bytes: int = 1
    len_bytes: int = 1
    type_bytes: int = 1
    checksum: ChecksumType = ChecksumType.NONE
    custom_checksum: Checksum | None = None
    max_payload_rx: int = DEFAULT_MAX_PAYLOAD_RX
    sendbuf_len: int = DEFAULT_SENDBUF_LEN
    max_id_listeners: int = DEFAULT_MAX_ID_LISTENERS
    max_type_listeners: int = DEFAULT_MAX_TYPE_LISTENERS
    max_generic_listeners: int = DEFAULT_MAX_GENERIC_LISTENERS
    parser_timeout_ticks: int = DEFAULT_PARSER_TIMEOUT_TICKS
    use_sof_byte: bool = True
    sof_byte: int = DEFAULT_SOF_BYTE
    use_mutex: bool = False
    claim_timeout: float = 0.0
    peer: Peer = Peer.MASTER

    def __post_init__(self) -> None:
        for name in ("id_bytes", "len_bytes", "type_bytes"):
            value = getattr(self, name)
            if value not in FIELD_WIDTHS:
                raise ValueError(f"{name} must be one of {FIELD_WIDTHS}, got {value}")

        kind = ChecksumType(self.checksum)
        if kind in CUSTOM_TYPES:
            # raises if missing or of the wrong width
            checksum_for(kind, self.custom_checksum)
        elif self.custom_checksum is not None:
            raise ValueError(f"custom_checksum given but checksum is {kind.name}")

        if not 0 <= self.sof_byte <= 0xFF:
            raise ValueError(f"sof_byte must be 0-255, got {self.sof_byte}")
        if self.max_payload_rx < 1:
            raise ValueError(f"max_payload_rx must be positive, got {self.max_payload_rx}")
        for name in ("max_id_listeners", "max_type_listeners", "max_generic_listeners"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
        if self.parser_timeout_ticks < 0:
            raise ValueError("parser_timeout_ticks must not be negative")
        if self.claim_timeout < 0:
            raise ValueError("claim_timeout must not be negative")
        if self.sendbuf_len < self.header_size + self.checksum_size:
            raise ValueError(
                f"sendbuf_len {self.sendbuf_len} cannot hold a "
                f"{self.header_size}-byte header and a "
                f"{self.checksum_size}-byte checksum"
            )

    @property
    def checksum_size(self) -> int:
        return CHECKSUM_WIDTHS[ChecksumType(self.checksum)]

    @property
    def header_size(self) -> int:
        """Encoded header length including SOF and header checksum."""
        return (
            (1 if self.use_sof_byte else 0)
            + self.id_bytes
            + self.len_bytes
            + self.type_bytes
            + self.checksum_size
        )

    @property
    def peer_bit(self) -> int:
        return 1 << (self.id_bytes * 8 - 1)

    @property
    def id_mask(self) -> int:
        """Bits of the ID available to the sequence counter."""
        return self.peer_bit - 1

    @property
    def max_length(self) -> int:
        """Largest payload length the LEN field can carry."""
        return (1 << (self.len_bytes * 8)) - 1

    @property
    def max_type(self) -> int:
        return (1 << (self.type_bytes * 8)) - 1

    def resolve_checksum(self) -> Checksum:
        return checksum_for(self.checksum, self.custom_checksum)

    def wire_mismatches(self, other: FrameConfig) -> list[str]:
        """List wire-format settings that differ from ``other``."""
        mismatches = []
        for name in ("id_bytes", "len_bytes", "type_bytes", "use_sof_byte"):
            if getattr(self, name) != getattr(other, name):
                mismatches.append(
                    f"{name}: {getattr(self, name)} != {getattr(other, name)}"
                )
        if ChecksumType(self.checksum) != ChecksumType(other.checksum):
            mismatches.append(
                f"checksum: {ChecksumType(self.checksum).name} != "
                f"{ChecksumType(other.checksum).name}"
            )
        if self.use_sof_byte and other.use_sof_byte and self.sof_byte != other.sof_byte:
            mismatches.append(f"sof_byte: 0x{self.sof_byte:02X} != 0x{other.sof_byte:02X}")
        return mismatches

    def check_compatible(self, other: FrameConfig) -> None:
        """Raise ``ValueError`` if the two configurations cannot talk to each other."""
        mismatches = self.wire_mismatches(other)
        if mismatches:
            raise ValueError("Incompatible frame configurations: " + "; ".join(mismatches))
