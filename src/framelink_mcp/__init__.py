"""Typed, checksummed message framing over a single byte stream."""

from .engine import FrameEngine
from .protocol import (
    Event,
    EventKind,
    EventLog,
    FrameConfig,
    ListenerResult,
    Message,
    Peer,
)
from .utils.checksum import ChecksumType

__version__ = "0.1.0"
