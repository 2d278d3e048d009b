"""Message and listener types shared by the parser, composer and dispatcher."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

if TYPE_CHECKING:
    from ..engine import FrameEngine


class ListenerResult(Enum):
    """What a listener did with a message."""

    NEXT = "next"    # not handled, let the next listener see it
    STAY = "stay"    # handled, keep the listener
    RENEW = "renew"  # handled, keep and restart the ID listener's timeout
    CLOSE = "close"  # handled, remove the listener


@dataclass
class Message:
    """One framed message.

    ``length`` defaults to the payload length. Multipart sends declare it
    up front and leave ``payload`` empty.
    """

    type: int = 0
    payload: bytes = b""
    frame_id: int = 0
    is_response: bool = False
    length: int | None = None
    userdata: Any = None
    userdata2: Any = None

    def __post_init__(self) -> None:
        self.payload = bytes(self.payload)
        if self.length is None:
            self.length = len(self.payload)

    def __repr__(self) -> str:
        return (
            f"Message(id=0x{self.frame_id:02X}, type=0x{self.type:02X}, "
            f"len={self.length}, "
            f"payload={self.payload.hex(' ') if self.payload else '(empty)'})"
        )


Listener = Callable[["FrameEngine", Message], ListenerResult]
TimeoutListener = Callable[["FrameEngine"], None]
