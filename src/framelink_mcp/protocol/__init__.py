"""Protocol layer: configuration, framing, parsing and listener dispatch."""

from .config import FrameConfig, Peer
from .events import Event, EventKind, EventLog
from .framing import FrameComposer, TransmitError, encode_frame
from .message import ListenerResult, Message
from .parser import FrameParser, ParserState
