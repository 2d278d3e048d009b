"""Transport side: byte connections and the port that drives an engine."""

from .port import FramePort
from .usb_connection import DeviceInfo, USBConnection, find_bridges
