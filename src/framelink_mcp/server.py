"""MCP server entry point for a framed serial link.

Exposes the link (a ``FramePort`` over a USB HID bridge) as tools,
resources and prompts via the Model Context Protocol using the official
Python MCP SDK with stdio transport.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict
from typing import Any

from mcp.server.fastmcp import FastMCP

from .protocol.config import FrameConfig, Peer
from .protocol.message import Message
from .transport.port import FramePort
from .transport.usb_connection import (
    PRODUCT_ID,
    VENDOR_ID,
    USBConnection,
    find_bridges,
)
from .utils.checksum import ChecksumType
from .utils.dump import bytes_to_hex, describe_payload, hex_to_bytes

logger = logging.getLogger(__name__)

mcp = FastMCP(
    "framelink",
    instructions="MCP server for a TinyFrame-style framed serial link",
)

# Global link state
_port: FramePort | None = None


def _get_port() -> FramePort:
    """Get the active port, raising if not connected."""
    if _port is None or not _port.connection.connected:
        raise RuntimeError("Not connected to a link. Use the 'connect' tool first.")
    return _port


def _message_to_dict(msg: Message) -> dict[str, Any]:
    return {
        "id": f"0x{msg.frame_id:02X}",
        "type": f"0x{msg.type:02X}",
        "length": msg.length,
        "payload_hex": bytes_to_hex(msg.payload),
        "payload": describe_payload(msg.payload),
    }


def _config_to_dict(config: FrameConfig) -> dict[str, Any]:
    data = asdict(config)
    data.pop("custom_checksum", None)
    data["checksum"] = ChecksumType(config.checksum).name.lower()
    data["peer"] = config.peer.name.lower()
    data["sof_byte"] = f"0x{config.sof_byte:02X}"
    return data


# ─── CONNECTION TOOLS ─────────────────────────────────────────────────

@mcp.tool()
def list_bridges(vendor_id: int = VENDOR_ID, product_id: int = PRODUCT_ID) -> dict[str, Any]:
    """List attached USB bridges that hidapi can see.

    Args:
        vendor_id: USB vendor ID to match.
        product_id: USB product ID to match.
    """
    try:
        bridges = find_bridges(vendor_id, product_id)
    except Exception as e:
        return {"error": f"Enumeration failed: {e}"}
    return {"bridges": [asdict(b) for b in bridges], "count": len(bridges)}


@mcp.tool()
def connect(
    vendor_id: int = VENDOR_ID,
    product_id: int = PRODUCT_ID,
    checksum: str = "none",
    peer: str = "master",
    use_sof_byte: bool = True,
    path: str = "",
) -> dict[str, Any]:
    """Open the USB bridge and start framing on it.

    Args:
        vendor_id: USB vendor ID of the bridge.
        product_id: USB product ID of the bridge.
        checksum: none, xor, crc8, crc16 or crc32; must match the device.
        peer: master or slave; the device must use the other role.
        use_sof_byte: Whether frames start with the 0x01 marker byte.
        path: HID path from list_bridges, to pick one of several bridges.
    """
    global _port
    if _port is not None and _port.connection.connected:
        return {"connected": True, "message": "Already connected"}

    try:
        kind = ChecksumType[checksum.upper()]
        role = Peer[peer.upper()]
    except KeyError as e:
        return {"error": f"Unknown option {e}"}
    if kind not in (
        ChecksumType.NONE,
        ChecksumType.XOR,
        ChecksumType.CRC8,
        ChecksumType.CRC16,
        ChecksumType.CRC32,
    ):
        return {"error": f"Checksum '{checksum}' needs a custom implementation"}

    config = FrameConfig(checksum=kind, peer=role, use_sof_byte=use_sof_byte)
    connection = USBConnection(vendor_id, product_id, path)
    info = connection.open()

    _port = FramePort(connection, config)
    _port.start()

    return {
        "connected": True,
        "manufacturer": info.manufacturer,
        "product": info.product,
        "backend": connection.backend,
        "config": _config_to_dict(config),
    }


@mcp.tool()
def disconnect() -> dict[str, bool]:
    """Stop the port and close the USB bridge."""
    global _port
    if _port is None:
        return {"disconnected": True}
    _port.stop()
    _port.connection.close()
    _port = None
    return {"disconnected": True}


@mcp.tool()
def get_link_status() -> dict[str, Any]:
    """Report connection, parser and listener state plus event counters."""
    if _port is None:
        return {"connected": False}
    return _port.status()


# ─── FRAME TOOLS ─────────────────────────────────────────────────────

@mcp.tool()
def send_frame(type: int, payload_hex: str = "") -> dict[str, Any]:
    """Send one frame without waiting for an answer.

    Args:
        type: Message type (channel), e.g. 0x10.
        payload_hex: Payload as hex, e.g. "01 02".
    """
    port = _get_port()
    try:
        payload = hex_to_bytes(payload_hex)
    except ValueError as e:
        return {"error": str(e)}

    if not 0 <= type <= port.engine.config.max_type:
        return {"error": f"Type must be 0-{port.engine.config.max_type}"}
    if len(payload) > port.engine.config.max_length:
        return {"error": f"Payload must be at most {port.engine.config.max_length} bytes"}

    ok = port.send_frame(type, payload)
    return {"sent": ok, "type": f"0x{type:02X}", "length": len(payload)}


@mcp.tool()
def query_frame(type: int, payload_hex: str = "", timeout_ms: int = 1000) -> dict[str, Any]:
    """Send a frame and wait for the response carrying the same frame ID.

    Args:
        type: Message type (channel).
        payload_hex: Payload as hex.
        timeout_ms: How long to wait for the response.
    """
    port = _get_port()
    try:
        payload = hex_to_bytes(payload_hex)
    except ValueError as e:
        return {"error": str(e)}
    if not 0 <= type <= port.engine.config.max_type:
        return {"error": f"Type must be 0-{port.engine.config.max_type}"}
    if len(payload) > port.engine.config.max_length:
        return {"error": f"Payload must be at most {port.engine.config.max_length} bytes"}

    ticks = max(1, round(timeout_ms / 1000 / port.tick_interval))
    reply = port.request(type, payload, timeout_ticks=ticks)
    if reply is None:
        return {"answered": False, "error": "No response before timeout"}
    return {"answered": True, "response": _message_to_dict(reply)}


@mcp.tool()
def recent_frames(limit: int = 20) -> dict[str, Any]:
    """List the most recently received frames.

    Args:
        limit: Maximum number of frames to return.
    """
    port = _get_port()
    frames = [_message_to_dict(m) for m in port.recent_frames(limit)]
    return {"frames": frames, "count": len(frames)}


@mcp.tool()
def recent_events(limit: int = 20) -> dict[str, Any]:
    """List recent protocol events (checksum errors, timeouts, unhandled frames).

    Args:
        limit: Maximum number of events to return.
    """
    port = _get_port()
    events = [e.to_dict() for e in port.recent_events(limit)]
    return {"events": events, "totals": port.events.totals()}


# ─── MCP RESOURCES ───────────────────────────────────────────────────

@mcp.resource("framelink://link/status")
def resource_link_status() -> str:
    """Connection state, parser state and listener counts."""
    if _port is None:
        return json.dumps({"connected": False})
    return json.dumps(_port.status())


@mcp.resource("framelink://link/config")
def resource_link_config() -> str:
    """Wire format of the active link."""
    if _port is None:
        return json.dumps({"connected": False})
    return json.dumps(_config_to_dict(_port.engine.config))


@mcp.resource("framelink://frames/recent")
def resource_recent_frames() -> str:
    """Frames received on the link, oldest first."""
    if _port is None:
        return json.dumps({"frames": []})
    return json.dumps({"frames": [_message_to_dict(m) for m in _port.recent_frames()]})


# ─── MCP PROMPTS ─────────────────────────────────────────────────────

@mcp.prompt()
def diagnose_link(symptom: str) -> str:
    """Guide the AI through troubleshooting a misbehaving link.

    Args:
        symptom: What goes wrong, e.g. "queries time out".
    """
    return f"""Diagnose the framed link. Reported symptom: {symptom}

Steps:
- Read get_link_status for parser state, listener counts and event totals
- Read recent_events and look for checksum errors (mismatched checksum
  setting or SOF byte), payload_too_long (LEN width or max payload differs),
  parser_timeout (bytes lost mid-frame) and tx_claim_unavailable (sends overlapping)
- Use query_frame with a small ping payload to check round trips
- Compare recent_frames with what the device is expected to send

Report the most likely cause and the configuration change that fixes it."""


# ─── ENTRY POINT ─────────────────────────────────────────────────────

def main():
    """Run the MCP server with stdio transport."""
    logging.basicConfig(level=logging.INFO)
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
