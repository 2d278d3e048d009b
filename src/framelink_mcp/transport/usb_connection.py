"""USB HID serial-bridge byte transport.

Supports both ``hidapi`` (preferred) and ``pyusb`` backends. The bridge
carries an arbitrary byte stream in 64-byte HID reports::

    +-------+------------------------+-----------------+
    | Count |         Data           |     Padding     |
    | 1 byte|  0-63 bytes            |  zeros to 64 B  |
    +-------+------------------------+-----------------+

Framing is left to the engine; this layer only moves bytes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# Generic CDC/HID bridge IDs; override per device.
VENDOR_ID = 0x0483
PRODUCT_ID = 0x5750
HID_INTERFACE = 0
EP_IN = 0x81
EP_OUT = 0x01
HID_REPORT_SIZE = 64
MAX_DATA_PER_REPORT = HID_REPORT_SIZE - 1
READ_TIMEOUT_MS = 100


@dataclass
class DeviceInfo:
    """Basic device identification from USB descriptors."""

    vendor_id: int = VENDOR_ID
    product_id: int = PRODUCT_ID
    manufacturer: str = ""
    product: str = ""
    path: str = ""


def wrap_reports(data: bytes) -> list[bytes]:
    """Split a byte stream into count-prefixed, zero-padded HID reports."""
    reports: list[bytes] = []
    for offset in range(0, len(data), MAX_DATA_PER_REPORT):
        chunk = data[offset : offset + MAX_DATA_PER_REPORT]
        reports.append(
            bytes([len(chunk)]) + chunk + b"\x00" * (MAX_DATA_PER_REPORT - len(chunk))
        )
    return reports


def unwrap_report(report: bytes) -> bytes:
    """Return the data bytes carried by one HID report."""
    if not report:
        return b""
    count = min(report[0], MAX_DATA_PER_REPORT, len(report) - 1)
    return bytes(report[1 : 1 + count])


def find_bridges(
    vendor_id: int = VENDOR_ID,
    product_id: int = PRODUCT_ID,
) -> list[DeviceInfo]:
    """List attached bridges visible to hidapi, one entry per HID path."""
    import hid

    found = []
    for entry in hid.enumerate(vendor_id, product_id):
        path = entry.get("path", b"")
        found.append(
            DeviceInfo(
                vendor_id=entry.get("vendor_id", vendor_id),
                product_id=entry.get("product_id", product_id),
                manufacturer=entry.get("manufacturer_string") or "",
                product=entry.get("product_string") or "",
                path=path.decode(errors="replace") if isinstance(path, bytes) else path,
            )
        )
    return found


class USBConnection:
    """Byte-stream connection to a USB HID serial bridge.

    With several identical bridges attached, pass ``path`` (see
    ``find_bridges``) to pick one; pyusb always takes the first match.

    Usage::

        conn = USBConnection()
        conn.open()
        conn.write(frame_bytes)
        received = conn.read()
        conn.close()
    """

    def __init__(
        self,
        vendor_id: int = VENDOR_ID,
        product_id: int = PRODUCT_ID,
        path: str = "",
    ) -> None:
        self._vendor_id = vendor_id
        self._product_id = product_id
        self._path = path
        self._device = None
        self._backend = ""
        self._connected = False
        self._device_info = DeviceInfo(vendor_id=vendor_id, product_id=product_id, path=path)

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def backend(self) -> str:
        return self._backend

    @property
    def device_info(self) -> DeviceInfo:
        return self._device_info

    def open(self) -> DeviceInfo:
        """Open the bridge with the first backend that works, hidapi first.

        Raises:
            ConnectionError: If no backend can open the device.
        """
        failures = []
        for name, opener in (("hidapi", self._open_hidapi), ("pyusb", self._open_pyusb)):
            try:
                return opener()
            except Exception as e:
                logger.debug("%s could not open the bridge: %s", name, e)
                failures.append(f"{name}: {e}")
        raise ConnectionError(
            f"No bridge at {self._vendor_id:#06x}:{self._product_id:#06x} "
            f"could be opened; check the cable and device permissions "
            f"({'; '.join(failures)})"
        )

    def _open_hidapi(self) -> DeviceInfo:
        import hid

        device = hid.device()
        if self._path:
            device.open_path(self._path.encode())
        else:
            device.open(self._vendor_id, self._product_id)
        device.set_nonblocking(False)
        return self._attach(
            device,
            "hidapi",
            device.get_manufacturer_string() or "",
            device.get_product_string() or "",
        )

    def _open_pyusb(self) -> DeviceInfo:
        import usb.core
        import usb.util

        dev = usb.core.find(idVendor=self._vendor_id, idProduct=self._product_id)
        if dev is None:
            raise ConnectionError("no matching device on the bus")
        if dev.is_kernel_driver_active(HID_INTERFACE):
            dev.detach_kernel_driver(HID_INTERFACE)
        usb.util.claim_interface(dev, HID_INTERFACE)
        return self._attach(
            dev,
            "pyusb",
            usb.util.get_string(dev, dev.iManufacturer) or "",
            usb.util.get_string(dev, dev.iProduct) or "",
        )

    def _attach(self, device, backend: str, manufacturer: str, product: str) -> DeviceInfo:
        self._device = device
        self._backend = backend
        self._connected = True
        self._device_info = DeviceInfo(
            vendor_id=self._vendor_id,
            product_id=self._product_id,
            manufacturer=manufacturer,
            product=product,
            path=self._path,
        )
        logger.info("Bridge open via %s: %s %s", backend, manufacturer, product)
        return self._device_info

    def close(self) -> None:
        """Release the device. Safe to call when already closed."""
        if not self._connected:
            return
        device, backend = self._device, self._backend
        self._device = None
        self._backend = ""
        self._connected = False
        try:
            if backend == "hidapi":
                device.close()
            elif backend == "pyusb":
                import usb.util
                usb.util.release_interface(device, HID_INTERFACE)
                usb.util.dispose_resources(device)
        except Exception as e:
            logger.warning("Closing %s bridge failed: %s", backend, e)
        logger.info("Bridge closed")

    def write(self, data: bytes) -> int:
        """Send bytes, split over as many HID reports as needed.

        Returns:
            Number of data bytes written.

        Raises:
            ConnectionError: If not connected.
        """
        if not self._connected:
            raise ConnectionError("Bridge is not open")

        for report in wrap_reports(data):
            if self._backend == "hidapi":
                # hidapi expects the report ID first
                self._device.write(b"\x00" + report)
            elif self._backend == "pyusb":
                self._device.write(EP_OUT, report, timeout=READ_TIMEOUT_MS)
            else:
                raise RuntimeError(f"Unknown backend: {self._backend}")
        return len(data)

    def read(self, timeout_ms: int = READ_TIMEOUT_MS) -> bytes | None:
        """Read the data bytes of one HID report.

        Returns:
            The received bytes, or None if the read timed out or failed.

        Raises:
            ConnectionError: If not connected.
        """
        if not self._connected:
            raise ConnectionError("Bridge is not open")

        try:
            if self._backend == "hidapi":
                report = self._device.read(HID_REPORT_SIZE, timeout_ms)
            elif self._backend == "pyusb":
                report = self._device.read(EP_IN, HID_REPORT_SIZE, timeout=timeout_ms)
            else:
                return None
        except Exception as e:
            logger.debug("Read error: %s", e)
            return None

        if not report:
            return None
        data = unwrap_report(bytes(report))
        return data or None
