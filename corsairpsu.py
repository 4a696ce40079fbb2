#!/usr/bin/env python3
"""
Corsair RMi / HXi Power Supply — Python API

Reads telemetry from Corsair digital power supplies over their USB HID
link. The register protocol is undocumented by the vendor; the register
list follows the community reverse-engineering notes (SIV).

Requires: hidapi (`pip install hidapi`)
"""

import logging
import math
import os
import struct
import sys
from dataclasses import asdict, dataclass
from typing import NamedTuple, Optional

if sys.platform.startswith("linux"):
    # hidraw backend: enumeration paths are /dev/hidrawN nodes
    import hidraw as hid
else:
    import hid

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants — USB identification
# ---------------------------------------------------------------------------
VENDOR_ID = 0x1B1C

PRODUCTS = {
    0x1C0A: "RM650i",
    0x1C0B: "RM750i",
    0x1C0C: "RM850i",
    0x1C0D: "RM1000i",
    0x1C04: "HX650i",
    0x1C05: "HX750i",
    0x1C06: "HX850i",
    0x1C07: "HX1000i",
    0x1C08: "HX1200i",
    0x1C1E: "HX1000i (2nd gen)",
}

# ---------------------------------------------------------------------------
# Constants — report framing
# ---------------------------------------------------------------------------
REPORT_OUT_SIZE = 65  # report ID byte + 64 bytes
REPORT_IN_SIZE = 64
PAYLOAD_MAX = REPORT_IN_SIZE - 2  # op/reg echo precede the payload

OP_SELECT_RAIL = 0x02
OP_READ = 0x03
OP_IDENTITY = 0xFE

REG_IDENTITY = 0x03

# ---------------------------------------------------------------------------
# Constants — registers
# ---------------------------------------------------------------------------
REG_RAIL_SELECT = 0x00
REG_SUPPLY_VOLTS = 0x88
REG_RAIL_VOLTS = 0x8B  # rail-scoped
REG_RAIL_AMPS = 0x8C  # rail-scoped
REG_TEMP1 = 0x8D
REG_TEMP2 = 0x8E
REG_FAN_RPM = 0x90
REG_RAIL_WATTS = 0x96  # rail-scoped
REG_VENDOR = 0x99
REG_PRODUCT = 0x9A
REG_POWERED = 0xD1  # u32 seconds powered since manufacture
REG_UPTIME = 0xD2  # u32 seconds powered this session
REG_TOTAL_WATTS = 0xEE

RAIL_COUNT = 3
RAIL_NAMES = ["12V", "5V", "3.3V"]

# LINEAR11 field limits
EXPONENT_MIN, EXPONENT_MAX = -16, 15
MANTISSA_MIN, MANTISSA_MAX = -1024, 1023


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------
class PSUError(IOError):
    """Base class for everything that can go wrong talking to the PSU."""


class TransportError(PSUError):
    """Short write or short read on the HID handle."""

    def __init__(self, direction: str, expected: int, actual: int,
                 data: bytes = b""):
        self.direction = direction
        self.expected = expected
        self.actual = actual
        self.data = bytes(data)
        super().__init__(f"{direction} {actual}/{expected} bytes")


class ProtocolMismatchError(PSUError):
    """Response op/reg echo does not match the request."""

    def __init__(self, expected: tuple, received: tuple, response: bytes):
        self.expected = expected
        self.received = received
        self.response = bytes(response)
        super().__init__(
            "unexpected response %02x %02x to cmd %02x %02x"
            % (received[0], received[1], expected[0], expected[1])
        )


class DeviceNotEligibleError(PSUError):
    """Device is not a supported Corsair PSU."""

    def __init__(self, vendor_id: int, product_id: int):
        self.vendor_id = vendor_id
        self.product_id = product_id
        super().__init__(f"unexpected device: {vendor_id:04x}:{product_id:04x}")


class DeviceNotFoundError(PSUError):
    """No supported PSU could be found or opened."""


# ---------------------------------------------------------------------------
# Numeric codec — PMBus LINEAR11
# ---------------------------------------------------------------------------
def sign_extend(value: int, bits: int) -> int:
    """Interpret the low ``bits`` of ``value`` as a two's complement field."""
    value &= (1 << bits) - 1
    if value & (1 << (bits - 1)):
        value -= 1 << bits
    return value


def decode_linear11(raw: int) -> float:
    """Decode a LINEAR11 word: 5-bit signed exponent, 11-bit signed mantissa."""
    raw &= 0xFFFF
    exponent = sign_extend(raw >> 11, 5)
    mantissa = sign_extend(raw, 11)
    return mantissa * 2.0 ** exponent


def encode_linear11(value: float) -> int:
    """Encode a float as LINEAR11 using the smallest exponent that fits.

    The smallest exponent gives the finest resolution. Raises ValueError
    when the value is out of range for the format.
    """
    if not math.isfinite(value):
        raise ValueError(f"cannot encode {value!r} as LINEAR11")
    for exponent in range(EXPONENT_MIN, EXPONENT_MAX + 1):
        mantissa = round(value / 2.0 ** exponent)
        if mantissa == 0:
            return 0x0000
        if MANTISSA_MIN <= mantissa <= MANTISSA_MAX:
            return ((exponent & 0x1F) << 11) | (mantissa & 0x7FF)
    raise ValueError(f"{value!r} out of LINEAR11 range")


# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------
def hexdump(data: bytes) -> str:
    """Render bytes as 16-per-line hex followed by printable ASCII."""
    lines = []
    for i in range(0, len(data), 16):
        chunk = data[i : i + 16]
        hexpart = "".join(f" {b:02x}" for b in chunk).ljust(16 * 3)
        text = "".join(chr(b) if 0x20 <= b < 0x7F else "." for b in chunk)
        lines.append(f"{hexpart}  {text}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Report framer
# ---------------------------------------------------------------------------
class Command(NamedTuple):
    op: int
    reg: int
    arg: int = 0x00


def build_report(command: Command) -> bytes:
    """Build the 65-byte outbound report: 00 | op | reg | arg | zero padding."""
    for name, value in zip(Command._fields, command):
        if not 0 <= value <= 0xFF:
            raise ValueError(f"{name} must be 0x00-0xff, got {value!r}")
    buf = bytearray(REPORT_OUT_SIZE)
    buf[1], buf[2], buf[3] = command
    return bytes(buf)


def send_and_receive(transport, command: Command, size: int = 0) -> bytes:
    """Run one request/response exchange and return up to ``size`` payload bytes.

    ``transport`` needs ``write(data) -> int`` and ``read(size) -> bytes``.
    Any short transfer or op/reg mismatch raises; nothing is retried.
    """
    report = build_report(command)
    try:
        written = transport.write(report)
    except OSError as exc:
        log.warning("write failed for cmd %02x %02x %02x: %s", *command, exc)
        raise TransportError("write", REPORT_OUT_SIZE, -1) from exc
    if written != REPORT_OUT_SIZE:
        log.warning("short write %s/%d for cmd %02x %02x %02x",
                    written, REPORT_OUT_SIZE, *command)
        raise TransportError("write", REPORT_OUT_SIZE, written)

    try:
        response = bytes(transport.read(REPORT_IN_SIZE))
    except OSError as exc:
        log.warning("read failed for cmd %02x %02x %02x: %s", *command, exc)
        raise TransportError("read", REPORT_IN_SIZE, -1) from exc
    if len(response) != REPORT_IN_SIZE:
        if response:
            log.warning("short read %d/%d for cmd %02x %02x %02x:\n%s",
                        len(response), REPORT_IN_SIZE, *command,
                        hexdump(response))
        else:
            log.warning("empty read for cmd %02x %02x %02x", *command)
        raise TransportError("read", REPORT_IN_SIZE, len(response), response)

    if response[0] != command.op or response[1] != command.reg:
        log.warning("unexpected response %02x %02x to cmd %02x %02x %02x:\n%s",
                    response[0], response[1], *command, hexdump(response))
        raise ProtocolMismatchError(
            (command.op, command.reg), (response[0], response[1]), response
        )

    log.debug("cmd %02x %02x %02x ok", *command)
    size = max(0, min(size, PAYLOAD_MAX))
    return response[2 : 2 + size]


def _cstring(data: bytes) -> str:
    """Decode a NUL-terminated ASCII payload, ignoring bytes after the NUL."""
    return data.split(b"\x00", 1)[0].decode("ascii", errors="replace")


# ---------------------------------------------------------------------------
# Device gating and discovery
# ---------------------------------------------------------------------------
def is_supported(vendor_id: int, product_id: int) -> bool:
    return vendor_id == VENDOR_ID and product_id in PRODUCTS


def check_eligible(vendor_id: int, product_id: int):
    """Raise DeviceNotEligibleError unless the IDs name a supported PSU."""
    if not is_supported(vendor_id, product_id):
        raise DeviceNotEligibleError(vendor_id, product_id)


def find_devices() -> list[dict]:
    """List hidapi enumeration entries for supported PSUs."""
    found = []
    for info in hid.enumerate(VENDOR_ID, 0):
        if is_supported(info["vendor_id"], info["product_id"]):
            found.append(info)
    return found


def _unreadable_hidraw_nodes() -> list[str]:
    nodes = []
    for i in range(16):
        name = f"/dev/hidraw{i}"
        if os.path.exists(name) and not os.access(name, os.R_OK | os.W_OK):
            nodes.append(name)
    return nodes


class HidTransport:
    """Blocking request/response handle over a hidapi device.

    ``timeout_ms`` of None blocks until a report arrives.
    """

    def __init__(self, path: bytes, vendor_id: int, product_id: int,
                 timeout_ms: Optional[int] = None):
        self.path = path
        self.vendor_id = vendor_id
        self.product_id = product_id
        if timeout_ms is not None and timeout_ms <= 0:
            raise ValueError(f"timeout must be positive, got {timeout_ms}")
        self._timeout_ms = timeout_ms
        self._dev = hid.device()
        try:
            self._dev.open_path(path)
        except OSError as exc:
            raise DeviceNotFoundError(
                f"open {path.decode(errors='replace')}: {exc}"
            ) from exc
        self._dev.set_nonblocking(False)

    def write(self, data: bytes) -> int:
        return self._dev.write(data)

    def read(self, size: int) -> bytes:
        if self._timeout_ms is not None:
            return bytes(self._dev.read(size, self._timeout_ms))
        return bytes(self._dev.read(size))

    def close(self):
        self._dev.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


def open_device(path=None, timeout_ms: Optional[int] = None) -> HidTransport:
    """Open a supported PSU, either the first one found or the given path.

    The vendor/product IDs are checked from the enumeration before the device
    is opened, so a rejected device never sees any traffic.
    """
    if path is None:
        devices = find_devices()
        if not devices:
            msg = "No compatible devices found."
            unreadable = _unreadable_hidraw_nodes()
            if unreadable:
                msg += (" At least one device could not be checked because of"
                        " lack of permissions for /dev/hidraw*.")
            raise DeviceNotFoundError(msg)
        info = devices[0]
    else:
        if isinstance(path, str):
            path = path.encode()
        for info in hid.enumerate():
            if info["path"] == path:
                break
        else:
            raise DeviceNotFoundError(f"{path.decode(errors='replace')}: no such HID device")
        check_eligible(info["vendor_id"], info["product_id"])

    log.debug("opening %s (%04x:%04x)", info["path"], info["vendor_id"],
              info["product_id"])
    return HidTransport(info["path"], info["vendor_id"], info["product_id"],
                        timeout_ms=timeout_ms)


# ---------------------------------------------------------------------------
# Telemetry snapshot
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class RailReading:
    index: int
    volts: float
    amps: float
    watts: float

    @property
    def name(self) -> str:
        return RAIL_NAMES[self.index]


@dataclass(frozen=True)
class TelemetrySnapshot:
    """One complete pass over the telemetry registers."""

    name: str
    vendor: str
    product: str
    powered_seconds: int
    uptime_seconds: int
    temp1: float
    temp2: float
    fan_rpm: float
    supply_volts: float
    total_watts: float
    rails: tuple

    def as_dict(self) -> dict:
        return asdict(self)


def format_duration(seconds: int) -> str:
    """Render seconds like ``123456 (1d. 10h)``."""
    return f"{seconds} ({seconds // 86400}d. {seconds // 3600 % 24}h)"


# ---------------------------------------------------------------------------
# CorsairPSU class
# ---------------------------------------------------------------------------
class CorsairPSU:
    """Python API for Corsair RMi / HXi power supplies.

    Usage::

        with CorsairPSU() as psu:
            print(psu.read_telemetry())

    Only one session per device at a time: the PSU keeps a single hidden
    "selected rail" state shared by all clients.
    """

    def __init__(self, path=None, transport=None,
                 timeout_ms: Optional[int] = None):
        self._path = path
        self._timeout_ms = timeout_ms
        self._transport = transport
        # Last rail successfully selected in this session, None when unknown.
        self.selected_rail: Optional[int] = None

    # -- Properties ----------------------------------------------------------

    @property
    def vendor_id(self) -> Optional[int]:
        return getattr(self._transport, "vendor_id", None)

    @property
    def product_id(self) -> Optional[int]:
        return getattr(self._transport, "product_id", None)

    @property
    def model(self) -> Optional[str]:
        return PRODUCTS.get(self.product_id)

    @property
    def connected(self) -> bool:
        return self._transport is not None

    # -- Context manager -----------------------------------------------------

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()
        return False

    # -- Connection lifecycle ------------------------------------------------

    def connect(self):
        """Open the HID device unless a transport was supplied."""
        if self._transport is None:
            self._transport = open_device(self._path, timeout_ms=self._timeout_ms)
        elif self.vendor_id is not None:
            check_eligible(self.vendor_id, self.product_id)
        self.selected_rail = None

    def disconnect(self):
        """Close the HID handle. No protocol traffic is sent."""
        if self._transport is not None and hasattr(self._transport, "close"):
            self._transport.close()
        self._transport = None

    # -- Low-level I/O -------------------------------------------------------

    def _command(self, op: int, reg: int, arg: int = 0x00, size: int = 0) -> bytes:
        if self._transport is None:
            raise PSUError("not connected")
        return send_and_receive(self._transport, Command(op, reg, arg), size)

    # -- Register access -----------------------------------------------------

    def read_raw(self, reg: int, size: int = PAYLOAD_MAX) -> bytes:
        """Read up to ``size`` raw payload bytes from a register."""
        return self._command(OP_READ, reg, size=size)

    def read_u16(self, reg: int) -> int:
        """Read a little-endian 16-bit register."""
        return struct.unpack("<H", self._command(OP_READ, reg, size=2))[0]

    def read_u32(self, reg: int) -> int:
        """Read a little-endian 32-bit register."""
        return struct.unpack("<I", self._command(OP_READ, reg, size=4))[0]

    def read_linear(self, reg: int) -> float:
        """Read a 16-bit register and decode it as LINEAR11."""
        return decode_linear11(self.read_u16(reg))

    def read_string(self, reg: int) -> str:
        return _cstring(self.read_raw(reg))

    def read_identity(self) -> bytes:
        """Read the device's self-reported name (raw payload)."""
        return self._command(OP_IDENTITY, REG_IDENTITY, size=PAYLOAD_MAX)

    def select_output_rail(self, index: int):
        """Point the rail-scoped registers (0x8b, 0x8c, 0x96) at rail ``index``."""
        if index not in range(RAIL_COUNT):
            raise ValueError(f"Rail index must be 0-{RAIL_COUNT - 1}, got {index}")
        self.selected_rail = None
        self._command(OP_SELECT_RAIL, REG_RAIL_SELECT, index)
        self.selected_rail = index

    def read_rail(self, index: int) -> RailReading:
        """Select a rail and read its volts/amps/watts.

        Leaves the rail selected; callers restore rail 0 when done.
        """
        self.select_output_rail(index)
        return RailReading(
            index=index,
            volts=self.read_linear(REG_RAIL_VOLTS),
            amps=self.read_linear(REG_RAIL_AMPS),
            watts=self.read_linear(REG_RAIL_WATTS),
        )

    # -- Telemetry session ---------------------------------------------------

    def read_telemetry(self) -> TelemetrySnapshot:
        """Read every telemetry register in a fixed order.

        Any failure propagates unchanged and no snapshot is produced. On
        success rail 0 is selected again so later clients see the default.
        """
        name = _cstring(self.read_identity())
        vendor = self.read_string(REG_VENDOR)
        product = self.read_string(REG_PRODUCT)
        powered = self.read_u32(REG_POWERED)
        uptime = self.read_u32(REG_UPTIME)

        temp1 = self.read_linear(REG_TEMP1)
        temp2 = self.read_linear(REG_TEMP2)
        fan_rpm = self.read_linear(REG_FAN_RPM)
        supply_volts = self.read_linear(REG_SUPPLY_VOLTS)
        total_watts = self.read_linear(REG_TOTAL_WATTS)

        rails = tuple(self.read_rail(i) for i in range(RAIL_COUNT))
        self.select_output_rail(0)

        return TelemetrySnapshot(
            name=name,
            vendor=vendor,
            product=product,
            powered_seconds=powered,
            uptime_seconds=uptime,
            temp1=temp1,
            temp2=temp2,
            fan_rpm=fan_rpm,
            supply_volts=supply_volts,
            total_watts=total_watts,
            rails=rails,
        )


def run_session(transport) -> TelemetrySnapshot:
    """Take one telemetry snapshot over an already-open transport."""
    psu = CorsairPSU(transport=transport)
    psu.connect()
    return psu.read_telemetry()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------
def _print_report(snap: TelemetrySnapshot):
    def line(label, value):
        print(f"{label + ':':<16}{value}")

    line("name", f"'{snap.name}'")
    line("vendor", f"'{snap.vendor}'")
    line("product", f"'{snap.product}'")
    line("powered", format_duration(snap.powered_seconds))
    line("uptime", format_duration(snap.uptime_seconds))
    line("temp1", f"{snap.temp1:5.1f}")
    line("temp2", f"{snap.temp2:5.1f}")
    line("fan rpm", f"{snap.fan_rpm:5.1f}")
    line("supply volts", f"{snap.supply_volts:5.1f}")
    line("total watts", f"{snap.total_watts:5.1f}")
    for rail in snap.rails:
        line(f"output{rail.index} volts", f"{rail.volts:5.1f}")
        line(f"output{rail.index} amps", f"{rail.amps:5.1f}")
        line(f"output{rail.index} watts", f"{rail.watts:5.1f}")


def _positive_int(text):
    value = int(text)
    if value <= 0:
        raise ValueError(text)
    return value


def _cli(argv=None):
    import argparse
    import json as _json
    import sys

    parser = argparse.ArgumentParser(
        prog="corsairpsu",
        description="Corsair RMi/HXi power supply telemetry",
    )
    parser.add_argument(
        "-d", "--device",
        default=os.environ.get("CORSAIRPSU_DEVICE"),
        help="hidraw device path (default: first supported PSU found)",
    )
    parser.add_argument(
        "--timeout", type=_positive_int, default=None, metavar="MS",
        help="read timeout in milliseconds (default: block)",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="log protocol traffic to stderr",
    )
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("list", help="list supported PSUs")
    sub.add_parser("info", help="show identity strings")
    sub.add_parser("status", help="read all telemetry (default)")
    sub.add_parser("json", help="read all telemetry as JSON")

    p = sub.add_parser("rail", help="read one output rail")
    p.add_argument("index", type=int, choices=range(RAIL_COUNT), metavar="N")

    p = sub.add_parser("raw", help="dump raw bytes of a register")
    p.add_argument("reg", type=lambda s: int(s, 0), help="register, e.g. 0xd4")
    p.add_argument("--size", type=int, default=PAYLOAD_MAX)

    args = parser.parse_args(argv)
    cmd = args.command or "status"

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if cmd == "list":
        devices = find_devices()
        if not devices:
            print("No compatible devices found.", file=sys.stderr)
            sys.exit(1)
        for info in devices:
            print(f"{info['path'].decode(errors='replace')}  "
                  f"{info['vendor_id']:04x}:{info['product_id']:04x}  "
                  f"{PRODUCTS[info['product_id']]}")
        return

    try:
        with CorsairPSU(args.device, timeout_ms=args.timeout) as psu:
            if cmd == "info":
                print(f"Model:   {psu.model}")
                print(f"Name:    {_cstring(psu.read_identity())}")
                print(f"Vendor:  {psu.read_string(REG_VENDOR)}")
                print(f"Product: {psu.read_string(REG_PRODUCT)}")

            elif cmd == "status":
                _print_report(psu.read_telemetry())

            elif cmd == "json":
                print(_json.dumps(psu.read_telemetry().as_dict(), indent=2))

            elif cmd == "rail":
                rail = psu.read_rail(args.index)
                psu.select_output_rail(0)
                print(f"output{rail.index} ({rail.name}): {rail.volts:.2f} V  "
                      f"{rail.amps:.2f} A  {rail.watts:.1f} W")

            elif cmd == "raw":
                print(hexdump(psu.read_raw(args.reg, args.size)))

    except (ValueError, PSUError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    _cli()
