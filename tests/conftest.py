"""Shared fixtures for Corsair PSU tests."""

import struct

import pytest

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from corsairpsu import (
    CorsairPSU,
    OP_IDENTITY,
    OP_READ,
    OP_SELECT_RAIL,
    REG_RAIL_AMPS,
    REG_RAIL_VOLTS,
    REG_RAIL_WATTS,
    REPORT_IN_SIZE,
)

RAIL_REGS = (REG_RAIL_VOLTS, REG_RAIL_AMPS, REG_RAIL_WATTS)

# Raw LINEAR11 words served by the simulated PSU
TEMP1_RAW = 0x1199      # 409 * 2**2
TEMP2_RAW = 0xF04F      # 79 * 2**-2 = 19.75
FAN_RPM_RAW = 0x0000    # fan stopped
SUPPLY_VOLTS_RAW = 0xF8E6  # 230 * 2**-1 = 115.0
TOTAL_WATTS_RAW = 0x0864   # 100 * 2**1 = 200.0

# rail index -> (volts, amps, watts) raw words
RAIL_RAW = {
    0: (0xD304, 0xF01E, 0xF8B4),  # 12.0625 V, 7.5 A, 90.0 W
    1: (0xD140, 0xF00C, 0xF028),  # 5.0 V, 3.0 A, 10.0 W
    2: (0xC9A6, 0xF004, 0xF00C),  # 3.296875 V, 1.0 A, 3.0 W
}


def _u16(word):
    return struct.pack("<H", word)


def _str(text):
    return text.encode("ascii") + b"\x00"


class SimulatedPSU:
    """In-memory stand-in for the HID handle of an RMi/HXi PSU.

    Answers reports the way the device does, tracks the hidden rail
    selection, and records every command in ``log``. Rail-scoped reads that
    do not follow a selector write are recorded in ``violations``.
    """

    def __init__(self):
        self.registers = {
            0x99: _str("CORSAIR"),
            0x9A: _str("RM650i"),
            0xD1: struct.pack("<I", 123456),
            0xD2: struct.pack("<I", 7300),
            0x8D: _u16(TEMP1_RAW),
            0x8E: _u16(TEMP2_RAW),
            0x90: _u16(FAN_RPM_RAW),
            0x88: _u16(SUPPLY_VOLTS_RAW),
            0xEE: _u16(TOTAL_WATTS_RAW),
            0xD4: bytes([0xB9, 0xBD, 0xEB, 0xFE]),
        }
        self.identity = _str("TestPSU")
        self.rail = 0
        self.log = []
        self.violations = []
        self.writes = []
        self._pending = None

        # Fault injection
        self.fail_on = None      # (op, reg) that misbehaves
        self.fault = None        # "mismatch", "short_read", "short_write", "empty"
        self.closed = False

    def write(self, data):
        data = bytes(data)
        self.writes.append(data)
        op, reg, arg = data[1], data[2], data[3]
        self.log.append((op, reg, arg))
        if self.fail_on == (op, reg) and self.fault == "short_write":
            return len(data) - 1
        self._pending = (op, reg, arg)
        return len(data)

    def read(self, size):
        op, reg, arg = self._pending
        self._pending = None
        payload = b""
        if op == OP_IDENTITY:
            payload = self.identity
        elif op == OP_SELECT_RAIL:
            self.rail = arg
        elif op == OP_READ:
            if reg in RAIL_REGS:
                payload = _u16(RAIL_RAW[self.rail][RAIL_REGS.index(reg)])
                if not self._follows_select():
                    self.violations.append((reg, self.rail))
            else:
                payload = self.registers.get(reg, b"")

        resp = bytearray(b"\xaa" * REPORT_IN_SIZE)  # tail is not zeroed
        resp[0], resp[1] = op, reg
        resp[2 : 2 + len(payload)] = payload

        if self.fail_on == (op, reg):
            if self.fault == "mismatch":
                resp[1] = (reg + 1) & 0xFF
            elif self.fault == "short_read":
                return bytes(resp[:10])
            elif self.fault == "empty":
                return b""
        return bytes(resp)

    def _follows_select(self):
        """True if only rail reads sit between this read and a selector write."""
        for op, reg, _arg in reversed(self.log[:-1]):
            if op == OP_SELECT_RAIL:
                return True
            if not (op == OP_READ and reg in RAIL_REGS):
                return False
        return False

    def close(self):
        self.closed = True


@pytest.fixture
def sim():
    return SimulatedPSU()


@pytest.fixture
def psu(sim):
    """A CorsairPSU wired to the simulated device."""
    p = CorsairPSU(transport=sim)
    p.connect()
    return p
