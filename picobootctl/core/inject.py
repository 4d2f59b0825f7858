"""Operations that run small Thumb stubs on the device through EXEC.

Each stub is written to scratch RAM together with its operands, executed,
and its result read back. The stub bytes are fixed encodings; the operand
offsets below are where each stub loads from or stores to (PC-relative).
"""

from __future__ import annotations

import logging
import struct

from picobootctl.core.connection import Connection
from picobootctl.core.errors import PicobootError
from picobootctl.core.protocol import ExclusiveType

LOGGER = logging.getLogger(__name__)

# Free SRAM while the bootrom is running.
PEEK_POKE_CODE_LOC = 0x20000000

# ldr r0, [pc, #4]; ldr r1, [pc, #8]; str r0, [r1, #0]; bx lr
# followed by the data word (offset 8) and target address (offset 12).
POKE_STUB = bytes.fromhex("0148 0249 0860 7047")
POKE_PROG_SIZE = len(POKE_STUB) + 8

# ldr r0, [pc, #8]; ldr r0, [r0, #0]; mov r1, pc; str r0, [r1, #4]; bx lr; nop
# followed by the address word (offset 12), which is overwritten with the result.
PEEK_STUB = bytes.fromhex("0248 0068 7946 4860 7047 c046")
PEEK_PROG_SIZE = len(PEEK_STUB) + 4

# XIP SRAM on the RP2040; unused while XIP is exited.
FLASH_ID_CODE_LOC = 0x15000000
FLASH_ID_STUB_SIZE = 152

# flash_get_unique_id_raw: sends the 0x4b read-unique-id command (13 byte
# transfer) through the SSI and stores the reply in a buffer at offset 28.
FLASH_ID_STUB = bytes.fromhex(
    "02a0 06a1 004a 11e0 0d000000 4b000000"
    + "00" * 28
    + "8023 f0b5 174e 9b00 3468 6340 c024 a400"
    "2340 154c 2360 c024 1300 6405 1700 1f43"
    "06d1 c023 3268 9b00 9343 0f4a 1360 f0bd"
    "0825 a76a 3d40 ac46 0225 2f42 08d0 002a"
    "06d0 9f1a 0d2f 03d8 0778 013a 2766 0130"
    "6546 002d e2d0 002b e0d0 276e 013b 0f70"
    "0131 dbe7"
    "0c800140 0c900140"
)
# reply = command byte + 4 dummy bytes + 8 byte id
FLASH_ID_UID_ADDR = FLASH_ID_CODE_LOC + 28 + 1 + 4

assert len(FLASH_ID_STUB) == FLASH_ID_STUB_SIZE


def poke(connection: Connection, address: int, value: int) -> None:
    """Store one 32-bit word at `address`."""
    LOGGER.debug("POKE (D)%08x -> (A)%08x", value, address)
    prog = POKE_STUB + struct.pack("<II", value, address)
    connection.write(PEEK_POKE_CODE_LOC, prog)
    connection.exec(PEEK_POKE_CODE_LOC)


def peek(connection: Connection, address: int) -> int:
    """Load one 32-bit word from `address`.

    The stub's store-back location has not been validated on hardware.
    """
    LOGGER.debug("PEEK %08x", address)
    prog = PEEK_STUB + struct.pack("<I", address)
    connection.write(PEEK_POKE_CODE_LOC, prog)
    connection.exec(PEEK_POKE_CODE_LOC)
    data = connection.read(PEEK_POKE_CODE_LOC + len(PEEK_STUB), 4)
    return struct.unpack("<I", data)[0]


def flash_id(connection: Connection) -> int:
    """Return the 64-bit unique ID of the attached QSPI flash.

    Exclusive access is requested first; a refused lock does not stop the
    read. The lock is always released afterwards, even when one of the
    steps fails, and the step's error is the one raised.
    """
    LOGGER.debug("GET FLASH ID")
    try:
        connection.exclusive_access(ExclusiveType.EXCLUSIVE)
    except PicobootError as exc:
        LOGGER.debug("Exclusive access for flash ID not granted: %s", exc)
    try:
        # the stub drives the SSI directly, which XIP mode would contend with
        connection.exit_xip()
        connection.write(FLASH_ID_CODE_LOC, FLASH_ID_STUB)
        connection.exec(FLASH_ID_CODE_LOC)
        raw = connection.read(FLASH_ID_UID_ADDR, 8)
    finally:
        _release_exclusive(connection)
    # bytes arrive most significant first
    return int.from_bytes(raw, "big")


def _release_exclusive(connection: Connection) -> None:
    try:
        connection.exclusive_access(ExclusiveType.NOT_EXCLUSIVE)
    except PicobootError as exc:
        LOGGER.warning("Failed to release exclusive access: %s", exc)
        connection.exclusive = False
