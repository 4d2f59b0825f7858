"""PICOBOOT wire records, opcodes, and the per-opcode state cache effects.

Every record is packed little-endian with the fixed layouts used by the
RP2040/RP2350 bootrom. A command is a 32 byte header: magic, token, opcode,
declared args size, two pad bytes, transfer length, then a 16 byte args
region whose contents depend on the opcode.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import Enum, IntEnum, IntFlag

from picobootctl.core.model import XipState

PICOBOOT_MAGIC = 0x431FD10B

VENDOR_ID_RASPBERRY_PI = 0x2E8A
PRODUCT_ID_RP2040_USBBOOT = 0x0003
PRODUCT_ID_PICOPROBE = 0x0004
PRODUCT_ID_MICROPYTHON = 0x0005
PRODUCT_ID_STDIO_USB = 0x0009
PRODUCT_ID_RP2040_STDIO_USB = 0x000A
PRODUCT_ID_RP2350_USBBOOT = 0x000F

VENDOR_INTERFACE_CLASS = 0xFF
RESET_INTERFACE_SUBCLASS = 0x00
RESET_INTERFACE_PROTOCOL = 0x01

# Interface control requests
PICOBOOT_IF_RESET = 0x41
PICOBOOT_IF_CMD_STATUS = 0x42
REQUEST_TYPE_VENDOR_INTERFACE_OUT = 0x41
REQUEST_TYPE_VENDOR_INTERFACE_IN = 0xC1
REQUEST_TYPE_STANDARD_ENDPOINT_IN = 0x82
REQUEST_GET_STATUS = 0x00

ENDPOINT_DIR_IN = 0x80
READ_SENTINEL = 0xAA

_HEADER = struct.Struct("<IIBBxxI")
_ARGS_SIZE = 16
COMMAND_SIZE = _HEADER.size + _ARGS_SIZE
_STATUS = struct.Struct("<IIBB6x")
STATUS_SIZE = _STATUS.size


class Opcode(IntEnum):
    EXCLUSIVE_ACCESS = 0x01
    REBOOT = 0x02
    FLASH_ERASE = 0x03
    READ = 0x84
    WRITE = 0x05
    EXIT_XIP = 0x06
    ENTER_CMD_XIP = 0x07
    EXEC = 0x08
    VECTORIZE_FLASH = 0x09
    REBOOT2 = 0x0A
    GET_INFO = 0x8B
    OTP_READ = 0x8C
    OTP_WRITE = 0x0D

    @property
    def device_to_host(self) -> bool:
        return bool(self & ENDPOINT_DIR_IN)


class StatusCode(IntEnum):
    OK = 0
    UNKNOWN_CMD = 1
    INVALID_CMD_LENGTH = 2
    INVALID_TRANSFER_LENGTH = 3
    INVALID_ADDRESS = 4
    BAD_ALIGNMENT = 5
    INTERLEAVED_WRITE = 6
    REBOOTING = 7
    UNKNOWN_ERROR = 8
    INVALID_STATE = 9
    NOT_PERMITTED = 10
    INVALID_ARG = 11
    BUFFER_TOO_SMALL = 12
    PRECONDITION_NOT_MET = 13
    MODIFIED_DATA = 14
    INVALID_DATA = 15
    NOT_FOUND = 16
    UNSUPPORTED_MODIFICATION = 17


class ExclusiveType(IntEnum):
    NOT_EXCLUSIVE = 0
    EXCLUSIVE = 1
    EXCLUSIVE_AND_EJECT = 2


class InfoType(IntEnum):
    SYS = 1
    PARTITION_TABLE = 2
    UF2_TARGET_PARTITION = 3
    UF2_STATUS = 4


class SysInfoFlags(IntFlag):
    CHIP_INFO = 0x0001
    CRITICAL = 0x0002
    CPU_INFO = 0x0004
    FLASH_DEV_INFO = 0x0008
    BOOT_RANDOM = 0x0010
    BOOT_INFO = 0x0040


class Reboot2Flags(IntFlag):
    NORMAL = 0x0
    BOOTSEL = 0x2
    RAM_IMAGE = 0x3
    FLASH_UPDATE = 0x4
    PC_SP = 0xD
    TO_ARM = 0x10
    TO_RISCV = 0x20
    NO_RETURN_ON_SUCCESS = 0x100


@dataclass(frozen=True)
class Command:
    """One PICOBOOT command, packed fresh for every send."""

    opcode: Opcode
    args: bytes = b""
    transfer_length: int = 0
    args_size: int | None = None

    def __post_init__(self) -> None:
        if len(self.args) > _ARGS_SIZE:
            raise ValueError(f"{self.opcode.name} args exceed {_ARGS_SIZE} bytes")

    @property
    def device_to_host(self) -> bool:
        return self.opcode.device_to_host

    @property
    def requested_exclusive(self) -> bool:
        return self.opcode is Opcode.EXCLUSIVE_ACCESS and bool(self.args) and self.args[0] != 0

    def pack(self, token: int) -> bytes:
        size = len(self.args) if self.args_size is None else self.args_size
        header = _HEADER.pack(PICOBOOT_MAGIC, token, self.opcode, size, self.transfer_length)
        return header + self.args.ljust(_ARGS_SIZE, b"\x00")


def address_command(opcode: Opcode, address: int) -> Command:
    return Command(opcode, struct.pack("<I", address))


def range_command(opcode: Opcode, address: int, size: int, *, transfer: bool = False) -> Command:
    return Command(
        opcode,
        struct.pack("<II", address, size),
        transfer_length=size if transfer else 0,
    )


def exclusive_command(exclusive: ExclusiveType) -> Command:
    return Command(Opcode.EXCLUSIVE_ACCESS, struct.pack("<B", exclusive))


def reboot_command(pc: int, sp: int, delay_ms: int) -> Command:
    return Command(Opcode.REBOOT, struct.pack("<III", pc, sp, delay_ms))


def reboot2_command(flags: int, delay_ms: int, param0: int = 0, param1: int = 0) -> Command:
    return Command(Opcode.REBOOT2, struct.pack("<IIII", flags, delay_ms, param0, param1))


def otp_command(opcode: Opcode, row: int, row_count: int, ecc: bool, length: int) -> Command:
    return Command(opcode, struct.pack("<HHB", row, row_count, int(ecc)), transfer_length=length)


def get_info_command(info_type: InfoType, params: tuple[int, ...], length: int) -> Command:
    words = (tuple(params) + (0, 0, 0))[:3]
    return Command(
        Opcode.GET_INFO,
        struct.pack("<BBHIII", info_type, 0, 0, *words),
        transfer_length=length,
    )


@dataclass(frozen=True)
class CommandStatus:
    token: int
    status_code: int
    opcode: int
    in_progress: bool

    @classmethod
    def unpack(cls, data: bytes) -> CommandStatus:
        token, status_code, opcode, in_progress = _STATUS.unpack(data)
        return cls(token=token, status_code=status_code, opcode=opcode, in_progress=bool(in_progress))

    @property
    def status(self) -> StatusCode | int:
        try:
            return StatusCode(self.status_code)
        except ValueError:
            return self.status_code


class CacheEffectKind(Enum):
    PRESERVE = "preserve"
    INVALIDATE = "invalidate"
    SET = "set"
    FROM_REQUEST = "from_request"


CacheValue = XipState | bool | None


@dataclass(frozen=True)
class CacheEffect:
    kind: CacheEffectKind
    value: CacheValue = None

    def apply(self, saved: CacheValue, default: CacheValue, requested: CacheValue = None) -> CacheValue:
        if self.kind is CacheEffectKind.PRESERVE:
            return saved
        if self.kind is CacheEffectKind.SET:
            return self.value
        if self.kind is CacheEffectKind.FROM_REQUEST:
            return requested
        return default


PRESERVE = CacheEffect(CacheEffectKind.PRESERVE)
INVALIDATE = CacheEffect(CacheEffectKind.INVALIDATE)
FROM_REQUEST = CacheEffect(CacheEffectKind.FROM_REQUEST)


def set_to(value: XipState | bool) -> CacheEffect:
    return CacheEffect(CacheEffectKind.SET, value)


# opcode -> (XIP cache effect, exclusive cache effect), applied after a full ack
CACHE_EFFECTS: dict[Opcode, tuple[CacheEffect, CacheEffect]] = {
    Opcode.EXCLUSIVE_ACCESS: (INVALIDATE, FROM_REQUEST),
    Opcode.REBOOT: (INVALIDATE, INVALIDATE),
    Opcode.FLASH_ERASE: (INVALIDATE, INVALIDATE),
    Opcode.READ: (PRESERVE, PRESERVE),
    Opcode.WRITE: (PRESERVE, PRESERVE),
    Opcode.EXIT_XIP: (set_to(XipState.INACTIVE), PRESERVE),
    Opcode.ENTER_CMD_XIP: (set_to(XipState.ACTIVE), PRESERVE),
    Opcode.EXEC: (INVALIDATE, INVALIDATE),
    Opcode.VECTORIZE_FLASH: (INVALIDATE, INVALIDATE),
    Opcode.REBOOT2: (INVALIDATE, INVALIDATE),
    Opcode.GET_INFO: (INVALIDATE, INVALIDATE),
    Opcode.OTP_READ: (INVALIDATE, INVALIDATE),
    Opcode.OTP_WRITE: (INVALIDATE, INVALIDATE),
}
