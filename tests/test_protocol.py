from __future__ import annotations

import struct

import pytest

from picobootctl.core.model import XipState
from picobootctl.core.protocol import (
    COMMAND_SIZE,
    FROM_REQUEST,
    INVALIDATE,
    PICOBOOT_MAGIC,
    PRESERVE,
    CacheEffectKind,
    Command,
    CommandStatus,
    ExclusiveType,
    InfoType,
    Opcode,
    StatusCode,
    SysInfoFlags,
    exclusive_command,
    get_info_command,
    otp_command,
    range_command,
    reboot2_command,
    set_to,
)


def test_range_command_header_layout() -> None:
    packed = range_command(Opcode.READ, 0x10000000, 0x100, transfer=True).pack(7)
    assert len(packed) == COMMAND_SIZE
    magic, token, opcode, args_size, transfer = struct.unpack_from("<IIBBxxI", packed)
    assert (magic, token, opcode, args_size, transfer) == (PICOBOOT_MAGIC, 7, 0x84, 8, 0x100)
    assert struct.unpack_from("<II", packed, 16) == (0x10000000, 0x100)
    assert packed[24:] == b"\x00" * 8


def test_direction_comes_from_opcode_high_bit() -> None:
    assert Opcode.READ.device_to_host
    assert Opcode.GET_INFO.device_to_host
    assert Opcode.OTP_READ.device_to_host
    assert not Opcode.WRITE.device_to_host
    assert not Opcode.OTP_WRITE.device_to_host


def test_otp_and_get_info_argument_sizes() -> None:
    otp = otp_command(Opcode.OTP_READ, 0x40, 2, True, 4)
    assert otp.pack(1)[9] == 5
    assert otp.transfer_length == 4

    info = get_info_command(InfoType.SYS, (SysInfoFlags.CHIP_INFO,), 256)
    packed = info.pack(1)
    assert packed[9] == 16
    assert struct.unpack_from("<BBHIII", packed, 16) == (1, 0, 0, 1, 0, 0)


def test_reboot2_argument_order() -> None:
    packed = reboot2_command(0x3, 500, 0x20000000, 0x20082000).pack(1)
    assert struct.unpack_from("<IIII", packed, 16) == (0x3, 500, 0x20000000, 0x20082000)


def test_oversized_args_rejected() -> None:
    with pytest.raises(ValueError):
        Command(Opcode.WRITE, b"\x00" * 17)


def test_exclusive_request_flag() -> None:
    assert exclusive_command(ExclusiveType.EXCLUSIVE).requested_exclusive
    assert not exclusive_command(ExclusiveType.NOT_EXCLUSIVE).requested_exclusive


def test_status_unpack_keeps_unknown_codes() -> None:
    known = CommandStatus.unpack(struct.pack("<IIBB6x", 3, 5, 0x05, 1))
    assert known.status is StatusCode.BAD_ALIGNMENT
    assert known.in_progress is True

    unknown = CommandStatus.unpack(struct.pack("<IIBB6x", 3, 99, 0x05, 0))
    assert unknown.status == 99


def test_cache_effect_kinds() -> None:
    assert PRESERVE.apply(XipState.ACTIVE, XipState.UNKNOWN) is XipState.ACTIVE
    assert set_to(XipState.INACTIVE).apply(XipState.ACTIVE, XipState.UNKNOWN) is XipState.INACTIVE
    assert FROM_REQUEST.apply(False, False, True) is True
    assert INVALIDATE.apply(XipState.ACTIVE, XipState.UNKNOWN) is XipState.UNKNOWN
    assert set_to(True).kind is CacheEffectKind.SET
