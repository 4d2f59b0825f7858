from __future__ import annotations

import struct

import pytest

from picobootctl.core import inject
from picobootctl.core.errors import TransportError
from picobootctl.core.protocol import ExclusiveType, Opcode, StatusCode


def test_flash_id_stub_layout() -> None:
    assert len(inject.FLASH_ID_STUB) == 152
    # 13 byte transfer length and the 0x4b read-unique-id command
    assert struct.unpack_from("<II", inject.FLASH_ID_STUB, 8) == (13, 0x4B)
    assert inject.FLASH_ID_UID_ADDR == 0x15000021


def test_flash_id_reads_most_significant_byte_first(connection, handle) -> None:
    handle.flash_uid = bytes(range(1, 9))
    assert inject.flash_id(connection) == 0x0102030405060708
    assert handle.commands == [
        Opcode.EXCLUSIVE_ACCESS,
        Opcode.EXIT_XIP,
        Opcode.WRITE,
        Opcode.EXEC,
        Opcode.READ,
        Opcode.EXCLUSIVE_ACCESS,
    ]
    assert handle.exclusive == ExclusiveType.NOT_EXCLUSIVE
    assert connection.exclusive is False


@pytest.mark.parametrize("failing", [Opcode.EXIT_XIP, Opcode.WRITE, Opcode.EXEC, Opcode.READ])
def test_flash_id_releases_exclusive_access_on_failure(connection, handle, failing) -> None:
    handle.failures[failing] = StatusCode.NOT_PERMITTED
    with pytest.raises(TransportError, match=failing.name):
        inject.flash_id(connection)
    assert handle.commands[-1] is Opcode.EXCLUSIVE_ACCESS
    assert handle.exclusive == ExclusiveType.NOT_EXCLUSIVE


def test_flash_id_continues_when_lock_is_refused(connection, handle, monkeypatch) -> None:
    handle.flash_uid = bytes(range(1, 9))
    request = connection.exclusive_access

    def exclusive_access(kind=ExclusiveType.EXCLUSIVE):
        if kind == ExclusiveType.EXCLUSIVE:
            raise TransportError("lock stalled")
        request(kind)

    monkeypatch.setattr(connection, "exclusive_access", exclusive_access)
    assert inject.flash_id(connection) == 0x0102030405060708
    assert handle.commands == [
        Opcode.EXIT_XIP,
        Opcode.WRITE,
        Opcode.EXEC,
        Opcode.READ,
        Opcode.EXCLUSIVE_ACCESS,
    ]


def test_flash_id_release_failure_keeps_original_error(connection, handle, monkeypatch) -> None:
    handle.failures[Opcode.EXEC] = StatusCode.NOT_PERMITTED
    acquire = connection.exclusive_access

    def exclusive_access(kind=ExclusiveType.EXCLUSIVE):
        if kind == ExclusiveType.NOT_EXCLUSIVE:
            raise TransportError("release stalled")
        acquire(kind)

    monkeypatch.setattr(connection, "exclusive_access", exclusive_access)
    with pytest.raises(TransportError, match="EXEC"):
        inject.flash_id(connection)
    assert connection.exclusive is False


def test_poke_stores_word(connection, handle) -> None:
    inject.poke(connection, 0x20001000, 0xDEADBEEF)
    assert handle.dump(0x20001000, 4) == struct.pack("<I", 0xDEADBEEF)
    assert handle.dump(inject.PEEK_POKE_CODE_LOC, 8) == inject.POKE_STUB


def test_peek_loads_word(connection, handle) -> None:
    handle.load(0x20002000, struct.pack("<I", 0xCAFEF00D))
    assert inject.peek(connection, 0x20002000) == 0xCAFEF00D
