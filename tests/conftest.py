from __future__ import annotations

import struct
from collections.abc import Callable

import pytest

from picobootctl.core import inject
from picobootctl.core.connection import Connection
from picobootctl.core.errors import TransportError
from picobootctl.core.model import DeviceDescriptor, InterfaceDescriptor, Model
from picobootctl.core.protocol import (
    PICOBOOT_IF_CMD_STATUS,
    PICOBOOT_IF_RESET,
    PICOBOOT_MAGIC,
    PRODUCT_ID_RP2040_USBBOOT,
    PRODUCT_ID_RP2350_USBBOOT,
    REQUEST_GET_STATUS,
    REQUEST_TYPE_STANDARD_ENDPOINT_IN,
    VENDOR_ID_RASPBERRY_PI,
    Opcode,
    StatusCode,
)

FLASH_UID = bytes.fromhex("e660583883453a2c")
CHIP_ID_LOW = 0x11223344
CHIP_ID_HIGH = 0x55667788
MSC_INTERFACE = InterfaceDescriptor(0, 0x08, 0x06, 0x50, (0x01, 0x82))
PICOBOOT_INTERFACE = InterfaceDescriptor(1, 0xFF, 0x00, 0x00, (0x03, 0x84))


class FakePicoboot:
    """In-memory PICOBOOT endpoint pair speaking the bulk command protocol."""

    def __init__(
        self,
        *,
        model: Model = Model.RP2040,
        serial: str | None = None,
        flash_uid: bytes = FLASH_UID,
    ) -> None:
        self.model = model
        self.serial = serial
        self.flash_uid = flash_uid
        self.memory: dict[int, int] = {}
        self.otp: dict[int, bytes] = {}
        self.failures: dict[Opcode, StatusCode] = {}
        if model is Model.RP2040:
            self.failures[Opcode.GET_INFO] = StatusCode.UNKNOWN_CMD
        self.short_reads: dict[Opcode, int] = {}
        self.status_error: TransportError | None = None
        self.claim_error: TransportError | None = None
        self.halted: set[int] = set()

        self.phase = "command"
        self.current: tuple[int, int, bytes, int] | None = None
        self.status = (0, StatusCode.OK, 0, 0)
        self.exclusive = 0
        self.calls: list[tuple] = []
        self.commands: list[Opcode] = []
        self.sent: list[tuple[Opcode, bytes]] = []
        self.claimed: list[int] = []
        self.cleared: list[int] = []
        self.resets = 0
        self.closed = False

    # memory helpers

    def load(self, address: int, data: bytes) -> None:
        for offset, value in enumerate(data):
            self.memory[address + offset] = value

    def dump(self, address: int, length: int) -> bytes:
        return bytes(self.memory.get(address + i, 0) for i in range(length))

    # UsbHandle protocol

    def claim_interface(self, number: int) -> None:
        if self.claim_error is not None:
            raise self.claim_error
        self.claimed.append(number)

    def close(self) -> None:
        self.closed = True

    def get_string(self, index: int) -> str | None:
        return self.serial if index else None

    def clear_halt(self, endpoint: int) -> None:
        self.cleared.append(endpoint)
        self.halted.discard(endpoint)

    def control_transfer(self, request_type, request, value, index, data_or_length, timeout_ms):
        self.calls.append(("control", request_type, request, index, timeout_ms))
        if request_type == REQUEST_TYPE_STANDARD_ENDPOINT_IN and request == REQUEST_GET_STATUS:
            return bytes([1 if index in self.halted else 0, 0])
        if request == PICOBOOT_IF_CMD_STATUS:
            if self.status_error is not None:
                raise self.status_error
            token, code, opcode, in_progress = self.status
            return struct.pack("<IIBB6x", token, code, opcode, in_progress)
        if request == PICOBOOT_IF_RESET:
            self.resets += 1
            self.phase = "command"
            self.current = None
            return 0
        raise AssertionError(f"unexpected control request 0x{request:02x}")

    def bulk_write(self, endpoint: int, data: bytes, timeout_ms: int) -> int:
        self.calls.append(("write", endpoint, len(data), timeout_ms))
        if self.phase in ("command", "stalled"):
            self._accept_command(bytes(data))
            return len(data)
        if self.phase == "data_out":
            opcode, token, args, length = self.current
            self._maybe_fail()
            self._receive(opcode, args, bytes(data[:length]))
            self.phase = "ack_in"
            return len(data)
        if self.phase == "ack_out":
            self._complete()
            return len(data)
        raise AssertionError(f"unexpected bulk write in phase {self.phase}")

    def bulk_read(self, endpoint: int, length: int, timeout_ms: int) -> bytes:
        self.calls.append(("read", endpoint, length, timeout_ms))
        if self.phase == "data_in":
            opcode, token, args, transfer = self.current
            self._maybe_fail()
            payload = self._produce(opcode, args, transfer)
            if opcode in self.short_reads:
                self.phase = "stalled"
                return payload[: self.short_reads[opcode]]
            self.phase = "ack_out"
            return payload
        if self.phase == "ack_in":
            self._maybe_fail()
            self._execute()
            self._complete()
            return b""
        raise AssertionError(f"unexpected bulk read in phase {self.phase}")

    # protocol emulation

    def _accept_command(self, header: bytes) -> None:
        magic, token, opcode, args_size, transfer = struct.unpack_from("<IIBBxxI", header)
        assert magic == PICOBOOT_MAGIC
        assert len(header) == 32
        self.current = (Opcode(opcode), token, header[16 : 16 + args_size], transfer)
        self.commands.append(Opcode(opcode))
        self.sent.append((Opcode(opcode), self.current[2]))
        if transfer:
            self.phase = "data_in" if opcode & 0x80 else "data_out"
        else:
            self.phase = "ack_out" if opcode & 0x80 else "ack_in"

    def _maybe_fail(self) -> None:
        opcode, token, _, _ = self.current
        if opcode in self.failures:
            self.status = (token, self.failures[opcode], opcode, 0)
            self.phase = "stalled"
            raise TransportError(f"{opcode.name} stalled", code=-9)

    def _complete(self) -> None:
        opcode, token, _, _ = self.current
        self.status = (token, StatusCode.OK, opcode, 0)
        self.phase = "command"
        self.current = None

    def _receive(self, opcode: Opcode, args: bytes, data: bytes) -> None:
        if opcode is Opcode.WRITE:
            address, _ = struct.unpack_from("<II", args)
            self.load(address, data)
        elif opcode is Opcode.OTP_WRITE:
            row, _, _ = struct.unpack_from("<HHB", args)
            self.otp[row] = data

    def _produce(self, opcode: Opcode, args: bytes, transfer: int) -> bytes:
        if opcode is Opcode.READ:
            address, size = struct.unpack_from("<II", args)
            return self.dump(address, size)
        if opcode is Opcode.GET_INFO:
            words = [4, 0x0001, 0x00004927, CHIP_ID_LOW, CHIP_ID_HIGH]
            return struct.pack(f"<{len(words)}I", *words).ljust(transfer, b"\x00")
        if opcode is Opcode.OTP_READ:
            row, _, _ = struct.unpack_from("<HHB", args)
            return self.otp.get(row, b"").ljust(transfer, b"\x00")[:transfer]
        raise AssertionError(f"no data phase for {opcode.name}")

    def _execute(self) -> None:
        opcode, _, args, _ = self.current
        if opcode is Opcode.EXCLUSIVE_ACCESS:
            self.exclusive = args[0]
        elif opcode is Opcode.EXEC:
            (address,) = struct.unpack_from("<I", args)
            self._exec(address)
        elif opcode is Opcode.FLASH_ERASE:
            address, size = struct.unpack_from("<II", args)
            self.load(address, b"\xff" * size)

    def _exec(self, address: int) -> None:
        if address == inject.FLASH_ID_CODE_LOC:
            self.load(inject.FLASH_ID_UID_ADDR, self.flash_uid)
            return
        code = self.dump(address, len(inject.PEEK_STUB))
        if code == inject.PEEK_STUB:
            slot = address + len(inject.PEEK_STUB)
            target = int.from_bytes(self.dump(slot, 4), "little")
            self.load(slot, self.dump(target, 4))
        elif code[: len(inject.POKE_STUB)] == inject.POKE_STUB:
            value, target = struct.unpack("<II", self.dump(address + len(inject.POKE_STUB), 8))
            self.load(target, struct.pack("<I", value))


class FakeDevice:
    def __init__(
        self,
        handle: FakePicoboot | None = None,
        *,
        vendor_id: int = VENDOR_ID_RASPBERRY_PI,
        product_id: int = PRODUCT_ID_RP2040_USBBOOT,
        interfaces: tuple[InterfaceDescriptor, ...] = (MSC_INTERFACE, PICOBOOT_INTERFACE),
        open_error: TransportError | None = None,
        bus: int = 1,
        address: int = 4,
    ) -> None:
        self.handle = handle or FakePicoboot()
        self.descriptor = DeviceDescriptor(vendor_id, product_id, serial_index=3)
        self.interfaces = interfaces
        self.open_error = open_error
        self.bus = bus
        self.address = address
        self.opened = 0

    def device_descriptor(self) -> DeviceDescriptor:
        return self.descriptor

    def config_descriptor(self) -> tuple[InterfaceDescriptor, ...]:
        return self.interfaces

    def open(self) -> FakePicoboot:
        if self.open_error is not None:
            raise self.open_error
        self.opened += 1
        return self.handle


class FakeBackend:
    def __init__(self, devices: list[FakeDevice]) -> None:
        self.devices = devices

    def find_devices(self) -> list[FakeDevice]:
        return list(self.devices)


@pytest.fixture
def handle() -> FakePicoboot:
    return FakePicoboot()


@pytest.fixture
def connection(handle: FakePicoboot) -> Connection:
    return Connection(handle, interface=1, out_ep=0x03, in_ep=0x84, model=handle.model)


@pytest.fixture
def make_handle() -> Callable[..., FakePicoboot]:
    return FakePicoboot


@pytest.fixture
def make_device() -> Callable[..., FakeDevice]:
    return FakeDevice


@pytest.fixture
def make_backend() -> Callable[..., FakeBackend]:
    return FakeBackend


@pytest.fixture
def rp2350_device() -> FakeDevice:
    return FakeDevice(
        FakePicoboot(model=Model.RP2350, serial="E0C9125B0D9B"),
        product_id=PRODUCT_ID_RP2350_USBBOOT,
    )
