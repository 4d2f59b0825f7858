"""Device-level operations layered over a PICOBOOT connection."""

from __future__ import annotations

import logging
import struct
from collections.abc import Iterator
from contextlib import contextmanager

from picobootctl.core import inject
from picobootctl.core.connection import Connection
from picobootctl.core.errors import AddressError, CommandFailureError, PicobootError
from picobootctl.core.memory import (
    FLASH_SECTOR_ERASE_SIZE,
    FLASH_START,
    PAGE_SIZE,
    SRAM_END_RP2040,
    SRAM_END_RP2350,
    XIP_SRAM_END_RP2040,
    XIP_SRAM_END_RP2350,
    AddressRange,
    MemoryType,
    memory_type,
)
from picobootctl.core.model import Model
from picobootctl.core.protocol import (
    ExclusiveType,
    InfoType,
    Reboot2Flags,
    StatusCode,
    SysInfoFlags,
)

LOGGER = logging.getLogger(__name__)

REBOOT_DELAY_MS = 500
ROM_READ_LIMIT = 0x2000
FLASH_PROBE_MIN_SIZE = 16 * PAGE_SIZE
FLASH_PROBE_MAX_SIZE = 8 * 1024 * 1024

BOOTROM_MAGIC_ADDR = 0x00000010
BOOTROM_MAGIC_RP2040 = 0x01754D
BOOTROM_MAGIC_RP2350 = 0x02754D

_UNSET = object()


class PicobootSession:
    """An open bootloader device, optionally held in exclusive mode.

    Commands that fail are followed by a status query. When the device
    answers, the interface is reset and `CommandFailureError` is raised with
    the reported status; otherwise the original error propagates.
    """

    def __init__(self, connection: Connection, *, exclusive: bool = True, identity: str = "") -> None:
        self.connection = connection
        self.identity = identity
        self.exclusive = exclusive
        self._unique_id: int | None | object = _UNSET
        self._flash_size: int | None = None
        self._closed = False

        if exclusive:
            try:
                with self._checked("Exclusive access lock command failed"):
                    connection.exclusive_access(ExclusiveType.EXCLUSIVE)
            except PicobootError:
                connection.close()
                raise

    @property
    def model(self) -> Model:
        return self.connection.model

    def __enter__(self) -> PicobootSession:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"PicobootSession({self.identity or 'device'}, {self.model.friendly_name})"

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            if self.exclusive:
                try:
                    self.connection.exclusive_access(ExclusiveType.NOT_EXCLUSIVE)
                except PicobootError as exc:
                    LOGGER.debug("Releasing exclusive access failed (%s); resetting", exc)
                    self.connection.reset()
        finally:
            self.connection.close()

    @contextmanager
    def _checked(self, message: str) -> Iterator[None]:
        try:
            yield
        except PicobootError as exc:
            try:
                status = self.connection.cmd_status()
            except PicobootError:
                raise exc from None
            self.connection.reset()
            code = status.status
            if code == StatusCode.OK:
                code = StatusCode.UNKNOWN_ERROR
            name = getattr(code, "name", code)
            raise CommandFailureError(f"{message}: {name}", code) from exc

    def unique_id(self) -> int | None:
        """Return the flash ID (RP2040) or chip unique ID (RP2350), cached."""
        if self._unique_id is _UNSET:
            try:
                self._unique_id = self._read_unique_id()
            except PicobootError as exc:
                LOGGER.info("Could not read unique ID of %s: %s", self.identity or "device", exc)
                self._unique_id = None
        return self._unique_id

    def _read_unique_id(self) -> int | None:
        if self.model is Model.RP2040:
            try:
                with self._checked("Get flash ID command failed"):
                    return inject.flash_id(self.connection)
            finally:
                if self.exclusive:
                    # flash_id releases the lock when it is done
                    self._relock()

        if self.model is Model.RP2350:
            with self._checked("Get info command failed"):
                raw = self.connection.get_info(InfoType.SYS, SysInfoFlags.CHIP_INFO, length=256)
            words = struct.unpack(f"<{len(raw) // 4}I", raw)
            count = words[0]
            data = words[1 : 1 + count]
            if len(data) >= 4 and data[0] & SysInfoFlags.CHIP_INFO:
                return data[2] | (data[3] << 32)
            LOGGER.info("%s did not respond with the requested chip info", self.identity or "device")
            return None

        LOGGER.info("Cannot read a unique ID from an unknown model")
        return None

    def _relock(self) -> None:
        try:
            self.connection.exclusive_access(ExclusiveType.EXCLUSIVE)
        except PicobootError as exc:
            LOGGER.warning("Lost exclusive access to %s: %s", self.identity or "device", exc)
            self.exclusive = False

    def exit_xip(self) -> None:
        with self._checked("Exit XIP"):
            self.connection.exit_xip()

    def _check_transfer(self, address: int, length: int, verb: str) -> MemoryType:
        end = address + length
        kind = memory_type(address, self.model)
        if kind is not memory_type(end, self.model):
            raise AddressError(f"The {verb} operation must not span multiple memory regions.")
        if kind is MemoryType.FLASH:
            if address % PAGE_SIZE:
                raise AddressError(f"The start of the {verb} operation must lie on a flash page boundary.")
            if end % PAGE_SIZE:
                raise AddressError(f"The end of the {verb} operation must lie on a flash page boundary.")
        return kind

    def read_aligned(self, address: int, length: int) -> bytes:
        kind = self._check_transfer(address, length, "read")
        if kind is MemoryType.FLASH:
            self.exit_xip()
        if kind is MemoryType.ROM and address + length >= ROM_READ_LIMIT:
            raise AddressError(f"Reading ROM at or past 0x{ROM_READ_LIMIT:04x} is not supported.")
        with self._checked("Read command failed"):
            return bytes(self.connection.read(address, length))

    def read(self, address: int, length: int) -> bytes:
        """Read any byte range, widening unaligned flash reads to whole pages."""
        target = AddressRange(address, address + length)
        if memory_type(address, self.model) is not MemoryType.FLASH or target.is_aligned(PAGE_SIZE):
            return self.read_aligned(address, length)

        widened = target.aligned(PAGE_SIZE)
        data = self.read_aligned(widened.start, widened.size)
        offset = address - widened.start
        return data[offset : offset + length]

    def write(self, address: int, data: bytes) -> None:
        self._check_transfer(address, len(data), "write")
        with self._checked("Write command failed"):
            self.connection.write(address, data)

    def flash_erase(self, target: AddressRange) -> None:
        if (
            memory_type(target.start, self.model) is not MemoryType.FLASH
            or memory_type(target.end, self.model) is not MemoryType.FLASH
        ):
            raise AddressError(f"The range {target} does not lie fully within the flash.")
        if not target.is_aligned(FLASH_SECTOR_ERASE_SIZE):
            raise AddressError(f"The range {target} is not aligned to the flash sector erase size.")
        with self._checked("Flash erase failed"):
            self.connection.flash_erase(target.start, target.size)

    def reboot(self, binary_start: int = 0) -> None:
        """Reboot the device, optionally into the image at `binary_start`."""
        kind = memory_type(binary_start, self.model)

        if self.model is Model.RP2350:
            param0 = param1 = 0
            if binary_start == 0:
                flags = Reboot2Flags.NORMAL
            elif kind is MemoryType.FLASH:
                flags = Reboot2Flags.FLASH_UPDATE
            elif kind is MemoryType.SRAM:
                flags = Reboot2Flags.RAM_IMAGE
                param0, param1 = binary_start, SRAM_END_RP2350
            elif kind is MemoryType.XIP_SRAM:
                flags = Reboot2Flags.RAM_IMAGE
                param0, param1 = binary_start, XIP_SRAM_END_RP2350
            else:
                raise AddressError(
                    "The binary start must be 0, a flash address, an SRAM address, or an XIP SRAM address."
                )
            with self._checked("RP2350 reboot command failed"):
                self.connection.reboot2(flags, REBOOT_DELAY_MS, param0, param1)
            return

        if self.model is Model.RP2040:
            pc = binary_start
            if kind is MemoryType.FLASH:
                pc = sp = 0
            elif kind is MemoryType.SRAM:
                sp = SRAM_END_RP2040
            elif kind is MemoryType.XIP_SRAM:
                sp = XIP_SRAM_END_RP2040
            elif binary_start == 0:
                sp = 0
            else:
                raise AddressError(
                    "The binary start must be 0, a flash address, an SRAM address, or an XIP SRAM address."
                )
            with self._checked("RP2040 reboot command failed"):
                self.connection.reboot(pc, sp, REBOOT_DELAY_MS)
            return

        raise PicobootError(f"Unsure how to reboot {self.model.friendly_name} device.")

    def guess_flash_size(self) -> int:
        """Estimate the flash size from where the boot pages mirror.

        Returns 0 when the flash is absent or has never been written.
        """
        if self._flash_size is not None:
            return self._flash_size

        first_pages = self.read_aligned(FLASH_START, 2 * PAGE_SIZE)
        if first_pages[:PAGE_SIZE] == first_pages[PAGE_SIZE:]:
            LOGGER.info("Could not guess flash size: the first two pages are identical")
            return 0

        size = FLASH_PROBE_MAX_SIZE
        while size >= FLASH_PROBE_MIN_SIZE:
            if self.read_aligned(FLASH_START + size, 2 * PAGE_SIZE) != first_pages:
                break
            size //= 2

        self._flash_size = size * 2
        return self._flash_size

    def flash_range(self) -> AddressRange:
        return AddressRange(FLASH_START, FLASH_START + self.guess_flash_size())

    def read_bootrom_model(self) -> Model:
        magic = struct.unpack("<I", self.read_aligned(BOOTROM_MAGIC_ADDR, 4))[0] & 0xFFFFFF
        return {
            BOOTROM_MAGIC_RP2040: Model.RP2040,
            BOOTROM_MAGIC_RP2350: Model.RP2350,
        }.get(magic, Model.UNKNOWN)

    def peek(self, address: int) -> int:
        with self._checked("Peek failed"):
            return inject.peek(self.connection, address)

    def poke(self, address: int, value: int) -> None:
        with self._checked("Poke failed"):
            inject.poke(self.connection, address, value)

    def otp_read(self, row: int, row_count: int, ecc: bool = False) -> bytes:
        with self._checked("OTP read failed"):
            return self.connection.otp_read(row, row_count, ecc)

    def otp_write(self, row: int, data: bytes, ecc: bool = False) -> None:
        row_size = 2 if ecc else 4
        if len(data) % row_size:
            raise ValueError(f"OTP data must be a multiple of {row_size} bytes")
        with self._checked("OTP write failed"):
            self.connection.otp_write(row, len(data) // row_size, ecc, data)

    def get_info(self, info_type: InfoType, *params: int, length: int = 256) -> bytes:
        with self._checked("Get info command failed"):
            return self.connection.get_info(info_type, *params, length=length)
