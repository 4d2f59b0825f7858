"""RP2040/RP2350 address map and address range helpers."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from picobootctl.core.errors import AddressError
from picobootctl.core.model import Model

PAGE_SIZE = 256
FLASH_SECTOR_ERASE_SIZE = 4096

ROM_START = 0x00000000
ROM_END_RP2040 = 0x00004000
ROM_END_RP2350 = 0x00008000

FLASH_START = 0x10000000
FLASH_END_RP2040 = 0x11000000
FLASH_END_RP2350 = 0x12000000

XIP_SRAM_START_RP2040 = 0x15000000
XIP_SRAM_END_RP2040 = 0x15004000
XIP_SRAM_START_RP2350 = 0x13FFC000
XIP_SRAM_END_RP2350 = 0x14000000

SRAM_START = 0x20000000
SRAM_END_RP2040 = 0x20042000
SRAM_END_RP2350 = 0x20082000
MAIN_RAM_BANKED_START = 0x21000000
MAIN_RAM_BANKED_END = 0x21040000


class MemoryType(Enum):
    ROM = "rom"
    FLASH = "flash"
    SRAM = "sram"
    SRAM_UNSTRIPED = "sram_unstriped"
    XIP_SRAM = "xip_sram"
    INVALID = "invalid"

    @property
    def friendly_name(self) -> str:
        return {
            "rom": "ROM",
            "flash": "flash",
            "sram": "SRAM",
            "sram_unstriped": "SRAM (unstriped)",
            "xip_sram": "XIP RAM",
        }.get(self.value, "(invalid memory type)")


def memory_type(address: int, model: Model) -> MemoryType:
    # Region ends are inclusive so that an exclusive range end still maps to
    # the region it closes.
    rp2040 = model is Model.RP2040
    rom_end = ROM_END_RP2040 if rp2040 else ROM_END_RP2350
    flash_end = FLASH_END_RP2040 if rp2040 else FLASH_END_RP2350
    sram_end = SRAM_END_RP2040 if rp2040 else SRAM_END_RP2350

    if ROM_START <= address <= rom_end:
        return MemoryType.ROM
    if FLASH_START <= address <= flash_end:
        return MemoryType.FLASH
    if SRAM_START <= address <= sram_end:
        return MemoryType.SRAM
    if model is not Model.RP2350 and MAIN_RAM_BANKED_START <= address <= MAIN_RAM_BANKED_END:
        return MemoryType.SRAM_UNSTRIPED
    if model is not Model.RP2350 and XIP_SRAM_START_RP2040 <= address <= XIP_SRAM_END_RP2040:
        return MemoryType.XIP_SRAM
    if model is not Model.RP2040 and XIP_SRAM_START_RP2350 <= address <= XIP_SRAM_END_RP2350:
        return MemoryType.XIP_SRAM
    return MemoryType.INVALID


def is_transfer_aligned(address: int, model: Model) -> bool:
    kind = memory_type(address, model)
    return kind is not MemoryType.INVALID and not (kind is MemoryType.FLASH and address % PAGE_SIZE)


def is_size_aligned(address: int, size: int) -> bool:
    return address & (size - 1) == 0


def sram_end(model: Model) -> int:
    return SRAM_END_RP2040 if model is Model.RP2040 else SRAM_END_RP2350


def xip_sram_end(model: Model) -> int:
    return XIP_SRAM_END_RP2040 if model is Model.RP2040 else XIP_SRAM_END_RP2350


@dataclass(frozen=True)
class AddressRange:
    """Address range with an inclusive start and exclusive end."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise AddressError("The end address must not come before the start address.")

    @property
    def size(self) -> int:
        return self.end - self.start

    def contains(self, address: int) -> bool:
        return self.start <= address < self.end

    def contains_range(self, other: AddressRange) -> bool:
        return other.start >= self.start and other.end <= self.end

    def aligned(self, alignment: int) -> AddressRange:
        """Widen the range outwards to `alignment` boundaries."""
        if alignment <= 0 or alignment & (alignment - 1):
            raise AddressError("Alignment must be a power of two")
        mask = alignment - 1
        return AddressRange(self.start & ~mask, (self.end + mask) & ~mask)

    def is_aligned(self, alignment: int) -> bool:
        return self.start % alignment == 0 and self.end % alignment == 0

    def __str__(self) -> str:
        return f"[0x{self.start:08X}..0x{self.end:08X})"
