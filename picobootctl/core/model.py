"""Core data models used across the engine, discovery, service, and CLI."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Model(Enum):
    RP2040 = "rp2040"
    RP2350 = "rp2350"
    UNKNOWN = "unknown"

    @property
    def friendly_name(self) -> str:
        return {"rp2040": "RP2040", "rp2350": "RP2350"}.get(self.value, "Unknown")


class XipState(Enum):
    UNKNOWN = "unknown"
    ACTIVE = "active"
    INACTIVE = "inactive"


class DeviceMatchResult(Enum):
    """Outcome of classifying one candidate USB device."""

    BOOTROM_OK = "bootrom_ok"
    BOOTROM_NO_INTERFACE = "bootrom_no_interface"
    BOOTROM_CANT_CONNECT = "bootrom_cant_connect"
    MICROPYTHON = "micropython"
    PICOPROBE = "picoprobe"
    UNKNOWN = "unknown"
    ERROR = "error"
    STDIO_USB = "stdio_usb"
    STDIO_USB_CANT_CONNECT = "stdio_usb_cant_connect"


@dataclass(frozen=True)
class DeviceDescriptor:
    vendor_id: int
    product_id: int
    serial_index: int = 0


@dataclass(frozen=True)
class InterfaceDescriptor:
    """First alternate setting of one USB interface."""

    number: int
    interface_class: int
    interface_subclass: int
    interface_protocol: int
    endpoints: tuple[int, ...]


@dataclass(frozen=True)
class Timeouts:
    command_ms: int = 3000
    data_ms: int = 10000
    ack_ms: int = 3000
    control_ms: int = 1000
    otp_base_ms: int = 5000
    otp_per_byte_ms: int = 5

    def otp_write_ms(self, length: int) -> int:
        return self.otp_base_ms + length * self.otp_per_byte_ms


@dataclass(frozen=True)
class MatchFilter:
    vid: int = -1
    pid: int | None = None
    serial: str | None = None


@dataclass(frozen=True)
class Settings:
    timeouts: Timeouts
    match: MatchFilter


@dataclass(frozen=True)
class DetectedDevice:
    bus: int | None
    address: int | None
    vendor_id: int
    product_id: int
    result: DeviceMatchResult
    model: Model
    serial: str | None = None
