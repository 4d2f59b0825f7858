"""Transport interfaces."""

from __future__ import annotations

from typing import Protocol

from picobootctl.core.model import DeviceDescriptor, InterfaceDescriptor


class UsbHandle(Protocol):
    """An opened USB device.

    Transfer methods raise `TransportError` on failure and otherwise report
    what actually moved, which may be less than requested.
    """

    def claim_interface(self, number: int) -> None: ...

    def close(self) -> None: ...

    def control_transfer(
        self,
        request_type: int,
        request: int,
        value: int,
        index: int,
        data_or_length: bytes | int,
        timeout_ms: int,
    ) -> bytes | int:
        """Return received bytes for IN requests, bytes written for OUT."""

    def bulk_write(self, endpoint: int, data: bytes, timeout_ms: int) -> int: ...

    def bulk_read(self, endpoint: int, length: int, timeout_ms: int) -> bytes: ...

    def clear_halt(self, endpoint: int) -> None: ...

    def get_string(self, index: int) -> str | None: ...


class UsbDevice(Protocol):
    """A candidate USB device that has not been opened yet."""

    bus: int | None
    address: int | None

    def device_descriptor(self) -> DeviceDescriptor: ...

    def config_descriptor(self) -> tuple[InterfaceDescriptor, ...]: ...

    def open(self) -> UsbHandle: ...


class UsbBackend(Protocol):
    def find_devices(self) -> list[UsbDevice]: ...
