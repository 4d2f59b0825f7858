"""USB transport implementation using PyUSB on top of libusb."""

from __future__ import annotations

import logging

import usb.core
import usb.util

from picobootctl.core.errors import DeviceDiscoveryError, TransportError, TransportTimeoutError
from picobootctl.core.model import DeviceDescriptor, InterfaceDescriptor

LOGGER = logging.getLogger(__name__)


def _transport_error(action: str, exc: usb.core.USBError) -> TransportError:
    code = exc.backend_error_code if exc.backend_error_code is not None else -99
    if isinstance(exc, usb.core.USBTimeoutError):
        return TransportTimeoutError(f"{action} timed out: {exc}", code)
    return TransportError(f"{action} failed: {exc}", code)


class PyUSBHandle:
    def __init__(self, device: usb.core.Device) -> None:
        self._device = device

    def claim_interface(self, number: int) -> None:
        try:
            if self._device.is_kernel_driver_active(number):
                self._device.detach_kernel_driver(number)
        except NotImplementedError:
            # Not available on every backend (e.g. Windows).
            pass
        except usb.core.USBError as exc:
            raise _transport_error(f"Detaching kernel driver from interface {number}", exc) from exc

        try:
            usb.util.claim_interface(self._device, number)
        except usb.core.USBError as exc:
            raise _transport_error(f"Claiming interface {number}", exc) from exc

    def close(self) -> None:
        usb.util.dispose_resources(self._device)

    def control_transfer(
        self,
        request_type: int,
        request: int,
        value: int,
        index: int,
        data_or_length: bytes | int,
        timeout_ms: int,
    ) -> bytes | int:
        try:
            result = self._device.ctrl_transfer(
                request_type,
                request,
                value,
                index,
                data_or_length if data_or_length else None,
                timeout_ms,
            )
        except usb.core.USBError as exc:
            raise _transport_error(f"Control request 0x{request:02x}", exc) from exc
        if request_type & usb.util.CTRL_IN:
            return bytes(result)
        return int(result)

    def bulk_write(self, endpoint: int, data: bytes, timeout_ms: int) -> int:
        try:
            return self._device.write(endpoint, data, timeout_ms)
        except usb.core.USBError as exc:
            raise _transport_error(f"Bulk write to 0x{endpoint:02x}", exc) from exc

    def bulk_read(self, endpoint: int, length: int, timeout_ms: int) -> bytes:
        try:
            return bytes(self._device.read(endpoint, length, timeout_ms))
        except usb.core.USBError as exc:
            raise _transport_error(f"Bulk read from 0x{endpoint:02x}", exc) from exc

    def clear_halt(self, endpoint: int) -> None:
        try:
            self._device.clear_halt(endpoint)
        except usb.core.USBError as exc:
            raise _transport_error(f"Clearing halt on 0x{endpoint:02x}", exc) from exc

    def get_string(self, index: int) -> str | None:
        if not index:
            return None
        try:
            return usb.util.get_string(self._device, index)
        except (usb.core.USBError, ValueError) as exc:
            LOGGER.debug("Could not read string descriptor %d: %s", index, exc)
            return None


class PyUSBDevice:
    def __init__(self, device: usb.core.Device) -> None:
        self._device = device
        self.bus: int | None = device.bus
        self.address: int | None = device.address

    def device_descriptor(self) -> DeviceDescriptor:
        return DeviceDescriptor(
            vendor_id=self._device.idVendor,
            product_id=self._device.idProduct,
            serial_index=self._device.iSerialNumber,
        )

    def config_descriptor(self) -> tuple[InterfaceDescriptor, ...]:
        try:
            # Bootrom and stdio personalities expose a single configuration.
            configuration = self._device[0]
            interfaces = [intf for intf in configuration if intf.bAlternateSetting == 0]
        except (usb.core.USBError, IndexError) as exc:
            raise TransportError(f"Could not read config descriptor: {exc}") from exc

        return tuple(
            InterfaceDescriptor(
                number=intf.bInterfaceNumber,
                interface_class=intf.bInterfaceClass,
                interface_subclass=intf.bInterfaceSubClass,
                interface_protocol=intf.bInterfaceProtocol,
                endpoints=tuple(ep.bEndpointAddress for ep in intf),
            )
            for intf in sorted(interfaces, key=lambda i: i.bInterfaceNumber)
        )

    def open(self) -> PyUSBHandle:
        # PyUSB opens lazily; querying the driver binding forces the open so
        # permission problems surface here rather than on the first transfer.
        try:
            self._device.is_kernel_driver_active(0)
        except NotImplementedError:
            pass
        except usb.core.USBError as exc:
            raise _transport_error("Opening device", exc) from exc
        return PyUSBHandle(self._device)


class PyUSBBackend:
    def find_devices(self) -> list[PyUSBDevice]:
        try:
            return [PyUSBDevice(device) for device in usb.core.find(find_all=True)]
        except usb.core.NoBackendError as exc:
            raise DeviceDiscoveryError(
                "No libusb backend available. Install libusb-1.0 and retry."
            ) from exc
        except usb.core.USBError as exc:
            raise DeviceDiscoveryError(f"USB enumeration failed: {exc}") from exc
