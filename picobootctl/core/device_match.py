"""Classification of candidate USB devices into bootloader personalities.

Classification runs an ordered list of rules over a shared attempt record.
Each rule either returns a final `DeviceMatchResult` or None to fall through
to the next rule. Only the final rule can produce `BOOTROM_OK`, and any
other outcome closes whatever handle was opened along the way.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass

from picobootctl.core.connection import Connection
from picobootctl.core.errors import PicobootError, TransportError
from picobootctl.core.inject import flash_id
from picobootctl.core.model import (
    DeviceDescriptor,
    DeviceMatchResult,
    InterfaceDescriptor,
    Model,
    Timeouts,
)
from picobootctl.core.protocol import (
    ENDPOINT_DIR_IN,
    PRODUCT_ID_MICROPYTHON,
    PRODUCT_ID_PICOPROBE,
    PRODUCT_ID_RP2040_STDIO_USB,
    PRODUCT_ID_RP2040_USBBOOT,
    PRODUCT_ID_RP2350_USBBOOT,
    PRODUCT_ID_STDIO_USB,
    RESET_INTERFACE_PROTOCOL,
    RESET_INTERFACE_SUBCLASS,
    VENDOR_ID_RASPBERRY_PI,
    VENDOR_INTERFACE_CLASS,
    InfoType,
    SysInfoFlags,
)
from picobootctl.transports.base import UsbDevice, UsbHandle

LOGGER = logging.getLogger(__name__)

_HEX_RE = re.compile(r"\s*(?:0[xX])?([0-9a-fA-F]+)")
_U64_MAX = (1 << 64) - 1

# product id -> (tentative result, fixed model); None result means bootrom
_PRODUCT_DISPATCH: dict[int, tuple[DeviceMatchResult | None, Model]] = {
    PRODUCT_ID_MICROPYTHON: (DeviceMatchResult.MICROPYTHON, Model.UNKNOWN),
    PRODUCT_ID_PICOPROBE: (DeviceMatchResult.PICOPROBE, Model.UNKNOWN),
    PRODUCT_ID_RP2040_STDIO_USB: (DeviceMatchResult.STDIO_USB, Model.RP2040),
    PRODUCT_ID_STDIO_USB: (DeviceMatchResult.STDIO_USB, Model.RP2350),
    PRODUCT_ID_RP2040_USBBOOT: (None, Model.RP2040),
    PRODUCT_ID_RP2350_USBBOOT: (None, Model.RP2350),
}


@dataclass
class MatchOutcome:
    result: DeviceMatchResult
    connection: Connection | None = None
    model: Model = Model.UNKNOWN
    descriptor: DeviceDescriptor | None = None


@dataclass
class _Attempt:
    device: UsbDevice
    vid: int
    pid: int | None
    serial: str
    timeouts: Timeouts
    descriptor: DeviceDescriptor | None = None
    interfaces: tuple[InterfaceDescriptor, ...] = ()
    handle: UsbHandle | None = None
    connection: Connection | None = None
    model: Model = Model.UNKNOWN
    stdio: bool = False

    @property
    def vendor(self) -> int:
        return VENDOR_ID_RASPBERRY_PI if self.vid < 0 else self.vid


MatchRule = Callable[[_Attempt], "DeviceMatchResult | None"]


def _read_device_descriptor(attempt: _Attempt) -> DeviceMatchResult | None:
    try:
        attempt.descriptor = attempt.device.device_descriptor()
    except TransportError as exc:
        LOGGER.debug("Failed to read device descriptor: %s", exc)
        return DeviceMatchResult.ERROR
    return None


def _filter_ids(attempt: _Attempt) -> DeviceMatchResult | None:
    desc = attempt.descriptor
    if attempt.pid is not None and attempt.pid >= 0:
        if desc.vendor_id != attempt.vendor or desc.product_id != attempt.pid:
            return DeviceMatchResult.UNKNOWN
        return None
    if attempt.vid == 0:
        return None
    if desc.vendor_id != attempt.vendor:
        return DeviceMatchResult.UNKNOWN

    dispatch = _PRODUCT_DISPATCH.get(desc.product_id)
    if dispatch is None:
        return DeviceMatchResult.UNKNOWN
    result, attempt.model = dispatch
    if result is DeviceMatchResult.STDIO_USB:
        attempt.stdio = True
        return None
    return result


def _read_config(attempt: _Attempt) -> DeviceMatchResult | None:
    try:
        attempt.interfaces = attempt.device.config_descriptor()
    except TransportError as exc:
        LOGGER.debug("Failed to read config descriptor: %s", exc)
        return DeviceMatchResult.ERROR
    return None


def _open(attempt: _Attempt) -> DeviceMatchResult | None:
    try:
        attempt.handle = attempt.device.open()
    except TransportError as exc:
        LOGGER.debug("Failed to open device: %s", exc)
        if attempt.vid == 0 or attempt.serial:
            # identity was never verified
            return DeviceMatchResult.UNKNOWN
        if attempt.stdio:
            return DeviceMatchResult.STDIO_USB_CANT_CONNECT
        return DeviceMatchResult.BOOTROM_CANT_CONNECT
    return None


def _check_stdio_serial(attempt: _Attempt) -> DeviceMatchResult | None:
    if not attempt.stdio:
        return None
    if attempt.serial and attempt.handle.get_string(attempt.descriptor.serial_index) != attempt.serial:
        return DeviceMatchResult.UNKNOWN
    return DeviceMatchResult.STDIO_USB


def _check_reset_interface(attempt: _Attempt) -> DeviceMatchResult | None:
    # runtime reset interface on a third-party VID
    for intf in attempt.interfaces:
        if (
            intf.interface_class == VENDOR_INTERFACE_CLASS
            and intf.interface_subclass == RESET_INTERFACE_SUBCLASS
            and intf.interface_protocol == RESET_INTERFACE_PROTOCOL
        ):
            return DeviceMatchResult.STDIO_USB
    return None


def select_picoboot_interface(
    interfaces: tuple[InterfaceDescriptor, ...],
) -> tuple[int, int, int] | None:
    """Return (interface, out endpoint, in endpoint) of the PICOBOOT interface."""
    number = 0 if len(interfaces) == 1 else 1
    if number >= len(interfaces):
        return None
    intf = interfaces[number]
    if intf.interface_class != VENDOR_INTERFACE_CLASS or len(intf.endpoints) != 2:
        return None
    out_ep, in_ep = intf.endpoints
    if not out_ep or not in_ep or out_ep & ENDPOINT_DIR_IN or not in_ep & ENDPOINT_DIR_IN:
        return None
    return number, out_ep, in_ep


def _claim_interface(attempt: _Attempt) -> DeviceMatchResult | None:
    selected = select_picoboot_interface(attempt.interfaces)
    if selected is None:
        LOGGER.debug("Did not find PICOBOOT interface")
        return DeviceMatchResult.BOOTROM_NO_INTERFACE

    number, out_ep, in_ep = selected
    LOGGER.debug("Found PICOBOOT interface %d (out 0x%02x, in 0x%02x)", number, out_ep, in_ep)
    try:
        attempt.handle.claim_interface(number)
    except TransportError as exc:
        LOGGER.debug("Failed to claim interface: %s", exc)
        return DeviceMatchResult.BOOTROM_NO_INTERFACE

    attempt.connection = Connection(
        attempt.handle,
        interface=number,
        out_ep=out_ep,
        in_ep=in_ep,
        model=attempt.model,
        timeouts=attempt.timeouts,
    )
    return None


def _resolve_model(attempt: _Attempt) -> DeviceMatchResult | None:
    if attempt.model is Model.UNKNOWN:
        try:
            attempt.connection.get_info(InfoType.SYS, SysInfoFlags.CHIP_INFO, length=256)
        except PicobootError:
            # the RP2040 bootrom has no GET_INFO
            attempt.model = Model.RP2040
        else:
            attempt.model = Model.RP2350
        attempt.connection.model = attempt.model
    return None


def _verify_serial(attempt: _Attempt) -> DeviceMatchResult | None:
    if attempt.serial:
        if attempt.model is Model.RP2040:
            # the RP2040 USB serial is not unique, so compare the flash id
            expected = parse_hex_serial(attempt.serial)
            try:
                found = flash_id(attempt.connection)
            except PicobootError as exc:
                LOGGER.debug("Flash ID read failed: %s", exc)
                return DeviceMatchResult.UNKNOWN
            LOGGER.debug("Flash ID %016X", found)
            if found != expected:
                return DeviceMatchResult.UNKNOWN
        elif attempt.handle.get_string(attempt.descriptor.serial_index) != attempt.serial:
            return DeviceMatchResult.UNKNOWN
    return DeviceMatchResult.BOOTROM_OK


MATCH_RULES: tuple[MatchRule, ...] = (
    _read_device_descriptor,
    _filter_ids,
    _read_config,
    _open,
    _check_stdio_serial,
    _check_reset_interface,
    _claim_interface,
    _resolve_model,
    _verify_serial,
)


def parse_hex_serial(serial: str) -> int:
    """Parse the leading hex digits of `serial`, saturating at 64 bits."""
    match = _HEX_RE.match(serial)
    if not match:
        return 0
    return min(int(match.group(1), 16), _U64_MAX)


def classify(
    device: UsbDevice,
    *,
    vid: int = -1,
    pid: int | None = None,
    serial: str | None = None,
    timeouts: Timeouts | None = None,
) -> MatchOutcome:
    """Classify `device`, returning an open connection only for `BOOTROM_OK`.

    `vid` < 0 matches the Raspberry Pi vendor id, 0 disables vendor/product
    filtering, anything else must match exactly. When `pid` is given both ids
    must match.
    """
    attempt = _Attempt(
        device=device,
        vid=vid,
        pid=pid,
        serial=serial or "",
        timeouts=timeouts or Timeouts(),
    )
    result = DeviceMatchResult.ERROR
    for rule in MATCH_RULES:
        outcome = rule(attempt)
        if outcome is not None:
            result = outcome
            break

    if result is DeviceMatchResult.BOOTROM_OK:
        return MatchOutcome(result, attempt.connection, attempt.model, attempt.descriptor)

    if attempt.handle is not None:
        attempt.handle.close()
    return MatchOutcome(result, None, attempt.model, attempt.descriptor)
