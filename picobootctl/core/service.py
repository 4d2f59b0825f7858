"""Service layer used by the CLI and the public API."""

from __future__ import annotations

import logging

from picobootctl.core.config import load_settings
from picobootctl.core.device_match import MatchOutcome, classify
from picobootctl.core.errors import DeviceSelectionError
from picobootctl.core.model import DetectedDevice, DeviceMatchResult, Model, Settings
from picobootctl.core.session import PicobootSession
from picobootctl.transports.base import UsbBackend, UsbDevice
from picobootctl.transports.libusb import PyUSBBackend

LOGGER = logging.getLogger(__name__)


class PicobootService:
    def __init__(
        self,
        *,
        backend: UsbBackend | None = None,
        settings: Settings | None = None,
    ) -> None:
        if settings is None:
            settings = load_settings().settings
        self.settings = settings
        self.backend = backend or PyUSBBackend()

    def _classify_all(
        self,
        *,
        vid: int,
        pid: int | None,
        serial: str | None,
    ) -> list[tuple[UsbDevice, MatchOutcome]]:
        results: list[tuple[UsbDevice, MatchOutcome]] = []
        for device in self.backend.find_devices():
            outcome = classify(
                device,
                vid=vid,
                pid=pid,
                serial=serial,
                timeouts=self.settings.timeouts,
            )
            LOGGER.debug(
                "Device %s:%s -> %s",
                getattr(device, "bus", None),
                getattr(device, "address", None),
                outcome.result.value,
            )
            results.append((device, outcome))
        return results

    def list_devices(
        self,
        *,
        vid: int | None = None,
        pid: int | None = None,
        serial: str | None = None,
    ) -> list[DetectedDevice]:
        """Classify every attached USB device, skipping unrelated ones."""
        match = self.settings.match
        detected: list[DetectedDevice] = []
        for device, outcome in self._classify_all(
            vid=match.vid if vid is None else vid,
            pid=pid if pid is not None else match.pid,
            serial=serial or match.serial,
        ):
            found_serial = None
            if outcome.connection is not None:
                # RP2040 devices are selected by flash ID, not by their USB serial string
                if outcome.model is not Model.RP2040:
                    found_serial = outcome.connection.handle.get_string(outcome.descriptor.serial_index)
                outcome.connection.close()
            if outcome.result is DeviceMatchResult.UNKNOWN or outcome.descriptor is None:
                continue
            detected.append(
                DetectedDevice(
                    bus=device.bus,
                    address=device.address,
                    vendor_id=outcome.descriptor.vendor_id,
                    product_id=outcome.descriptor.product_id,
                    result=outcome.result,
                    model=outcome.model,
                    serial=found_serial,
                )
            )
        return detected

    def open_session(
        self,
        serial: str | None = None,
        vid: int | None = None,
        pid: int | None = None,
        *,
        exclusive: bool = True,
    ) -> PicobootSession:
        """Open the single bootloader device matching the filters."""
        match = self.settings.match
        serial = serial or match.serial
        outcomes = self._classify_all(
            vid=match.vid if vid is None else vid,
            pid=pid if pid is not None else match.pid,
            serial=serial,
        )
        connected = [(d, o) for d, o in outcomes if o.result is DeviceMatchResult.BOOTROM_OK]

        if len(connected) != 1:
            for _, outcome in connected:
                outcome.connection.close()
            if not connected:
                raise DeviceSelectionError(_no_device_message(outcomes, serial))
            desc = ", ".join(f"bus {d.bus} address {d.address}" for d, _ in connected)
            raise DeviceSelectionError(
                f"Multiple bootloader devices found: {desc}. Use --serial to choose one."
            )

        device, outcome = connected[0]
        identity = f"bus {device.bus} address {device.address}"
        return PicobootSession(outcome.connection, exclusive=exclusive, identity=identity)


def _no_device_message(outcomes: list[tuple[UsbDevice, MatchOutcome]], serial: str | None) -> str:
    results = {o.result for _, o in outcomes}
    if DeviceMatchResult.BOOTROM_CANT_CONNECT in results:
        return "A device in BOOTSEL mode was found but could not be opened. Check USB permissions."
    if DeviceMatchResult.BOOTROM_NO_INTERFACE in results:
        return "A device in BOOTSEL mode was found but its PICOBOOT interface is unavailable."
    if results & {DeviceMatchResult.STDIO_USB, DeviceMatchResult.STDIO_USB_CANT_CONNECT}:
        return "Only devices running application firmware were found. Put the device in BOOTSEL mode."
    if serial:
        return f"No bootloader device found with serial '{serial}'"
    return "No bootloader device found. Ensure the device is connected in BOOTSEL mode."
