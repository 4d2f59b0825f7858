"""Stable public API for building tooling on top of picobootctl.

This module is the supported integration surface for third-party callers.
Avoid importing from private/internal modules unless intentionally depending on
non-stable internals.
"""

from __future__ import annotations

from picobootctl.core.errors import (
    AddressError,
    CommandFailureError,
    ConfigLoadError,
    ConfigValidationError,
    DeviceDiscoveryError,
    DeviceSelectionError,
    PicobootError,
    ProtocolError,
    TransportError,
    TransportTimeoutError,
)
from picobootctl.core.memory import AddressRange, MemoryType, memory_type
from picobootctl.core.model import DetectedDevice, DeviceMatchResult, Model, Settings, Timeouts
from picobootctl.core.service import PicobootService
from picobootctl.core.session import PicobootSession
from picobootctl.transports.base import UsbBackend

__all__ = [
    "PicobootError",
    "AddressError",
    "CommandFailureError",
    "ConfigLoadError",
    "ConfigValidationError",
    "DeviceDiscoveryError",
    "DeviceSelectionError",
    "ProtocolError",
    "TransportError",
    "TransportTimeoutError",
    "AddressRange",
    "MemoryType",
    "memory_type",
    "DetectedDevice",
    "DeviceMatchResult",
    "Model",
    "Settings",
    "Timeouts",
    "PicobootSession",
    "Client",
]


class Client:
    """Public client for interacting with picobootctl core capabilities.

    A `Client` wraps settings loading, USB discovery/classification and
    session opening behind a stable API intended for third-party tools.
    """

    def __init__(
        self,
        *,
        backend: UsbBackend | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._service = PicobootService(backend=backend, settings=settings)

    @property
    def settings(self) -> Settings:
        return self._service.settings

    def list_devices(
        self,
        *,
        vid: int | None = None,
        pid: int | None = None,
        serial: str | None = None,
    ) -> list[DetectedDevice]:
        return self._service.list_devices(vid=vid, pid=pid, serial=serial)

    def open(
        self,
        *,
        serial: str | None = None,
        vid: int | None = None,
        pid: int | None = None,
        exclusive: bool = True,
    ) -> PicobootSession:
        return self._service.open_session(serial, vid, pid, exclusive=exclusive)
