"""Domain-specific errors for picobootctl."""

from __future__ import annotations


class PicobootError(Exception):
    """Base error for picobootctl."""


class ConfigValidationError(PicobootError):
    """Raised when a settings file does not conform to schema or semantics."""


class ConfigLoadError(PicobootError):
    """Raised when reading settings sources fails."""


class DeviceSelectionError(PicobootError):
    """Raised when discovery cannot resolve a single bootloader device."""


class DeviceDiscoveryError(PicobootError):
    """Raised when USB device enumeration fails."""


class AddressError(PicobootError, ValueError):
    """Raised when an address range is invalid for the requested operation."""


class TransportError(PicobootError):
    """Base transport error, carrying the backend's numeric error code."""

    def __init__(self, message: str, code: int = -99) -> None:
        super().__init__(message)
        self.code = code


class TransportTimeoutError(TransportError):
    """Raised when a USB transfer times out."""


class ProtocolError(PicobootError):
    """Raised when the device moved fewer bytes than the command required."""


class CommandFailureError(PicobootError):
    """Raised when the device reports a failed PICOBOOT command status."""

    def __init__(self, message: str, status: object) -> None:
        super().__init__(message)
        self.status = status
