"""PICOBOOT command/response engine bound to one claimed USB interface."""

from __future__ import annotations

import logging

from picobootctl.core.errors import PicobootError, ProtocolError, TransportError
from picobootctl.core.model import Model, Timeouts, XipState
from picobootctl.core.protocol import (
    CACHE_EFFECTS,
    COMMAND_SIZE,
    PICOBOOT_IF_CMD_STATUS,
    PICOBOOT_IF_RESET,
    READ_SENTINEL,
    REQUEST_GET_STATUS,
    REQUEST_TYPE_STANDARD_ENDPOINT_IN,
    REQUEST_TYPE_VENDOR_INTERFACE_IN,
    REQUEST_TYPE_VENDOR_INTERFACE_OUT,
    STATUS_SIZE,
    Command,
    CommandStatus,
    ExclusiveType,
    InfoType,
    Opcode,
    address_command,
    exclusive_command,
    get_info_command,
    otp_command,
    range_command,
    reboot2_command,
    reboot_command,
)
from picobootctl.transports.base import UsbHandle

LOGGER = logging.getLogger(__name__)

_TOKEN_MASK = 0xFFFFFFFF


class Connection:
    """An open PICOBOOT command channel.

    The connection tracks what it believes the device's XIP and exclusive
    access state to be. Both caches are dropped to unknown/False as soon as a
    command header is accepted and only restored from `CACHE_EFFECTS` once the
    command's ack phase completes, so a failed command never leaves stale
    state behind.

    Instances are not thread safe; commands must be issued one at a time.
    """

    def __init__(
        self,
        handle: UsbHandle,
        *,
        interface: int,
        out_ep: int,
        in_ep: int,
        model: Model = Model.UNKNOWN,
        timeouts: Timeouts | None = None,
    ) -> None:
        self.handle = handle
        self.interface = interface
        self.out_ep = out_ep
        self.in_ep = in_ep
        self.model = model
        self.timeouts = timeouts or Timeouts()
        self.xip_state = XipState.UNKNOWN
        self.exclusive = False
        self._token = 1

    def close(self) -> None:
        self.handle.close()

    def _next_token(self) -> int:
        token = self._token
        self._token = (self._token + 1) & _TOKEN_MASK
        return token

    def send(
        self,
        command: Command,
        buffer: bytearray | bytes | None = None,
        *,
        timeout_ms: int | None = None,
    ) -> None:
        """Run one command: header, optional data phase, then the ack.

        For device-to-host commands the received bytes are copied into
        `buffer`, which must be writable. `timeout_ms` overrides the data
        phase timeout (or the ack timeout when there is no data phase) for
        this call only.
        """
        length = command.transfer_length
        if length and (buffer is None or len(buffer) < length):
            raise ValueError(f"{command.opcode.name} needs a buffer of at least {length} bytes")

        token = self._next_token()
        LOGGER.debug("%s token=%d transfer=%d", command.opcode.name, token, length)
        header = command.pack(token)
        sent = self.handle.bulk_write(self.out_ep, header, self.timeouts.command_ms)
        if sent != COMMAND_SIZE:
            raise ProtocolError(f"Sent {sent}/{COMMAND_SIZE} bytes of {command.opcode.name} command")

        saved_xip, saved_exclusive = self.xip_state, self.exclusive
        self.xip_state = XipState.UNKNOWN
        self.exclusive = False

        timeout = timeout_ms or self.timeouts.data_ms
        if length:
            if command.device_to_host:
                self._receive_data(command, buffer, timeout)
            else:
                self._send_data(command, buffer, timeout)

        # ack is in the opposite direction to the data phase
        ack_timeout = self.timeouts.ack_ms if length else timeout
        if command.device_to_host:
            self.handle.bulk_write(self.out_ep, b"\x00", ack_timeout)
        else:
            self.handle.bulk_read(self.in_ep, 1, ack_timeout)

        xip_effect, exclusive_effect = CACHE_EFFECTS[command.opcode]
        self.xip_state = xip_effect.apply(saved_xip, XipState.UNKNOWN)
        self.exclusive = exclusive_effect.apply(saved_exclusive, False, command.requested_exclusive)

    def _receive_data(self, command: Command, buffer, timeout: int) -> None:
        length = command.transfer_length
        data = self.handle.bulk_read(self.in_ep, length, timeout)
        received = min(len(data), length)
        buffer[:received] = data[:received]
        if len(data) != length:
            raise ProtocolError(f"Received {len(data)}/{length} bytes for {command.opcode.name}")

    def _send_data(self, command: Command, buffer, timeout: int) -> None:
        length = command.transfer_length
        try:
            sent = self.handle.bulk_write(self.out_ep, bytes(buffer[:length]), timeout)
        except TransportError:
            self._log_status()
            raise
        if sent != length:
            self._log_status()
            raise ProtocolError(f"Sent {sent}/{length} bytes for {command.opcode.name}")

    def _log_status(self) -> None:
        try:
            status = self.cmd_status()
        except PicobootError as exc:
            LOGGER.warning("Status query after failed data phase also failed: %s", exc)
            return
        LOGGER.warning(
            "Device status: cmd 0x%02x%s token=%08x status=%s",
            status.opcode,
            " (in progress)" if status.in_progress else "",
            status.token,
            getattr(status.status, "name", status.status),
        )

    def cmd_status(self) -> CommandStatus:
        data = self.handle.control_transfer(
            REQUEST_TYPE_VENDOR_INTERFACE_IN,
            PICOBOOT_IF_CMD_STATUS,
            0,
            self.interface,
            STATUS_SIZE,
            self.timeouts.control_ms,
        )
        if len(data) != STATUS_SIZE:
            raise ProtocolError(f"Status query returned {len(data)}/{STATUS_SIZE} bytes")
        return CommandStatus.unpack(bytes(data))

    def _is_halted(self, endpoint: int) -> bool:
        try:
            data = self.handle.control_transfer(
                REQUEST_TYPE_STANDARD_ENDPOINT_IN,
                REQUEST_GET_STATUS,
                0,
                endpoint,
                2,
                self.timeouts.control_ms,
            )
        except TransportError as exc:
            LOGGER.debug("Get status of 0x%02x failed: %s", endpoint, exc)
            return False
        if len(data) != 2:
            LOGGER.debug("Get status of 0x%02x returned %d bytes", endpoint, len(data))
            return False
        return bool(data[0] & 1)

    def reset(self) -> None:
        """Clear halted bulk endpoints and reset the PICOBOOT interface."""
        LOGGER.debug("RESET")
        for endpoint in (self.in_ep, self.out_ep):
            if self._is_halted(endpoint):
                LOGGER.debug("0x%02x was halted", endpoint)
                self.handle.clear_halt(endpoint)
        self.handle.control_transfer(
            REQUEST_TYPE_VENDOR_INTERFACE_OUT,
            PICOBOOT_IF_RESET,
            0,
            self.interface,
            b"",
            self.timeouts.control_ms,
        )
        self.exclusive = False

    def exclusive_access(self, exclusive: ExclusiveType = ExclusiveType.EXCLUSIVE) -> None:
        self.send(exclusive_command(ExclusiveType(exclusive)))

    def exit_xip(self) -> None:
        if self.exclusive and self.xip_state is XipState.INACTIVE:
            LOGGER.debug("Skipping EXIT_XIP")
            return
        self.send(Command(Opcode.EXIT_XIP))

    def enter_cmd_xip(self) -> None:
        self.send(Command(Opcode.ENTER_CMD_XIP))

    def reboot(self, pc: int, sp: int, delay_ms: int) -> None:
        LOGGER.debug("REBOOT %08x %08x %d", pc, sp, delay_ms)
        self.send(reboot_command(pc, sp, delay_ms))

    def reboot2(self, flags: int, delay_ms: int, param0: int = 0, param1: int = 0) -> None:
        LOGGER.debug("REBOOT2 %08x %08x %08x %d", flags, param0, param1, delay_ms)
        self.send(reboot2_command(flags, delay_ms, param0, param1))

    def exec(self, address: int) -> None:
        LOGGER.debug("EXEC %08x", address)
        self.send(address_command(Opcode.EXEC, address))

    def flash_erase(self, address: int, size: int) -> None:
        LOGGER.debug("FLASH_ERASE %08x+%08x", address, size)
        self.send(range_command(Opcode.FLASH_ERASE, address, size))

    def vector(self, address: int) -> None:
        LOGGER.debug("VECTOR %08x", address)
        self.send(address_command(Opcode.VECTORIZE_FLASH, address))

    def write(self, address: int, data: bytes) -> None:
        LOGGER.debug("WRITE %08x+%08x", address, len(data))
        self.send(range_command(Opcode.WRITE, address, len(data), transfer=True), data)

    def read(self, address: int, length: int, buffer: bytearray | None = None) -> bytearray:
        """Read `length` bytes into `buffer` (allocated when omitted).

        The buffer is filled with 0xaa first, so bytes the device never sent
        remain recognisable when the read fails part way.
        """
        if buffer is None:
            buffer = bytearray(length)
        buffer[:length] = bytes([READ_SENTINEL]) * length
        LOGGER.debug("READ %08x+%08x", address, length)
        self.send(range_command(Opcode.READ, address, length, transfer=True), buffer)
        if length < 256 and LOGGER.isEnabledFor(logging.DEBUG):
            LOGGER.debug("  %s", bytes(buffer[:length]).hex(" "))
        return buffer

    def otp_write(self, row: int, row_count: int, ecc: bool, data: bytes) -> None:
        LOGGER.debug("OTP WRITE %04x+%08x ecc=%d", row, row_count, ecc)
        command = otp_command(Opcode.OTP_WRITE, row, row_count, ecc, len(data))
        self.send(command, data, timeout_ms=self.timeouts.otp_write_ms(len(data)))

    def otp_read(self, row: int, row_count: int, ecc: bool) -> bytes:
        length = row_count * (2 if ecc else 4)
        LOGGER.debug("OTP READ %04x+%08x ecc=%d", row, row_count, ecc)
        buffer = bytearray(length)
        self.send(otp_command(Opcode.OTP_READ, row, row_count, ecc, length), buffer)
        return bytes(buffer)

    def get_info(self, info_type: InfoType, *params: int, length: int = 256) -> bytes:
        LOGGER.debug("GET_INFO %s", InfoType(info_type).name)
        buffer = bytearray(length)
        self.send(get_info_command(info_type, params, length), buffer)
        return bytes(buffer)

