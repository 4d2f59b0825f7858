"""Typer CLI entrypoint."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import typer

from picobootctl.core.errors import PicobootError
from picobootctl.core.memory import AddressRange
from picobootctl.core.model import Model
from picobootctl.core.service import PicobootService
from picobootctl.core.session import PicobootSession

app = typer.Typer(help="Raspberry Pi RP2040/RP2350 BOOTSEL control over USB")


@dataclass(frozen=True)
class _Target:
    serial: str | None
    vid: int | None
    pid: int | None


def _parse_int(value: str, name: str) -> int:
    try:
        return int(value, 0)
    except ValueError:
        raise typer.BadParameter(f"{value!r} is not a valid number", param_hint=name) from None


def _build_service() -> PicobootService:
    return PicobootService()


def _open(ctx: typer.Context) -> PicobootSession:
    target: _Target = ctx.obj
    return _build_service().open_session(target.serial, target.vid, target.pid)


def _hexdump(address: int, data: bytes) -> None:
    for offset in range(0, len(data), 16):
        chunk = data[offset : offset + 16]
        typer.echo(f"{address + offset:08x}: {chunk.hex(' ')}")


@app.callback()
def main(
    ctx: typer.Context,
    serial: str | None = typer.Option(None, "--serial", help="Flash ID (RP2040) or USB serial (RP2350)"),
    vid: str | None = typer.Option(None, "--vid", help="USB vendor id; 0 disables id filtering"),
    pid: str | None = typer.Option(None, "--pid", help="USB product id"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log PICOBOOT traffic"),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = _Target(
        serial=serial,
        vid=_parse_int(vid, "--vid") if vid is not None else None,
        pid=_parse_int(pid, "--pid") if pid is not None else None,
    )


@app.command("devices")
def list_devices(ctx: typer.Context) -> None:
    """List attached RP2040/RP2350 devices and their USB personality."""
    target: _Target = ctx.obj
    try:
        service = _build_service()
        devices = service.list_devices(vid=target.vid, pid=target.pid, serial=target.serial)
        if not devices:
            typer.echo("No RP-series devices found")
            return

        for device in devices:
            serial = f" serial={device.serial}" if device.serial else ""
            typer.echo(
                f"bus {device.bus} address {device.address} "
                f"[{device.vendor_id:04x}:{device.product_id:04x}] "
                f"{device.model.friendly_name} -> {device.result.value}{serial}"
            )
    except PicobootError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("info")
def info(ctx: typer.Context) -> None:
    """Show model, unique ID and flash size of the selected device."""
    try:
        with _open(ctx) as session:
            typer.echo(f"Model: {session.model.friendly_name}")
            unique_id = session.unique_id()
            typer.echo(f"Unique ID: {unique_id:016X}" if unique_id is not None else "Unique ID: <unavailable>")
            if session.model is Model.RP2040:
                size = session.guess_flash_size()
                typer.echo(f"Flash size: {size} bytes" if size else "Flash size: <blank or absent>")
    except PicobootError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("read")
def read(
    ctx: typer.Context,
    address: str,
    size: str,
    out: Path | None = typer.Option(None, "--out", "-o", help="Write raw bytes to FILE"),
) -> None:
    """Read SIZE bytes from ADDRESS."""
    start = _parse_int(address, "ADDRESS")
    length = _parse_int(size, "SIZE")
    try:
        with _open(ctx) as session:
            data = session.read(start, length)
    except PicobootError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None

    if out is not None:
        out.write_bytes(data)
        typer.echo(f"Wrote {len(data)} bytes to {out}")
    else:
        _hexdump(start, data)


@app.command("peek")
def peek(ctx: typer.Context, address: str) -> None:
    """Load one 32-bit word by running a stub on the device."""
    target = _parse_int(address, "ADDRESS")
    try:
        with _open(ctx) as session:
            value = session.peek(target)
        typer.echo(f"{target:08x}: {value:08x}")
    except PicobootError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("poke")
def poke(ctx: typer.Context, address: str, value: str) -> None:
    """Store one 32-bit word by running a stub on the device."""
    target = _parse_int(address, "ADDRESS")
    word = _parse_int(value, "VALUE")
    try:
        with _open(ctx) as session:
            session.poke(target, word)
        typer.echo(f"{target:08x} <- {word:08x}")
    except PicobootError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("flash-id")
def flash_id(ctx: typer.Context) -> None:
    """Print the unique ID used to select this device with --serial."""
    try:
        with _open(ctx) as session:
            unique_id = session.unique_id()
        if unique_id is None:
            typer.echo("Error: device did not report a unique ID", err=True)
            raise typer.Exit(code=1)
        typer.echo(f"{unique_id:016X}")
    except PicobootError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("erase")
def erase(ctx: typer.Context, address: str, size: str) -> None:
    """Erase SIZE bytes of flash at ADDRESS (4096 byte sectors)."""
    start = _parse_int(address, "ADDRESS")
    length = _parse_int(size, "SIZE")
    try:
        target = AddressRange(start, start + length)
        with _open(ctx) as session:
            session.flash_erase(target)
        typer.echo(f"Erased {target}")
    except PicobootError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("reboot")
def reboot(
    ctx: typer.Context,
    start: str = typer.Option("0", "--start", help="Binary start address; 0 for a normal boot"),
) -> None:
    """Reboot the device, optionally into the image at --start."""
    binary_start = _parse_int(start, "--start")
    try:
        with _open(ctx) as session:
            session.reboot(binary_start)
        typer.echo("Rebooting")
    except PicobootError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("otp-read")
def otp_read(
    ctx: typer.Context,
    row: str,
    count: str,
    ecc: bool = typer.Option(False, "--ecc", help="Read ECC-corrected 16-bit rows"),
) -> None:
    """Read COUNT OTP rows starting at ROW (RP2350 only)."""
    first_row = _parse_int(row, "ROW")
    row_count = _parse_int(count, "COUNT")
    try:
        with _open(ctx) as session:
            data = session.otp_read(first_row, row_count, ecc)
    except PicobootError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None

    row_size = 2 if ecc else 4
    for index in range(row_count):
        raw = data[index * row_size : (index + 1) * row_size]
        typer.echo(f"{first_row + index:04x}: {int.from_bytes(raw, 'little'):0{row_size * 2}x}")


def run() -> None:
    app()


if __name__ == "__main__":
    run()
