"""Typer CLI entrypoint."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import typer

from espirctl.core.errors import EspirError, RemoteSyncFailedError
from espirctl.core.model import Envelope
from espirctl.core.service import EspirService

T = TypeVar("T")

app = typer.Typer(help="Control an ESPIR infrared blaster over Bluetooth LE")

ADDRESS_OPTION = typer.Option(None, "--address", help="Blaster BLE address (skips scanning)")
OFFLINE_OPTION = typer.Option(
    False,
    "--offline",
    help="Skip connecting; the remote sync is deferred and reported as failed",
)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


def _build_service() -> EspirService:
    service = EspirService()
    for warning in getattr(service, "load_warnings", ()):
        typer.echo(f"Warning: {warning}", err=True)
    return service


def _run(
    service: EspirService,
    work: Callable[[], Awaitable[T]],
    *,
    link: str = "none",
    address: str | None = None,
) -> T:
    """Run one operation, connecting first when ``link`` asks for it.

    ``link`` is "required", "optional" (a failed connect only warns, for
    operations whose local half must still happen) or "none".
    """

    async def _session() -> T:
        try:
            if link == "required":
                await service.connect(address)
            elif link == "optional":
                try:
                    await service.connect(address)
                except EspirError as exc:
                    typer.echo(f"Warning: could not connect: {exc}", err=True)
            return await work()
        finally:
            await service.close()

    return asyncio.run(_session())


def _format_response(response: Envelope) -> str:
    text = f"{response.status or 'OK'}: {response.message or '(no message)'}"
    if response.data:
        text += f" {json.dumps(response.data, sort_keys=True)}"
    return text


def _fail(exc: EspirError) -> typer.Exit:
    if isinstance(exc, RemoteSyncFailedError):
        typer.echo(f"Warning: {exc}", err=True)
        typer.echo("The local change was kept; retry once the blaster is reachable.", err=True)
        return typer.Exit(code=2)
    typer.echo(f"Error: {exc}", err=True)
    return typer.Exit(code=1)


@app.command("scan")
def scan() -> None:
    """List advertising ESPIR blasters."""
    try:
        service = _build_service()
        devices = _run(service, service.scan)
        if not devices:
            typer.echo("No ESPIR blasters found")
            return
        for device in devices:
            rssi = f" rssi={device.rssi}" if device.rssi is not None else ""
            typer.echo(f"{device.address} {device.name}{rssi}")
    except EspirError as exc:
        raise _fail(exc) from None


@app.command("status")
def status(address: str | None = ADDRESS_OPTION) -> None:
    """Query the blaster's system status."""
    try:
        service = _build_service()
        response = _run(service, service.get_status, link="required", address=address)
        typer.echo(_format_response(response))
    except EspirError as exc:
        raise _fail(exc) from None


@app.command("send")
def send(
    device: str,
    command: str,
    address: str | None = ADDRESS_OPTION,
) -> None:
    """Transmit a stored IR command for DEVICE."""
    try:
        service = _build_service()
        response = _run(
            service,
            lambda: service.send_transmit(device, command),
            link="required",
            address=address,
        )
        if not response.ok:
            typer.echo(f"Error: {_format_response(response)}", err=True)
            raise typer.Exit(code=1)
        typer.echo(f"Sent {device}/{command}: {_format_response(response)}")
    except EspirError as exc:
        raise _fail(exc) from None


@app.command("learn")
def learn(
    timeout_ms: int | None = typer.Option(None, "--timeout-ms", min=1, help="Learn window in ms"),
    device: str | None = typer.Option(None, "--device", help="Store the learned code for this device"),
    name: str | None = typer.Option(None, "--name", help="Command name for the stored code"),
    address: str | None = ADDRESS_OPTION,
) -> None:
    """Put the blaster into IR learn mode and print the learned code."""
    if (device is None) != (name is None):
        typer.echo("Error: --device and --name must be given together", err=True)
        raise typer.Exit(code=1)

    try:
        service = _build_service()

        async def _learn() -> Envelope:
            report = await service.learn_code(timeout_ms)
            if report.ok and device is not None and name is not None:
                await service.store_learned_code(device, name, report)
                typer.echo(f"Command added: {device}/{name}")
            return report

        report = _run(service, _learn, link="required", address=address)
        if not report.ok:
            typer.echo(f"Error: {_format_response(report)}", err=True)
            raise typer.Exit(code=1)
        typer.echo(_format_response(report))
    except EspirError as exc:
        raise _fail(exc) from None


@app.command("devices")
def list_devices() -> None:
    """List stored device profiles and their commands."""
    try:
        service = _build_service()
        entries = _run(service, service.devices_with_commands)
        if not entries:
            typer.echo("No devices stored")
            return
        for entry in entries:
            extra = " ".join(v for v in (entry.device.manufacturer, entry.device.model) if v)
            suffix = f" [{extra}]" if extra else ""
            typer.echo(f"{entry.device.name} ({entry.device.type}){suffix}")
            for command in entry.commands:
                protocol = f" {command.protocol}" if command.protocol else ""
                typer.echo(f"  {command.name}{protocol} @{command.frequency}Hz")
    except EspirError as exc:
        raise _fail(exc) from None


@app.command("add-device")
def add_device(
    name: str,
    device_type: str = typer.Argument(..., metavar="TYPE"),
    manufacturer: str | None = typer.Option(None, "--manufacturer"),
    model: str | None = typer.Option(None, "--model"),
    offline: bool = OFFLINE_OPTION,
    address: str | None = ADDRESS_OPTION,
) -> None:
    """Store a device profile and register it on the blaster."""
    try:
        service = _build_service()
        _run(
            service,
            lambda: service.add_device(name, device_type, manufacturer, model),
            link="none" if offline else "optional",
            address=address,
        )
        typer.echo(f"Device added: {name}")
    except EspirError as exc:
        raise _fail(exc) from None


@app.command("delete-device")
def delete_device(
    name: str,
    offline: bool = OFFLINE_OPTION,
    address: str | None = ADDRESS_OPTION,
) -> None:
    """Delete a device profile with all of its commands."""
    try:
        service = _build_service()
        result = _run(
            service,
            lambda: service.delete_device(name),
            link="none" if offline else "optional",
            address=address,
        )
        if result.record is None:
            typer.echo(f"No device named {name}; nothing to delete")
            return
        typer.echo(f"Device deleted: {name}")
    except EspirError as exc:
        raise _fail(exc) from None


@app.command("add-command")
def add_command(
    device: str,
    name: str,
    code: str,
    description: str | None = typer.Option(None, "--description"),
    protocol: str | None = typer.Option(None, "--protocol"),
    frequency: int = typer.Option(38000, "--frequency", min=1, help="Carrier frequency in Hz"),
) -> None:
    """Store an IR code under NAME for DEVICE."""
    try:
        service = _build_service()
        _run(
            service,
            lambda: service.add_command(
                device,
                name,
                code,
                description=description,
                protocol=protocol,
                frequency=frequency,
            ),
        )
        typer.echo(f"Command added: {device}/{name}")
    except EspirError as exc:
        raise _fail(exc) from None


@app.command("delete-command")
def delete_command(device: str, name: str) -> None:
    """Delete a stored IR command."""
    try:
        service = _build_service()
        removed = _run(service, lambda: service.delete_command(device, name))
        if removed:
            typer.echo(f"Command deleted: {device}/{name}")
        else:
            typer.echo(f"No command {device}/{name}; nothing to delete")
    except EspirError as exc:
        raise _fail(exc) from None


@app.command("export")
def export_devices(path: Path) -> None:
    """Write all stored devices and commands to a JSON file."""
    try:
        service = _build_service()
        records = _run(service, service.export_devices)
        path.write_text(json.dumps(records, indent=2) + "\n", encoding="utf-8")
        typer.echo(f"Exported {len(records)} device(s) to {path}")
    except OSError as exc:
        typer.echo(f"Error: could not write {path}: {exc}", err=True)
        raise typer.Exit(code=1) from None
    except EspirError as exc:
        raise _fail(exc) from None


@app.command("import")
def import_devices(path: Path) -> None:
    """Load devices and commands from a JSON export."""
    try:
        records: Any = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        typer.echo(f"Error: could not read {path}: {exc}", err=True)
        raise typer.Exit(code=1) from None
    if not isinstance(records, list):
        typer.echo(f"Error: {path} must contain a JSON list of devices", err=True)
        raise typer.Exit(code=1)

    try:
        service = _build_service()
        imported = _run(service, lambda: service.import_devices(records))
        typer.echo(f"Imported {imported} device(s)")
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        typer.echo(f"Error: malformed device record in {path}: {exc}", err=True)
        raise typer.Exit(code=1) from None
    except EspirError as exc:
        raise _fail(exc) from None


def run() -> None:
    app()


if __name__ == "__main__":
    run()
