"""Stable public API for building tooling on top of espirctl.

This module is the supported integration surface for third-party callers.
Avoid importing from private/internal modules unless intentionally depending on
non-stable internals.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from espirctl.core.errors import (
    AlreadyActiveError,
    ConfigLoadError,
    ConfigValidationError,
    ConnectionLostError,
    DecodeError,
    DeviceSelectionError,
    DuplicateNameError,
    EspirError,
    NotConnectedError,
    NotFoundError,
    RemoteCommandError,
    RemoteSyncFailedError,
    RequestTimeoutError,
    TransportConnectError,
    TransportError,
    TransportSendError,
    TransportTimeoutError,
)
from espirctl.core.model import (
    ConnectionState,
    DetectedDevice,
    Device,
    DeviceWithCommands,
    Envelope,
    IRCommand,
    RepositoryChange,
    Settings,
    SyncResult,
)
from espirctl.core.service import EspirService
from espirctl.transports.base import Transport

__all__ = [
    "EspirError",
    "AlreadyActiveError",
    "ConfigLoadError",
    "ConfigValidationError",
    "ConnectionLostError",
    "DecodeError",
    "DeviceSelectionError",
    "DuplicateNameError",
    "NotConnectedError",
    "NotFoundError",
    "RemoteCommandError",
    "RemoteSyncFailedError",
    "RequestTimeoutError",
    "TransportError",
    "TransportConnectError",
    "TransportSendError",
    "TransportTimeoutError",
    "ConnectionState",
    "DetectedDevice",
    "Device",
    "DeviceWithCommands",
    "Envelope",
    "IRCommand",
    "RepositoryChange",
    "Settings",
    "SyncResult",
    "Client",
]


class Client:
    """Public async client for an ESPIR blaster and its local profile store.

    A `Client` instance wraps configuration loading, the BLE link, request
    correlation and the SQLite store behind a stable API intended for
    third-party tools (GUI/TUI/services/scripts). Use it as an async context
    manager to release the link and the database on exit.
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        transport: Transport | None = None,
    ) -> None:
        self._service = EspirService(settings=settings, transport=transport)

    async def __aenter__(self) -> Client:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self._service.close()

    @property
    def load_warnings(self) -> tuple[str, ...]:
        return self._service.load_warnings

    @property
    def state(self) -> ConnectionState:
        return self._service.state

    def on_state_change(self, observer: Callable[[ConnectionState], None]) -> Callable[[], None]:
        return self._service.subscribe_state(observer)

    def on_notification(self, observer: Callable[[Envelope], None]) -> Callable[[], None]:
        return self._service.subscribe_notifications(observer)

    def on_store_change(self, listener: Callable[[RepositoryChange], None]) -> Callable[[], None]:
        return self._service.subscribe_changes(listener)

    async def scan(self) -> list[DetectedDevice]:
        return await self._service.scan()

    async def connect(self, address: str | None = None) -> str:
        return await self._service.connect(address)

    async def disconnect(self) -> None:
        await self._service.disconnect()

    async def send_transmit(self, device_name: str, command_name: str) -> Envelope:
        return await self._service.send_transmit(device_name, command_name)

    async def start_learning(self, timeout_ms: int | None = None) -> Envelope:
        return await self._service.start_learning(timeout_ms)

    async def learn_code(self, timeout_ms: int | None = None) -> Envelope:
        return await self._service.learn_code(timeout_ms)

    async def store_learned_code(self, device_name: str, name: str, report: Envelope) -> IRCommand:
        return await self._service.store_learned_code(device_name, name, report)

    async def get_status(self) -> Envelope:
        return await self._service.get_status()

    async def add_device(
        self,
        name: str,
        device_type: str,
        *,
        manufacturer: str | None = None,
        model: str | None = None,
    ) -> SyncResult:
        return await self._service.add_device(name, device_type, manufacturer, model)

    async def delete_device(self, device: Device | str) -> SyncResult:
        return await self._service.delete_device(device)

    async def retry_sync(self, error: RemoteSyncFailedError) -> SyncResult:
        return await self._service.retry_sync(error)

    async def add_command(
        self,
        device_name: str,
        name: str,
        ir_code: str,
        **options: Any,
    ) -> IRCommand:
        return await self._service.add_command(device_name, name, ir_code, **options)

    async def delete_command(self, device_name: str, name: str) -> bool:
        return await self._service.delete_command(device_name, name)

    async def list_devices(self) -> list[Device]:
        return await self._service.list_devices()

    async def list_commands(self, device_name: str) -> list[IRCommand]:
        return await self._service.list_commands(device_name)

    async def devices_with_commands(self) -> list[DeviceWithCommands]:
        return await self._service.devices_with_commands()
