"""Service layer used by CLI and future UI frontends."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from espirctl.core.config_loader import load_settings
from espirctl.core.connection import ConnectionStateMachine, StateObserver
from espirctl.core.correlator import Correlator, NotificationObserver
from espirctl.core.device_match import matching_devices
from espirctl.core.errors import (
    ConnectionLostError,
    DeviceSelectionError,
    EspirError,
    NotFoundError,
    RemoteCommandError,
    RemoteSyncFailedError,
    RequestTimeoutError,
)
from espirctl.core.model import (
    DEFAULT_FREQUENCY_HZ,
    ConnectionState,
    DetectedDevice,
    Device,
    DeviceWithCommands,
    Envelope,
    IRCommand,
    Settings,
    SyncResult,
)
from espirctl.core.protocol import (
    RequestIdGenerator,
    build_add_device,
    build_delete_device,
    build_get_status,
    build_learn,
    build_transmit,
)
from espirctl.core.repository import ChangeListener, DeviceRepository
from espirctl.transports.base import Transport
from espirctl.transports.ble_gatt import BLEGATTTransport

LOGGER = logging.getLogger(__name__)


class EspirService:
    def __init__(
        self,
        *,
        settings: Settings | None = None,
        transport: Transport | None = None,
        repository: DeviceRepository | None = None,
        id_generator: RequestIdGenerator | None = None,
    ) -> None:
        self.load_warnings: tuple[str, ...] = ()
        if settings is None:
            loaded = load_settings()
            settings = loaded.settings
            self.load_warnings = loaded.warnings
        self.settings = settings
        self.transport = transport or BLEGATTTransport(
            service_uuid=settings.link.service_uuid,
            characteristic_uuid=settings.link.characteristic_uuid,
            write_with_response=settings.link.write_with_response,
            timeout_s=settings.link.connect_timeout_s,
        )
        self.repository = repository or DeviceRepository(settings.database)
        self.connection = ConnectionStateMachine(self.transport)
        self.correlator = Correlator(
            self.connection,
            timeouts=settings.timeouts,
            id_generator=id_generator,
        )

    @property
    def state(self) -> ConnectionState:
        return self.connection.state

    def subscribe_state(self, observer: StateObserver) -> Callable[[], None]:
        return self.connection.subscribe(observer)

    def subscribe_notifications(self, observer: NotificationObserver) -> Callable[[], None]:
        return self.correlator.add_notification_observer(observer)

    def subscribe_changes(self, listener: ChangeListener) -> Callable[[], None]:
        return self.repository.subscribe(listener)

    # Link

    async def scan(self) -> list[DetectedDevice]:
        discover = getattr(self.transport, "discover", None)
        if discover is None:
            raise DeviceSelectionError("The configured transport cannot scan for devices.")
        found = await discover(self.settings.link.scan_timeout_s)
        return matching_devices(found, self.settings.link.selector)

    async def resolve_address(self, address: str | None = None) -> str:
        if address:
            return address.upper()
        if self.settings.link.address:
            return self.settings.link.address

        candidates = await self.scan()
        if not candidates:
            raise DeviceSelectionError(
                "No ESPIR blaster found. Ensure it is powered and advertising, or pass --address."
            )
        if len(candidates) > 1:
            candidate_desc = ", ".join(f"{c.address} ({c.name})" for c in candidates)
            raise DeviceSelectionError(
                f"Multiple candidate blasters found: {candidate_desc}. Use --address to choose one."
            )
        return candidates[0].address

    async def connect(self, address: str | None = None) -> str:
        target = await self.resolve_address(address)
        await self.connection.request_connect(target)
        return target

    async def disconnect(self) -> None:
        await self.connection.request_disconnect()

    async def close(self) -> None:
        await self.disconnect()
        await self.repository.close()

    # Remote commands

    async def send_transmit(self, device_name: str, command_name: str) -> Envelope:
        device = await self._require_device(device_name)
        command = await self.repository.get_command_by_name(device.id, command_name)
        if command is None:
            raise NotFoundError(f"Command '{command_name}' not found for device '{device_name}'")
        return await self.correlator.request(build_transmit(device.name, command.name))

    async def start_learning(self, timeout_ms: int | None = None) -> Envelope:
        if timeout_ms is None:
            timeout_ms = self.settings.learn_timeout_ms
        return await self.correlator.request(build_learn(timeout_ms))

    async def learn_code(self, timeout_ms: int | None = None) -> Envelope:
        """Start learn mode and wait for the blaster's follow-up report.

        The blaster acknowledges LEARN immediately and later pushes either the
        learned code (``data`` with ``protocol``, ``value`` and ``bits``) or a
        TIMEOUT status. A rejected acknowledgement is returned as is.
        """
        if timeout_ms is None:
            timeout_ms = self.settings.learn_timeout_ms
        outcome: asyncio.Future[Envelope] = asyncio.get_running_loop().create_future()

        def _on_notification(envelope: Envelope) -> None:
            if not outcome.done() and _is_learn_report(envelope):
                outcome.set_result(envelope)

        def _on_state(state: ConnectionState) -> None:
            if state is ConnectionState.DISCONNECTED and not outcome.done():
                outcome.set_exception(ConnectionLostError("Connection lost while learning"))

        remove_observer = self.correlator.add_notification_observer(_on_notification)
        remove_state = self.connection.subscribe(_on_state)
        try:
            ack = await self.correlator.request(build_learn(timeout_ms))
            if not ack.ok:
                return ack
            wait_s = timeout_ms / 1000 + self.settings.timeouts.learn_grace_s
            try:
                return await asyncio.wait_for(outcome, wait_s)
            except asyncio.TimeoutError as exc:
                raise RequestTimeoutError(f"No learn report within {wait_s}s") from exc
        finally:
            remove_observer()
            remove_state()
            if outcome.done() and not outcome.cancelled():
                outcome.exception()
            else:
                outcome.cancel()

    async def store_learned_code(self, device_name: str, name: str, report: Envelope) -> IRCommand:
        data = report.data or {}
        if not report.ok or data.get("value") is None:
            raise NotFoundError("Learn report carries no IR code")
        return await self.add_command(
            device_name,
            name,
            str(data["value"]),
            protocol=data.get("protocol"),
        )

    async def get_status(self) -> Envelope:
        return await self.correlator.request(build_get_status())

    # Local store with remote propagation

    async def add_device(
        self,
        name: str,
        device_type: str,
        manufacturer: str | None = None,
        model: str | None = None,
    ) -> SyncResult:
        device = await self.repository.add_device(name, device_type, manufacturer, model)
        envelope = build_add_device(name, device_type, manufacturer, model)
        return await self._propagate(envelope, device)

    async def delete_device(self, device: Device | str) -> SyncResult:
        target = await self.repository.get_device_by_name(device) if isinstance(device, str) else device
        if target is None or not await self.repository.delete_device(target.id):
            return SyncResult(record=None, response=None)
        return await self._propagate(build_delete_device(target.name), target)

    async def retry_sync(self, error: RemoteSyncFailedError) -> SyncResult:
        return await self._propagate(error.envelope, error.record)

    async def _propagate(self, envelope: Envelope, record: Device | None) -> SyncResult:
        try:
            response = await self.correlator.request(envelope)
            if not response.ok:
                raise RemoteCommandError(response)
        except EspirError as exc:
            LOGGER.warning("Remote %s failed after local write: %s", envelope.command, exc)
            raise RemoteSyncFailedError(
                envelope.command,
                envelope=envelope,
                record=record,
                cause=exc,
            ) from exc
        return SyncResult(record=record, response=response)

    # Local-only commands

    async def add_command(
        self,
        device_name: str,
        name: str,
        ir_code: str,
        *,
        description: str | None = None,
        protocol: str | None = None,
        frequency: int = DEFAULT_FREQUENCY_HZ,
    ) -> IRCommand:
        device = await self._require_device(device_name)
        return await self.repository.add_command(
            device.id,
            name,
            ir_code,
            description=description,
            protocol=protocol,
            frequency=frequency,
        )

    async def delete_command(self, device_name: str, name: str) -> bool:
        device = await self.repository.get_device_by_name(device_name)
        if device is None:
            return False
        command = await self.repository.get_command_by_name(device.id, name)
        if command is None:
            return False
        return await self.repository.delete_command(command.id)

    # Reads

    async def list_devices(self) -> list[Device]:
        return await self.repository.list_devices()

    async def get_device(self, name: str) -> Device | None:
        return await self.repository.get_device_by_name(name)

    async def list_commands(self, device_name: str) -> list[IRCommand]:
        device = await self._require_device(device_name)
        return await self.repository.list_commands(device.id)

    async def devices_with_commands(self) -> list[DeviceWithCommands]:
        return await self.repository.devices_with_commands()

    async def export_devices(self) -> list[dict[str, Any]]:
        return await self.repository.export_devices()

    async def import_devices(self, records: Iterable[Mapping[str, Any]]) -> int:
        return await self.repository.import_devices(records)

    async def _require_device(self, name: str) -> Device:
        device = await self.repository.get_device_by_name(name)
        if device is None:
            raise NotFoundError(f"Device '{name}' not found")
        return device


def _is_learn_report(envelope: Envelope) -> bool:
    if envelope.status == "TIMEOUT":
        return True
    return envelope.ok and (envelope.data or {}).get("value") is not None
