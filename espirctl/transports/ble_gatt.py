"""BLE GATT transport implementation."""

from __future__ import annotations

import asyncio
import logging

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError

from espirctl.core.errors import (
    TransportConnectError,
    TransportSendError,
    TransportTimeoutError,
)
from espirctl.core.model import DetectedDevice
from espirctl.transports.base import (
    BytesReceived,
    EventHandler,
    TransportConnected,
    TransportDisconnected,
    TransportEvent,
)

LOGGER = logging.getLogger(__name__)


class BLEGATTTransport:
    """Persistent link to the blaster's single command characteristic.

    Commands are written to the characteristic and replies arrive as
    notifications on the same characteristic. bleak runs its callbacks on the
    event loop, so events reach the subscriber in the order bleak reports them.
    """

    def __init__(
        self,
        *,
        service_uuid: str,
        characteristic_uuid: str,
        write_with_response: bool = True,
        timeout_s: float = 10.0,
    ) -> None:
        self.service_uuid = service_uuid
        self.characteristic_uuid = characteristic_uuid
        self.write_with_response = write_with_response
        self.timeout_s = timeout_s
        self._client: BleakClient | None = None
        self._handler: EventHandler | None = None

    def subscribe(self, handler: EventHandler) -> None:
        self._handler = handler

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._client.is_connected

    async def connect(self, address: str) -> None:
        client = BleakClient(
            address,
            disconnected_callback=self._on_disconnected,
            timeout=self.timeout_s,
        )
        self._client = client
        try:
            await client.connect()
            self._ensure_current(client, address)
            service = client.services.get_service(self.service_uuid)
            if service is None or service.get_characteristic(self.characteristic_uuid) is None:
                raise TransportConnectError(
                    f"{address} does not expose characteristic {self.characteristic_uuid} "
                    f"on service {self.service_uuid}"
                )
            await client.start_notify(self.characteristic_uuid, self._on_notify)
            self._ensure_current(client, address)
        except TransportConnectError:
            await self._abandon(client)
            raise
        except asyncio.TimeoutError as exc:
            await self._abandon(client)
            raise TransportTimeoutError(
                f"BLE connect to {address} timed out after {self.timeout_s}s"
            ) from exc
        except (BleakError, OSError) as exc:
            await self._abandon(client)
            raise TransportConnectError(f"BLE connect failed for {address}: {exc}") from exc

        LOGGER.debug("Connected to %s", address)
        self._emit(TransportConnected(address=address))

    async def disconnect(self) -> None:
        client = self._client
        if client is None:
            return
        # Detach first so bleak's disconnected callback is ignored.
        self._client = None
        try:
            await client.disconnect()
        except (BleakError, OSError) as exc:
            LOGGER.warning("Error during disconnect: %s", exc)
        self._emit(TransportDisconnected(reason="local disconnect"))

    async def write(self, payload: bytes) -> None:
        client = self._client
        if client is None or not client.is_connected:
            raise TransportSendError("BLE link is not open")
        try:
            await client.write_gatt_char(
                self.characteristic_uuid,
                payload,
                response=self.write_with_response,
            )
        except asyncio.TimeoutError as exc:
            raise TransportTimeoutError("BLE write timed out") from exc
        except (BleakError, OSError) as exc:
            raise TransportSendError(f"BLE GATT write failed: {exc}") from exc

    async def discover(self, timeout_s: float = 5.0) -> list[DetectedDevice]:
        try:
            found = await BleakScanner.discover(timeout=timeout_s, return_adv=True)
        except (BleakError, OSError) as exc:
            raise TransportConnectError(f"BLE scan failed: {exc}") from exc

        devices: list[DetectedDevice] = []
        for ble_device, adv in found.values():
            devices.append(
                DetectedDevice(
                    address=ble_device.address.upper(),
                    name=adv.local_name or ble_device.name or "<unknown-device>",
                    rssi=adv.rssi,
                    service_uuids=tuple(u.lower() for u in adv.service_uuids),
                )
            )
        return devices

    def _ensure_current(self, client: BleakClient, address: str) -> None:
        # disconnect() ran while this attempt was in flight.
        if self._client is not client:
            raise TransportConnectError(f"Connect attempt to {address} was discarded")

    async def _abandon(self, client: BleakClient) -> None:
        if self._client is client:
            self._client = None
        try:
            await client.disconnect()
        except (BleakError, OSError):
            LOGGER.debug("Ignoring disconnect error while abandoning attempt")

    def _on_disconnected(self, client: BleakClient) -> None:
        if self._client is not client:
            return
        self._client = None
        LOGGER.debug("Link dropped by peer")
        self._emit(TransportDisconnected(reason="peer disconnected"))

    def _on_notify(self, _: object, data: bytearray) -> None:
        self._emit(BytesReceived(data=bytes(data)))

    def _emit(self, event: TransportEvent) -> None:
        if self._handler is not None:
            self._handler(event)
