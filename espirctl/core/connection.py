"""Lifecycle of the single link to the blaster."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from espirctl.core.errors import (
    AlreadyActiveError,
    NotConnectedError,
    TransportError,
    TransportSendError,
)
from espirctl.core.model import ConnectionState
from espirctl.transports.base import (
    BytesReceived,
    Transport,
    TransportConnected,
    TransportDisconnected,
    TransportEvent,
)

LOGGER = logging.getLogger(__name__)

StateObserver = Callable[[ConnectionState], None]
BytesListener = Callable[[bytes], None]


class ConnectionStateMachine:
    """Owns the connection state and gates every write on it.

    Transitions are published synchronously, one call per transition per
    observer, in the order they happen.
    """

    def __init__(self, transport: Transport) -> None:
        self._transport = transport
        self._state = ConnectionState.DISCONNECTED
        self._observers: list[StateObserver] = []
        self._bytes_listeners: list[BytesListener] = []
        self._write_lock = asyncio.Lock()
        self._cleanup_tasks: set[asyncio.Task[None]] = set()
        self.address: str | None = None
        transport.subscribe(self.handle_event)

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def subscribe(self, observer: StateObserver) -> Callable[[], None]:
        self._observers.append(observer)

        def _remove_observer() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return _remove_observer

    def add_bytes_listener(self, listener: BytesListener) -> None:
        self._bytes_listeners.append(listener)

    async def request_connect(self, address: str) -> None:
        if self._cleanup_tasks:
            await asyncio.gather(*self._cleanup_tasks)
        if self._state is not ConnectionState.DISCONNECTED:
            raise AlreadyActiveError(f"Cannot connect while {self._state.value}")
        self.address = address
        self._transition(ConnectionState.CONNECTING)
        try:
            await self._transport.connect(address)
        except TransportError as exc:
            LOGGER.warning("Connect to %s failed: %s", address, exc)
            self._force_disconnected()
            raise
        except BaseException:
            # Cancelled or unmapped failure; the transport may hold a half-open link.
            LOGGER.warning("Connect to %s aborted", address)
            self._force_disconnected(drop_link=True)
            raise

    async def request_disconnect(self) -> None:
        if self._state not in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            LOGGER.debug("Disconnect requested while %s; nothing to do", self._state.value)
            return
        self._transition(ConnectionState.DISCONNECTING)
        try:
            await self._transport.disconnect()
        except TransportError as exc:
            LOGGER.warning("Disconnect failed: %s", exc)
            self._force_disconnected()

    async def write(self, payload: bytes) -> None:
        self.ensure_connected()
        async with self._write_lock:
            # The link may have dropped while queued behind another write.
            self.ensure_connected()
            try:
                await self._transport.write(payload)
            except TransportError as exc:
                LOGGER.warning("Write failed, resetting link: %s", exc)
                self._force_disconnected(drop_link=True)
                if isinstance(exc, TransportSendError):
                    raise
                raise TransportSendError(str(exc)) from exc

    def ensure_connected(self) -> None:
        if self._state is not ConnectionState.CONNECTED:
            raise NotConnectedError(f"Not connected (state: {self._state.value})")

    def handle_event(self, event: TransportEvent) -> None:
        if isinstance(event, TransportConnected):
            self.on_transport_connected()
        elif isinstance(event, TransportDisconnected):
            self.on_transport_disconnected(event.reason)
        elif isinstance(event, BytesReceived):
            for listener in list(self._bytes_listeners):
                listener(event.data)

    def on_transport_connected(self) -> None:
        if self._state is ConnectionState.CONNECTING:
            self._transition(ConnectionState.CONNECTED)
            return
        LOGGER.warning("Unexpected connect event while %s; discarding link", self._state.value)
        self._force_disconnected(drop_link=True)

    def on_transport_disconnected(self, reason: str) -> None:
        if self._state is ConnectionState.DISCONNECTED:
            LOGGER.debug("Ignoring disconnect event (%s); already disconnected", reason)
            return
        if self._state is not ConnectionState.DISCONNECTING:
            LOGGER.warning("Link lost while %s: %s", self._state.value, reason)
        self._transition(ConnectionState.DISCONNECTED)

    def _force_disconnected(self, *, drop_link: bool = False) -> None:
        if self._state is not ConnectionState.DISCONNECTED:
            self._transition(ConnectionState.DISCONNECTED)
        if drop_link:
            task = asyncio.get_running_loop().create_task(self._drop_link())
            self._cleanup_tasks.add(task)
            task.add_done_callback(self._cleanup_tasks.discard)

    async def _drop_link(self) -> None:
        try:
            await self._transport.disconnect()
        except TransportError as exc:
            LOGGER.debug("Ignoring error while dropping link: %s", exc)

    def _transition(self, new_state: ConnectionState) -> None:
        LOGGER.debug("Connection %s -> %s", self._state.value, new_state.value)
        self._state = new_state
        for observer in list(self._observers):
            try:
                observer(new_state)
            except Exception:
                LOGGER.exception("Connection observer failed on %s", new_state.value)
