"""Matches inbound notifications to the requests that caused them."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass

from espirctl.core.connection import ConnectionStateMachine
from espirctl.core.errors import (
    ConnectionLostError,
    DecodeError,
    EspirError,
    RequestTimeoutError,
)
from espirctl.core.model import ConnectionState, Envelope, TimeoutSpec
from espirctl.core.protocol import (
    Command,
    RequestIdGenerator,
    decode_envelope,
    encode_envelope,
    with_request_id,
)

LOGGER = logging.getLogger(__name__)

NotificationObserver = Callable[[Envelope], None]


@dataclass
class PendingRequest:
    request_id: str
    command: str
    issued_at: float
    timeout_s: float
    future: asyncio.Future[Envelope]
    timer: asyncio.TimerHandle | None = None


class Correlator:
    """Per-request waiter table keyed by request id.

    Each registered request ends in exactly one of: the matching reply, a
    timeout, or ``ConnectionLostError`` when the link drops.
    """

    def __init__(
        self,
        connection: ConnectionStateMachine,
        *,
        timeouts: TimeoutSpec | None = None,
        id_generator: RequestIdGenerator | None = None,
    ) -> None:
        self._connection = connection
        self._timeouts = timeouts or TimeoutSpec()
        self._ids = id_generator or RequestIdGenerator()
        self._pending: dict[str, PendingRequest] = {}
        self._observers: list[NotificationObserver] = []
        connection.subscribe(self._on_state)
        connection.add_bytes_listener(self.handle_bytes)

    @property
    def pending_ids(self) -> tuple[str, ...]:
        return tuple(self._pending)

    def add_notification_observer(self, observer: NotificationObserver) -> Callable[[], None]:
        self._observers.append(observer)

        def _remove_observer() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return _remove_observer

    def timeout_for(self, envelope: Envelope) -> float:
        configured = self._timeouts.commands.get(envelope.command, self._timeouts.default_s)
        if envelope.command != Command.LEARN.value:
            return configured
        try:
            learn_ms = int(envelope.parameters.get("timeout", "0"))
        except ValueError:
            learn_ms = 0
        return max(configured, learn_ms / 1000 + self._timeouts.learn_grace_s)

    async def request(self, envelope: Envelope, timeout_s: float | None = None) -> Envelope:
        self._connection.ensure_connected()
        envelope = with_request_id(envelope, self._ids.next_id(self._pending))
        payload = encode_envelope(envelope)
        pending = self._register(envelope, self.timeout_for(envelope) if timeout_s is None else timeout_s)
        LOGGER.debug("Sending %s (%s)", envelope.command, pending.request_id)
        try:
            await self._connection.write(payload)
        except EspirError:
            self._discard(pending)
            raise
        try:
            return await pending.future
        finally:
            self._discard(pending)

    def handle_bytes(self, data: bytes) -> None:
        try:
            envelope = decode_envelope(data)
        except DecodeError as exc:
            LOGGER.warning("Dropping malformed notification: %s", exc)
            return

        pending = self._pending.pop(envelope.request_id, None) if envelope.request_id else None
        if pending is None:
            LOGGER.debug("Unsolicited notification: %s", envelope.status or envelope.command)
            for observer in list(self._observers):
                try:
                    observer(envelope)
                except Exception:
                    LOGGER.exception("Notification observer failed")
            return

        self._cancel_timer(pending)
        if not pending.future.done():
            pending.future.set_result(envelope)

    def _register(self, envelope: Envelope, timeout_s: float) -> PendingRequest:
        loop = asyncio.get_running_loop()
        if envelope.request_id is None:
            raise ValueError("Cannot track a request without a requestId")
        pending = PendingRequest(
            request_id=envelope.request_id,
            command=envelope.command,
            issued_at=loop.time(),
            timeout_s=timeout_s,
            future=loop.create_future(),
        )
        pending.timer = loop.call_later(timeout_s, self._expire, pending.request_id)
        self._pending[pending.request_id] = pending
        return pending

    def _expire(self, request_id: str) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return
        pending.timer = None
        LOGGER.warning("%s request %s timed out after %ss", pending.command, request_id, pending.timeout_s)
        if not pending.future.done():
            pending.future.set_exception(
                RequestTimeoutError(
                    f"No response to {pending.command} within {pending.timeout_s}s"
                )
            )

    def _on_state(self, state: ConnectionState) -> None:
        if state is not ConnectionState.DISCONNECTED:
            return
        failed = list(self._pending.values())
        self._pending.clear()
        for pending in failed:
            self._cancel_timer(pending)
            if not pending.future.done():
                pending.future.set_exception(
                    ConnectionLostError(f"Connection lost before {pending.command} completed")
                )
        if failed:
            LOGGER.warning("Connection lost with %d request(s) outstanding", len(failed))

    def _discard(self, pending: PendingRequest) -> None:
        if self._pending.get(pending.request_id) is pending:
            del self._pending[pending.request_id]
        self._cancel_timer(pending)
        if not pending.future.done():
            pending.future.cancel()
        elif not pending.future.cancelled():
            # Consume the stored outcome.
            pending.future.exception()

    @staticmethod
    def _cancel_timer(pending: PendingRequest) -> None:
        if pending.timer is not None:
            pending.timer.cancel()
            pending.timer = None
