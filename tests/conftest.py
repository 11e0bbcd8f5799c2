from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from espirctl.core.model import DeviceSelector, LinkSpec, Settings, TimeoutSpec
from espirctl.transports.base import (
    BytesReceived,
    EventHandler,
    TransportConnected,
    TransportDisconnected,
    TransportEvent,
)

SERVICE_UUID = "12345678-1234-1234-1234-123456789abc"
CHARACTERISTIC_UUID = "87654321-4321-4321-4321-cba987654321"
BLASTER_ADDRESS = "AA:BB:CC:DD:EE:FF"


class FakeTransport:
    """In-memory transport; ``responder`` answers each write synchronously."""

    def __init__(self) -> None:
        self.handler: EventHandler | None = None
        self.auto_connect = True
        self.fail_connect: Exception | None = None
        self.fail_write: Exception | None = None
        self.responder: Callable[[dict[str, Any]], dict[str, Any] | None] | None = None
        self.connect_calls: list[str] = []
        self.disconnect_calls = 0
        self.writes: list[bytes] = []

    @property
    def sent(self) -> list[dict[str, Any]]:
        return [json.loads(payload) for payload in self.writes]

    def subscribe(self, handler: EventHandler) -> None:
        self.handler = handler

    def emit(self, event: TransportEvent) -> None:
        assert self.handler is not None
        self.handler(event)

    def reply(self, doc: dict[str, Any]) -> None:
        self.emit(BytesReceived(json.dumps(doc).encode("utf-8")))

    async def connect(self, address: str) -> None:
        self.connect_calls.append(address)
        if self.fail_connect is not None:
            raise self.fail_connect
        if self.auto_connect:
            self.emit(TransportConnected(address=address))

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.emit(TransportDisconnected(reason="local disconnect"))

    async def write(self, payload: bytes) -> None:
        if self.fail_write is not None:
            raise self.fail_write
        self.writes.append(payload)
        if self.responder is not None:
            answer = self.responder(json.loads(payload))
            if answer is not None:
                self.reply(answer)


def ok_reply(request: dict[str, Any], message: str = "done", **data: Any) -> dict[str, Any]:
    reply: dict[str, Any] = {"requestId": request["requestId"], "status": "OK", "message": message}
    if data:
        reply["data"] = data
    return reply


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        link=LinkSpec(
            address=BLASTER_ADDRESS,
            selector=DeviceSelector(
                name_contains=("ESPIR",),
                address_prefix=(),
                service_uuid=SERVICE_UUID,
            ),
            service_uuid=SERVICE_UUID,
            characteristic_uuid=CHARACTERISTIC_UUID,
        ),
        timeouts=TimeoutSpec(default_s=1.0, learn_grace_s=0.5, commands={"LEARN": 2.0}),
        learn_timeout_ms=15000,
        database=Path(":memory:"),
    )


@pytest.fixture
def isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "cfg"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    monkeypatch.delenv("ESPIRCTL_CONFIG", raising=False)
    return tmp_path
