"""Core data models used across the store, protocol, service, and CLI."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

DEFAULT_FREQUENCY_HZ = 38000


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"


@dataclass(frozen=True)
class Device:
    id: int
    name: str
    type: str
    manufacturer: str | None = None
    model: str | None = None


@dataclass(frozen=True)
class IRCommand:
    id: int
    device_id: int
    name: str
    ir_code: str
    description: str | None = None
    protocol: str | None = None
    frequency: int = DEFAULT_FREQUENCY_HZ


@dataclass(frozen=True)
class DeviceWithCommands:
    device: Device
    commands: tuple[IRCommand, ...]


@dataclass(frozen=True)
class RepositoryChange:
    kind: str
    device_id: int | None
    name: str


@dataclass(frozen=True)
class Envelope:
    """A request or response exchanged with the blaster.

    Requests always carry ``command``, ``parameters`` and ``request_id``.
    Replies and status pushes from the firmware add ``status``, ``message``
    and ``data`` and may leave the request fields out.
    """

    command: str
    parameters: dict[str, str] = field(default_factory=dict)
    request_id: str | None = None
    status: str | None = None
    message: str | None = None
    data: dict[str, Any] | None = None

    @property
    def ok(self) -> bool:
        return self.status is None or self.status == "OK"


@dataclass(frozen=True)
class DeviceSelector:
    name_contains: tuple[str, ...]
    address_prefix: tuple[str, ...]
    service_uuid: str | None = None


@dataclass(frozen=True)
class LinkSpec:
    address: str | None
    selector: DeviceSelector
    service_uuid: str
    characteristic_uuid: str
    write_with_response: bool = True
    connect_timeout_s: float = 10.0
    scan_timeout_s: float = 5.0


@dataclass(frozen=True)
class TimeoutSpec:
    default_s: float = 5.0
    learn_grace_s: float = 5.0
    commands: dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class Settings:
    link: LinkSpec
    timeouts: TimeoutSpec
    learn_timeout_ms: int
    database: Path


@dataclass(frozen=True)
class DetectedDevice:
    address: str
    name: str
    rssi: int | None = None
    service_uuids: tuple[str, ...] = ()


@dataclass(frozen=True)
class SyncResult:
    record: Device | None
    response: Envelope | None
