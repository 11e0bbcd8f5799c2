"""Transport interfaces."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol, Union


@dataclass(frozen=True)
class TransportConnected:
    address: str


@dataclass(frozen=True)
class TransportDisconnected:
    reason: str


@dataclass(frozen=True)
class BytesReceived:
    data: bytes


TransportEvent = Union[TransportConnected, TransportDisconnected, BytesReceived]
EventHandler = Callable[[TransportEvent], None]


class Transport(Protocol):
    def subscribe(self, handler: EventHandler) -> None:
        """Register the single ordered sink for connection and data events."""

    async def connect(self, address: str) -> None:
        """Open the link; emits TransportConnected on success."""

    async def disconnect(self) -> None:
        """Close the link; emits TransportDisconnected once it is down."""

    async def write(self, payload: bytes) -> None:
        """Write one message to the command characteristic."""
