"""Domain-specific errors for espirctl."""

from __future__ import annotations

from typing import Any


class EspirError(Exception):
    """Base error for espirctl."""


class ConfigValidationError(EspirError):
    """Raised when a config file does not conform to schema or semantics."""


class ConfigLoadError(EspirError):
    """Raised when reading config sources fails."""


class DeviceSelectionError(EspirError):
    """Raised when discovery cannot resolve a single target."""


class NotConnectedError(EspirError):
    """Raised when a write is attempted outside the connected state."""


class AlreadyActiveError(EspirError):
    """Raised when connecting while a connection is not fully down."""


class DecodeError(EspirError):
    """Raised when inbound bytes are not a valid envelope."""


class RequestTimeoutError(EspirError):
    """Raised when no response arrives within the request window."""


class ConnectionLostError(EspirError):
    """Raised for requests still outstanding when the link drops."""


class DuplicateNameError(EspirError):
    """Raised when a device or command name is already taken."""


class NotFoundError(EspirError):
    """Raised when a named device or command does not exist."""


class RemoteSyncFailedError(EspirError):
    """Raised when a local change was stored but the remote send failed.

    The local write is kept. ``envelope`` is the request that could not be
    delivered, so callers can retry without re-deriving the change.
    """

    def __init__(
        self,
        command: str,
        *,
        envelope: Any,
        record: Any = None,
        cause: Exception | None = None,
    ) -> None:
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Local change saved but remote {command} failed{detail}")
        self.command = command
        self.envelope = envelope
        self.record = record
        self.cause = cause


class TransportError(EspirError):
    """Base transport error."""


class TransportConnectError(TransportError):
    """Raised on BLE connect failures."""


class TransportSendError(TransportError):
    """Raised when payload sending fails."""


class TransportTimeoutError(TransportError):
    """Raised when a BLE operation times out."""


class RemoteCommandError(EspirError):
    """Raised when the blaster answers a request with a non-OK status."""

    def __init__(self, response: Any) -> None:
        detail = response.message or "no message"
        if response.data and "error" in response.data:
            detail = f"{detail} ({response.data['error']})"
        super().__init__(f"Device replied {response.status}: {detail}")
        self.response = response
