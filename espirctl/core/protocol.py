"""JSON envelope codec for the blaster's command characteristic."""

from __future__ import annotations

import json
import time
from collections.abc import Callable, Container, Mapping
from dataclasses import replace
from enum import Enum
from functools import lru_cache
from importlib import resources
from typing import Any

from jsonschema import ValidationError, validators

from espirctl.core.errors import DecodeError
from espirctl.core.model import Envelope


class Command(str, Enum):
    TRANSMIT = "TRANSMIT"
    LEARN = "LEARN"
    ADD_DEVICE = "ADD_DEVICE"
    DELETE_DEVICE = "DELETE_DEVICE"
    GET_STATUS = "GET_STATUS"


class RequestIdGenerator:
    """Millisecond-seeded counter that never repeats and skips live ids."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._last = 0

    def next_id(self, outstanding: Container[str] = ()) -> str:
        value = max(int(self._clock() * 1000), self._last + 1)
        while str(value) in outstanding:
            value += 1
        self._last = value
        return str(value)


def build_request(command: Command | str, parameters: Mapping[str, Any] | None = None) -> Envelope:
    # Raises ValueError for names outside the closed command set.
    command = Command(command)
    rendered = {key: "" if value is None else str(value) for key, value in (parameters or {}).items()}
    return Envelope(command=command.value, parameters=rendered)


def build_transmit(device: str, command: str) -> Envelope:
    return build_request(Command.TRANSMIT, {"device": device, "command": command})


def build_learn(timeout_ms: int) -> Envelope:
    return build_request(Command.LEARN, {"timeout": timeout_ms})


def build_add_device(
    name: str,
    device_type: str,
    manufacturer: str | None = None,
    model: str | None = None,
) -> Envelope:
    return build_request(
        Command.ADD_DEVICE,
        {"name": name, "type": device_type, "manufacturer": manufacturer, "model": model},
    )


def build_delete_device(name: str) -> Envelope:
    return build_request(Command.DELETE_DEVICE, {"name": name})


def build_get_status() -> Envelope:
    return build_request(Command.GET_STATUS)


def with_request_id(envelope: Envelope, request_id: str) -> Envelope:
    return replace(envelope, request_id=request_id)


def encode_envelope(envelope: Envelope) -> bytes:
    if envelope.request_id is None:
        raise ValueError(f"{envelope.command} envelope has no request id")
    doc = {
        "command": envelope.command,
        "parameters": dict(envelope.parameters),
        "requestId": envelope.request_id,
    }
    return json.dumps(doc, separators=(",", ":")).encode("utf-8")


@lru_cache(maxsize=1)
def _envelope_validator() -> Any:
    schema_text = resources.files("espirctl.schemas").joinpath("envelope.schema.json").read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def decode_envelope(payload: bytes) -> Envelope:
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecodeError(f"Envelope is not valid UTF-8: {exc}") from exc

    try:
        doc = json.loads(text)
    except json.JSONDecodeError as exc:
        raise DecodeError(f"Envelope is not valid JSON: {exc.msg} at offset {exc.pos}") from exc

    try:
        _envelope_validator().validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise DecodeError(f"Envelope failed validation{where}: {exc.message}") from exc

    request_id = doc.get("requestId")
    return Envelope(
        command=doc.get("command", ""),
        parameters={key: "" if value is None else str(value) for key, value in doc.get("parameters", {}).items()},
        request_id=str(request_id) if request_id is not None else None,
        status=doc.get("status"),
        message=doc.get("message"),
        data=doc.get("data"),
    )
