"""Configuration loading and validation for YAML-based espirctl settings."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from importlib import resources
from importlib.resources.abc import Traversable
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from espirctl.core.errors import ConfigLoadError, ConfigValidationError
from espirctl.core.model import DeviceSelector, LinkSpec, Settings, TimeoutSpec

_UUID_RE = re.compile(r"^[0-9a-f]{4}$|^[0-9a-f]{8}$|^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$")
_ADDRESS_PREFIX_RE = re.compile(r"^[0-9A-F]{2}(:[0-9A-F]{2}){0,5}$")
_PROTOCOL_KEYS = ("service_uuid", "characteristic_uuid")
LOGGER = logging.getLogger(__name__)


class UniqueKeyLoader(yaml.SafeLoader):
    """YAML loader that rejects duplicate mapping keys."""


UniqueKeyLoader.yaml_implicit_resolvers = {
    key: list(value) for key, value in yaml.SafeLoader.yaml_implicit_resolvers.items()
}

for first_char, mappings in list(UniqueKeyLoader.yaml_implicit_resolvers.items()):
    UniqueKeyLoader.yaml_implicit_resolvers[first_char] = [
        (tag, regexp)
        for tag, regexp in mappings
        if tag != "tag:yaml.org,2002:bool"
    ]


def _construct_mapping(loader: UniqueKeyLoader, node: yaml.Node, deep: bool = False) -> dict[str, Any]:
    mapping: dict[str, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise ConfigValidationError(f"Duplicate key '{key}' in YAML document")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


@dataclass(frozen=True)
class LoadedSettings:
    settings: Settings
    warnings: tuple[str, ...]


def _load_schema_validator() -> Any:
    schema_text = resources.files("espirctl.schemas").joinpath("config.schema.json").read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def _xdg_dirs() -> tuple[Path, Path]:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    xdg_data = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local/share"))
    return xdg_config / "espirctl", xdg_data / "espirctl"


def _user_config_path() -> Path:
    explicit = os.environ.get("ESPIRCTL_CONFIG")
    if explicit:
        return Path(explicit)
    config_dir, _ = _xdg_dirs()
    return config_dir / "config.yaml"


def _read_yaml(path: Path | Traversable) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigLoadError(f"Could not read config file {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise ConfigValidationError(f"Invalid YAML in {path}: {exc}") from exc

    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigValidationError(f"Config file {path} must contain a mapping at root")
    return loaded


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _normalize_uuid(value: str, *, context: str) -> str:
    normalized = value.strip().lower()
    if not _UUID_RE.match(normalized):
        raise ConfigValidationError(
            f"{context} must be a 16-bit, 32-bit, or 128-bit UUID string"
        )
    return normalized


def _normalize_address_prefix(prefix: str, *, context: str) -> str:
    normalized = prefix.strip().upper()
    if not _ADDRESS_PREFIX_RE.match(normalized):
        raise ConfigValidationError(f"{context} must look like 'AA:BB:CC'")
    return normalized


def _normalize_bool(value: Any, *, context: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
    raise ConfigValidationError(f"{context} must be boolean true/false")


def _build_settings(doc: dict[str, Any], source: str) -> Settings:
    validator = _load_schema_validator()
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise ConfigValidationError(f"Schema validation failed for {source}{where}: {exc.message}") from exc

    device = doc["device"]
    service_uuid = _normalize_uuid(device["service_uuid"], context="device.service_uuid")
    address = device.get("address")
    link = LinkSpec(
        address=address.strip().upper() if address else None,
        selector=DeviceSelector(
            name_contains=tuple(device.get("name_contains", [])),
            address_prefix=tuple(
                _normalize_address_prefix(p, context="device.address_prefix")
                for p in device.get("address_prefix", [])
            ),
            service_uuid=service_uuid,
        ),
        service_uuid=service_uuid,
        characteristic_uuid=_normalize_uuid(
            device["characteristic_uuid"],
            context="device.characteristic_uuid",
        ),
        write_with_response=_normalize_bool(
            device.get("write_with_response", True),
            context="device.write_with_response",
        ),
        connect_timeout_s=float(device.get("connect_timeout_s", 10.0)),
        scan_timeout_s=float(device.get("scan_timeout_s", 5.0)),
    )

    timeouts = doc["timeouts"]
    timeout_spec = TimeoutSpec(
        default_s=float(timeouts.get("default_s", 5.0)),
        learn_grace_s=float(timeouts.get("learn_grace_s", 5.0)),
        commands={name: float(value) for name, value in timeouts.get("commands", {}).items()},
    )

    database = doc["storage"].get("database")
    if database:
        database_path = Path(database).expanduser()
    else:
        _, data_dir = _xdg_dirs()
        database_path = data_dir / "espirctl.db"

    return Settings(
        link=link,
        timeouts=timeout_spec,
        learn_timeout_ms=int(doc["learn"].get("default_timeout_ms", 15000)),
        database=database_path,
    )


def load_settings() -> LoadedSettings:
    defaults_path = resources.files("espirctl.defaults").joinpath("config.yaml")
    doc = _read_yaml(defaults_path)
    warnings: list[str] = []
    source = str(defaults_path)

    user_path = _user_config_path()
    if user_path.is_file():
        user_doc = _read_yaml(user_path)
        user_device = user_doc.get("device")
        if isinstance(user_device, dict):
            for key in _PROTOCOL_KEYS:
                if key in user_device:
                    warning = f"User config overrides packaged {key}"
                    LOGGER.warning(warning)
                    warnings.append(warning)
        doc = _merge(doc, user_doc)
        source = str(user_path)
    elif os.environ.get("ESPIRCTL_CONFIG"):
        raise ConfigLoadError(f"Config file {user_path} does not exist")

    return LoadedSettings(settings=_build_settings(doc, source), warnings=tuple(warnings))
