"""Scan-result-to-selector matching logic."""

from __future__ import annotations

from espirctl.core.model import DetectedDevice, DeviceSelector


def _address_prefix_match(device_address: str, selector: DeviceSelector) -> bool:
    upper_address = device_address.upper()
    return any(upper_address.startswith(prefix) for prefix in selector.address_prefix)


def _name_contains_match(device_name: str, selector: DeviceSelector) -> bool:
    lower_name = device_name.lower()
    return any(token.lower() in lower_name for token in selector.name_contains)


def _service_match(device: DetectedDevice, selector: DeviceSelector) -> bool:
    return selector.service_uuid is not None and selector.service_uuid in device.service_uuids


def match_score(device: DetectedDevice, selector: DeviceSelector) -> int:
    score = 0
    if _service_match(device, selector):
        score += 4
    if _address_prefix_match(device.address, selector):
        score += 2
    if _name_contains_match(device.name, selector):
        score += 1
    return score


def matching_devices(devices: list[DetectedDevice], selector: DeviceSelector) -> list[DetectedDevice]:
    """Devices with a non-zero score, best match first."""
    scored = [(match_score(device, selector), device) for device in devices]
    ranked = sorted((item for item in scored if item[0] > 0), key=lambda item: (-item[0], item[1].address))
    return [device for _, device in ranked]
