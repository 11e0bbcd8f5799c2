from __future__ import annotations

import asyncio
from dataclasses import replace
from pathlib import Path

import pytest

from espirctl.core.errors import DuplicateNameError, NotFoundError
from espirctl.core.model import RepositoryChange
from espirctl.core.repository import DeviceRepository


@pytest.mark.asyncio
async def test_duplicate_device_name_is_rejected() -> None:
    repo = DeviceRepository(":memory:")
    await repo.add_device("TV", "TV", "Samsung")

    with pytest.raises(DuplicateNameError):
        await repo.add_device("TV", "Projector")

    assert [device.name for device in await repo.list_devices()] == ["TV"]
    await repo.close()


@pytest.mark.asyncio
async def test_device_names_are_case_sensitive() -> None:
    repo = DeviceRepository(":memory:")
    await repo.add_device("TV", "TV")
    await repo.add_device("tv", "TV")

    assert len(await repo.list_devices()) == 2
    await repo.close()


@pytest.mark.asyncio
async def test_devices_are_listed_by_name() -> None:
    repo = DeviceRepository(":memory:")
    for name in ("Soundbar", "AC", "Projector"):
        await repo.add_device(name, "other")

    assert [device.name for device in await repo.list_devices()] == ["AC", "Projector", "Soundbar"]
    await repo.close()


@pytest.mark.asyncio
async def test_deleting_device_removes_all_its_commands() -> None:
    repo = DeviceRepository(":memory:")
    tv = await repo.add_device("TV", "TV")
    ac = await repo.add_device("AC", "AC")
    for index in range(4):
        await repo.add_command(tv.id, f"KEY_{index}", f"0x{index:08X}")
    await repo.add_command(ac.id, "POWER", "0xA1")

    assert await repo.delete_device(tv.id) is True

    assert await repo.get_device(tv.id) is None
    assert await repo.list_commands(tv.id) == []
    assert [command.name for command in await repo.list_commands(ac.id)] == ["POWER"]
    await repo.close()


@pytest.mark.asyncio
async def test_deletes_of_missing_rows_are_no_ops() -> None:
    repo = DeviceRepository(":memory:")
    changes: list[RepositoryChange] = []
    repo.subscribe(changes.append)

    assert await repo.delete_device(404) is False
    assert await repo.delete_command(404) is False
    assert await repo.delete_commands_for_device(404) == 0
    assert changes == []
    await repo.close()


@pytest.mark.asyncio
async def test_command_for_unknown_device_is_rejected() -> None:
    repo = DeviceRepository(":memory:")

    with pytest.raises(NotFoundError):
        await repo.add_command(99, "POWER", "0x20DF10EF")
    await repo.close()


@pytest.mark.asyncio
async def test_command_names_are_unique_per_device() -> None:
    repo = DeviceRepository(":memory:")
    tv = await repo.add_device("TV", "TV")
    ac = await repo.add_device("AC", "AC")
    await repo.add_command(tv.id, "POWER", "0x20DF10EF")

    with pytest.raises(DuplicateNameError):
        await repo.add_command(tv.id, "POWER", "0xDEADBEEF")
    other = await repo.add_command(ac.id, "POWER", "0xA1", protocol="NEC")

    assert other.frequency == 38000
    assert (await repo.get_command_by_name(tv.id, "POWER")).ir_code == "0x20DF10EF"
    await repo.close()


@pytest.mark.asyncio
async def test_update_device_rejects_name_clash() -> None:
    repo = DeviceRepository(":memory:")
    tv = await repo.add_device("TV", "TV")
    await repo.add_device("AC", "AC")

    with pytest.raises(DuplicateNameError):
        await repo.update_device(replace(tv, name="AC"))

    renamed = await repo.update_device(replace(tv, name="Bedroom TV", model="X1"))
    assert (await repo.get_device(tv.id)) == renamed
    await repo.close()


@pytest.mark.asyncio
async def test_update_command_changes_code() -> None:
    repo = DeviceRepository(":memory:")
    tv = await repo.add_device("TV", "TV")
    power = await repo.add_command(tv.id, "POWER", "0x1")
    mute = await repo.add_command(tv.id, "MUTE", "0x2")

    with pytest.raises(DuplicateNameError):
        await repo.update_command(replace(mute, name="POWER"))
    await repo.update_command(replace(power, ir_code="0x3"))

    assert (await repo.get_command(power.id)).ir_code == "0x3"
    await repo.close()


@pytest.mark.asyncio
async def test_listeners_see_changes_in_commit_order() -> None:
    repo = DeviceRepository(":memory:")
    changes: list[RepositoryChange] = []
    remove = repo.subscribe(changes.append)

    tv = await repo.add_device("TV", "TV")
    await repo.add_command(tv.id, "POWER", "0x1")
    await repo.delete_device(tv.id)
    remove()
    await repo.add_device("AC", "AC")

    assert [(change.kind, change.name) for change in changes] == [
        ("device_added", "TV"),
        ("command_added", "POWER"),
        ("device_deleted", "TV"),
    ]
    await repo.close()


@pytest.mark.asyncio
async def test_failing_listener_does_not_undo_write() -> None:
    repo = DeviceRepository(":memory:")

    def _broken(_: RepositoryChange) -> None:
        raise RuntimeError("listener bug")

    repo.subscribe(_broken)
    await repo.add_device("TV", "TV")

    assert (await repo.get_device_by_name("TV")) is not None
    await repo.close()


@pytest.mark.asyncio
async def test_concurrent_adds_of_same_name_store_one_row() -> None:
    repo = DeviceRepository(":memory:")

    results = await asyncio.gather(
        *(repo.add_device("TV", "TV") for _ in range(5)),
        return_exceptions=True,
    )

    assert sum(1 for result in results if not isinstance(result, Exception)) == 1
    assert all(isinstance(result, DuplicateNameError) for result in results if isinstance(result, Exception))
    assert len(await repo.list_devices()) == 1
    await repo.close()


@pytest.mark.asyncio
async def test_export_then_import_into_fresh_store() -> None:
    source = DeviceRepository(":memory:")
    tv = await source.add_device("TV", "TV", "LG", "OLED55")
    await source.add_command(tv.id, "POWER", "0x20DF10EF", protocol="NEC", description="Toggle power")
    await source.add_device("Fan", "other")
    exported = await source.export_devices()
    await source.close()

    target = DeviceRepository(":memory:")
    await target.add_device("Fan", "other")
    changes: list[RepositoryChange] = []
    target.subscribe(changes.append)

    assert await target.import_devices(exported) == 1

    joined = await target.devices_with_commands()
    assert [entry.device.name for entry in joined] == ["Fan", "TV"]
    assert joined[1].device.manufacturer == "LG"
    assert [(c.name, c.ir_code, c.protocol) for c in joined[1].commands] == [("POWER", "0x20DF10EF", "NEC")]
    assert [change.kind for change in changes] == ["devices_imported"]
    await target.close()


@pytest.mark.asyncio
async def test_import_with_bad_record_changes_nothing() -> None:
    repo = DeviceRepository(":memory:")
    records = [
        {"name": "TV", "type": "TV", "commands": []},
        {"name": "AC", "type": "AC", "commands": [{"name": "POWER"}]},
    ]

    with pytest.raises(KeyError):
        await repo.import_devices(records)

    assert await repo.list_devices() == []

    bad_frequency = [
        {"name": "TV", "type": "TV", "commands": [{"name": "POWER", "irCode": "0x1", "frequency": "abc"}]}
    ]
    with pytest.raises(ValueError):
        await repo.import_devices(bad_frequency)

    assert await repo.list_devices() == []
    await repo.close()


@pytest.mark.asyncio
async def test_rows_persist_across_reopen(tmp_path: Path) -> None:
    db_path = tmp_path / "nested" / "espirctl.db"
    repo = DeviceRepository(db_path)
    tv = await repo.add_device("TV", "TV")
    await repo.add_command(tv.id, "POWER", "0x1")
    await repo.close()

    reopened = DeviceRepository(db_path)
    entry = await reopened.device_with_commands(tv.id)

    assert entry is not None
    assert entry.device.name == "TV"
    assert [command.name for command in entry.commands] == ["POWER"]
    await reopened.close()
