"""SQLite-backed store of device profiles and their IR commands."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Callable, Iterable, Mapping
from pathlib import Path
from typing import Any, TypeVar

from espirctl.core.errors import DuplicateNameError, NotFoundError
from espirctl.core.model import (
    DEFAULT_FREQUENCY_HZ,
    Device,
    DeviceWithCommands,
    IRCommand,
    RepositoryChange,
)

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")
ChangeListener = Callable[[RepositoryChange], None]

_SCHEMA = """
CREATE TABLE IF NOT EXISTS devices (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    type TEXT NOT NULL,
    manufacturer TEXT,
    model TEXT
);
CREATE TABLE IF NOT EXISTS ir_commands (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    device_id INTEGER NOT NULL REFERENCES devices(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    description TEXT,
    ir_code TEXT NOT NULL,
    protocol TEXT,
    frequency INTEGER NOT NULL DEFAULT 38000,
    UNIQUE (device_id, name)
);
CREATE INDEX IF NOT EXISTS ir_commands_device_id ON ir_commands(device_id);
"""

_DEVICE_COLUMNS = "id, name, type, manufacturer, model"
_COMMAND_COLUMNS = "id, device_id, name, description, ir_code, protocol, frequency"


class DeviceRepository:
    """Single writer for Device and IRCommand rows.

    Every call runs in a worker thread. One lock serializes all calls, so a
    device delete holds both tables for the whole transaction and change
    listeners see mutations in commit order.
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = asyncio.Lock()
        self._listeners: list[ChangeListener] = []

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove_listener() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove_listener

    async def close(self) -> None:
        async with self._lock:
            if self._conn is not None:
                await asyncio.to_thread(self._conn.close)
                self._conn = None

    # Devices

    async def list_devices(self) -> list[Device]:
        return await self._read(self._list_devices)

    def _list_devices(self, conn: sqlite3.Connection) -> list[Device]:
        rows = conn.execute(f"SELECT {_DEVICE_COLUMNS} FROM devices ORDER BY name ASC").fetchall()
        return [_row_to_device(row) for row in rows]

    async def get_device(self, device_id: int) -> Device | None:
        return await self._read(lambda conn: self._get_device(conn, device_id))

    def _get_device(self, conn: sqlite3.Connection, device_id: int) -> Device | None:
        row = conn.execute(
            f"SELECT {_DEVICE_COLUMNS} FROM devices WHERE id = ?",
            (device_id,),
        ).fetchone()
        return _row_to_device(row) if row else None

    async def get_device_by_name(self, name: str) -> Device | None:
        return await self._read(lambda conn: self._get_device_by_name(conn, name))

    def _get_device_by_name(self, conn: sqlite3.Connection, name: str) -> Device | None:
        row = conn.execute(
            f"SELECT {_DEVICE_COLUMNS} FROM devices WHERE name = ?",
            (name,),
        ).fetchone()
        return _row_to_device(row) if row else None

    async def add_device(
        self,
        name: str,
        device_type: str,
        manufacturer: str | None = None,
        model: str | None = None,
    ) -> Device:
        def _add(conn: sqlite3.Connection) -> tuple[Device, RepositoryChange]:
            with conn:
                device = self._insert_device(conn, name, device_type, manufacturer, model)
            LOGGER.info("Added device %s (id=%d)", name, device.id)
            return device, RepositoryChange("device_added", device.id, name)

        return await self._write(_add)

    def _insert_device(
        self,
        conn: sqlite3.Connection,
        name: str,
        device_type: str,
        manufacturer: str | None,
        model: str | None,
    ) -> Device:
        if self._get_device_by_name(conn, name) is not None:
            raise DuplicateNameError(f"Device '{name}' already exists")
        try:
            cursor = conn.execute(
                "INSERT INTO devices (name, type, manufacturer, model) VALUES (?, ?, ?, ?)",
                (name, device_type, manufacturer, model),
            )
        except sqlite3.IntegrityError as exc:
            raise DuplicateNameError(f"Device '{name}' already exists") from exc
        return Device(
            id=int(cursor.lastrowid),
            name=name,
            type=device_type,
            manufacturer=manufacturer,
            model=model,
        )

    async def update_device(self, device: Device) -> Device:
        def _update(conn: sqlite3.Connection) -> tuple[Device, RepositoryChange]:
            if self._get_device(conn, device.id) is None:
                raise NotFoundError(f"Device id {device.id} does not exist")
            clash = self._get_device_by_name(conn, device.name)
            if clash is not None and clash.id != device.id:
                raise DuplicateNameError(f"Device '{device.name}' already exists")
            with conn:
                conn.execute(
                    "UPDATE devices SET name = ?, type = ?, manufacturer = ?, model = ? WHERE id = ?",
                    (device.name, device.type, device.manufacturer, device.model, device.id),
                )
            return device, RepositoryChange("device_updated", device.id, device.name)

        return await self._write(_update)

    async def delete_device(self, device_id: int) -> bool:
        """Delete a device and all of its commands in one transaction.

        Deleting a device that does not exist succeeds and returns False.
        """

        def _delete(conn: sqlite3.Connection) -> tuple[bool, RepositoryChange | None]:
            device = self._get_device(conn, device_id)
            if device is None:
                return False, None
            with conn:
                removed = conn.execute(
                    "DELETE FROM ir_commands WHERE device_id = ?",
                    (device_id,),
                ).rowcount
                conn.execute("DELETE FROM devices WHERE id = ?", (device_id,))
            LOGGER.info("Deleted device %s with %d command(s)", device.name, removed)
            return True, RepositoryChange("device_deleted", device_id, device.name)

        return await self._write(_delete)

    # Commands

    async def list_commands(self, device_id: int) -> list[IRCommand]:
        return await self._read(lambda conn: self._list_commands(conn, device_id))

    def _list_commands(self, conn: sqlite3.Connection, device_id: int) -> list[IRCommand]:
        rows = conn.execute(
            f"SELECT {_COMMAND_COLUMNS} FROM ir_commands WHERE device_id = ? ORDER BY name ASC",
            (device_id,),
        ).fetchall()
        return [_row_to_command(row) for row in rows]

    async def get_command(self, command_id: int) -> IRCommand | None:
        return await self._read(lambda conn: self._get_command(conn, command_id))

    def _get_command(self, conn: sqlite3.Connection, command_id: int) -> IRCommand | None:
        row = conn.execute(
            f"SELECT {_COMMAND_COLUMNS} FROM ir_commands WHERE id = ?",
            (command_id,),
        ).fetchone()
        return _row_to_command(row) if row else None

    async def get_command_by_name(self, device_id: int, name: str) -> IRCommand | None:
        return await self._read(lambda conn: self._get_command_by_name(conn, device_id, name))

    def _get_command_by_name(
        self, conn: sqlite3.Connection, device_id: int, name: str
    ) -> IRCommand | None:
        row = conn.execute(
            f"SELECT {_COMMAND_COLUMNS} FROM ir_commands WHERE device_id = ? AND name = ?",
            (device_id, name),
        ).fetchone()
        return _row_to_command(row) if row else None

    async def add_command(
        self,
        device_id: int,
        name: str,
        ir_code: str,
        *,
        description: str | None = None,
        protocol: str | None = None,
        frequency: int = DEFAULT_FREQUENCY_HZ,
    ) -> IRCommand:
        def _add(conn: sqlite3.Connection) -> tuple[IRCommand, RepositoryChange]:
            with conn:
                command = self._insert_command(
                    conn, device_id, name, ir_code, description, protocol, frequency
                )
            return command, RepositoryChange("command_added", device_id, name)

        return await self._write(_add)

    def _insert_command(
        self,
        conn: sqlite3.Connection,
        device_id: int,
        name: str,
        ir_code: str,
        description: str | None,
        protocol: str | None,
        frequency: int,
    ) -> IRCommand:
        if self._get_device(conn, device_id) is None:
            raise NotFoundError(f"Device id {device_id} does not exist")
        if self._get_command_by_name(conn, device_id, name) is not None:
            raise DuplicateNameError(f"Command '{name}' already exists for device id {device_id}")
        try:
            cursor = conn.execute(
                "INSERT INTO ir_commands (device_id, name, description, ir_code, protocol, frequency) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (device_id, name, description, ir_code, protocol, frequency),
            )
        except sqlite3.IntegrityError as exc:
            raise DuplicateNameError(f"Command '{name}' already exists for device id {device_id}") from exc
        return IRCommand(
            id=int(cursor.lastrowid),
            device_id=device_id,
            name=name,
            ir_code=ir_code,
            description=description,
            protocol=protocol,
            frequency=frequency,
        )

    async def update_command(self, command: IRCommand) -> IRCommand:
        def _update(conn: sqlite3.Connection) -> tuple[IRCommand, RepositoryChange]:
            current = self._get_command(conn, command.id)
            if current is None:
                raise NotFoundError(f"Command id {command.id} does not exist")
            if self._get_device(conn, command.device_id) is None:
                raise NotFoundError(f"Device id {command.device_id} does not exist")
            clash = self._get_command_by_name(conn, command.device_id, command.name)
            if clash is not None and clash.id != command.id:
                raise DuplicateNameError(
                    f"Command '{command.name}' already exists for device id {command.device_id}"
                )
            with conn:
                conn.execute(
                    "UPDATE ir_commands SET device_id = ?, name = ?, description = ?, ir_code = ?, "
                    "protocol = ?, frequency = ? WHERE id = ?",
                    (
                        command.device_id,
                        command.name,
                        command.description,
                        command.ir_code,
                        command.protocol,
                        command.frequency,
                        command.id,
                    ),
                )
            return command, RepositoryChange("command_updated", command.device_id, command.name)

        return await self._write(_update)

    async def delete_command(self, command_id: int) -> bool:
        def _delete(conn: sqlite3.Connection) -> tuple[bool, RepositoryChange | None]:
            command = self._get_command(conn, command_id)
            if command is None:
                return False, None
            with conn:
                conn.execute("DELETE FROM ir_commands WHERE id = ?", (command_id,))
            return True, RepositoryChange("command_deleted", command.device_id, command.name)

        return await self._write(_delete)

    async def delete_commands_for_device(self, device_id: int) -> int:
        def _delete(conn: sqlite3.Connection) -> tuple[int, RepositoryChange | None]:
            with conn:
                removed = conn.execute(
                    "DELETE FROM ir_commands WHERE device_id = ?",
                    (device_id,),
                ).rowcount
            if not removed:
                return 0, None
            return removed, RepositoryChange("commands_cleared", device_id, "")

        return await self._write(_delete)

    # Joined reads

    async def device_with_commands(self, device_id: int) -> DeviceWithCommands | None:
        def _joined(conn: sqlite3.Connection) -> DeviceWithCommands | None:
            device = self._get_device(conn, device_id)
            if device is None:
                return None
            return DeviceWithCommands(device, tuple(self._list_commands(conn, device_id)))

        return await self._read(_joined)

    async def devices_with_commands(self) -> list[DeviceWithCommands]:
        def _joined(conn: sqlite3.Connection) -> list[DeviceWithCommands]:
            return [
                DeviceWithCommands(device, tuple(self._list_commands(conn, device.id)))
                for device in self._list_devices(conn)
            ]

        return await self._read(_joined)

    # Backup

    async def export_devices(self) -> list[dict[str, Any]]:
        joined = await self.devices_with_commands()
        return [
            {
                "name": entry.device.name,
                "type": entry.device.type,
                "manufacturer": entry.device.manufacturer,
                "model": entry.device.model,
                "commands": [
                    {
                        "name": command.name,
                        "description": command.description,
                        "irCode": command.ir_code,
                        "protocol": command.protocol,
                        "frequency": command.frequency,
                    }
                    for command in entry.commands
                ],
            }
            for entry in joined
        ]

    async def import_devices(self, records: Iterable[Mapping[str, Any]]) -> int:
        """Insert exported devices in one transaction; existing names are skipped."""
        records = list(records)

        def _import(conn: sqlite3.Connection) -> tuple[int, RepositoryChange | None]:
            imported = 0
            with conn:
                for record in records:
                    if self._get_device_by_name(conn, record["name"]) is not None:
                        LOGGER.warning("Skipping import of existing device %s", record["name"])
                        continue
                    device = self._insert_device(
                        conn,
                        record["name"],
                        record["type"],
                        record.get("manufacturer"),
                        record.get("model"),
                    )
                    for command in record.get("commands", []):
                        self._insert_command(
                            conn,
                            device.id,
                            command["name"],
                            command["irCode"],
                            command.get("description"),
                            command.get("protocol"),
                            int(command.get("frequency", DEFAULT_FREQUENCY_HZ)),
                        )
                    imported += 1
            if not imported:
                return 0, None
            return imported, RepositoryChange("devices_imported", None, "")

        return await self._write(_import)

    # Plumbing

    def _connect(self) -> sqlite3.Connection:
        if self._conn is None:
            if str(self.db_path) != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            conn.executescript(_SCHEMA)
            self._conn = conn
        return self._conn

    async def _read(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        async with self._lock:
            return await asyncio.to_thread(lambda: fn(self._connect()))

    async def _write(
        self, fn: Callable[[sqlite3.Connection], tuple[T, RepositoryChange | None]]
    ) -> T:
        async with self._lock:
            result, change = await asyncio.to_thread(lambda: fn(self._connect()))
            if change is not None:
                self._publish(change)
            return result

    def _publish(self, change: RepositoryChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                LOGGER.exception("Repository listener failed on %s", change.kind)


def _row_to_device(row: sqlite3.Row) -> Device:
    return Device(
        id=row["id"],
        name=row["name"],
        type=row["type"],
        manufacturer=row["manufacturer"],
        model=row["model"],
    )


def _row_to_command(row: sqlite3.Row) -> IRCommand:
    return IRCommand(
        id=row["id"],
        device_id=row["device_id"],
        name=row["name"],
        ir_code=row["ir_code"],
        description=row["description"],
        protocol=row["protocol"],
        frequency=row["frequency"],
    )
