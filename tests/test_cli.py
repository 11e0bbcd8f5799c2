from __future__ import annotations

import json

from typer.testing import CliRunner

from espirctl import cli
from espirctl.core.errors import NotConnectedError, NotFoundError, RemoteSyncFailedError
from espirctl.core.model import DetectedDevice, Device, DeviceWithCommands, Envelope, IRCommand, SyncResult
from espirctl.core.protocol import build_add_device

TV = Device(id=1, name="TV", type="TV", manufacturer="LG", model="OLED55")


class FakeService:
    instances: list[FakeService] = []

    def __init__(self) -> None:
        self.load_warnings: tuple[str, ...] = ()
        self.connected_to: list[str | None] = []
        self.closed = False
        self.connect_error: Exception | None = None
        self.added_commands: list[tuple] = []
        self.imported: list[dict] = []
        FakeService.instances.append(self)

    async def connect(self, address=None):
        if self.connect_error is not None:
            raise self.connect_error
        self.connected_to.append(address)
        return address or "AA:BB:CC:DD:EE:FF"

    async def close(self):
        self.closed = True

    async def scan(self):
        return [DetectedDevice(address="AA:BB:CC:DD:EE:FF", name="ESPIR-Living", rssi=-60)]

    async def get_status(self):
        return Envelope(command="", status="OK", message="System operational", data={"uptime": 42})

    async def send_transmit(self, device_name, command_name):
        if device_name != "TV":
            raise NotFoundError(f"Device '{device_name}' not found")
        return Envelope(command="", status="OK", message="IR signal transmitted")

    async def learn_code(self, timeout_ms=None):
        if timeout_ms == 1:
            return Envelope(command="", status="TIMEOUT", message="Learning timeout - no IR signal received")
        return Envelope(
            command="",
            status="OK",
            message="IR code learned successfully",
            data={"protocol": "NEC", "value": "20df10ef", "bits": 32},
        )

    async def store_learned_code(self, device_name, name, report):
        self.added_commands.append((device_name, name, report.data["value"], {"protocol": "NEC"}))
        return IRCommand(id=4, device_id=1, name=name, ir_code=report.data["value"], protocol="NEC")

    async def devices_with_commands(self):
        return [
            DeviceWithCommands(
                TV,
                (IRCommand(id=1, device_id=1, name="POWER", ir_code="0x20DF10EF", protocol="NEC"),),
            )
        ]

    async def add_device(self, name, device_type, manufacturer=None, model=None):
        if not self.connected_to:
            raise RemoteSyncFailedError(
                "ADD_DEVICE",
                envelope=build_add_device(name, device_type, manufacturer, model),
                record=Device(id=2, name=name, type=device_type),
                cause=NotConnectedError("Not connected (state: disconnected)"),
            )
        return SyncResult(record=Device(id=2, name=name, type=device_type), response=None)

    async def delete_device(self, name):
        if name != "TV":
            return SyncResult(record=None, response=None)
        return SyncResult(record=TV, response=None)

    async def add_command(self, device_name, name, ir_code, **options):
        self.added_commands.append((device_name, name, ir_code, options))
        return IRCommand(id=3, device_id=1, name=name, ir_code=ir_code)

    async def delete_command(self, device_name, name):
        return name == "POWER"

    async def export_devices(self):
        return [{"name": "TV", "type": "TV", "manufacturer": None, "model": None, "commands": []}]

    async def import_devices(self, records):
        self.imported.extend(records)
        return len(records)


runner = CliRunner()


def _service(monkeypatch) -> None:
    monkeypatch.setattr(FakeService, "instances", [])
    monkeypatch.setattr(cli, "EspirService", FakeService)


def test_scan_command(monkeypatch):
    _service(monkeypatch)
    result = runner.invoke(cli.app, ["scan"])
    assert result.exit_code == 0
    assert "AA:BB:CC:DD:EE:FF ESPIR-Living rssi=-60" in result.stdout
    assert FakeService.instances[0].closed


def test_status_command_connects_first(monkeypatch):
    _service(monkeypatch)
    result = runner.invoke(cli.app, ["status", "--address", "11:22:33:44:55:66"])
    assert result.exit_code == 0
    assert 'OK: System operational {"uptime": 42}' in result.stdout
    assert FakeService.instances[0].connected_to == ["11:22:33:44:55:66"]


def test_send_command(monkeypatch):
    _service(monkeypatch)
    result = runner.invoke(cli.app, ["send", "TV", "POWER"])
    assert result.exit_code == 0
    assert "Sent TV/POWER: OK: IR signal transmitted" in result.stdout


def test_send_unknown_device_fails(monkeypatch):
    _service(monkeypatch)
    result = runner.invoke(cli.app, ["send", "Fan", "POWER"])
    assert result.exit_code == 1
    assert "Device 'Fan' not found" in result.output


def test_learn_prints_learned_code(monkeypatch):
    _service(monkeypatch)
    result = runner.invoke(cli.app, ["learn", "--timeout-ms", "5000"])
    assert result.exit_code == 0
    assert "OK: IR code learned successfully" in result.stdout
    assert '"value": "20df10ef"' in result.stdout


def test_learn_can_store_code(monkeypatch):
    _service(monkeypatch)
    result = runner.invoke(cli.app, ["learn", "--device", "TV", "--name", "POWER"])
    assert result.exit_code == 0
    assert "Command added: TV/POWER" in result.stdout
    assert FakeService.instances[0].added_commands == [("TV", "POWER", "20df10ef", {"protocol": "NEC"})]


def test_learn_timeout_report_fails(monkeypatch):
    _service(monkeypatch)
    result = runner.invoke(cli.app, ["learn", "--timeout-ms", "1"])
    assert result.exit_code == 1
    assert "TIMEOUT: Learning timeout" in result.output


def test_learn_requires_device_and_name_together(monkeypatch):
    _service(monkeypatch)
    result = runner.invoke(cli.app, ["learn", "--device", "TV"])
    assert result.exit_code == 1
    assert "must be given together" in result.output


def test_devices_command(monkeypatch):
    _service(monkeypatch)
    result = runner.invoke(cli.app, ["devices"])
    assert result.exit_code == 0
    assert "TV (TV) [LG OLED55]" in result.stdout
    assert "POWER NEC @38000Hz" in result.stdout


def test_add_device_offline_exits_with_sync_warning(monkeypatch):
    _service(monkeypatch)
    result = runner.invoke(cli.app, ["add-device", "Fan", "other", "--offline"])
    assert result.exit_code == 2
    assert "Local change saved but remote ADD_DEVICE failed" in result.output
    assert FakeService.instances[0].connected_to == []


def test_add_device_connected(monkeypatch):
    _service(monkeypatch)
    result = runner.invoke(cli.app, ["add-device", "Fan", "other"])
    assert result.exit_code == 0
    assert "Device added: Fan" in result.stdout


def test_add_device_connect_failure_only_warns(monkeypatch):
    _service(monkeypatch)

    class _Unreachable(FakeService):
        def __init__(self) -> None:
            super().__init__()
            self.connect_error = NotFoundError("No ESPIR blaster found")

    monkeypatch.setattr(cli, "EspirService", _Unreachable)
    result = runner.invoke(cli.app, ["add-device", "Fan", "other"])
    assert result.exit_code == 2
    assert "could not connect" in result.output


def test_delete_missing_device(monkeypatch):
    _service(monkeypatch)
    result = runner.invoke(cli.app, ["delete-device", "Ghost", "--offline"])
    assert result.exit_code == 0
    assert "No device named Ghost; nothing to delete" in result.stdout


def test_add_command_passes_options(monkeypatch):
    _service(monkeypatch)
    result = runner.invoke(
        cli.app,
        ["add-command", "TV", "MUTE", "0x20DF906F", "--protocol", "NEC", "--frequency", "36000"],
    )
    assert result.exit_code == 0
    assert FakeService.instances[0].added_commands == [
        ("TV", "MUTE", "0x20DF906F", {"description": None, "protocol": "NEC", "frequency": 36000})
    ]


def test_delete_command(monkeypatch):
    _service(monkeypatch)
    assert "Command deleted: TV/POWER" in runner.invoke(cli.app, ["delete-command", "TV", "POWER"]).stdout
    assert "nothing to delete" in runner.invoke(cli.app, ["delete-command", "TV", "MUTE"]).stdout


def test_export_and_import(monkeypatch, tmp_path):
    _service(monkeypatch)
    target = tmp_path / "codes.json"

    exported = runner.invoke(cli.app, ["export", str(target)])
    imported = runner.invoke(cli.app, ["import", str(target)])

    assert exported.exit_code == 0
    assert json.loads(target.read_text(encoding="utf-8"))[0]["name"] == "TV"
    assert imported.exit_code == 0
    assert "Imported 1 device(s)" in imported.stdout


def test_import_rejects_non_list(monkeypatch, tmp_path):
    _service(monkeypatch)
    source = tmp_path / "codes.json"
    source.write_text('{"name": "TV"}', encoding="utf-8")

    result = runner.invoke(cli.app, ["import", str(source)])
    assert result.exit_code == 1
    assert "must contain a JSON list" in result.output


def test_import_reports_bad_field_values(monkeypatch, tmp_path):
    _service(monkeypatch)

    class _Strict(FakeService):
        async def import_devices(self, records):
            return int(records[0]["commands"][0]["frequency"])

    monkeypatch.setattr(cli, "EspirService", _Strict)
    source = tmp_path / "codes.json"
    source.write_text(
        '[{"name": "TV", "type": "TV", "commands": [{"name": "POWER", "irCode": "0x1", "frequency": "abc"}]}]',
        encoding="utf-8",
    )

    result = runner.invoke(cli.app, ["import", str(source)])
    assert result.exit_code == 1
    assert "malformed device record" in result.output


def test_offline_help_mentions_deferred_sync(monkeypatch):
    _service(monkeypatch)
    result = runner.invoke(cli.app, ["add-device", "--help"])
    assert result.exit_code == 0
    assert "deferred" in result.output
