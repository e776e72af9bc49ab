"""Tests for CLI commands that work without a remote."""

import argparse
import json
import logging
import sys

import pytest

from ledgersync.__main__ import JSONFormatter, cmd_export, cmd_health, cmd_import
from ledgersync.store import LocalStore


@pytest.fixture
def config_path(tmp_path):
    """Config file pointing at a throwaway database."""
    path = tmp_path / "config.yaml"
    path.write_text(
        f"device:\n  device_id: cli-device\nstorage:\n  db_path: {tmp_path / 'ledger.db'}\n"
    )
    return path


@pytest.fixture
def seeded(tmp_path, config_path, expense_data):
    store = LocalStore(tmp_path / "ledger.db", device_id="cli-device")
    store.connect()
    store.save("expenses", expense_data)
    store.close()
    return config_path


class TestDataCommands:
    """Tests for export, import and health."""

    @pytest.mark.asyncio
    async def test_export_then_import(self, seeded, tmp_path, capsys):
        output = tmp_path / "backup.json"

        code = await cmd_export(argparse.Namespace(config=seeded, output=output))

        assert code == 0
        bundle = json.loads(output.read_text())
        assert bundle["deviceId"] == "cli-device"
        assert len(bundle["data"]["expenses"]) == 1

        code = await cmd_import(argparse.Namespace(config=seeded, input=output))

        assert code == 0
        assert "Imported 1 records" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_import_rejects_tampered_file(self, seeded, tmp_path, capsys):
        output = tmp_path / "backup.json"
        await cmd_export(argparse.Namespace(config=seeded, output=output))
        bundle = json.loads(output.read_text())
        bundle["checksum"] = "bad"
        output.write_text(json.dumps(bundle))

        code = await cmd_import(argparse.Namespace(config=seeded, input=output))

        assert code == 1
        assert "Import failed" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_health_json(self, seeded, capsys):
        args = argparse.Namespace(
            config=seeded, repair=False, cleanup=False, json_output=True
        )

        code = await cmd_health(args)

        assert code == 0
        data = json.loads(capsys.readouterr().out)
        assert data["is_healthy"] is True
        assert data["repairs"] == {}


class TestJSONFormatter:
    """Tests for structured log output."""

    def test_format(self):
        record = logging.LogRecord(
            "ledgersync.queue", logging.WARNING, __file__, 1, "dropped %s", ("op_1",), None
        )

        data = json.loads(JSONFormatter().format(record))

        assert data["level"] == "WARNING"
        assert data["component"] == "ledgersync.queue"
        assert data["message"] == "dropped op_1"

    def test_format_includes_exception(self):
        try:
            raise ValueError("bad amount")
        except ValueError:
            record = logging.LogRecord(
                "ledgersync.store", logging.ERROR, __file__, 1, "save failed", (), sys.exc_info()
            )

        data = json.loads(JSONFormatter().format(record))

        assert "ValueError: bad amount" in data["exception"]
