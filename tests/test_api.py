"""Tests for the status API."""

import pytest

from ledgersync.config import Config, DeviceConfig, StorageConfig, SyncConfig
from ledgersync.session import LedgerSession

# Only run tests if fastapi is installed
pytest.importorskip("fastapi")


from fastapi.testclient import TestClient
from ledgersync.api import create_app


@pytest.fixture
def session(transport, credentials):
    """Create an open session backed by the in-memory remote."""
    config = Config(
        device=DeviceConfig(device_id="test-device", user_id="user-1"),
        storage=StorageConfig(db_path=":memory:"),
        sync=SyncConfig(enabled=False),
    )
    session = LedgerSession(config, credentials=credentials, transport=transport)
    session.open()
    yield session
    session.store.close()


@pytest.fixture
def client(session):
    """Create a test client."""
    return TestClient(create_app(session))


class TestStatusRoutes:
    """Tests for status and health routes."""

    def test_status(self, client):
        response = client.get("/api/status")

        assert response.status_code == 200
        data = response.json()
        assert data["device_id"] == "test-device"
        assert data["is_online"] is True
        assert data["sync_in_progress"] is False
        assert data["scheduler"]["running"] is False
        assert "timestamp" in data

    def test_health(self, client):
        response = client.get("/api/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["issues"] == []
        assert "storage_info" in data


class TestQueueRoutes:
    """Tests for queue inspection and manual sync."""

    def test_queue(self, client, session, expense_data):
        session.create("expenses", expense_data)
        session.create("cards", {"name": "Visa"})

        response = client.get("/api/queue", params={"limit": 1})

        assert response.status_code == 200
        data = response.json()
        assert data["outstanding"] == 2
        assert len(data["operations"]) == 1
        assert data["operations"][0]["type"] == "create"

    def test_queue_unknown_status(self, client):
        response = client.get("/api/queue", params={"status": "bogus"})

        assert response.status_code == 400

    def test_sync(self, client, session, transport, expense_data):
        session.create("expenses", expense_data)

        response = client.post("/api/sync")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["syncedCount"] == 1
        assert "cloud_1" in transport.records["expenses"]
        assert client.get("/api/queue").json()["outstanding"] == 0


class TestConflictRoutes:
    """Tests for conflict inspection."""

    def test_no_open_conflicts(self, client):
        response = client.get("/api/conflicts")

        assert response.json() == {"count": 0, "conflicts": []}

    def test_history(self, client, session):
        session.detector.resolve_field_level_conflicts(
            {"id": "card_1", "name": "A"},
            {"id": "cloud_1", "name": "B"},
            "cloud_wins",
            entity_type="cards",
        )

        data = client.get("/api/conflicts/history", params={"entity_type": "cards"}).json()
        assert data["count"] == 1
        assert data["resolutions"][0]["strategy"] == "cloud_wins"

        stats = client.get("/api/conflicts/stats").json()
        assert stats["total"] == 1
        assert stats["by_entity_type"] == {"cards": 1}

    def test_history_unknown_type(self, client):
        response = client.get("/api/conflicts/history", params={"entity_type": "invoices"})

        assert response.status_code == 400
