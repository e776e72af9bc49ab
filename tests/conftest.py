"""Shared fixtures: an in-memory store and an in-process remote store."""

import pytest

from ledgersync.store import EntityType, LocalStore, OperationType
from ledgersync.store.models import domain_fields
from ledgersync.sync.conflict_detector import RemoteSnapshot
from ledgersync.sync.transport import Credentials, RemoteTransport


class FakeTransport(RemoteTransport):
    """Remote store held in memory.

    Exceptions queued in ``failures`` are raised by the next sends, in order.
    """

    def __init__(self, schema_version: int = 1):
        self.records: dict[str, dict[str, dict]] = {t.value: {} for t in EntityType}
        self.sent = []
        self.failures: list[Exception] = []
        self.schema_version = schema_version
        self.online = True
        self.closed = False
        self._counter = 0

    def _next_id(self) -> str:
        self._counter += 1
        return f"cloud_{self._counter}"

    def put(self, entity_type: str, record: dict) -> dict:
        """Seed a remote record directly."""
        record = dict(record)
        record.setdefault("id", self._next_id())
        self.records[entity_type][record["id"]] = record
        return record

    async def send_operation(self, op, credentials):
        self.sent.append(op)
        if self.failures:
            raise self.failures.pop(0)

        records = self.records[op.entity_type.value]
        if op.type == OperationType.CREATE:
            record = {"id": self._next_id(), **op.payload.to_dict()}
            records[record["id"]] = record
            return dict(record)
        if op.type == OperationType.UPDATE:
            record = {"id": op.cloud_id, **op.payload.to_dict()}
            records[op.cloud_id] = record
            return dict(record)
        records.pop(op.cloud_id, None)
        return {}

    async def fetch_snapshot(self, credentials):
        return RemoteSnapshot(
            records={
                entity_type: [dict(r) for r in records.values()]
                for entity_type, records in self.records.items()
            },
            schema_version=self.schema_version,
        )

    async def fetch_changes(self, credentials, since):
        return await self.fetch_snapshot(credentials)

    async def replace_snapshot(self, data, credentials):
        ids: dict[str, dict[str, str]] = {}
        self.records = {t.value: {} for t in EntityType}
        for entity_type, records in data.items():
            for record in records:
                cloud_id = record.get("cloudId") or self._next_id()
                self.records[entity_type][cloud_id] = {
                    "id": cloud_id,
                    **domain_fields(record),
                }
                ids.setdefault(entity_type, {})[record["id"]] = cloud_id
        return ids

    async def check_connection(self, credentials):
        return self.online

    async def close(self):
        self.closed = True


@pytest.fixture
def store():
    """Create an in-memory LocalStore."""
    store = LocalStore(":memory:", device_id="test-device", user_id="user-1")
    store.connect()
    yield store
    store.close()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def credentials():
    return Credentials(token="test-token", user_id="user-1")


@pytest.fixture
def expense_data():
    return {
        "amount": 12.5,
        "title": "Lunch",
        "category": ["Food"],
        "for": ["Me"],
        "date": 1_700_000_000_000,
    }
