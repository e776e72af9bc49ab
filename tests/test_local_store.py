"""Tests for the local replica store."""

import json

import pytest

from ledgersync.clock import now_ms
from ledgersync.errors import (
    ChecksumMismatchError,
    InvalidTransitionError,
    MigrationError,
    NotFoundError,
    SyncInProgressError,
    ValidationError,
)
from ledgersync.store import (
    DataFilters,
    EntityType,
    LocalStore,
    Migration,
    MigrationRegistry,
    OperationStatus,
    OperationType,
    PendingOperation,
    SyncStatus,
    compute_data_hash,
    payload_from_dict,
    validate_entity,
)


def _insert_raw(store, entity_id, data, status="pending", cloud_id=None, updated_at=None):
    """Write a row directly, bypassing validation."""
    timestamp = updated_at or now_ms()
    store._conn.execute(
        """
        INSERT INTO entities (
            entity_type, id, local_id, cloud_id, version, sync_status,
            created_at, updated_at, last_synced_at, data
        ) VALUES (?, ?, ?, ?, 1, ?, ?, ?, NULL, ?)
        """,
        (
            "expenses",
            entity_id,
            f"local_{entity_id}",
            cloud_id,
            status,
            timestamp,
            timestamp,
            json.dumps(data),
        ),
    )


class TestLocalStoreSchema:
    """Tests for schema initialization."""

    def test_connect_creates_tables(self, store):
        """Test that connect() creates every table."""
        tables = store._conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table'"
        ).fetchall()
        table_names = {t[0] for t in tables}

        assert {
            "entities",
            "deferred_edits",
            "pending_operations",
            "conflict_history",
            "sync_state",
            "metadata",
        } <= table_names

    def test_metadata(self, store):
        """Test device and user identity are persisted."""
        metadata = store.get_metadata()

        assert metadata.device_id == "test-device"
        assert metadata.user_id == "user-1"
        assert metadata.schema_version == 1

    def test_generated_device_id(self):
        """Test a device id is generated when none is given."""
        store = LocalStore(":memory:")
        store.connect()

        assert store.device_id.startswith("device_")
        store.close()


class TestSave:
    """Tests for creating entities."""

    def test_save_new_entity(self, store, expense_data):
        """Test a new entity starts at version 1 and pending."""
        entity = store.save(EntityType.EXPENSES, expense_data)

        assert entity.id.startswith("exp_")
        assert entity.version == 1
        assert entity.sync_status == SyncStatus.PENDING
        assert entity.cloud_id is None
        assert entity.data == expense_data
        assert store.get("expenses", entity.id) == entity

    def test_save_ignores_meta_fields(self, store, expense_data):
        """Test callers cannot set sync metadata through data."""
        entity = store.save(
            "expenses", {**expense_data, "syncStatus": "synced", "version": 9}
        )

        assert entity.version == 1
        assert entity.sync_status == SyncStatus.PENDING
        assert "syncStatus" not in entity.data

    def test_save_invalid_data(self, store):
        """Test malformed data is rejected with every error listed."""
        with pytest.raises(ValidationError) as exc_info:
            store.save("expenses", {"amount": -1, "title": "", "date": 0})

        errors = exc_info.value.errors
        assert "Invalid amount" in errors
        assert "Missing title" in errors
        assert "Invalid date" in errors
        assert store.count() == 0

    def test_save_unknown_type(self, store):
        """Test unknown entity types are rejected."""
        with pytest.raises(ValueError):
            store.save("invoices", {"name": "x"})


class TestUpdate:
    """Tests for local edits."""

    def test_version_counts_updates(self, store, expense_data):
        """Test version is 1 + N after N successful updates."""
        entity = store.save("expenses", expense_data)

        for i in range(5):
            store.update("expenses", entity.id, {"amount": 10 + i})

        updated = store.get("expenses", entity.id)
        assert updated.version == 6
        assert updated.data["amount"] == 14

    def test_update_synced_goes_pending(self, store, expense_data):
        """Test a local write moves a synced entity back to pending."""
        entity = store.save("expenses", expense_data)
        store.begin_sync("expenses", entity.id)
        store.complete_sync("expenses", entity.id, "cloud-1")

        updated = store.update("expenses", entity.id, {"title": "Dinner"})

        assert updated.sync_status == SyncStatus.PENDING
        assert updated.cloud_id == "cloud-1"

    def test_update_failed_keeps_status(self, store, expense_data):
        """Test a failed entity stays failed after a local edit."""
        entity = store.save("expenses", expense_data)
        store.begin_sync("expenses", entity.id)
        store.fail_sync("expenses", entity.id)

        updated = store.update("expenses", entity.id, {"title": "Dinner"})

        assert updated.sync_status == SyncStatus.FAILED
        assert updated.version == 2

    def test_update_while_syncing_is_deferred(self, store, expense_data):
        """Test an edit to a syncing entity is applied after the sync settles."""
        entity = store.save("expenses", expense_data)
        store.begin_sync("expenses", entity.id)

        returned = store.update("expenses", entity.id, {"title": "Dinner"})

        assert returned.data["title"] == "Lunch"
        assert returned.version == 1
        assert store.has_deferred_edits("expenses", entity.id)

        settled = store.complete_sync("expenses", entity.id, "cloud-1")

        assert settled.data["title"] == "Dinner"
        assert settled.version == 2
        assert settled.sync_status == SyncStatus.PENDING
        assert not store.has_deferred_edits("expenses", entity.id)

    def test_update_missing(self, store):
        """Test updating a missing entity raises NotFoundError."""
        with pytest.raises(NotFoundError):
            store.update("expenses", "exp_missing", {"title": "x"})

    def test_update_invalid(self, store, expense_data):
        """Test an invalid patch is rejected and nothing changes."""
        entity = store.save("expenses", expense_data)

        with pytest.raises(ValidationError):
            store.update("expenses", entity.id, {"amount": "lots"})

        assert store.get("expenses", entity.id).version == 1

    def test_delete(self, store, expense_data):
        """Test delete returns the removed entity."""
        entity = store.save("expenses", expense_data)

        removed = store.delete("expenses", entity.id)

        assert removed.id == entity.id
        assert store.get("expenses", entity.id) is None
        with pytest.raises(NotFoundError):
            store.delete("expenses", entity.id)


class TestQueries:
    """Tests for listing and searching."""

    def test_list_filters(self, store, expense_data):
        """Test date, category and paging filters."""
        store.save("expenses", {**expense_data, "date": 1000, "category": ["Food"]})
        store.save("expenses", {**expense_data, "date": 2000, "category": ["Travel"]})
        store.save("expenses", {**expense_data, "date": 3000, "category": ["Food"]})

        food = store.list_entities("expenses", DataFilters(category=["Food"]))
        assert len(food) == 2

        ranged = store.list_entities(
            "expenses", DataFilters(start_date=1500, end_date=3000)
        )
        assert sorted(e.data["date"] for e in ranged) == [2000, 3000]

        everything = store.list_entities("expenses")
        page = store.list_entities("expenses", DataFilters(limit=1, offset=1))
        assert [e.id for e in page] == [everything[1].id]

    def test_list_by_status(self, store, expense_data):
        """Test filtering by sync status."""
        first = store.save("expenses", expense_data)
        store.save("expenses", expense_data)
        store.begin_sync("expenses", first.id)

        syncing = store.list_entities(
            "expenses", DataFilters(sync_statuses=[SyncStatus.SYNCING])
        )

        assert [e.id for e in syncing] == [first.id]

    def test_search(self, store, expense_data):
        """Test case-insensitive search over text and list fields."""
        store.save("expenses", {**expense_data, "title": "Coffee beans"})
        store.save("expenses", {**expense_data, "title": "Rent", "category": ["Home"]})

        assert len(store.search("expenses", "coffee")) == 1
        assert len(store.search("expenses", "home")) == 1
        assert store.search("expenses", "home", fields=["title"]) == []

    def test_count(self, store, expense_data):
        """Test counting by type and status."""
        store.save("expenses", expense_data)
        store.save("cards", {"name": "Visa"})

        assert store.count() == 2
        assert store.count("cards") == 1
        assert store.count(sync_status=SyncStatus.SYNCED) == 0


class TestStatusTransitions:
    """Tests for the sync status state machine."""

    def test_begin_sync(self, store, expense_data):
        """Test only pending and failed entities can start syncing."""
        entity = store.save("expenses", expense_data)

        assert store.begin_sync("expenses", entity.id) is True
        assert store.begin_sync("expenses", entity.id) is False
        assert store.begin_sync("expenses", "exp_missing") is False

    def test_complete_requires_cloud_id(self, store, expense_data):
        """Test an entity cannot be synced without a cloud id."""
        entity = store.save("expenses", expense_data)
        store.begin_sync("expenses", entity.id)

        with pytest.raises(ValidationError):
            store.complete_sync("expenses", entity.id)

    def test_illegal_transition(self, store, expense_data):
        """Test pending cannot jump straight to synced."""
        entity = store.save("expenses", expense_data)

        with pytest.raises(InvalidTransitionError):
            store.complete_sync("expenses", entity.id, "cloud-1")

    def test_conflict_resolution(self, store, expense_data):
        """Test conflict resolves to synced, or pending when a push is needed."""
        entity = store.save("expenses", expense_data)
        store.begin_sync("expenses", entity.id)
        store.mark_conflict("expenses", entity.id, cloud_id="cloud-1")

        resolved = store.resolve_conflict(
            "expenses",
            entity.id,
            {**expense_data, "amount": 20},
            needs_push=True,
        )

        assert resolved.sync_status == SyncStatus.PENDING
        assert resolved.version == 2
        assert resolved.data["amount"] == 20

    def test_conflict_without_cloud_id_fails(self, store, expense_data):
        """Test a conflict with no remote copy is recorded as a failed push."""
        entity = store.save("expenses", expense_data)
        store.begin_sync("expenses", entity.id)

        marked = store.mark_conflict("expenses", entity.id)

        assert marked.sync_status == SyncStatus.FAILED
        stored = store.get("expenses", entity.id)
        assert stored.sync_status == SyncStatus.FAILED
        assert stored.cloud_id is None
        assert validate_entity(stored, "expenses").is_valid

    def test_resolve_requires_conflict(self, store, expense_data):
        """Test resolving an entity that is not in conflict fails."""
        entity = store.save("expenses", expense_data)

        with pytest.raises(InvalidTransitionError):
            store.resolve_conflict("expenses", entity.id, expense_data, "cloud-1")


class TestRemoteApplication:
    """Tests for applying pulled records."""

    def test_insert_update_unchanged(self, store, expense_data):
        """Test remote records are inserted, updated and skipped when equal."""
        remote = {"id": "cloud-1", **expense_data}

        outcome, entity = store.apply_remote_record("expenses", remote)
        assert outcome == "inserted"
        assert entity.sync_status == SyncStatus.SYNCED
        assert entity.cloud_id == "cloud-1"

        outcome, _ = store.apply_remote_record("expenses", remote)
        assert outcome == "unchanged"

        outcome, entity = store.apply_remote_record(
            "expenses", {**remote, "amount": 99}
        )
        assert outcome == "updated"
        assert entity.version == 2
        assert store.get("expenses", entity.id).data["amount"] == 99

    def test_diverged_local_changes_kept(self, store, expense_data):
        """Test a pulled record does not overwrite unsynced local changes."""
        store.apply_remote_record("expenses", {"id": "cloud-1", **expense_data})
        local = store.get_by_cloud_id("expenses", "cloud-1")
        store.update("expenses", local.id, {"title": "Local title"})

        outcome, entity = store.apply_remote_record(
            "expenses", {"id": "cloud-1", **expense_data, "title": "Remote title"}
        )

        assert outcome == "diverged"
        assert store.get("expenses", entity.id).data["title"] == "Local title"

    def test_queued_local_delete_not_undone(self, store, expense_data):
        """Test a pulled record is ignored while its local delete is unsent."""
        _, entity = store.apply_remote_record("expenses", {"id": "cloud-1", **expense_data})
        store.delete("expenses", entity.id)
        store.insert_operation(
            PendingOperation(
                id="op_1",
                type=OperationType.DELETE,
                entity_type=EntityType.EXPENSES,
                entity_id=entity.id,
                payload=payload_from_dict("expenses", entity.data),
                timestamp=now_ms(),
                cloud_id="cloud-1",
                status=OperationStatus.FAILED,
            )
        )

        outcome, restored = store.apply_remote_record(
            "expenses", {"id": "cloud-1", **expense_data}
        )

        assert outcome == "deleted"
        assert restored is None
        assert store.list_entities("expenses") == []

        store.delete_operations(["op_1"])
        outcome, _ = store.apply_remote_record("expenses", {"id": "cloud-1", **expense_data})
        assert outcome == "inserted"

    def test_remove_remote_deleted(self, store, expense_data):
        """Test remote deletions only remove synced copies."""
        store.apply_remote_record("expenses", {"id": "cloud-1", **expense_data})
        store.apply_remote_record("expenses", {"id": "cloud-2", **expense_data})
        edited = store.get_by_cloud_id("expenses", "cloud-2")
        store.update("expenses", edited.id, {"title": "Edited"})

        removed = store.remove_remote_deleted("expenses", ["cloud-1", "cloud-2"])

        assert removed == 1
        assert store.get_by_cloud_id("expenses", "cloud-1") is None
        assert store.get_by_cloud_id("expenses", "cloud-2") is not None

    def test_mark_all_synced(self, store, expense_data):
        """Test a full upload marks records synced with their new ids."""
        entity = store.save("expenses", expense_data)

        marked = store.mark_all_synced({"expenses": {entity.id: "cloud-9"}})

        assert marked == 1
        synced = store.get("expenses", entity.id)
        assert synced.sync_status == SyncStatus.SYNCED
        assert synced.cloud_id == "cloud-9"


class TestValidationAndRepair:
    """Tests for corruption detection and repair."""

    def test_validate_collection(self, store, expense_data):
        """Test corrupted rows are reported, not dropped."""
        store.save("expenses", expense_data)
        _insert_raw(store, "exp_bad", {"amount": "abc", "title": "", "category": "Food"})

        result = store.validate_collection("expenses")

        assert result["is_valid"] is False
        assert result["corrupted_ids"] == ["exp_bad"]
        assert "Invalid amount" in result["errors"]["exp_bad"]
        assert store.count("expenses") == 2

    def test_repair_corrupted_data(self, store):
        """Test repair fills only the broken fields."""
        _insert_raw(
            store,
            "exp_bad",
            {"amount": "12.5", "title": "", "category": "Food", "for": [], "date": 5},
        )

        result = store.repair_corrupted_data("expenses")

        assert result["repaired_count"] == 1
        repaired = store.get("expenses", "exp_bad")
        assert repaired.data["amount"] == 12.5
        assert repaired.data["title"] == "Recovered Expense"
        assert repaired.data["category"] == ["Food"]
        assert repaired.data["date"] == 5
        assert store.validate_collection("expenses")["is_valid"] is True

    def test_repair_synced_without_cloud_id(self, store, expense_data):
        """Test a synced record with no cloud id goes back to pending."""
        _insert_raw(store, "exp_orphan", expense_data, status="synced")

        store.repair_corrupted_data("expenses")

        assert store.get("expenses", "exp_orphan").sync_status == SyncStatus.PENDING


class TestExportImport:
    """Tests for export and import."""

    def test_round_trip_preserves_hash(self, store, expense_data):
        """Test import(export()) reproduces the data hash."""
        store.save("expenses", expense_data)
        store.save("cards", {"name": "Visa"})
        store.save("categories", {"name": "Food", "type": "expense"})
        original_hash = store.get_data_hash()

        export = store.export_data()
        other = LocalStore(":memory:", device_id="other-device")
        other.connect()

        count = other.import_data(export.to_dict())

        assert count == 3
        assert other.get_data_hash() == original_hash
        assert other.device_id == "other-device"
        other.close()

    def test_import_restores_queue(self, store, expense_data):
        """Test queued operations travel with the export."""
        entity = store.save("expenses", expense_data)
        store.insert_operation(
            PendingOperation(
                id="op_1",
                type=OperationType.CREATE,
                entity_type=EntityType.EXPENSES,
                entity_id=entity.id,
                payload=payload_from_dict("expenses", entity.data),
                timestamp=now_ms(),
            )
        )
        export = store.export_data()

        other = LocalStore(":memory:")
        other.connect()
        other.import_data(export)

        ops = other.list_operations()
        assert [op.id for op in ops] == ["op_1"]
        assert ops[0].status == OperationStatus.PENDING
        other.close()

    def test_checksum_mismatch(self, store, expense_data):
        """Test a tampered bundle is rejected."""
        store.save("expenses", expense_data)
        bundle = store.export_data().to_dict()
        bundle["checksum"] = "0" * 64

        with pytest.raises(ChecksumMismatchError):
            store.import_data(bundle)

    def test_invalid_record_rejects_whole_import(self, store, expense_data):
        """Test one bad record aborts the import with no changes."""
        existing = store.save("cards", {"name": "Visa"})
        other = LocalStore(":memory:")
        other.connect()
        other.save("expenses", expense_data)
        bundle = other.export_data().to_dict()
        record = next(iter(bundle["data"]["expenses"].values()))
        record["amount"] = -5
        bundle["checksum"] = compute_data_hash(bundle["data"])

        with pytest.raises(ValidationError) as exc_info:
            store.import_data(bundle)

        assert any("Invalid amount" in e for e in exc_info.value.errors)
        assert store.get("cards", existing.id) is not None
        assert store.count() == 1
        other.close()

    def test_import_refused_while_syncing(self, store, expense_data):
        """Test import waits for in-flight operations."""
        entity = store.save("expenses", expense_data)
        export = store.export_data()
        op = store.insert_operation(
            PendingOperation(
                id="op_1",
                type=OperationType.CREATE,
                entity_type=EntityType.EXPENSES,
                entity_id=entity.id,
                payload=payload_from_dict("expenses", entity.data),
                timestamp=now_ms(),
                status=OperationStatus.SYNCING,
            )
        )

        with pytest.raises(SyncInProgressError):
            store.import_data(export)

        assert store.get_operation(op.id) is not None


class TestSyncStateAndHealth:
    """Tests for sync bookkeeping and storage health."""

    def test_record_sync_outcome(self, store, expense_data):
        """Test success records time and hash; failure records the error."""
        store.save("expenses", expense_data)

        state = store.record_sync_outcome(True, timestamp=12345)
        assert state.last_sync == 12345
        assert state.data_hash == store.get_data_hash()
        assert state.total_records == 1

        state = store.record_sync_outcome(False, error="boom", timestamp=23456)
        assert state.last_sync == 12345
        assert state.last_attempt == 23456
        assert state.last_error == "boom"

    def test_hash_ignores_status(self, store, expense_data):
        """Test a status-only change leaves the data hash alone."""
        entity = store.save("expenses", expense_data)
        before = store.get_data_hash()

        store.begin_sync("expenses", entity.id)

        assert store.get_data_hash() == before

    def test_health_reports_corruption(self, store):
        """Test storage health flags corrupted records."""
        assert store.check_storage_health()["is_healthy"] is True

        _insert_raw(store, "exp_bad", {"amount": "abc"})
        health = store.check_storage_health()

        assert health["is_healthy"] is False
        assert any("corrupted expenses" in issue for issue in health["issues"])
        assert health["storage_info"]["used"] > 0

    def test_cleanup_old_data(self, store, expense_data):
        """Test only old synced records are removed."""
        old = now_ms() - 200 * 24 * 60 * 60 * 1000
        _insert_raw(store, "exp_old", expense_data, status="synced", cloud_id="c1", updated_at=old)
        _insert_raw(store, "exp_old_pending", expense_data, updated_at=old)
        store.save("expenses", expense_data)

        removed = store.cleanup_old_data(max_age_days=90)

        assert removed == 1
        assert store.get("expenses", "exp_old") is None
        assert store.get("expenses", "exp_old_pending") is not None


class TestBatchWrites:
    """Tests for multi-record writes in one transaction."""

    def test_batch_save(self, store, expense_data):
        entities = store.batch_save(
            "expenses", [expense_data, {**expense_data, "title": "Dinner"}]
        )

        assert [e.data["title"] for e in entities] == ["Lunch", "Dinner"]
        assert store.count("expenses") == 2

    def test_batch_save_is_all_or_nothing(self, store, expense_data):
        """Test one malformed record leaves nothing behind."""
        with pytest.raises(ValidationError):
            store.batch_save("expenses", [expense_data, {**expense_data, "amount": -5}])

        assert store.count("expenses") == 0

    def test_batch_update(self, store, expense_data):
        first, second = store.batch_save("expenses", [expense_data, expense_data])

        updated = store.batch_update(
            "expenses", {first.id: {"title": "Rent"}, second.id: {"amount": 99.0}}
        )

        assert [e.version for e in updated] == [2, 2]
        assert store.get("expenses", first.id).data["title"] == "Rent"
        assert store.get("expenses", second.id).data["amount"] == 99.0

    def test_batch_update_missing_rolls_back(self, store, expense_data):
        entity = store.save("expenses", expense_data)

        with pytest.raises(NotFoundError):
            store.batch_update(
                "expenses", {entity.id: {"title": "Rent"}, "exp_missing": {"title": "x"}}
            )

        assert store.get("expenses", entity.id).data["title"] == "Lunch"
        assert store.get("expenses", entity.id).version == 1

    def test_batch_delete(self, store, expense_data):
        first, second, third = store.batch_save("expenses", [expense_data] * 3)

        removed = store.batch_delete("expenses", [first.id, third.id])

        assert [e.id for e in removed] == [first.id, third.id]
        assert [e.id for e in store.list_entities("expenses")] == [second.id]

    def test_batch_delete_missing_rolls_back(self, store, expense_data):
        entity = store.save("expenses", expense_data)

        with pytest.raises(NotFoundError):
            store.batch_delete("expenses", [entity.id, "exp_missing"])

        assert store.get("expenses", entity.id) is not None


def _uppercase_cards(entity_type, record):
    if entity_type == "cards":
        return {**record, "name": record["name"].upper()}
    return record


def _broken_upgrade(entity_type, record):
    raise RuntimeError("bad upgrade")


class TestMigrations:
    """Tests for schema upgrades run on connect."""

    def _seed(self, db_path):
        store = LocalStore(db_path, device_id="test-device")
        store.connect()
        card = store.save("cards", {"name": "Visa"})
        store.close()
        return card

    def test_upgrade_on_connect(self, tmp_path):
        db_path = tmp_path / "ledger.db"
        card = self._seed(db_path)
        registry = MigrationRegistry([Migration(2, "Uppercase card names", _uppercase_cards)])

        store = LocalStore(db_path, schema_version=2, migrations=registry)
        store.connect()

        assert store.get("cards", card.id).data["name"] == "VISA"
        assert store.get_metadata().schema_version == 2
        assert store.migrate() == []
        store.close()

    def test_backup_written_before_upgrade(self, tmp_path):
        db_path = tmp_path / "ledger.db"
        card = self._seed(db_path)
        registry = MigrationRegistry([Migration(2, "Uppercase card names", _uppercase_cards)])

        store = LocalStore(db_path, schema_version=2, migrations=registry)
        store.connect()
        store.close()

        backups = list((tmp_path / "backups").glob("ledger-schema1-*.json"))
        assert len(backups) == 1
        bundle = json.loads(backups[0].read_text())
        assert bundle["data"]["cards"][card.id]["name"] == "Visa"
        assert bundle["metadata"]["schemaVersion"] == 1

    def test_failed_upgrade_rolls_back(self, tmp_path):
        db_path = tmp_path / "ledger.db"
        card = self._seed(db_path)
        registry = MigrationRegistry(
            [
                Migration(2, "Uppercase card names", _uppercase_cards),
                Migration(3, "Broken", _broken_upgrade),
            ]
        )

        store = LocalStore(db_path, schema_version=3, migrations=registry)
        with pytest.raises(MigrationError) as exc_info:
            store.connect()
        store.close()

        assert "schema version 3" in str(exc_info.value)
        assert exc_info.value.backup_path is not None

        reopened = LocalStore(db_path)
        reopened.connect()
        assert reopened.get("cards", card.id).data["name"] == "Visa"
        assert reopened.get_metadata().schema_version == 1
        reopened.close()

    def test_invalid_upgrade_result_rolls_back(self, tmp_path):
        db_path = tmp_path / "ledger.db"
        card = self._seed(db_path)
        registry = MigrationRegistry()

        @registry.migration(2, "Blank card names")
        def blank_names(entity_type, record):
            return {**record, "name": ""}

        store = LocalStore(db_path, schema_version=2, migrations=registry)
        with pytest.raises(MigrationError):
            store.connect()

        assert store.get("cards", card.id).data["name"] == "Visa"
        store.close()

    def test_missing_step(self, tmp_path):
        db_path = tmp_path / "ledger.db"
        self._seed(db_path)

        store = LocalStore(db_path, schema_version=2)
        with pytest.raises(MigrationError, match="No migration to schema version 2"):
            store.connect()
        store.close()

    def test_in_memory_backup_kept_on_store(self):
        registry = MigrationRegistry([Migration(2, "Uppercase card names", _uppercase_cards)])
        store = LocalStore(":memory:", device_id="test-device", migrations=registry)
        store.connect()
        store.save("cards", {"name": "Amex"})

        assert store.migrate(2) == [2]

        assert store.migration_backup.record_count() == 1
        assert [e.data["name"] for e in store.list_entities("cards")] == ["AMEX"]
        store.close()

    def test_registry_rejects_duplicates(self):
        registry = MigrationRegistry([Migration(2, "first", _uppercase_cards)])

        with pytest.raises(ValueError):
            registry.register(Migration(2, "second", _uppercase_cards))
        with pytest.raises(ValueError):
            registry.register(Migration(1, "too early", _uppercase_cards))
        assert registry.latest_version == 2
