"""SQLite-backed local replica of the user's financial data.

Every read and write completes locally without touching the network. The
store also owns the durable tables behind the operation queue and the
conflict history so that a whole dataset lives in one file.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator

from ..clock import new_id, now_ms
from ..errors import (
    ChecksumMismatchError,
    InvalidTransitionError,
    LedgerSyncError,
    MigrationError,
    NotFoundError,
    SyncInProgressError,
    ValidationError,
)
from .migrations import Migration, MigrationRegistry
from .models import (
    ALLOWED_TRANSITIONS,
    ID_PREFIXES,
    META_FIELDS,
    ConflictResolution,
    DataExport,
    DataFilters,
    EntityType,
    LocalEntity,
    LocalMetadata,
    OperationStatus,
    OperationType,
    PendingOperation,
    Priority,
    SyncState,
    SyncStatus,
    coerce_entity_type,
    compute_data_hash,
    domain_fields,
    remote_id,
)
from .payloads import payload_from_dict
from .validation import (
    ValidationResult,
    attempt_repair,
    validate_domain_data,
    validate_entity,
)

logger = logging.getLogger(__name__)

EXPORT_VERSION = "2.0.0"
DEFAULT_QUOTA_BYTES = 50 * 1024 * 1024
DAY_MS = 24 * 60 * 60 * 1000

SCHEMA = """
CREATE TABLE IF NOT EXISTS entities (
    entity_type TEXT NOT NULL,
    id TEXT NOT NULL,
    local_id TEXT NOT NULL UNIQUE,
    cloud_id TEXT,
    version INTEGER NOT NULL DEFAULT 1,
    sync_status TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    last_synced_at INTEGER,
    data TEXT NOT NULL,
    PRIMARY KEY (entity_type, id)
);

CREATE INDEX IF NOT EXISTS idx_entities_status ON entities(entity_type, sync_status);
CREATE INDEX IF NOT EXISTS idx_entities_cloud ON entities(entity_type, cloud_id);

-- Patches made while an entity was syncing, applied when the sync settles
CREATE TABLE IF NOT EXISTS deferred_edits (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    patch TEXT NOT NULL,
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS pending_operations (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    type TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    cloud_id TEXT,
    data TEXT NOT NULL,
    timestamp INTEGER NOT NULL,
    retry_count INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL DEFAULT 3,
    status TEXT NOT NULL,
    priority TEXT NOT NULL,
    error TEXT,
    next_attempt_at INTEGER
);

CREATE INDEX IF NOT EXISTS idx_ops_status ON pending_operations(status);
CREATE INDEX IF NOT EXISTS idx_ops_entity ON pending_operations(entity_type, entity_id);

CREATE TABLE IF NOT EXISTS conflict_history (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    resolved_at INTEGER NOT NULL,
    strategy TEXT NOT NULL,
    note TEXT NOT NULL DEFAULT '',
    detected_at INTEGER
);

CREATE TABLE IF NOT EXISTS sync_state (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    last_sync INTEGER NOT NULL DEFAULT 0,
    data_hash TEXT NOT NULL DEFAULT '',
    total_records INTEGER NOT NULL DEFAULT 0,
    last_modified INTEGER NOT NULL DEFAULT 0,
    last_attempt INTEGER NOT NULL DEFAULT 0,
    last_error TEXT
);

CREATE TABLE IF NOT EXISTS metadata (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class LocalStore:
    """Local replica store backed by a single SQLite file per dataset."""

    def __init__(
        self,
        db_path: str | Path,
        device_id: str | None = None,
        user_id: str = "",
        schema_version: int = 1,
        quota_bytes: int = DEFAULT_QUOTA_BYTES,
        migrations: MigrationRegistry | None = None,
        backup_dir: str | Path | None = None,
    ):
        """Initialize the store.

        Args:
            db_path: Path to the SQLite database file, or ":memory:".
            device_id: Identifier of this device. Generated and persisted on
                first connect when not given.
            user_id: Owner of the dataset.
            schema_version: Version of the local record schema.
            quota_bytes: Storage quota used for usage reporting.
            migrations: Upgrades run on connect when the stored schema
                version is older than ``schema_version``.
            backup_dir: Where pre-migration exports are written. Defaults
                to a ``backups`` directory beside the database file.
        """
        self.db_path = db_path if db_path == ":memory:" else Path(db_path).expanduser()
        self.quota_bytes = quota_bytes
        self._requested_device_id = device_id
        self._requested_user_id = user_id
        self._schema_version = schema_version
        self.migrations = migrations or MigrationRegistry()
        if backup_dir is not None:
            self.backup_dir: Path | None = Path(backup_dir).expanduser()
        elif isinstance(self.db_path, Path):
            self.backup_dir = self.db_path.parent / "backups"
        else:
            self.backup_dir = None
        self.migration_backup: DataExport | None = None
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._tx_depth = 0

    def connect(self) -> None:
        """Open the database and create the schema if needed."""
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(
            str(self.db_path), check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SCHEMA)

        with self._transaction() as conn:
            conn.execute("INSERT OR IGNORE INTO sync_state (id) VALUES (1)")
            timestamp = now_ms()
            defaults = {
                "device_id": self._requested_device_id or new_id("device"),
                "user_id": self._requested_user_id,
                "schema_version": str(self._schema_version),
                "created_at": str(timestamp),
                "updated_at": str(timestamp),
            }
            for key, value in defaults.items():
                conn.execute(
                    "INSERT OR IGNORE INTO metadata (key, value) VALUES (?, ?)",
                    (key, value),
                )
            if self._requested_user_id:
                self._set_meta(conn, "user_id", self._requested_user_id)

        logger.info(f"LocalStore connected to {self.db_path}")

        stored = int(self._get_meta("schema_version", "1"))
        if stored < self._schema_version:
            self.migrate()
        elif stored > self._schema_version:
            logger.warning(
                f"Local data uses schema version {stored}, "
                f"newer than configured {self._schema_version}"
            )

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        """Ensure database connection exists."""
        if self._conn is None:
            self.connect()
        return self._conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed statements in one write transaction.

        Nested use joins the outer transaction.
        """
        with self._lock:
            conn = self._ensure_connected()
            if self._tx_depth:
                self._tx_depth += 1
                try:
                    yield conn
                finally:
                    self._tx_depth -= 1
                return

            conn.execute("BEGIN IMMEDIATE")
            self._tx_depth = 1
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")
            finally:
                self._tx_depth = 0

    @contextmanager
    def _reading(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            yield self._ensure_connected()

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def _set_meta(self, conn: sqlite3.Connection, key: str, value: str) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)", (key, value)
        )

    def _get_meta(self, key: str, default: str = "") -> str:
        with self._reading() as conn:
            row = conn.execute(
                "SELECT value FROM metadata WHERE key = ?", (key,)
            ).fetchone()
        return row["value"] if row else default

    @property
    def device_id(self) -> str:
        return self._get_meta("device_id")

    def get_metadata(self) -> LocalMetadata:
        """Return device and user identity of this replica."""
        return LocalMetadata(
            device_id=self._get_meta("device_id"),
            user_id=self._get_meta("user_id"),
            version=EXPORT_VERSION,
            schema_version=int(self._get_meta("schema_version", "1")),
            created_at=int(self._get_meta("created_at", "0")),
            updated_at=int(self._get_meta("updated_at", "0")),
        )

    def set_user_id(self, user_id: str) -> None:
        with self._transaction() as conn:
            self._set_meta(conn, "user_id", user_id)
            self._set_meta(conn, "updated_at", str(now_ms()))

    def _touch(self, conn: sqlite3.Connection, timestamp: int) -> None:
        conn.execute(
            "UPDATE sync_state SET last_modified = ? WHERE id = 1", (timestamp,)
        )

    # ------------------------------------------------------------------
    # Row conversion
    # ------------------------------------------------------------------

    def _row_to_record(self, row: sqlite3.Row) -> dict[str, Any]:
        """Flatten a row into the export record shape.

        Undecodable data is reported as an empty dict so that validation
        flags the record instead of it disappearing.
        """
        try:
            data = json.loads(row["data"])
            if not isinstance(data, dict):
                raise ValueError("entity data is not an object")
        except ValueError as e:
            logger.warning(
                f"Corrupted data for {row['entity_type']}/{row['id']}: {e}"
            )
            data = {}

        record: dict[str, Any] = {
            "id": row["id"],
            "localId": row["local_id"],
            "version": row["version"],
            "syncStatus": row["sync_status"],
            "createdAt": row["created_at"],
            "updatedAt": row["updated_at"],
        }
        if row["cloud_id"] is not None:
            record["cloudId"] = row["cloud_id"]
        if row["last_synced_at"] is not None:
            record["lastSyncedAt"] = row["last_synced_at"]
        record.update({k: v for k, v in data.items() if k not in META_FIELDS})
        return record

    def _row_to_entity(self, row: sqlite3.Row) -> LocalEntity:
        return LocalEntity.from_dict(row["entity_type"], self._row_to_record(row))

    def _fetch_row(
        self, conn: sqlite3.Connection, entity_type: EntityType, entity_id: str
    ) -> sqlite3.Row | None:
        return conn.execute(
            "SELECT * FROM entities WHERE entity_type = ? AND id = ?",
            (entity_type.value, entity_id),
        ).fetchone()

    def _insert_entity(self, conn: sqlite3.Connection, entity: LocalEntity) -> None:
        conn.execute(
            """
            INSERT INTO entities (
                entity_type, id, local_id, cloud_id, version, sync_status,
                created_at, updated_at, last_synced_at, data
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entity.entity_type.value,
                entity.id,
                entity.local_id,
                entity.cloud_id,
                entity.version,
                entity.sync_status.value,
                entity.created_at,
                entity.updated_at,
                entity.last_synced_at,
                json.dumps(entity.data),
            ),
        )

    def _write_entity(
        self, conn: sqlite3.Connection, entity: LocalEntity, expected_version: int
    ) -> None:
        """Write an entity only if its stored version is still ``expected_version``."""
        cursor = conn.execute(
            """
            UPDATE entities SET
                cloud_id = ?, version = ?, sync_status = ?, updated_at = ?,
                last_synced_at = ?, data = ?
            WHERE entity_type = ? AND id = ? AND version = ?
            """,
            (
                entity.cloud_id,
                entity.version,
                entity.sync_status.value,
                entity.updated_at,
                entity.last_synced_at,
                json.dumps(entity.data),
                entity.entity_type.value,
                entity.id,
                expected_version,
            ),
        )
        if cursor.rowcount != 1:
            raise LedgerSyncError(
                f"Concurrent modification of {entity.entity_type.value}/{entity.id}"
            )

    # ------------------------------------------------------------------
    # Entity CRUD
    # ------------------------------------------------------------------

    def save(
        self, entity_type: EntityType | str, data: dict[str, Any]
    ) -> LocalEntity:
        """Create a new entity.

        Args:
            entity_type: Collection to save into.
            data: Domain fields of the new record.

        Returns:
            The stored entity with version 1 and status pending.

        Raises:
            ValidationError: If the data is malformed.
        """
        entity_type = coerce_entity_type(entity_type)
        timestamp = now_ms()
        entity = LocalEntity(
            id=new_id(ID_PREFIXES[entity_type]),
            local_id=new_id("local"),
            entity_type=entity_type,
            data={k: v for k, v in data.items() if k not in META_FIELDS},
            created_at=timestamp,
            updated_at=timestamp,
        )

        result = validate_entity(entity, entity_type)
        if not result.is_valid:
            raise ValidationError(
                f"Invalid {entity_type.value} data: {', '.join(result.errors)}",
                result.errors,
            )

        with self._transaction() as conn:
            self._insert_entity(conn, entity)
            self._touch(conn, timestamp)

        logger.debug(f"Saved {entity_type.value}/{entity.id}")
        return entity

    def get(self, entity_type: EntityType | str, entity_id: str) -> LocalEntity | None:
        entity_type = coerce_entity_type(entity_type)
        with self._reading() as conn:
            row = self._fetch_row(conn, entity_type, entity_id)
        return self._row_to_entity(row) if row else None

    def get_by_cloud_id(
        self, entity_type: EntityType | str, cloud_id: str
    ) -> LocalEntity | None:
        entity_type = coerce_entity_type(entity_type)
        with self._reading() as conn:
            row = conn.execute(
                "SELECT * FROM entities WHERE entity_type = ? AND cloud_id = ?",
                (entity_type.value, cloud_id),
            ).fetchone()
        return self._row_to_entity(row) if row else None

    def update(
        self, entity_type: EntityType | str, entity_id: str, patch: dict[str, Any]
    ) -> LocalEntity:
        """Apply a local edit.

        A synced entity goes back to pending; pending, failed and conflict
        entities keep their status. If the entity is syncing, the patch is
        persisted and applied once the in-flight sync settles, and the
        current (unchanged) entity is returned.

        Raises:
            NotFoundError: If the entity does not exist.
            ValidationError: If the patched record would be malformed.
        """
        entity_type = coerce_entity_type(entity_type)
        patch = {k: v for k, v in patch.items() if k not in META_FIELDS}

        with self._transaction() as conn:
            row = self._fetch_row(conn, entity_type, entity_id)
            if row is None:
                raise NotFoundError(f"{entity_type.value}/{entity_id} not found")

            entity = self._row_to_entity(row)
            result = validate_domain_data({**entity.data, **patch}, entity_type)
            if not result.is_valid:
                raise ValidationError(
                    f"Invalid {entity_type.value} update: {', '.join(result.errors)}",
                    result.errors,
                )

            if entity.sync_status == SyncStatus.SYNCING:
                conn.execute(
                    """
                    INSERT INTO deferred_edits (entity_type, entity_id, patch, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (entity_type.value, entity_id, json.dumps(patch), now_ms()),
                )
                logger.info(
                    f"Deferred edit to {entity_type.value}/{entity_id} while syncing"
                )
                return entity

            self._apply_patch(conn, entity, patch)

        return entity

    def _apply_patch(
        self, conn: sqlite3.Connection, entity: LocalEntity, patch: dict[str, Any]
    ) -> None:
        """Merge a patch as one local write, mutating ``entity`` in place."""
        expected = entity.version
        entity.data.update(patch)
        entity.version += 1
        entity.updated_at = max(now_ms(), entity.updated_at + 1)
        if entity.sync_status == SyncStatus.SYNCED:
            entity.sync_status = SyncStatus.PENDING
        self._write_entity(conn, entity, expected)
        self._touch(conn, entity.updated_at)

    def delete(self, entity_type: EntityType | str, entity_id: str) -> LocalEntity:
        """Remove an entity from the readable set.

        Returns:
            The removed entity, so callers can record a tombstone.

        Raises:
            NotFoundError: If the entity does not exist.
        """
        entity_type = coerce_entity_type(entity_type)
        with self._transaction() as conn:
            row = self._fetch_row(conn, entity_type, entity_id)
            if row is None:
                raise NotFoundError(f"{entity_type.value}/{entity_id} not found")
            entity = self._row_to_entity(row)
            conn.execute(
                "DELETE FROM entities WHERE entity_type = ? AND id = ?",
                (entity_type.value, entity_id),
            )
            conn.execute(
                "DELETE FROM deferred_edits WHERE entity_type = ? AND entity_id = ?",
                (entity_type.value, entity_id),
            )
            self._touch(conn, now_ms())

        logger.debug(f"Deleted {entity_type.value}/{entity_id}")
        return entity

    def batch_save(
        self, entity_type: EntityType | str, items: Iterable[dict[str, Any]]
    ) -> list[LocalEntity]:
        """Create several entities in one transaction.

        Raises:
            ValidationError: If any record is malformed. Nothing is saved.
        """
        with self._transaction():
            entities = [self.save(entity_type, data) for data in items]
        logger.debug(f"Batch saved {len(entities)} record(s)")
        return entities

    def batch_update(
        self, entity_type: EntityType | str, patches: dict[str, dict[str, Any]]
    ) -> list[LocalEntity]:
        """Apply one patch per entity id in one transaction.

        Raises:
            NotFoundError: If any entity is missing. Nothing is changed.
            ValidationError: If any patched record would be malformed.
        """
        with self._transaction():
            return [
                self.update(entity_type, entity_id, patch)
                for entity_id, patch in patches.items()
            ]

    def batch_delete(
        self, entity_type: EntityType | str, entity_ids: Iterable[str]
    ) -> list[LocalEntity]:
        """Delete several entities in one transaction.

        Raises:
            NotFoundError: If any entity is missing. Nothing is deleted.
        """
        with self._transaction():
            return [self.delete(entity_type, entity_id) for entity_id in entity_ids]

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Group store writes, queue inserts included, into one transaction."""
        with self._transaction():
            yield

    def list_entities(
        self, entity_type: EntityType | str, filters: DataFilters | None = None
    ) -> list[LocalEntity]:
        """List entities of one type, oldest first.

        Args:
            entity_type: Collection to list.
            filters: Optional date range, status, category, card and paging.
        """
        entity_type = coerce_entity_type(entity_type)
        filters = filters or DataFilters()

        query = "SELECT * FROM entities WHERE entity_type = ?"
        params: list[Any] = [entity_type.value]
        if filters.sync_statuses:
            placeholders = ", ".join("?" for _ in filters.sync_statuses)
            query += f" AND sync_status IN ({placeholders})"
            params.extend(s.value for s in filters.sync_statuses)
        query += " ORDER BY created_at ASC, id ASC"

        with self._reading() as conn:
            rows = conn.execute(query, params).fetchall()

        entities = [self._row_to_entity(row) for row in rows]
        entities = [e for e in entities if self._matches(e, filters)]

        end = filters.offset + filters.limit if filters.limit is not None else None
        return entities[filters.offset : end]

    @staticmethod
    def _matches(entity: LocalEntity, filters: DataFilters) -> bool:
        date = entity.data.get("date")
        if filters.start_date is not None and (date is None or date < filters.start_date):
            return False
        if filters.end_date is not None and (date is None or date > filters.end_date):
            return False
        if filters.card_id is not None and entity.data.get("cardId") != filters.card_id:
            return False
        if filters.category:
            value = entity.data.get("category")
            values = value if isinstance(value, list) else [value]
            if not set(values) & set(filters.category):
                return False
        return True

    def search(
        self,
        entity_type: EntityType | str,
        term: str,
        fields: Iterable[str] | None = None,
    ) -> list[LocalEntity]:
        """Case-insensitive substring search over text fields."""
        needle = term.lower()
        wanted = set(fields) if fields is not None else None
        matches = []

        for entity in self.list_entities(entity_type):
            for key, value in entity.data.items():
                if wanted is not None and key not in wanted:
                    continue
                values = value if isinstance(value, list) else [value]
                if any(isinstance(v, str) and needle in v.lower() for v in values):
                    matches.append(entity)
                    break
        return matches

    def count(
        self,
        entity_type: EntityType | str | None = None,
        sync_status: SyncStatus | None = None,
    ) -> int:
        query = "SELECT COUNT(*) FROM entities WHERE 1 = 1"
        params: list[Any] = []
        if entity_type is not None:
            query += " AND entity_type = ?"
            params.append(coerce_entity_type(entity_type).value)
        if sync_status is not None:
            query += " AND sync_status = ?"
            params.append(sync_status.value)
        with self._reading() as conn:
            return conn.execute(query, params).fetchone()[0]

    # ------------------------------------------------------------------
    # Sync status transitions
    # ------------------------------------------------------------------

    def _transition(
        self,
        conn: sqlite3.Connection,
        entity_type: EntityType,
        entity_id: str,
        target: SyncStatus,
    ) -> LocalEntity | None:
        """Load an entity and move it to ``target`` in memory.

        Returns None if the entity is gone. The caller persists the result.
        """
        row = self._fetch_row(conn, entity_type, entity_id)
        if row is None:
            return None
        entity = self._row_to_entity(row)
        if target not in ALLOWED_TRANSITIONS[entity.sync_status]:
            raise InvalidTransitionError(entity.sync_status.value, target.value)
        entity.sync_status = target
        return entity

    def _apply_deferred(self, conn: sqlite3.Connection, entity: LocalEntity) -> int:
        rows = conn.execute(
            """
            SELECT seq, patch FROM deferred_edits
            WHERE entity_type = ? AND entity_id = ?
            ORDER BY seq ASC
            """,
            (entity.entity_type.value, entity.id),
        ).fetchall()

        for row in rows:
            self._apply_patch(conn, entity, json.loads(row["patch"]))
        if rows:
            conn.execute(
                "DELETE FROM deferred_edits WHERE entity_type = ? AND entity_id = ?",
                (entity.entity_type.value, entity.id),
            )
            logger.debug(
                f"Applied {len(rows)} deferred edit(s) to "
                f"{entity.entity_type.value}/{entity.id}"
            )
        return len(rows)

    def has_deferred_edits(self, entity_type: EntityType | str, entity_id: str) -> bool:
        entity_type = coerce_entity_type(entity_type)
        with self._reading() as conn:
            row = conn.execute(
                "SELECT 1 FROM deferred_edits WHERE entity_type = ? AND entity_id = ?",
                (entity_type.value, entity_id),
            ).fetchone()
        return row is not None

    def begin_sync(self, entity_type: EntityType | str, entity_id: str) -> bool:
        """Mark a pending or failed entity as syncing.

        Returns:
            True if the entity is now syncing; False if it does not exist or
            is in a state that cannot start a sync.
        """
        entity_type = coerce_entity_type(entity_type)
        with self._transaction() as conn:
            row = self._fetch_row(conn, entity_type, entity_id)
            if row is None:
                return False
            status = SyncStatus(row["sync_status"])
            if SyncStatus.SYNCING not in ALLOWED_TRANSITIONS[status]:
                logger.debug(
                    f"Not syncing {entity_type.value}/{entity_id}: status {status.value}"
                )
                return False
            conn.execute(
                "UPDATE entities SET sync_status = ? WHERE entity_type = ? AND id = ?",
                (SyncStatus.SYNCING.value, entity_type.value, entity_id),
            )
        return True

    def complete_sync(
        self,
        entity_type: EntityType | str,
        entity_id: str,
        cloud_id: str | None = None,
        timestamp: int | None = None,
    ) -> LocalEntity | None:
        """Record a successful push. Deferred edits are applied afterwards.

        Returns:
            The updated entity, or None if it was deleted meanwhile.

        Raises:
            ValidationError: If neither the entity nor the caller supplies a
                cloud id.
        """
        entity_type = coerce_entity_type(entity_type)
        with self._transaction() as conn:
            entity = self._transition(conn, entity_type, entity_id, SyncStatus.SYNCED)
            if entity is None:
                return None
            expected = entity.version
            entity.cloud_id = cloud_id or entity.cloud_id
            if not entity.cloud_id:
                raise ValidationError(
                    f"Cannot mark {entity_type.value}/{entity_id} synced without a cloud id"
                )
            entity.last_synced_at = timestamp or now_ms()
            self._write_entity(conn, entity, expected)
            self._apply_deferred(conn, entity)
        return entity

    def fail_sync(
        self, entity_type: EntityType | str, entity_id: str
    ) -> LocalEntity | None:
        """Record a failed push. Deferred edits are applied afterwards."""
        entity_type = coerce_entity_type(entity_type)
        with self._transaction() as conn:
            entity = self._transition(conn, entity_type, entity_id, SyncStatus.FAILED)
            if entity is None:
                return None
            self._write_entity(conn, entity, entity.version)
            self._apply_deferred(conn, entity)
        return entity

    def mark_conflict(
        self,
        entity_type: EntityType | str,
        entity_id: str,
        cloud_id: str | None = None,
    ) -> LocalEntity | None:
        """Record that a syncing entity diverged from the remote copy.

        A conflict needs a remote counterpart to resolve against. Without a
        cloud id, from the entity or the caller, the push is recorded as
        failed instead.
        """
        entity_type = coerce_entity_type(entity_type)
        with self._transaction() as conn:
            entity = self._transition(
                conn, entity_type, entity_id, SyncStatus.CONFLICT
            )
            if entity is None:
                return None
            entity.cloud_id = cloud_id or entity.cloud_id
            if not entity.cloud_id:
                logger.warning(
                    f"No remote copy of {entity_type.value}/{entity_id} to resolve "
                    f"against, marking failed"
                )
                entity.sync_status = SyncStatus.FAILED
            self._write_entity(conn, entity, entity.version)
            self._apply_deferred(conn, entity)
        return entity

    def resolve_conflict(
        self,
        entity_type: EntityType | str,
        entity_id: str,
        resolved_data: dict[str, Any],
        cloud_id: str | None = None,
        needs_push: bool = False,
    ) -> LocalEntity:
        """Apply a conflict resolution to an entity in conflict.

        Args:
            entity_type: Collection of the entity.
            entity_id: Local id of the entity.
            resolved_data: Domain fields after resolution.
            cloud_id: Remote id, if not already known.
            needs_push: True when the resolved record differs from the remote
                copy; the entity then goes back to pending as a local write.

        Raises:
            NotFoundError: If the entity does not exist.
            InvalidTransitionError: If the entity is not in conflict.
        """
        entity_type = coerce_entity_type(entity_type)
        with self._transaction() as conn:
            entity = self._transition(conn, entity_type, entity_id, SyncStatus.SYNCED)
            if entity is None:
                raise NotFoundError(f"{entity_type.value}/{entity_id} not found")
            expected = entity.version
            entity.cloud_id = cloud_id or entity.cloud_id
            if not entity.cloud_id:
                raise ValidationError(
                    f"Cannot resolve {entity_type.value}/{entity_id} without a cloud id"
                )
            timestamp = now_ms()
            entity.data = domain_fields(resolved_data)
            entity.last_synced_at = timestamp
            entity.updated_at = max(timestamp, entity.updated_at)
            if needs_push:
                entity.version += 1
                entity.sync_status = SyncStatus.PENDING
            self._write_entity(conn, entity, expected)
            self._touch(conn, timestamp)
        return entity

    # ------------------------------------------------------------------
    # Remote application
    # ------------------------------------------------------------------

    def apply_remote_record(
        self, entity_type: EntityType | str, record: dict[str, Any]
    ) -> tuple[str, LocalEntity | None]:
        """Apply one record pulled from the remote store.

        Returns:
            ``(outcome, entity)`` where outcome is "inserted", "updated",
            "unchanged", "diverged", or "deleted". A diverged entity has
            unsynced local changes and is returned untouched for the caller
            to reconcile. "deleted" means a local delete of the record is
            still queued; nothing is written and the entity is None.
        """
        entity_type = coerce_entity_type(entity_type)
        cloud_id = remote_id(record)
        if not cloud_id:
            raise ValidationError(f"Remote {entity_type.value} record has no id")
        data = domain_fields(record)
        timestamp = now_ms()

        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM entities WHERE entity_type = ? AND cloud_id = ?",
                (entity_type.value, cloud_id),
            ).fetchone()

            if row is None:
                if self._delete_queued(conn, entity_type, cloud_id):
                    logger.debug(
                        f"Skipping remote {entity_type.value}/{cloud_id}: "
                        f"local delete not yet sent"
                    )
                    return "deleted", None
                taken = self._fetch_row(conn, entity_type, cloud_id) is not None
                entity = LocalEntity(
                    id=new_id(ID_PREFIXES[entity_type]) if taken else cloud_id,
                    local_id=new_id("local"),
                    entity_type=entity_type,
                    data=data,
                    sync_status=SyncStatus.SYNCED,
                    created_at=record.get("createdAt")
                    or record.get("_creationTime")
                    or timestamp,
                    updated_at=record.get("updatedAt") or timestamp,
                    cloud_id=cloud_id,
                    last_synced_at=timestamp,
                )
                self._insert_entity(conn, entity)
                self._touch(conn, timestamp)
                return "inserted", entity

            entity = self._row_to_entity(row)
            if entity.sync_status != SyncStatus.SYNCED:
                return "diverged", entity
            if entity.data == data:
                return "unchanged", entity

            expected = entity.version
            entity.data = data
            entity.version += 1
            entity.updated_at = record.get("updatedAt") or timestamp
            entity.last_synced_at = timestamp
            self._write_entity(conn, entity, expected)
            self._touch(conn, timestamp)
            return "updated", entity

    def _delete_queued(
        self, conn: sqlite3.Connection, entity_type: EntityType, cloud_id: str
    ) -> bool:
        row = conn.execute(
            """
            SELECT 1 FROM pending_operations
            WHERE entity_type = ? AND cloud_id = ? AND type = ? AND status != ?
            """,
            (
                entity_type.value,
                cloud_id,
                OperationType.DELETE.value,
                OperationStatus.COMPLETED.value,
            ),
        ).fetchone()
        return row is not None

    def remove_remote_deleted(
        self, entity_type: EntityType | str, cloud_ids: Iterable[str]
    ) -> int:
        """Drop synced local copies of records deleted remotely.

        Entities with unsynced local changes are kept; their queued
        operation decides the outcome.
        """
        entity_type = coerce_entity_type(entity_type)
        removed = 0
        with self._transaction() as conn:
            for cloud_id in cloud_ids:
                cursor = conn.execute(
                    """
                    DELETE FROM entities
                    WHERE entity_type = ? AND cloud_id = ? AND sync_status = ?
                    """,
                    (entity_type.value, cloud_id, SyncStatus.SYNCED.value),
                )
                removed += cursor.rowcount
            if removed:
                self._touch(conn, now_ms())
        return removed

    def replace_with_remote(
        self, records: dict[EntityType | str, list[dict[str, Any]]]
    ) -> int:
        """Replace the whole local dataset with the remote copy.

        Queued operations that are not in flight are discarded since they
        refer to the replaced data.

        Returns:
            Number of records written.
        """
        timestamp = now_ms()
        written = 0
        with self._transaction() as conn:
            conn.execute("DELETE FROM entities")
            conn.execute("DELETE FROM deferred_edits")
            conn.execute(
                "DELETE FROM pending_operations WHERE status != ?",
                (OperationStatus.SYNCING.value,),
            )
            for entity_type, items in records.items():
                entity_type = coerce_entity_type(entity_type)
                for record in items:
                    cloud_id = remote_id(record)
                    if not cloud_id:
                        logger.warning(
                            f"Skipping remote {entity_type.value} record without id"
                        )
                        continue
                    self._insert_entity(
                        conn,
                        LocalEntity(
                            id=cloud_id,
                            local_id=new_id("local"),
                            entity_type=entity_type,
                            data=domain_fields(record),
                            sync_status=SyncStatus.SYNCED,
                            created_at=record.get("createdAt")
                            or record.get("_creationTime")
                            or timestamp,
                            updated_at=record.get("updatedAt") or timestamp,
                            cloud_id=cloud_id,
                            last_synced_at=timestamp,
                        ),
                    )
                    written += 1
            self._touch(conn, timestamp)

        logger.info(f"Replaced local data with {written} remote records")
        return written

    def mark_all_synced(
        self, cloud_ids: dict[str, dict[str, str]], timestamp: int | None = None
    ) -> int:
        """Mark records as synced after a full upload.

        Args:
            cloud_ids: Remote ids keyed by entity type then local entity id.
                Entities missing from the mapping keep their current cloud id.
            timestamp: Sync time; defaults to now.

        Returns:
            Number of records moved to synced.
        """
        timestamp = timestamp or now_ms()
        marked = 0
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM entities WHERE sync_status != ? AND sync_status != ?",
                (SyncStatus.SYNCED.value, SyncStatus.SYNCING.value),
            ).fetchall()
            for row in rows:
                entity = self._row_to_entity(row)
                mapping = cloud_ids.get(entity.entity_type.value, {})
                cloud_id = mapping.get(entity.id) or entity.cloud_id
                if not cloud_id:
                    continue

                expected = entity.version
                entity.sync_status = SyncStatus.SYNCED
                entity.cloud_id = cloud_id
                entity.last_synced_at = timestamp
                self._write_entity(conn, entity, expected)
                marked += 1
        return marked

    # ------------------------------------------------------------------
    # Validation and repair
    # ------------------------------------------------------------------

    def validate_entity(
        self, entity: LocalEntity | dict[str, Any], entity_type: EntityType | str
    ) -> ValidationResult:
        return validate_entity(entity, entity_type)

    def attempt_repair(
        self, entity: dict[str, Any], entity_type: EntityType | str
    ) -> dict[str, Any]:
        return attempt_repair(entity, entity_type)

    def _raw_records(
        self, entity_type: EntityType
    ) -> list[tuple[sqlite3.Row, dict[str, Any]]]:
        with self._reading() as conn:
            rows = conn.execute(
                "SELECT * FROM entities WHERE entity_type = ? ORDER BY created_at, id",
                (entity_type.value,),
            ).fetchall()
        return [(row, self._row_to_record(row)) for row in rows]

    def validate_collection(self, entity_type: EntityType | str) -> dict[str, Any]:
        """Validate every stored record of one type.

        Returns:
            Dict with is_valid, corrupted_ids and per-record errors.
        """
        entity_type = coerce_entity_type(entity_type)
        errors: dict[str, list[str]] = {}
        for row, record in self._raw_records(entity_type):
            result = validate_entity(record, entity_type)
            if not result.is_valid:
                errors[row["id"]] = result.errors

        return {
            "is_valid": not errors,
            "corrupted_ids": list(errors),
            "errors": errors,
        }

    def repair_corrupted_data(self, entity_type: EntityType | str) -> dict[str, Any]:
        """Repair invalid records of one type in place.

        Records that are still invalid after repair are left untouched and
        reported.
        """
        entity_type = coerce_entity_type(entity_type)
        repaired: list[str] = []
        unrepaired: list[str] = []

        with self._transaction() as conn:
            for row, record in self._raw_records(entity_type):
                if validate_entity(record, entity_type).is_valid:
                    continue
                fixed = attempt_repair(record, entity_type)
                # Keep the row identity
                fixed["id"] = row["id"]
                if not validate_entity(fixed, entity_type).is_valid:
                    unrepaired.append(row["id"])
                    continue
                conn.execute(
                    """
                    UPDATE entities SET
                        local_id = ?, version = ?, sync_status = ?, created_at = ?,
                        updated_at = ?, data = ?
                    WHERE entity_type = ? AND id = ?
                    """,
                    (
                        fixed["localId"],
                        fixed["version"],
                        fixed["syncStatus"],
                        fixed["createdAt"],
                        fixed["updatedAt"],
                        json.dumps(domain_fields(fixed)),
                        entity_type.value,
                        row["id"],
                    ),
                )
                repaired.append(row["id"])

        if repaired or unrepaired:
            logger.warning(
                f"Repaired {len(repaired)} {entity_type.value} record(s), "
                f"{len(unrepaired)} could not be repaired"
            )
        return {
            "repaired_count": len(repaired),
            "repaired_ids": repaired,
            "unrepaired_ids": unrepaired,
        }

    # ------------------------------------------------------------------
    # Hashing and sync state
    # ------------------------------------------------------------------

    def collect_records(self) -> dict[str, dict[str, dict[str, Any]]]:
        """All records keyed by entity type then id."""
        data: dict[str, dict[str, dict[str, Any]]] = {t.value: {} for t in EntityType}
        with self._reading() as conn:
            rows = conn.execute(
                "SELECT * FROM entities ORDER BY entity_type, created_at, id"
            ).fetchall()
        for row in rows:
            data.setdefault(row["entity_type"], {})[row["id"]] = self._row_to_record(
                row
            )
        return data

    def get_data_hash(self) -> str:
        return compute_data_hash(self.collect_records())

    def get_sync_state(self) -> SyncState:
        with self._reading() as conn:
            row = conn.execute("SELECT * FROM sync_state WHERE id = 1").fetchone()
        return SyncState(
            last_sync=row["last_sync"],
            data_hash=row["data_hash"],
            total_records=row["total_records"],
            last_modified=row["last_modified"],
            last_attempt=row["last_attempt"],
            last_error=row["last_error"],
            pending_operations=self.list_operations(
                statuses=[
                    OperationStatus.PENDING,
                    OperationStatus.SYNCING,
                    OperationStatus.FAILED,
                ]
            ),
            conflict_resolutions=self.list_conflict_resolutions(),
        )

    def record_sync_outcome(
        self, success: bool, error: str | None = None, timestamp: int | None = None
    ) -> SyncState:
        """Update sync state at the end of a sync cycle.

        A successful cycle records the sync time and the current data hash;
        every cycle records the attempt time and last error.
        """
        timestamp = timestamp or now_ms()
        with self._transaction() as conn:
            if success:
                conn.execute(
                    """
                    UPDATE sync_state SET
                        last_sync = ?, data_hash = ?, total_records = ?,
                        last_attempt = ?, last_error = NULL
                    WHERE id = 1
                    """,
                    (timestamp, self.get_data_hash(), self.count(), timestamp),
                )
            else:
                conn.execute(
                    "UPDATE sync_state SET last_attempt = ?, last_error = ? WHERE id = 1",
                    (timestamp, error),
                )
        return self.get_sync_state()

    # ------------------------------------------------------------------
    # Export and import
    # ------------------------------------------------------------------

    def export_data(self) -> DataExport:
        """Snapshot the whole dataset with a checksum."""
        metadata = self.get_metadata()
        data = self.collect_records()
        return DataExport(
            version=EXPORT_VERSION,
            exported_at=now_ms(),
            device_id=metadata.device_id,
            user_id=metadata.user_id,
            data=data,
            sync_state=self.get_sync_state().to_dict(),
            metadata=metadata.to_dict(),
            checksum=compute_data_hash(data),
        )

    def import_data(self, bundle: DataExport | dict[str, Any]) -> int:
        """Replace the local dataset with an export bundle.

        The checksum is verified and every record validated before anything
        is written; the replacement itself is a single transaction. The local
        device id is kept.

        Returns:
            Number of records imported.

        Raises:
            ChecksumMismatchError: If the checksum does not match the data.
            ValidationError: If any record or the sync state is malformed.
            SyncInProgressError: If operations are currently syncing.
        """
        if isinstance(bundle, dict):
            bundle = DataExport.from_dict(bundle)

        if compute_data_hash(bundle.data) != bundle.checksum:
            raise ChecksumMismatchError("Import checksum does not match data")

        entities: list[LocalEntity] = []
        errors: list[str] = []
        for type_name, records in bundle.data.items():
            try:
                entity_type = coerce_entity_type(type_name)
            except ValueError as e:
                errors.append(str(e))
                continue
            for entity_id, record in records.items():
                result = validate_entity(record, entity_type)
                if not result.is_valid:
                    errors.append(f"{type_name}/{entity_id}: {', '.join(result.errors)}")
                elif record["id"] != entity_id:
                    errors.append(f"{type_name}/{entity_id}: id does not match key")
                else:
                    entities.append(LocalEntity.from_dict(entity_type, record))

        try:
            state = SyncState.from_dict(bundle.sync_state)
        except (KeyError, TypeError, ValueError) as e:
            errors.append(f"syncState: {e}")
            state = SyncState()

        if errors:
            raise ValidationError(
                f"Import rejected: {len(errors)} invalid record(s)", errors
            )

        if self.count_operations(OperationStatus.SYNCING):
            raise SyncInProgressError("Cannot import while operations are syncing")

        timestamp = now_ms()
        try:
            with self._transaction() as conn:
                conn.execute("DELETE FROM entities")
                conn.execute("DELETE FROM deferred_edits")
                conn.execute("DELETE FROM pending_operations")
                conn.execute("DELETE FROM conflict_history")

                for entity in entities:
                    self._insert_entity(conn, entity)
                for op in state.pending_operations:
                    if op.status == OperationStatus.SYNCING:
                        op.status = OperationStatus.PENDING
                    self.insert_operation(op)
                for resolution in state.conflict_resolutions:
                    self.add_conflict_resolution(resolution)

                conn.execute(
                    """
                    UPDATE sync_state SET
                        last_sync = ?, data_hash = ?, total_records = ?,
                        last_modified = ?, last_attempt = ?, last_error = ?
                    WHERE id = 1
                    """,
                    (
                        state.last_sync,
                        state.data_hash,
                        len(entities),
                        timestamp,
                        state.last_attempt,
                        state.last_error,
                    ),
                )
                self._set_meta(conn, "user_id", bundle.user_id)
                schema_version = bundle.metadata.get("schemaVersion")
                if schema_version is not None:
                    self._set_meta(conn, "schema_version", str(schema_version))
                self._set_meta(conn, "updated_at", str(timestamp))
        except sqlite3.IntegrityError as e:
            raise ValidationError(f"Import rejected: {e}") from e

        logger.info(f"Imported {len(entities)} records from {bundle.device_id}")
        return len(entities)

    # ------------------------------------------------------------------
    # Schema migrations
    # ------------------------------------------------------------------

    def migrate(self, target_version: int | None = None) -> list[int]:
        """Upgrade stored records to ``target_version``.

        The current data is exported first. Every step runs in one
        transaction, so a failing step leaves the data at its old version.

        Args:
            target_version: Version to reach. Defaults to the configured
                schema version.

        Returns:
            Schema versions applied, in order.

        Raises:
            MigrationError: If a step is missing or fails. ``backup_path``
                names the pre-migration export when one was written.
        """
        current = int(self._get_meta("schema_version", "1"))
        target = target_version or self._schema_version
        steps = self.migrations.plan(current, target)
        if not steps:
            return []

        backup_path = self._write_migration_backup(current)
        version = current
        try:
            with self._transaction() as conn:
                for step in steps:
                    version = step.version
                    self._apply_migration(conn, step)
                    self._set_meta(conn, "schema_version", str(step.version))
                self._set_meta(conn, "updated_at", str(now_ms()))
        except Exception as e:
            logger.error(f"Migration to schema version {version} failed: {e}")
            raise MigrationError(
                f"Migration to schema version {version} failed: {e}",
                backup_path=str(backup_path) if backup_path else None,
            ) from e

        logger.info(f"Migrated local data from schema version {current} to {target}")
        return [step.version for step in steps]

    def _apply_migration(self, conn: sqlite3.Connection, step: Migration) -> None:
        rows = conn.execute("SELECT * FROM entities").fetchall()
        for row in rows:
            entity_type = coerce_entity_type(row["entity_type"])
            upgraded = domain_fields(step.upgrade(entity_type.value, self._row_to_record(row)))
            result = validate_domain_data(upgraded, entity_type)
            if not result.is_valid:
                raise ValidationError(
                    f"Migrated {entity_type.value}/{row['id']} is invalid: "
                    f"{', '.join(result.errors)}",
                    result.errors,
                )
            conn.execute(
                "UPDATE entities SET data = ? WHERE entity_type = ? AND id = ?",
                (json.dumps(upgraded), row["entity_type"], row["id"]),
            )
        logger.info(
            f"Schema version {step.version} ({step.description}): "
            f"upgraded {len(rows)} record(s)"
        )

    def _write_migration_backup(self, version: int) -> Path | None:
        """Export the dataset before migrating it.

        The export is kept on ``migration_backup`` and, for file databases,
        written to ``backup_dir`` in the same format ``import_data`` reads.
        """
        self.migration_backup = self.export_data()
        if self.backup_dir is None:
            return None

        self.backup_dir.mkdir(parents=True, exist_ok=True)
        path = self.backup_dir / f"{self.db_path.stem}-schema{version}-{now_ms()}.json"
        path.write_text(json.dumps(self.migration_backup.to_dict(), indent=2))
        logger.info(f"Wrote pre-migration backup to {path}")
        return path

    # ------------------------------------------------------------------
    # Storage health
    # ------------------------------------------------------------------

    def get_storage_info(self) -> dict[str, Any]:
        with self._reading() as conn:
            page_count = conn.execute("PRAGMA page_count").fetchone()[0]
            page_size = conn.execute("PRAGMA page_size").fetchone()[0]
        used = page_count * page_size
        return {
            "used": used,
            "available": max(self.quota_bytes - used, 0),
            "quota": self.quota_bytes,
            "usage_percentage": (used / self.quota_bytes * 100) if self.quota_bytes else 0,
        }

    def check_storage_health(self) -> dict[str, Any]:
        """Check quota usage, record integrity, failed operations and sync age."""
        issues: list[str] = []
        recommendations: list[str] = []
        info = self.get_storage_info()

        if info["usage_percentage"] > 90:
            issues.append(f"Storage usage critical ({info['usage_percentage']:.1f}%)")
            recommendations.append("Export a backup and clean up old synced data")
        elif info["usage_percentage"] > 75:
            issues.append(f"Storage usage high ({info['usage_percentage']:.1f}%)")
            recommendations.append("Consider cleaning up old synced data")

        corrupted = 0
        for entity_type in EntityType:
            result = self.validate_collection(entity_type)
            if not result["is_valid"]:
                corrupted += len(result["corrupted_ids"])
                issues.append(
                    f"{len(result['corrupted_ids'])} corrupted {entity_type.value} record(s)"
                )
        if corrupted:
            recommendations.append("Run data repair or download a fresh copy")

        failed = self.count_operations(OperationStatus.FAILED)
        if failed > 10:
            issues.append(f"{failed} failed operations in queue")
            recommendations.append("Retry or clear failed operations")

        state = self.get_sync_state()
        if self.count() and state.last_sync and now_ms() - state.last_sync > 7 * DAY_MS:
            issues.append("No successful sync in over 7 days")
            recommendations.append("Connect to the network and run a sync")

        return {
            "is_healthy": not issues,
            "issues": issues,
            "recommendations": recommendations,
            "storage_info": info,
        }

    def cleanup_old_data(self, max_age_days: int = 90) -> int:
        """Remove synced records not updated in ``max_age_days``.

        Records with unsynced changes are never removed.
        """
        cutoff = now_ms() - max_age_days * DAY_MS
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM entities WHERE sync_status = ? AND updated_at < ?",
                (SyncStatus.SYNCED.value, cutoff),
            )
            removed = cursor.rowcount
        if removed:
            logger.info(f"Cleaned up {removed} old synced record(s)")
        return removed

    # ------------------------------------------------------------------
    # Operation queue table
    # ------------------------------------------------------------------

    def _row_to_operation(self, row: sqlite3.Row) -> PendingOperation:
        entity_type = EntityType(row["entity_type"])
        return PendingOperation(
            id=row["id"],
            type=OperationType(row["type"]),
            entity_type=entity_type,
            entity_id=row["entity_id"],
            payload=payload_from_dict(entity_type.value, json.loads(row["data"])),
            timestamp=row["timestamp"],
            retry_count=row["retry_count"],
            max_retries=row["max_retries"],
            status=OperationStatus(row["status"]),
            priority=Priority(row["priority"]),
            cloud_id=row["cloud_id"],
            error=row["error"],
            next_attempt_at=row["next_attempt_at"],
            seq=row["seq"],
        )

    def insert_operation(self, op: PendingOperation) -> PendingOperation:
        """Persist a new operation and assign its FIFO sequence number."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO pending_operations (
                    id, type, entity_type, entity_id, cloud_id, data, timestamp,
                    retry_count, max_retries, status, priority, error, next_attempt_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    op.id,
                    op.type.value,
                    op.entity_type.value,
                    op.entity_id,
                    op.cloud_id,
                    json.dumps(op.payload.to_dict()),
                    op.timestamp,
                    op.retry_count,
                    op.max_retries,
                    op.status.value,
                    op.priority.value,
                    op.error,
                    op.next_attempt_at,
                ),
            )
            op.seq = cursor.lastrowid
        return op

    def save_operation(self, op: PendingOperation) -> bool:
        """Persist the mutable fields of an existing operation."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE pending_operations SET
                    cloud_id = ?, retry_count = ?, max_retries = ?, status = ?,
                    priority = ?, error = ?, next_attempt_at = ?
                WHERE id = ?
                """,
                (
                    op.cloud_id,
                    op.retry_count,
                    op.max_retries,
                    op.status.value,
                    op.priority.value,
                    op.error,
                    op.next_attempt_at,
                    op.id,
                ),
            )
        return cursor.rowcount == 1

    def get_operation(self, operation_id: str) -> PendingOperation | None:
        with self._reading() as conn:
            row = conn.execute(
                "SELECT * FROM pending_operations WHERE id = ?", (operation_id,)
            ).fetchone()
        return self._row_to_operation(row) if row else None

    def list_operations(
        self,
        statuses: Iterable[OperationStatus] | None = None,
        entity_type: EntityType | str | None = None,
        entity_id: str | None = None,
    ) -> list[PendingOperation]:
        """List queued operations in insertion order."""
        query = "SELECT * FROM pending_operations WHERE 1 = 1"
        params: list[Any] = []
        if statuses is not None:
            values = [s.value for s in statuses]
            query += f" AND status IN ({', '.join('?' for _ in values)})"
            params.extend(values)
        if entity_type is not None:
            query += " AND entity_type = ?"
            params.append(coerce_entity_type(entity_type).value)
        if entity_id is not None:
            query += " AND entity_id = ?"
            params.append(entity_id)
        query += " ORDER BY seq ASC"

        with self._reading() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_operation(row) for row in rows]

    def delete_operations(self, operation_ids: Iterable[str]) -> int:
        removed = 0
        with self._transaction() as conn:
            for operation_id in operation_ids:
                cursor = conn.execute(
                    "DELETE FROM pending_operations WHERE id = ?", (operation_id,)
                )
                removed += cursor.rowcount
        return removed

    def count_operations(self, status: OperationStatus | None = None) -> int:
        with self._reading() as conn:
            if status is None:
                row = conn.execute("SELECT COUNT(*) FROM pending_operations").fetchone()
                return row[0]
            return conn.execute(
                "SELECT COUNT(*) FROM pending_operations WHERE status = ?",
                (status.value,),
            ).fetchone()[0]

    # ------------------------------------------------------------------
    # Conflict history table
    # ------------------------------------------------------------------

    def add_conflict_resolution(self, resolution: ConflictResolution) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO conflict_history (
                    id, entity_type, entity_id, resolved_at, strategy, note, detected_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    resolution.id,
                    resolution.scope,
                    resolution.entity_id,
                    resolution.resolved_at,
                    resolution.strategy.value,
                    resolution.note,
                    resolution.detected_at,
                ),
            )

    def list_conflict_resolutions(
        self,
        entity_type: EntityType | str | None = None,
        entity_id: str | None = None,
    ) -> list[ConflictResolution]:
        query = "SELECT * FROM conflict_history WHERE 1 = 1"
        params: list[Any] = []
        if entity_type is not None:
            query += " AND entity_type = ?"
            params.append(coerce_entity_type(entity_type).value)
        if entity_id is not None:
            query += " AND entity_id = ?"
            params.append(entity_id)
        query += " ORDER BY seq ASC"

        with self._reading() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            ConflictResolution.from_dict(
                {
                    "id": row["id"],
                    "entityType": row["entity_type"],
                    "entityId": row["entity_id"],
                    "resolvedAt": row["resolved_at"],
                    "strategy": row["strategy"],
                    "note": row["note"],
                    "detectedAt": row["detected_at"],
                }
            )
            for row in rows
        ]

    def clear_conflict_resolutions(self) -> int:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM conflict_history")
        return cursor.rowcount
