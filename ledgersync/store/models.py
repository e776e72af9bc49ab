"""Data model for the local replica: entities, queued operations, sync state.

Python attributes are snake_case; ``to_dict``/``from_dict`` use the camelCase
field names of the export file and the remote wire format.
"""

import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .payloads import Payload, payload_from_dict


class EntityType(Enum):
    """Entity collections held by the replica."""

    EXPENSES = "expenses"
    INCOME = "income"
    CATEGORIES = "categories"
    CARDS = "cards"
    FOR_VALUES = "forValues"
    INCOME_CATEGORIES = "incomeCategories"


class SyncStatus(Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    SYNCED = "synced"
    FAILED = "failed"
    CONFLICT = "conflict"


# Legal syncStatus moves. synced -> pending happens only on a local edit.
ALLOWED_TRANSITIONS: dict[SyncStatus, frozenset[SyncStatus]] = {
    SyncStatus.PENDING: frozenset({SyncStatus.SYNCING}),
    SyncStatus.SYNCING: frozenset(
        {SyncStatus.SYNCED, SyncStatus.FAILED, SyncStatus.CONFLICT}
    ),
    SyncStatus.FAILED: frozenset({SyncStatus.SYNCING}),
    SyncStatus.CONFLICT: frozenset({SyncStatus.SYNCED}),
    SyncStatus.SYNCED: frozenset({SyncStatus.PENDING}),
}


class OperationType(Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class OperationStatus(Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    FAILED = "failed"
    COMPLETED = "completed"


class Priority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return {"low": 1, "medium": 2, "high": 3}[self.value]


class ResolutionStrategy(Enum):
    LOCAL_WINS = "local_wins"
    CLOUD_WINS = "cloud_wins"
    MERGE = "merge"
    USER_CHOICE = "user_choice"


ID_PREFIXES: dict[EntityType, str] = {
    EntityType.EXPENSES: "exp",
    EntityType.INCOME: "inc",
    EntityType.CATEGORIES: "cat",
    EntityType.CARDS: "card",
    EntityType.FOR_VALUES: "for",
    EntityType.INCOME_CATEGORIES: "icat",
}

# Keys of a LocalEntity record that are not domain data
META_FIELDS = frozenset(
    {
        "id",
        "localId",
        "cloudId",
        "version",
        "syncStatus",
        "createdAt",
        "updatedAt",
        "lastSyncedAt",
    }
)

# Server-side bookkeeping keys stripped from remote records
REMOTE_META_FIELDS = frozenset(
    {"id", "_id", "_creationTime", "createdAt", "updatedAt", "userId", "deleted"}
)


def coerce_entity_type(value: "EntityType | str") -> EntityType:
    """Accept either an EntityType or its wire name."""
    if isinstance(value, EntityType):
        return value
    try:
        return EntityType(value)
    except ValueError:
        raise ValueError(f"Unknown entity type: {value}") from None


@dataclass
class LocalEntity:
    """A record in the local replica plus its sync metadata."""

    id: str
    local_id: str
    entity_type: EntityType
    data: dict[str, Any]
    version: int = 1
    sync_status: SyncStatus = SyncStatus.PENDING
    created_at: int = 0
    updated_at: int = 0
    cloud_id: str | None = None
    last_synced_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Flatten into the export/wire record shape."""
        record: dict[str, Any] = {
            "id": self.id,
            "localId": self.local_id,
            "version": self.version,
            "syncStatus": self.sync_status.value,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if self.cloud_id is not None:
            record["cloudId"] = self.cloud_id
        if self.last_synced_at is not None:
            record["lastSyncedAt"] = self.last_synced_at
        record.update(self.data)
        return record

    @classmethod
    def from_dict(
        cls, entity_type: "EntityType | str", record: dict[str, Any]
    ) -> "LocalEntity":
        """Build from a record dict. Assumes the record has been validated."""
        return cls(
            id=record["id"],
            local_id=record["localId"],
            entity_type=coerce_entity_type(entity_type),
            data={k: v for k, v in record.items() if k not in META_FIELDS},
            version=record.get("version", 1),
            sync_status=SyncStatus(record.get("syncStatus", "pending")),
            created_at=record.get("createdAt", 0),
            updated_at=record.get("updatedAt", 0),
            cloud_id=record.get("cloudId"),
            last_synced_at=record.get("lastSyncedAt"),
        )

    @property
    def sync_key(self) -> str:
        """Identity used to match this record against the remote copy."""
        return self.cloud_id or self.id


def domain_fields(record: dict[str, Any]) -> dict[str, Any]:
    """Strip local and remote bookkeeping keys, leaving domain data."""
    return {
        k: v
        for k, v in record.items()
        if k not in META_FIELDS and k not in REMOTE_META_FIELDS
    }


def remote_id(record: dict[str, Any]) -> str | None:
    """Remote stores use either ``id`` or ``_id`` for the record key."""
    return record.get("id") or record.get("_id")


@dataclass
class PendingOperation:
    """One queued mutation awaiting transmission."""

    id: str
    type: OperationType
    entity_type: EntityType
    entity_id: str
    payload: Payload
    timestamp: int
    retry_count: int = 0
    max_retries: int = 3
    status: OperationStatus = OperationStatus.PENDING
    priority: Priority = Priority.MEDIUM
    cloud_id: str | None = None
    error: str | None = None
    next_attempt_at: int | None = None
    seq: int = 0

    @property
    def is_terminal(self) -> bool:
        """Failed with no retry scheduled."""
        return self.status == OperationStatus.FAILED and self.next_attempt_at is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "entityType": self.entity_type.value,
            "entityId": self.entity_id,
            "data": self.payload.to_dict(),
            "timestamp": self.timestamp,
            "retryCount": self.retry_count,
            "maxRetries": self.max_retries,
            "status": self.status.value,
            "priority": self.priority.value,
            "cloudId": self.cloud_id,
            "error": self.error,
            "nextAttemptAt": self.next_attempt_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PendingOperation":
        entity_type = coerce_entity_type(data["entityType"])
        return cls(
            id=data["id"],
            type=OperationType(data["type"]),
            entity_type=entity_type,
            entity_id=data["entityId"],
            payload=payload_from_dict(entity_type.value, data.get("data") or {}),
            timestamp=data["timestamp"],
            retry_count=data.get("retryCount", 0),
            max_retries=data.get("maxRetries", 3),
            status=OperationStatus(data.get("status", "pending")),
            priority=Priority(data.get("priority", "medium")),
            cloud_id=data.get("cloudId"),
            error=data.get("error"),
            next_attempt_at=data.get("nextAttemptAt"),
        )


# Entity type label for conflicts that concern the whole dataset
DATASET_SCOPE = "dataset"


@dataclass
class ConflictResolution:
    """Append-only audit record of a resolved conflict."""

    id: str
    entity_type: EntityType | None
    entity_id: str
    resolved_at: int
    strategy: ResolutionStrategy
    note: str = ""
    detected_at: int | None = None

    @property
    def scope(self) -> str:
        """Entity type name, or "dataset" for a dataset-wide resolution."""
        return self.entity_type.value if self.entity_type else DATASET_SCOPE

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "entityType": self.scope,
            "entityId": self.entity_id,
            "resolvedAt": self.resolved_at,
            "strategy": self.strategy.value,
            "note": self.note,
            "detectedAt": self.detected_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConflictResolution":
        return cls(
            id=data["id"],
            entity_type=(
                None
                if data["entityType"] == DATASET_SCOPE
                else coerce_entity_type(data["entityType"])
            ),
            entity_id=data["entityId"],
            resolved_at=data["resolvedAt"],
            strategy=ResolutionStrategy(data["strategy"]),
            note=data.get("note") or "",
            detected_at=data.get("detectedAt"),
        )


@dataclass
class SyncState:
    """Sync bookkeeping owned by the local store."""

    last_sync: int = 0
    data_hash: str = ""
    total_records: int = 0
    last_modified: int = 0
    last_attempt: int = 0
    last_error: str | None = None
    pending_operations: list[PendingOperation] = field(default_factory=list)
    conflict_resolutions: list[ConflictResolution] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "lastSync": self.last_sync,
            "dataHash": self.data_hash,
            "totalRecords": self.total_records,
            "lastModified": self.last_modified,
            "lastAttempt": self.last_attempt,
            "lastError": self.last_error,
            "pendingOperations": [op.to_dict() for op in self.pending_operations],
            "conflictResolutions": [r.to_dict() for r in self.conflict_resolutions],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncState":
        return cls(
            last_sync=data.get("lastSync") or 0,
            data_hash=data.get("dataHash") or "",
            total_records=data.get("totalRecords") or 0,
            last_modified=data.get("lastModified") or 0,
            last_attempt=data.get("lastAttempt") or 0,
            last_error=data.get("lastError"),
            pending_operations=[
                PendingOperation.from_dict(op)
                for op in data.get("pendingOperations") or []
            ],
            conflict_resolutions=[
                ConflictResolution.from_dict(r)
                for r in data.get("conflictResolutions") or []
            ],
        )


@dataclass
class LocalMetadata:
    """Device and user identity of this replica."""

    device_id: str
    user_id: str = ""
    version: str = "2.0.0"
    schema_version: int = 1
    created_at: int = 0
    updated_at: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "deviceId": self.device_id,
            "userId": self.user_id,
            "schemaVersion": self.schema_version,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class DataExport:
    """Full-dataset snapshot used for backup, restore and device bootstrap.

    ``data`` holds raw record dicts keyed by entity type then id; they are
    validated on import rather than on parse.
    """

    version: str
    exported_at: int
    device_id: str
    user_id: str
    data: dict[str, dict[str, dict[str, Any]]]
    sync_state: dict[str, Any]
    metadata: dict[str, Any]
    checksum: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "exportedAt": self.exported_at,
            "deviceId": self.device_id,
            "userId": self.user_id,
            "data": self.data,
            "syncState": self.sync_state,
            "metadata": self.metadata,
            "checksum": self.checksum,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DataExport":
        return cls(
            version=data.get("version", "2.0.0"),
            exported_at=data.get("exportedAt", 0),
            device_id=data.get("deviceId", "unknown"),
            user_id=data.get("userId", "unknown"),
            data=data.get("data") or {},
            sync_state=data.get("syncState") or {},
            metadata=data.get("metadata") or {},
            checksum=data.get("checksum", ""),
        )

    def record_count(self) -> int:
        return sum(len(records) for records in self.data.values())


@dataclass
class DataFilters:
    """Optional filters for listing entities."""

    start_date: int | None = None
    end_date: int | None = None
    sync_statuses: list[SyncStatus] | None = None
    category: list[str] | None = None
    card_id: str | None = None
    limit: int | None = None
    offset: int = 0


def canonical_hash(value: Any) -> str:
    """SHA-256 over a canonical JSON rendering."""
    encoded = json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def compute_data_hash(data: dict[str, dict[str, dict[str, Any]]]) -> str:
    """Digest over a full local dataset.

    syncStatus and lastSyncedAt are excluded so that a sync cycle that only
    flips statuses does not change the hash.
    """
    normalized = {
        entity_type: {
            entity_id: {
                k: v
                for k, v in record.items()
                if k not in ("syncStatus", "lastSyncedAt")
            }
            for entity_id, record in records.items()
        }
        for entity_type, records in data.items()
        if records
    }
    return canonical_hash(normalized)
