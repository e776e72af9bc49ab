"""Conflict detection and field-level resolution between local and remote data.

Snapshots are compared by content hash first; only when they differ is the
divergence classified and broken down per record. Resolutions are recorded
in an append-only history kept in the local store.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from ..clock import new_id, now_ms
from ..store.local_store import LocalStore
from ..store.models import (
    DATASET_SCOPE,
    ConflictResolution,
    EntityType,
    ResolutionStrategy,
    canonical_hash,
    coerce_entity_type,
    domain_fields,
    remote_id,
)
from ..store.validation import validate_entity

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000


class ConflictType(Enum):
    MISSING_CLOUD = "missing_cloud"
    CORRUPTED_LOCAL = "corrupted_local"
    DIVERGENT_DATA = "divergent_data"
    SCHEMA_MISMATCH = "schema_mismatch"


class RecommendedAction(Enum):
    UPLOAD_LOCAL = "upload_local"
    DOWNLOAD_CLOUD = "download_cloud"
    MANUAL_MERGE = "manual_merge"
    AUTO_MERGE = "auto_merge"


class Severity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return {"low": 0, "medium": 1, "high": 2, "critical": 3}[self.value]


@dataclass
class ConflictItem:
    """One record (or the whole dataset) that differs between the two sides."""

    entity_type: EntityType | None
    entity_id: str
    local_version: dict[str, Any] | None
    cloud_version: dict[str, Any] | None
    conflict_reason: str
    auto_resolvable: bool
    severity: Severity = Severity.LOW
    detected_at: int = field(default_factory=now_ms)
    fields: list[str] = field(default_factory=list)

    @property
    def scope(self) -> str:
        return self.entity_type.value if self.entity_type else DATASET_SCOPE

    def to_dict(self) -> dict[str, Any]:
        return {
            "entityType": self.scope,
            "entityId": self.entity_id,
            "localVersion": self.local_version,
            "cloudVersion": self.cloud_version,
            "conflictReason": self.conflict_reason,
            "autoResolvable": self.auto_resolvable,
            "severity": self.severity.value,
            "detectedAt": self.detected_at,
            "fields": self.fields,
        }


@dataclass
class ConflictDetectionResult:
    has_conflicts: bool
    conflict_type: ConflictType = ConflictType.DIVERGENT_DATA
    conflict_items: list[ConflictItem] = field(default_factory=list)
    recommended_action: RecommendedAction = RecommendedAction.UPLOAD_LOCAL
    severity: Severity = Severity.LOW
    data_stats: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "hasConflicts": self.has_conflicts,
            "conflictType": self.conflict_type.value,
            "conflictItems": [item.to_dict() for item in self.conflict_items],
            "recommendedAction": self.recommended_action.value,
            "severity": self.severity.value,
            "dataStats": self.data_stats,
        }


@dataclass
class LocalSnapshot:
    """Local side of a comparison.

    Args:
        records: Record dicts (export shape) keyed by entity type.
        data_hash: Hash recorded at the last successful sync, if any.
        last_sync: Time of the last successful sync, 0 if never.
        schema_version: Local record schema version.
    """

    records: dict[str, list[dict[str, Any]]]
    data_hash: str = ""
    last_sync: int = 0
    schema_version: int | None = None

    @classmethod
    def from_store(cls, store: LocalStore) -> "LocalSnapshot":
        state = store.get_sync_state()
        return cls(
            records={
                entity_type: list(records.values())
                for entity_type, records in store.collect_records().items()
            },
            data_hash=state.data_hash,
            last_sync=state.last_sync,
            schema_version=store.get_metadata().schema_version,
        )

    def count(self) -> int:
        return sum(len(records) for records in self.records.values())


@dataclass
class RemoteSnapshot:
    """Remote side of a comparison, as returned by the transport."""

    records: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    schema_version: int | None = None
    last_modified: int = 0
    server_time: int = 0
    deleted: dict[str, list[str]] = field(default_factory=dict)

    def count(self) -> int:
        return sum(len(records) for records in self.records.values())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RemoteSnapshot":
        metadata = data.get("metadata") or {}
        return cls(
            records={
                key: list(value)
                for key, value in (data.get("records") or {}).items()
                if isinstance(value, list)
            },
            schema_version=metadata.get("schemaVersion", data.get("schemaVersion")),
            last_modified=metadata.get("lastModified", data.get("lastModified", 0)),
            server_time=data.get("serverTime", 0),
            deleted=data.get("deleted") or {},
        )


def _is_numeric(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _union(local: list[Any], remote: list[Any]) -> list[Any]:
    merged: list[Any] = []
    seen: set[str] = set()
    for value in [*local, *remote]:
        key = canonical_hash(value)
        if key not in seen:
            seen.add(key)
            merged.append(value)
    return merged


def differing_fields(local: dict[str, Any], remote: dict[str, Any]) -> list[str]:
    """Domain fields whose values differ between two records."""
    local_data = domain_fields(local)
    remote_data = domain_fields(remote)
    keys = sorted(set(local_data) | set(remote_data))
    return [k for k in keys if local_data.get(k) != remote_data.get(k)]


def is_auto_resolvable(
    local: dict[str, Any], remote: dict[str, Any], fields: list[str]
) -> bool:
    """True when every differing field is a list on both sides or numeric on both."""
    if not fields:
        return True
    all_lists = all(
        isinstance(local.get(f), list) and isinstance(remote.get(f), list)
        for f in fields
    )
    all_numbers = all(
        _is_numeric(local.get(f)) and _is_numeric(remote.get(f)) for f in fields
    )
    return all_lists or all_numbers


class ConflictDetector:
    """Compares local and remote snapshots and resolves record conflicts."""

    def __init__(
        self,
        store: LocalStore | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        """Initialize the detector.

        Args:
            store: Local store holding the conflict history. History is kept
                in memory when no store is given.
            clock: Source of epoch-millisecond time.
        """
        self.store = store
        self._clock = clock
        self._history: list[ConflictResolution] = []

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    @staticmethod
    def _local_index(records: dict[str, list[dict[str, Any]]]) -> dict[str, dict]:
        return {
            entity_type: {
                (r.get("cloudId") or r.get("id")): r for r in items if isinstance(r, dict)
            }
            for entity_type, items in records.items()
        }

    @staticmethod
    def _remote_index(records: dict[str, list[dict[str, Any]]]) -> dict[str, dict]:
        return {
            entity_type: {remote_id(r): r for r in items if isinstance(r, dict)}
            for entity_type, items in records.items()
        }

    def generate_data_hash(self, data: Any) -> str:
        """SHA-256 over canonical JSON."""
        return canonical_hash(data)

    def snapshot_hash(self, index: dict[str, dict[str, dict[str, Any]]]) -> str:
        """Hash of the domain content of an indexed snapshot."""
        return canonical_hash(
            {
                entity_type: {key: domain_fields(r) for key, r in records.items()}
                for entity_type, records in index.items()
                if records
            }
        )

    def detect_conflicts(
        self, local: LocalSnapshot, remote: RemoteSnapshot
    ) -> ConflictDetectionResult:
        """Classify the divergence between two snapshots.

        Checks run in order: identical content, missing remote data,
        corrupted local data, schema mismatch, then record-by-record
        divergence.
        """
        now = self._clock()
        local_index = self._local_index(local.records)
        remote_index = self._remote_index(remote.records)
        stats = {
            "localRecords": local.count(),
            "cloudRecords": remote.count(),
            "lastSync": local.last_sync or None,
        }

        if self.snapshot_hash(local_index) == self.snapshot_hash(remote_index):
            return ConflictDetectionResult(has_conflicts=False, data_stats=stats)

        if (
            remote.count() == 0
            and local.count() > 0
            and local.data_hash
            and 0 < local.last_sync < now
        ):
            item = ConflictItem(
                entity_type=None,
                entity_id="global",
                local_version=None,
                cloud_version=None,
                conflict_reason="Cloud data is missing or empty",
                auto_resolvable=True,
                severity=Severity.HIGH,
                detected_at=now,
            )
            return self._result(
                ConflictType.MISSING_CLOUD,
                [item],
                RecommendedAction.UPLOAD_LOCAL,
                stats,
            )

        corrupted = self._corrupted_items(local, now)
        if corrupted:
            action = (
                RecommendedAction.DOWNLOAD_CLOUD
                if remote.count() > 0
                else RecommendedAction.MANUAL_MERGE
            )
            return self._result(ConflictType.CORRUPTED_LOCAL, corrupted, action, stats)

        if (
            local.schema_version is not None
            and remote.schema_version is not None
            and local.schema_version != remote.schema_version
        ):
            item = ConflictItem(
                entity_type=None,
                entity_id="schema",
                local_version={"schemaVersion": local.schema_version},
                cloud_version={"schemaVersion": remote.schema_version},
                conflict_reason=(
                    f"Schema version mismatch: local({local.schema_version}) "
                    f"vs cloud({remote.schema_version})"
                ),
                auto_resolvable=False,
                severity=Severity.CRITICAL,
                detected_at=now,
            )
            return self._result(
                ConflictType.SCHEMA_MISMATCH,
                [item],
                RecommendedAction.MANUAL_MERGE,
                stats,
            )

        items = self._divergent_items(local_index, remote_index, now)
        if not items:
            return ConflictDetectionResult(has_conflicts=False, data_stats=stats)

        action = (
            RecommendedAction.AUTO_MERGE
            if all(item.auto_resolvable for item in items)
            else RecommendedAction.MANUAL_MERGE
        )
        return self._result(ConflictType.DIVERGENT_DATA, items, action, stats)

    def _result(
        self,
        conflict_type: ConflictType,
        items: list[ConflictItem],
        action: RecommendedAction,
        stats: dict[str, Any],
    ) -> ConflictDetectionResult:
        result = ConflictDetectionResult(
            has_conflicts=True,
            conflict_type=conflict_type,
            conflict_items=items,
            recommended_action=action,
            severity=self._overall_severity(items),
            data_stats=stats,
        )
        logger.info(
            f"Detected {conflict_type.value}: {len(items)} item(s), "
            f"severity={result.severity.value}, action={action.value}"
        )
        return result

    def _corrupted_items(self, local: LocalSnapshot, now: int) -> list[ConflictItem]:
        items = []
        for type_name, records in local.records.items():
            entity_type = coerce_entity_type(type_name)
            for record in records:
                result = validate_entity(record, entity_type)
                if result.is_valid:
                    continue
                entity_id = record.get("id") if isinstance(record, dict) else None
                items.append(
                    ConflictItem(
                        entity_type=entity_type,
                        entity_id=entity_id or "unknown",
                        local_version=record if isinstance(record, dict) else None,
                        cloud_version=None,
                        conflict_reason=(
                            f"Local record failed validation: {', '.join(result.errors)}"
                        ),
                        auto_resolvable=False,
                        severity=Severity.CRITICAL,
                        detected_at=now,
                    )
                )
        return items

    def compare_records(
        self,
        entity_type: EntityType | str,
        local: dict[str, Any],
        remote: dict[str, Any],
    ) -> ConflictItem | None:
        """Compare one record present on both sides.

        Returns:
            A ConflictItem if their domain fields differ, else None.
        """
        entity_type = coerce_entity_type(entity_type)
        fields = differing_fields(local, remote)
        if not fields:
            return None

        auto = is_auto_resolvable(local, remote, fields)
        return ConflictItem(
            entity_type=entity_type,
            entity_id=local.get("cloudId") or local.get("id") or remote_id(remote),
            local_version=local,
            cloud_version=remote,
            conflict_reason=f"Entity data differs in: {', '.join(fields)}",
            auto_resolvable=auto,
            severity=Severity.LOW if auto else Severity.MEDIUM,
            detected_at=self._clock(),
            fields=fields,
        )

    def _divergent_items(
        self,
        local_index: dict[str, dict[str, dict[str, Any]]],
        remote_index: dict[str, dict[str, dict[str, Any]]],
        now: int,
    ) -> list[ConflictItem]:
        items: list[ConflictItem] = []

        for type_name in sorted(set(local_index) | set(remote_index)):
            entity_type = coerce_entity_type(type_name)
            local_records = local_index.get(type_name, {})
            remote_records = remote_index.get(type_name, {})

            for key, record in local_records.items():
                if key in remote_records:
                    item = self.compare_records(entity_type, record, remote_records[key])
                    if item:
                        items.append(item)
                elif record.get("cloudId"):
                    # Never-uploaded records are pending creates, not conflicts.
                    items.append(
                        ConflictItem(
                            entity_type=entity_type,
                            entity_id=key,
                            local_version=record,
                            cloud_version=None,
                            conflict_reason="Local entity exists but not found in cloud",
                            auto_resolvable=True,
                            severity=Severity.MEDIUM,
                            detected_at=now,
                        )
                    )

            for key, record in remote_records.items():
                if key not in local_records:
                    items.append(
                        ConflictItem(
                            entity_type=entity_type,
                            entity_id=key,
                            local_version=None,
                            cloud_version=record,
                            conflict_reason="Cloud entity exists but not found locally",
                            auto_resolvable=True,
                            severity=Severity.MEDIUM,
                            detected_at=now,
                        )
                    )
        return items

    @staticmethod
    def _overall_severity(items: list[ConflictItem]) -> Severity:
        severity = max((item.severity for item in items), key=lambda s: s.rank)
        if len(items) > 50 and severity.rank < Severity.HIGH.rank:
            return Severity.HIGH
        if len(items) > 10 and severity.rank < Severity.MEDIUM.rank:
            return Severity.MEDIUM
        return severity

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def merge_records(
        self, local: dict[str, Any], remote: dict[str, Any]
    ) -> dict[str, Any]:
        """Field-level merge of two versions of one record.

        Lists are unioned (local order first), numbers take the maximum and
        other values go to the later ``updatedAt``, ties to the remote.
        Fields present on only one side are kept.
        """
        local_data = domain_fields(local)
        remote_data = domain_fields(remote)
        local_time = local.get("updatedAt") or 0
        remote_time = remote.get("updatedAt") or remote.get("_creationTime") or 0

        merged: dict[str, Any] = {
            k: v for k, v in local.items() if k not in local_data
        }
        for key in list(local_data) + [k for k in remote_data if k not in local_data]:
            if key not in remote_data:
                merged[key] = local_data[key]
            elif key not in local_data:
                merged[key] = remote_data[key]
            else:
                a, b = local_data[key], remote_data[key]
                if isinstance(a, list) and isinstance(b, list):
                    merged[key] = _union(a, b)
                elif _is_numeric(a) and _is_numeric(b):
                    merged[key] = max(a, b)
                else:
                    merged[key] = a if local_time > remote_time else b

        if "updatedAt" in local or "updatedAt" in remote:
            merged["updatedAt"] = max(local_time, remote_time)
        if "version" in local:
            merged["version"] = max(local.get("version") or 1, remote.get("version") or 1)
        return merged

    def resolve_field_level_conflicts(
        self,
        local: dict[str, Any],
        remote: dict[str, Any],
        strategy: ResolutionStrategy | str,
        resolved: dict[str, Any] | None = None,
        *,
        entity_type: EntityType | str,
        detected_at: int | None = None,
        note: str = "",
    ) -> dict[str, Any]:
        """Resolve a record conflict and record the resolution.

        Args:
            local: Local record.
            remote: Remote record.
            strategy: local_wins, cloud_wins, merge or user_choice.
            resolved: Caller-supplied record, required for user_choice.
            entity_type: Entity type of the record.
            detected_at: When the conflict was detected.
            note: Free-text note stored with the resolution.

        Returns:
            The resolved record.

        Raises:
            ValueError: If user_choice is requested without a record.
        """
        strategy = ResolutionStrategy(strategy)
        entity_type = coerce_entity_type(entity_type)

        if strategy == ResolutionStrategy.LOCAL_WINS:
            result = dict(local)
        elif strategy == ResolutionStrategy.CLOUD_WINS:
            result = dict(remote)
        elif strategy == ResolutionStrategy.MERGE:
            result = self.merge_records(local, remote)
        else:
            if resolved is None:
                raise ValueError("user_choice resolution requires a resolved record")
            result = dict(resolved)

        entity_id = local.get("id") or remote_id(remote) or "unknown"
        self.record_resolution(
            ConflictResolution(
                id=new_id("resolution"),
                entity_type=entity_type,
                entity_id=entity_id,
                resolved_at=self._clock(),
                strategy=strategy,
                note=note or f"Resolved with {strategy.value}",
                detected_at=detected_at,
            )
        )
        return result

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def record_resolution(self, resolution: ConflictResolution) -> None:
        if self.store is not None:
            self.store.add_conflict_resolution(resolution)
        else:
            self._history.append(resolution)
        logger.info(
            f"Resolved conflict on {resolution.scope}/"
            f"{resolution.entity_id} with {resolution.strategy.value}"
        )

    def get_conflict_history(
        self,
        entity_type: EntityType | str | None = None,
        entity_id: str | None = None,
    ) -> list[ConflictResolution]:
        if self.store is not None:
            return self.store.list_conflict_resolutions(entity_type, entity_id)

        wanted_type = coerce_entity_type(entity_type) if entity_type else None
        return [
            r
            for r in self._history
            if (wanted_type is None or r.entity_type == wanted_type)
            and (entity_id is None or r.entity_id == entity_id)
        ]

    def get_conflict_stats(self) -> dict[str, Any]:
        """Totals, breakdowns, recent count and average resolution latency."""
        history = self.get_conflict_history()
        cutoff = self._clock() - DAY_MS
        latencies = [
            r.resolved_at - r.detected_at for r in history if r.detected_at is not None
        ]
        return {
            "total": len(history),
            "by_strategy": dict(Counter(r.strategy.value for r in history)),
            "by_entity_type": dict(Counter(r.scope for r in history)),
            "recent_24h": sum(1 for r in history if r.resolved_at >= cutoff),
            "average_resolution_time_ms": (
                sum(latencies) / len(latencies) if latencies else 0
            ),
        }

    def clear_history(self) -> int:
        if self.store is not None:
            return self.store.clear_conflict_resolutions()
        cleared = len(self._history)
        self._history.clear()
        return cleared

    def export_history(self) -> list[dict[str, Any]]:
        return [r.to_dict() for r in self.get_conflict_history()]

    def import_history(self, entries: list[dict[str, Any]]) -> int:
        """Append exported resolutions, skipping ids already present."""
        known = {r.id for r in self.get_conflict_history()}
        added = 0
        for entry in entries:
            resolution = ConflictResolution.from_dict(entry)
            if resolution.id in known:
                continue
            self.record_resolution(resolution)
            known.add(resolution.id)
            added += 1
        return added
