"""Cloud sync driver: pushes queued operations, pulls remote changes and
applies conflict resolutions.

This is the only component that calls the remote transport. At most one
sync cycle runs at a time; concurrent callers join the cycle in flight.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from functools import partial
from typing import Any, Awaitable, Callable

from ..clock import new_id, now_ms
from ..errors import (
    LedgerSyncError,
    RemoteConflictError,
    RemoteValidationError,
    SyncInProgressError,
)
from ..events import EventEmitter, EventType
from ..queue.operation_queue import OperationQueue
from ..store.local_store import LocalStore
from ..store.models import (
    ConflictResolution,
    DataExport,
    DataFilters,
    EntityType,
    LocalEntity,
    OperationType,
    PendingOperation,
    Priority,
    ResolutionStrategy,
    SyncStatus,
    coerce_entity_type,
    domain_fields,
    remote_id,
)
from ..store.payloads import payload_from_dict
from .conflict_detector import (
    ConflictDetectionResult,
    ConflictDetector,
    ConflictItem,
    LocalSnapshot,
    RecommendedAction,
    RemoteSnapshot,
    Severity,
)
from .transport import Credentials, RemoteTransport

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    """Outcome of one sync call."""

    success: bool
    conflicts: list[ConflictItem] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    synced_count: int = 0
    failed_count: int = 0
    pulled_count: int = 0
    merged_count: int = 0
    operation_id: str = field(default_factory=lambda: new_id("sync"))
    timestamp: int = field(default_factory=now_ms)

    def absorb(self, other: "SyncResult") -> None:
        """Fold another partial result into this one."""
        self.success = self.success and other.success
        self.conflicts.extend(other.conflicts)
        self.errors.extend(other.errors)
        self.synced_count += other.synced_count
        self.failed_count += other.failed_count
        self.pulled_count += other.pulled_count
        self.merged_count += other.merged_count

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "conflicts": [c.to_dict() for c in self.conflicts],
            "errors": self.errors,
            "syncedCount": self.synced_count,
            "failedCount": self.failed_count,
            "pulledCount": self.pulled_count,
            "mergedCount": self.merged_count,
            "operationId": self.operation_id,
            "timestamp": self.timestamp,
        }


class ConnectionType(Enum):
    """Effective connection type as reported by the platform."""

    SLOW_2G = "slow-2g"
    CELLULAR_2G = "2g"
    CELLULAR_3G = "3g"
    CELLULAR_4G = "4g"


@dataclass
class NetworkQuality:
    """Connectivity signal used to tune the sync schedule."""

    connection_type: ConnectionType | None = None
    metered: bool = False


@dataclass
class SyncSettings:
    """Schedule tuning for one network condition.

    ``priority`` is the band a cycle favours. It is a hard floor only when
    ``constrained`` is set; otherwise lower bands still go out, after it.
    """

    interval: float
    batch_size: int
    priority: Priority
    constrained: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "interval": self.interval,
            "batch_size": self.batch_size,
            "priority": self.priority.value,
            "constrained": self.constrained,
        }


def recommended_settings(quality: NetworkQuality | None = None) -> SyncSettings:
    """Sync interval, batch size and minimum priority for a connection.

    Degraded or metered links sync less often, in smaller batches and hold
    back everything below high priority; strong links sync more often with
    larger batches. Without a signal the defaults are 30 s, 50 and medium.
    """
    if quality is None or (quality.connection_type is None and not quality.metered):
        return SyncSettings(interval=30.0, batch_size=50, priority=Priority.MEDIUM)
    if quality.metered or quality.connection_type in (
        ConnectionType.SLOW_2G,
        ConnectionType.CELLULAR_2G,
    ):
        return SyncSettings(
            interval=120.0, batch_size=10, priority=Priority.HIGH, constrained=True
        )
    if quality.connection_type == ConnectionType.CELLULAR_3G:
        return SyncSettings(interval=60.0, batch_size=25, priority=Priority.MEDIUM)
    return SyncSettings(interval=15.0, batch_size=100, priority=Priority.LOW)


def _outgoing_record(record: dict[str, Any]) -> dict[str, Any]:
    """Strip local-only fields before a record is sent in a full upload."""
    outgoing = {
        "id": record["id"],
        "createdAt": record.get("createdAt"),
        "updatedAt": record.get("updatedAt"),
        **domain_fields(record),
    }
    if record.get("cloudId"):
        outgoing["cloudId"] = record["cloudId"]
    return outgoing


class CloudSyncDriver:
    """Coordinates push, pull and conflict resolution against the remote store."""

    def __init__(
        self,
        store: LocalStore,
        queue: OperationQueue,
        transport: RemoteTransport,
        detector: ConflictDetector | None = None,
        events: EventEmitter | None = None,
        auto_merge: bool = True,
        coalesce: bool = True,
    ):
        """Initialize the driver.

        Args:
            store: Local replica store.
            queue: Operation queue to drain.
            transport: Remote transport.
            detector: Conflict detector; one backed by ``store`` by default.
            events: Event emitter for sync notifications.
            auto_merge: Merge auto-resolvable conflicts without asking.
            coalesce: Join an in-flight cycle instead of raising
                SyncInProgressError.
        """
        self.store = store
        self.queue = queue
        self.transport = transport
        self.detector = detector or ConflictDetector(store)
        self.events = events or EventEmitter()
        self.auto_merge = auto_merge
        self.coalesce = coalesce
        self._cycle: asyncio.Future | None = None
        self._is_online = True
        self._accepting = True
        self._open_conflicts: dict[tuple[EntityType, str], ConflictItem] = {}

    # ------------------------------------------------------------------
    # Cycle guard
    # ------------------------------------------------------------------

    @property
    def sync_in_progress(self) -> bool:
        return self._cycle is not None and not self._cycle.done()

    @property
    def is_online(self) -> bool:
        return self._is_online

    def set_online(self, online: bool) -> None:
        if online != self._is_online:
            logger.info(f"Network {'online' if online else 'offline'}")
        self._is_online = online

    async def _exclusive(self, factory: Callable[[], Awaitable[SyncResult]]) -> SyncResult:
        """Run a cycle unless one is already in flight, then join that one."""
        if self.sync_in_progress:
            if not self.coalesce:
                raise SyncInProgressError("A sync cycle is already running")
            logger.debug("Sync already in progress, joining it")
            return await asyncio.shield(self._cycle)

        cycle = asyncio.ensure_future(factory())
        self._cycle = cycle
        cycle.add_done_callback(self._cycle_finished)
        return await asyncio.shield(cycle)

    def _cycle_finished(self, cycle: asyncio.Future) -> None:
        if self._cycle is cycle:
            self._cycle = None

    def _failure(self, error: LedgerSyncError, context: str) -> SyncResult:
        logger.warning(f"{context} failed: {error}")
        self.store.record_sync_outcome(False, error=str(error))
        self.events.emit(EventType.SYNC_FAILED, error=str(error), context=context)
        return SyncResult(success=False, errors=[str(error)])

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    async def process_queue(
        self,
        credentials: Credentials,
        operations: list[str] | None = None,
        min_priority: Priority | str | None = None,
    ) -> SyncResult:
        """Send queued operations until nothing eligible is left.

        Args:
            credentials: User credential for the remote store.
            operations: Restrict to these operation ids.
            min_priority: Skip operations below this priority.
        """
        return await self._exclusive(
            partial(self._push, credentials, operations, min_priority)
        )

    def _accepts(self, op: PendingOperation) -> bool:
        if op.type == OperationType.DELETE:
            return True
        entity = self.store.get(op.entity_type, op.entity_id)
        if entity is None:
            return True
        return entity.sync_status not in (SyncStatus.CONFLICT, SyncStatus.SYNCING)

    async def _push(
        self,
        credentials: Credentials,
        operations: list[str] | None = None,
        min_priority: Priority | str | None = None,
    ) -> SyncResult:
        result = SyncResult(success=True)

        while self._accepting:
            outcomes = await self.queue.process_queue(
                partial(self._dispatch, credentials=credentials),
                min_priority=min_priority,
                operations=operations,
                accept=self._accepts,
                should_continue=lambda: self._accepting,
            )
            if not outcomes:
                break

            for outcome in outcomes:
                op = outcome.operation
                if outcome.skipped:
                    continue
                if outcome.success:
                    result.synced_count += 1
                    continue

                result.failed_count += 1
                result.errors.append(
                    f"{op.type.value} {op.entity_type.value}/{op.entity_id}: "
                    f"{outcome.error}"
                )
                if isinstance(outcome.error, RemoteConflictError) and self._in_conflict(op):
                    self._report_conflict(
                        self._conflict_from_rejection(op, outcome.error), result
                    )

            if any(outcome.skipped for outcome in outcomes):
                break

        self.queue.cleanup_completed_operations()
        result.success = result.failed_count == 0
        if result.synced_count or result.failed_count:
            logger.info(
                f"Pushed {result.synced_count} operation(s), "
                f"{result.failed_count} failed"
            )
        return result

    async def _dispatch(
        self, op: PendingOperation, credentials: Credentials
    ) -> dict[str, Any]:
        """Send one operation and record the outcome on the entity.

        Creates and updates transmit the entity's current state, so a later
        queued update for the same entity is superseded once this succeeds.
        """
        if op.type == OperationType.DELETE:
            if not op.cloud_id:
                logger.debug(f"Delete of never-uploaded {op.entity_id}, nothing to send")
                return {}
            return await self.transport.send_operation(op, credentials)

        entity = self.store.get(op.entity_type, op.entity_id)
        if entity is None or not self.store.begin_sync(op.entity_type, op.entity_id):
            logger.debug(f"Skipping {op.id}: entity gone or already up to date")
            return {}

        cloud_id = op.cloud_id or entity.cloud_id
        if op.type == OperationType.CREATE:
            cloud_id = None
        outgoing = replace(
            op,
            type=OperationType.UPDATE if cloud_id else OperationType.CREATE,
            payload=payload_from_dict(op.entity_type.value, entity.data),
            cloud_id=cloud_id,
        )

        try:
            response = await self.transport.send_operation(outgoing, credentials)
            new_cloud_id = remote_id(response or {}) or cloud_id
            if not new_cloud_id:
                raise RemoteValidationError(
                    f"Remote returned no id for {op.entity_type.value}/{op.entity_id}"
                )
        except RemoteConflictError as e:
            self.store.mark_conflict(
                op.entity_type,
                op.entity_id,
                remote_id(e.remote_record or {}) or cloud_id,
            )
            raise
        except Exception:
            self.store.fail_sync(op.entity_type, op.entity_id)
            raise

        self.store.complete_sync(op.entity_type, op.entity_id, new_cloud_id)
        self.queue.assign_cloud_id(op.entity_type, op.entity_id, new_cloud_id)
        self._open_conflicts.pop((op.entity_type, op.entity_id), None)
        return response

    def _in_conflict(self, op: PendingOperation) -> bool:
        entity = self.store.get(op.entity_type, op.entity_id)
        return entity is not None and entity.sync_status == SyncStatus.CONFLICT

    def _conflict_from_rejection(
        self, op: PendingOperation, error: RemoteConflictError
    ) -> ConflictItem:
        entity = self.store.get(op.entity_type, op.entity_id)
        local = entity.to_dict() if entity else None
        if local is not None and error.remote_record is not None:
            item = self.detector.compare_records(op.entity_type, local, error.remote_record)
            if item is not None:
                item.entity_id = op.entity_id
                return item
        return ConflictItem(
            entity_type=op.entity_type,
            entity_id=op.entity_id,
            local_version=local,
            cloud_version=error.remote_record,
            conflict_reason=f"Remote rejected {op.type.value}: {error}",
            auto_resolvable=False,
            severity=Severity.MEDIUM,
        )

    def _report_conflict(self, item: ConflictItem, result: SyncResult) -> None:
        # Dataset-wide items are settled by apply_resolution, not per record
        if item.entity_type is not None:
            self._open_conflicts[(item.entity_type, item.entity_id)] = item
        result.conflicts.append(item)
        self.events.emit(
            EventType.CONFLICT_DETECTED,
            entity_type=item.scope,
            entity_id=item.entity_id,
            reason=item.conflict_reason,
            severity=item.severity.value,
            auto_resolvable=item.auto_resolvable,
        )

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    async def perform_incremental_sync(
        self, credentials: Credentials, since: int | None = None
    ) -> SyncResult:
        """Pull remote changes made after ``since``.

        Falls back to a full pull when no previous sync time is known.
        """
        try:
            return await self._exclusive(partial(self._pull, credentials, since))
        except LedgerSyncError as e:
            return self._failure(e, "Incremental sync")

    async def sync_from_cloud(self, credentials: Credentials) -> SyncResult:
        """Pull and apply the full remote dataset."""
        try:
            return await self._exclusive(partial(self._pull_full, credentials))
        except LedgerSyncError as e:
            return self._failure(e, "Full pull")

    async def _pull(self, credentials: Credentials, since: int | None) -> SyncResult:
        if since is None:
            since = self.store.get_sync_state().last_sync
        if not since:
            return await self._pull_full(credentials)

        snapshot = await self.transport.fetch_changes(credentials, since)
        result = SyncResult(success=True)
        self._apply_snapshot(snapshot, result)

        for type_name, cloud_ids in snapshot.deleted.items():
            removed = self.store.remove_remote_deleted(type_name, cloud_ids)
            result.pulled_count += removed

        logger.debug(f"Incremental pull since {since}: {result.pulled_count} change(s)")
        return result

    async def _pull_full(self, credentials: Credentials) -> SyncResult:
        snapshot = await self.transport.fetch_snapshot(credentials)
        result = SyncResult(success=True)
        self._apply_snapshot(snapshot, result)

        if snapshot.count() == 0 and self.store.count(sync_status=SyncStatus.SYNCED):
            logger.warning("Remote returned no records; keeping local synced data")
            return result

        for entity_type in EntityType:
            remote_ids = {
                remote_id(r) for r in snapshot.records.get(entity_type.value, [])
            }
            synced = self.store.list_entities(
                entity_type, DataFilters(sync_statuses=[SyncStatus.SYNCED])
            )
            gone = [e.cloud_id for e in synced if e.cloud_id not in remote_ids]
            if gone:
                result.pulled_count += self.store.remove_remote_deleted(
                    entity_type, gone
                )
        return result

    def _apply_snapshot(self, snapshot: RemoteSnapshot, result: SyncResult) -> None:
        for type_name, records in snapshot.records.items():
            try:
                entity_type = coerce_entity_type(type_name)
            except ValueError:
                logger.warning(f"Ignoring unknown remote collection: {type_name}")
                continue

            for record in records:
                outcome, entity = self.store.apply_remote_record(entity_type, record)
                if outcome in ("inserted", "updated"):
                    result.pulled_count += 1
                elif outcome == "diverged":
                    self._reconcile(entity, record, result)

    def _reconcile(
        self, entity: LocalEntity, record: dict[str, Any], result: SyncResult
    ) -> None:
        """Handle a remote change to an entity with unsynced local edits."""
        if entity.sync_status in (SyncStatus.SYNCING, SyncStatus.CONFLICT):
            return

        local = entity.to_dict()
        item = self.detector.compare_records(entity.entity_type, local, record)
        if item is None:
            return
        item.entity_id = entity.id

        if item.auto_resolvable and self.auto_merge:
            merged = self.detector.resolve_field_level_conflicts(
                local,
                record,
                ResolutionStrategy.MERGE,
                entity_type=entity.entity_type,
                detected_at=item.detected_at,
                note="Auto-merged during pull",
            )
            self.store.update(entity.entity_type, entity.id, domain_fields(merged))
            result.merged_count += 1
            return

        self.store.begin_sync(entity.entity_type, entity.id)
        self.store.mark_conflict(entity.entity_type, entity.id)
        self._report_conflict(item, result)

    # ------------------------------------------------------------------
    # Full cycle
    # ------------------------------------------------------------------

    async def sync(
        self,
        credentials: Credentials,
        min_priority: Priority | str | None = None,
    ) -> SyncResult:
        """Run one full cycle: push queued operations, then pull changes.

        Args:
            credentials: User credential for the remote store.
            min_priority: Only push operations at or above this priority.
        """
        return await self._exclusive(
            partial(self._full_cycle, credentials, min_priority)
        )

    async def force_sync(self, credentials: Credentials) -> SyncResult:
        """Run a full cycle now, after any cycle already in flight."""
        if self.sync_in_progress:
            await asyncio.shield(self._cycle)
        return await self.sync(credentials)

    async def _full_cycle(
        self, credentials: Credentials, min_priority: Priority | str | None = None
    ) -> SyncResult:
        self.queue.recover_stale_operations()
        try:
            result = await self._push(credentials, min_priority=min_priority)
            result.absorb(await self._pull(credentials, None))
        except LedgerSyncError as e:
            return self._failure(e, "Sync")

        if result.success:
            self.store.record_sync_outcome(True, timestamp=result.timestamp)
            self.events.emit(
                EventType.SYNC_COMPLETED,
                synced_count=result.synced_count,
                pulled_count=result.pulled_count,
                merged_count=result.merged_count,
                conflicts=len(result.conflicts),
            )
        else:
            self.store.record_sync_outcome(False, error="; ".join(result.errors))
            self.events.emit(
                EventType.SYNC_FAILED,
                failed_count=result.failed_count,
                errors=result.errors,
                conflicts=len(result.conflicts),
            )
        logger.info(
            f"Sync cycle {result.operation_id}: success={result.success}, "
            f"pushed={result.synced_count}, pulled={result.pulled_count}, "
            f"conflicts={len(result.conflicts)}"
        )
        return result

    # ------------------------------------------------------------------
    # Full-dataset operations
    # ------------------------------------------------------------------

    async def check_conflicts(self, credentials: Credentials) -> ConflictDetectionResult:
        """Fetch the remote dataset and compare it with the local one."""
        remote = await self.transport.fetch_snapshot(credentials)
        detection = self.detector.detect_conflicts(
            LocalSnapshot.from_store(self.store), remote
        )
        if detection.has_conflicts:
            self.events.emit(
                EventType.CONFLICT_DETECTED,
                conflict_type=detection.conflict_type.value,
                count=len(detection.conflict_items),
                severity=detection.severity.value,
                recommended_action=detection.recommended_action.value,
            )
        return detection

    async def sync_to_cloud(
        self, local_export: DataExport, credentials: Credentials
    ) -> SyncResult:
        """Upload an export unless the remote holds data it would overwrite."""
        try:
            return await self._exclusive(
                partial(self._sync_to_cloud, local_export, credentials)
            )
        except LedgerSyncError as e:
            return self._failure(e, "Upload")

    async def _sync_to_cloud(
        self, local_export: DataExport, credentials: Credentials
    ) -> SyncResult:
        remote = await self.transport.fetch_snapshot(credentials)
        local = LocalSnapshot(
            records={t: list(r.values()) for t, r in local_export.data.items()},
            data_hash=local_export.sync_state.get("dataHash") or "",
            last_sync=local_export.sync_state.get("lastSync") or 0,
            schema_version=local_export.metadata.get("schemaVersion"),
        )
        detection = self.detector.detect_conflicts(local, remote)
        if (
            detection.has_conflicts
            and detection.recommended_action != RecommendedAction.UPLOAD_LOCAL
        ):
            result = SyncResult(success=False)
            for item in detection.conflict_items:
                self._report_conflict(item, result)
            result.errors.append(
                f"Upload blocked by {detection.conflict_type.value}; "
                f"recommended action is {detection.recommended_action.value}"
            )
            return result
        return await self._upload(credentials, local_export)

    async def upload_local_data(
        self, credentials: Credentials, local_export: DataExport | None = None
    ) -> SyncResult:
        """Replace the remote dataset with the local one."""
        try:
            return await self._exclusive(
                partial(self._upload, credentials, local_export)
            )
        except LedgerSyncError as e:
            return self._failure(e, "Upload")

    async def _upload(
        self, credentials: Credentials, local_export: DataExport | None = None
    ) -> SyncResult:
        export = local_export or self.store.export_data()
        records = {
            entity_type: [_outgoing_record(r) for r in items.values()]
            for entity_type, items in export.data.items()
        }
        cloud_ids = await self.transport.replace_snapshot(records, credentials)

        marked = self.store.mark_all_synced(cloud_ids)
        self.queue.clear_queue()
        self.store.record_sync_outcome(True)
        self.events.emit(EventType.SYNC_COMPLETED, uploaded=export.record_count())
        logger.info(f"Uploaded {export.record_count()} records, {marked} now synced")
        return SyncResult(success=True, synced_count=export.record_count())

    async def download_cloud_data(self, credentials: Credentials) -> SyncResult:
        """Replace the local dataset with the remote one."""
        try:
            return await self._exclusive(partial(self._download, credentials))
        except LedgerSyncError as e:
            return self._failure(e, "Download")

    async def _download(self, credentials: Credentials) -> SyncResult:
        snapshot = await self.transport.fetch_snapshot(credentials)
        written = self.store.replace_with_remote(snapshot.records)
        self._open_conflicts.clear()
        self.store.record_sync_outcome(True)
        self.events.emit(EventType.SYNC_COMPLETED, downloaded=written)
        return SyncResult(success=True, pulled_count=written)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def apply_resolution(
        self, detection: ConflictDetectionResult, credentials: Credentials
    ) -> SyncResult:
        """Carry out the action a detection result recommends.

        Manual merges are not attempted; the items are returned as conflicts.
        """
        if not detection.has_conflicts:
            return await self.sync(credentials)

        action = detection.recommended_action
        if action == RecommendedAction.MANUAL_MERGE:
            return SyncResult(
                success=False,
                conflicts=list(detection.conflict_items),
                errors=[f"Manual merge required for {detection.conflict_type.value}"],
            )

        if action == RecommendedAction.UPLOAD_LOCAL:
            result = await self.upload_local_data(credentials)
            strategy = ResolutionStrategy.LOCAL_WINS
        elif action == RecommendedAction.DOWNLOAD_CLOUD:
            result = await self.download_cloud_data(credentials)
            strategy = ResolutionStrategy.CLOUD_WINS
        else:
            return await self._exclusive(
                partial(self._merge_divergent, detection, credentials)
            )

        if result.success:
            for item in detection.conflict_items:
                self._record(item, strategy, f"Applied {action.value}")
        return result

    def _record(self, item: ConflictItem, strategy: ResolutionStrategy, note: str) -> None:
        self.detector.record_resolution(
            ConflictResolution(
                id=new_id("resolution"),
                entity_type=item.entity_type,
                entity_id=item.entity_id,
                resolved_at=now_ms(),
                strategy=strategy,
                note=note,
                detected_at=item.detected_at,
            )
        )

    async def _merge_divergent(
        self, detection: ConflictDetectionResult, credentials: Credentials
    ) -> SyncResult:
        result = SyncResult(success=True)
        for item in detection.conflict_items:
            if item.local_version is None and item.cloud_version is not None:
                self.store.apply_remote_record(item.entity_type, item.cloud_version)
                self._record(item, ResolutionStrategy.CLOUD_WINS, "Restored from cloud")
                result.pulled_count += 1
            elif item.cloud_version is None and item.local_version is not None:
                entity_id = item.local_version["id"]
                entity = self.store.update(item.entity_type, entity_id, {})
                self.queue.add_operation(
                    OperationType.CREATE, item.entity_type, entity_id, entity.data
                )
                self._record(item, ResolutionStrategy.LOCAL_WINS, "Re-uploading local")
            else:
                self.resolve_conflict(item, ResolutionStrategy.MERGE)
            result.merged_count += 1

        try:
            result.absorb(await self._push(credentials))
        except LedgerSyncError as e:
            return self._failure(e, "Merge")
        if result.success:
            self.store.record_sync_outcome(True)
        return result

    def resolve_conflict(
        self,
        item: ConflictItem,
        strategy: ResolutionStrategy | str,
        resolved: dict[str, Any] | None = None,
    ) -> LocalEntity | None:
        """Resolve one record conflict and queue the push it needs.

        Returns:
            The updated entity, or None if it no longer exists locally.
        """
        if item.entity_type is None:
            raise ValueError("Dataset-wide conflicts are resolved with apply_resolution")
        if item.local_version is None or item.cloud_version is None:
            raise ValueError("Record resolution needs both local and cloud versions")

        merged = self.detector.resolve_field_level_conflicts(
            item.local_version,
            item.cloud_version,
            strategy,
            resolved,
            entity_type=item.entity_type,
            detected_at=item.detected_at,
        )
        cloud_id = remote_id(item.cloud_version)
        entity = self.store.get(item.entity_type, item.local_version.get("id", ""))
        if entity is None and cloud_id:
            entity = self.store.get_by_cloud_id(item.entity_type, cloud_id)
        if entity is None:
            logger.warning(f"Conflict target {item.entity_id} no longer exists")
            return None

        data = domain_fields(merged)
        needs_push = data != domain_fields(item.cloud_version)
        self._open_conflicts.pop((item.entity_type, item.entity_id), None)
        self._open_conflicts.pop((item.entity_type, entity.id), None)
        # The rejected operation is superseded by the resolution
        self.queue.discard_failed_for_entity(item.entity_type, entity.id)

        if entity.sync_status == SyncStatus.CONFLICT:
            entity = self.store.resolve_conflict(
                item.entity_type, entity.id, data, cloud_id, needs_push
            )
        elif entity.sync_status == SyncStatus.SYNCED and not needs_push:
            self.store.apply_remote_record(item.entity_type, item.cloud_version)
            return self.store.get(item.entity_type, entity.id)
        else:
            entity = self.store.update(item.entity_type, entity.id, data)

        if needs_push:
            self.queue.add_operation(
                OperationType.UPDATE,
                item.entity_type,
                entity.id,
                entity.data,
                cloud_id=entity.cloud_id or cloud_id,
            )
        return entity

    def get_open_conflicts(self) -> list[ConflictItem]:
        """Conflicts detected this session that have not been resolved."""
        return list(self._open_conflicts.values())

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def recommended_settings(self, quality: NetworkQuality | None = None) -> SyncSettings:
        return recommended_settings(quality)

    def get_sync_status(self) -> dict[str, Any]:
        state = self.store.get_sync_state()
        return {
            "is_online": self._is_online,
            "sync_in_progress": self.sync_in_progress,
            "last_sync_timestamp": state.last_sync or None,
            "pending_operations_count": self.queue.size,
            "last_error": state.last_error,
            "open_conflicts": len(self._open_conflicts),
        }

    async def close(self) -> None:
        """Stop taking new work, let the in-flight cycle finish, close transport."""
        self._accepting = False
        if self._cycle is not None and not self._cycle.done():
            await asyncio.shield(self._cycle)
        await self.transport.close()
