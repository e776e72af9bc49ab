"""Durable, prioritized queue of mutations awaiting transmission.

Operations live in the local store's ``pending_operations`` table, so the
queue survives restarts. Ordering is priority band first, then enqueue
order; an entity's operations are always sent in enqueue order.
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable

from ..clock import new_id, now_ms
from ..errors import is_retryable
from ..events import EventEmitter, EventType
from ..store.local_store import LocalStore
from ..store.models import (
    EntityType,
    OperationStatus,
    OperationType,
    PendingOperation,
    Priority,
    coerce_entity_type,
)
from ..store.payloads import Payload, payload_from_dict

logger = logging.getLogger(__name__)

DEFAULT_PRIORITIES: dict[OperationType, Priority] = {
    OperationType.CREATE: Priority.HIGH,
    OperationType.UPDATE: Priority.MEDIUM,
    OperationType.DELETE: Priority.LOW,
}

Dispatcher = Callable[[PendingOperation], Awaitable[Any]]

# Per-operation time assumed before any dispatch has been measured
DEFAULT_ESTIMATE_MS = 2000


@dataclass
class OperationOutcome:
    """Result of dispatching one operation."""

    operation: PendingOperation
    success: bool
    result: Any = None
    error: Exception | None = None
    terminal: bool = False
    skipped: bool = False


@dataclass
class QueueMetrics:
    """Dispatch timings since the queue was created."""

    successful: int = 0
    failed: int = 0
    total_processing_ms: int = 0
    last_processed_at: int | None = None

    @property
    def attempts(self) -> int:
        return self.successful + self.failed

    @property
    def average_processing_ms(self) -> float | None:
        if not self.attempts:
            return None
        return self.total_processing_ms / self.attempts

    @property
    def success_rate(self) -> float | None:
        if not self.attempts:
            return None
        return self.successful / self.attempts

    def record(self, duration_ms: int, success: bool, finished_at: int) -> None:
        if success:
            self.successful += 1
        else:
            self.failed += 1
        self.total_processing_ms += duration_ms
        self.last_processed_at = finished_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "successful": self.successful,
            "failed": self.failed,
            "average_processing_ms": self.average_processing_ms,
            "success_rate": self.success_rate,
            "last_processed_at": self.last_processed_at,
        }


class OperationQueue:
    """Priority/FIFO queue with bounded size and exponential-backoff retry."""

    def __init__(
        self,
        store: LocalStore,
        events: EventEmitter | None = None,
        max_queue_size: int = 1000,
        batch_size: int = 10,
        concurrency: int = 4,
        max_retries: int = 3,
        processing_timeout: float = 300.0,
        clock: Callable[[], int] = now_ms,
    ):
        """Initialize the queue.

        Args:
            store: Local store holding the durable operation table.
            events: Emitter for dropped/failed operation notifications.
            max_queue_size: Maximum number of outstanding operations.
            batch_size: Maximum operations taken per processing cycle.
            concurrency: Maximum operations dispatched at once.
            max_retries: Default attempt limit for new operations.
            processing_timeout: Seconds after which a syncing operation with
                no live dispatch is considered stale.
            clock: Source of epoch-millisecond time.
        """
        self.store = store
        self.events = events or EventEmitter()
        self.max_queue_size = max_queue_size
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.max_retries = max_retries
        self.processing_timeout = processing_timeout
        self._clock = clock
        # operation id -> dispatch start time, for operations in flight
        self._in_flight: dict[str, int] = {}
        self.metrics = QueueMetrics()

    def add_operation(
        self,
        op_type: OperationType | str,
        entity_type: EntityType | str,
        entity_id: str,
        payload: Payload | dict[str, Any],
        priority: Priority | str | None = None,
        cloud_id: str | None = None,
        max_retries: int | None = None,
    ) -> PendingOperation:
        """Enqueue a mutation.

        An identical operation that is still pending is returned instead of
        adding a duplicate. If the queue grows past ``max_queue_size`` the
        lowest-priority, oldest operations that are not in flight are
        dropped and reported through an ``operation_dropped`` event.

        Returns:
            The queued operation.
        """
        op_type = OperationType(op_type)
        entity_type = coerce_entity_type(entity_type)
        if isinstance(payload, dict):
            payload = payload_from_dict(entity_type.value, payload)
        if priority is None:
            priority = DEFAULT_PRIORITIES[op_type]
        priority = Priority(priority)

        for existing in self.store.list_operations(
            statuses=[OperationStatus.PENDING],
            entity_type=entity_type,
            entity_id=entity_id,
        ):
            if existing.type == op_type and existing.payload == payload:
                logger.debug(
                    f"Duplicate {op_type.value} for {entity_id}, reusing {existing.id}"
                )
                return existing

        op = PendingOperation(
            id=new_id("op"),
            type=op_type,
            entity_type=entity_type,
            entity_id=entity_id,
            payload=payload,
            timestamp=self._clock(),
            max_retries=max_retries if max_retries is not None else self.max_retries,
            priority=priority,
            cloud_id=cloud_id,
        )
        self.store.insert_operation(op)
        logger.debug(
            f"Queued {op.type.value} {entity_type.value}/{entity_id} "
            f"({priority.value}) as {op.id}"
        )

        self._enforce_limit()
        return op

    def _outstanding(self) -> list[PendingOperation]:
        return self.store.list_operations(
            statuses=[
                OperationStatus.PENDING,
                OperationStatus.SYNCING,
                OperationStatus.FAILED,
            ]
        )

    def _enforce_limit(self) -> None:
        outstanding = self._outstanding()
        excess = len(outstanding) - self.max_queue_size
        if excess <= 0:
            return

        candidates = sorted(
            (op for op in outstanding if op.status != OperationStatus.SYNCING),
            key=lambda op: (op.priority.rank, op.seq),
        )
        dropped = candidates[:excess]
        self.store.delete_operations(op.id for op in dropped)

        for op in dropped:
            logger.warning(
                f"Queue full ({self.max_queue_size}), dropped {op.priority.value} "
                f"{op.type.value} for {op.entity_type.value}/{op.entity_id}"
            )
            self.events.emit(
                EventType.OPERATION_DROPPED,
                operation_id=op.id,
                entity_type=op.entity_type.value,
                entity_id=op.entity_id,
                priority=op.priority.value,
            )

    def get_operations(
        self, statuses: Iterable[OperationStatus] | None = None
    ) -> list[PendingOperation]:
        """Operations in dispatch order (priority band, then enqueue order)."""
        ops = self.store.list_operations(statuses=statuses)
        return sorted(ops, key=lambda op: (-op.priority.rank, op.seq))

    def get_operation(self, operation_id: str) -> PendingOperation | None:
        return self.store.get_operation(operation_id)

    def _is_due(self, op: PendingOperation, now: int) -> bool:
        if op.status == OperationStatus.PENDING:
            return True
        if op.status == OperationStatus.FAILED and op.next_attempt_at is not None:
            return op.next_attempt_at <= now
        return False

    def get_next_batch(
        self,
        min_priority: Priority | str | None = None,
        operations: Iterable[str] | None = None,
        accept: Callable[[PendingOperation], bool] | None = None,
    ) -> list[PendingOperation]:
        """Select the operations for the next processing cycle.

        Only the oldest outstanding operation of each entity is a candidate,
        so an entity's operations go out one per cycle in enqueue order.

        Args:
            min_priority: Skip operations below this priority.
            operations: Restrict the batch to these operation ids.
            accept: Predicate that can hold back individual operations.
        """
        now = self._clock()
        floor = Priority(min_priority).rank if min_priority is not None else 0
        wanted = set(operations) if operations is not None else None

        heads: dict[tuple[EntityType, str], PendingOperation] = {}
        for op in self._outstanding():
            heads.setdefault((op.entity_type, op.entity_id), op)

        eligible = [
            op
            for op in heads.values()
            if self._is_due(op, now)
            and op.priority.rank >= floor
            and (wanted is None or op.id in wanted)
            and (accept is None or accept(op))
        ]
        eligible.sort(key=lambda op: (-op.priority.rank, op.seq))
        return eligible[: self.batch_size]

    async def process_queue(
        self,
        dispatch: Dispatcher,
        min_priority: Priority | str | None = None,
        operations: Iterable[str] | None = None,
        accept: Callable[[PendingOperation], bool] | None = None,
        should_continue: Callable[[], bool] | None = None,
    ) -> list[OperationOutcome]:
        """Dispatch one batch of eligible operations.

        Operations run concurrently up to ``concurrency``. Each outcome is
        recorded independently; a failing operation never aborts the batch.

        Args:
            dispatch: Coroutine function sending one operation.
            min_priority: Skip operations below this priority.
            operations: Restrict the batch to these operation ids.
            accept: Predicate that can hold back individual operations.
            should_continue: Checked before each dispatch; when it returns
                False the remaining operations go back to pending unsent.

        Returns:
            One outcome per operation taken from the queue.
        """
        batch = self.get_next_batch(min_priority, operations, accept)
        if not batch:
            return []

        for op in batch:
            op.status = OperationStatus.SYNCING
            self.store.save_operation(op)

        semaphore = asyncio.Semaphore(max(self.concurrency, 1))

        async def run(op: PendingOperation) -> OperationOutcome:
            async with semaphore:
                if should_continue is not None and not should_continue():
                    op.status = OperationStatus.PENDING
                    self.store.save_operation(op)
                    return OperationOutcome(operation=op, success=False, skipped=True)

                started = self._clock()
                self._in_flight[op.id] = started
                try:
                    result = await dispatch(op)
                except Exception as e:
                    self._record_attempt(started, success=False)
                    terminal = self.mark_failed(op, e)
                    return OperationOutcome(
                        operation=op, success=False, error=e, terminal=terminal
                    )
                finally:
                    self._in_flight.pop(op.id, None)

                self._record_attempt(started, success=True)
                self.mark_completed(op)
                return OperationOutcome(operation=op, success=True, result=result)

        logger.debug(f"Dispatching {len(batch)} operation(s)")
        return list(await asyncio.gather(*(run(op) for op in batch)))

    def _record_attempt(self, started: int, success: bool) -> None:
        finished = self._clock()
        self.metrics.record(max(finished - started, 0), success, finished)

    def mark_completed(self, op: PendingOperation) -> None:
        op.status = OperationStatus.COMPLETED
        op.error = None
        op.next_attempt_at = None
        self.store.save_operation(op)

    def mark_failed(self, op: PendingOperation, error: BaseException) -> bool:
        """Record a failed attempt and schedule the retry.

        Returns:
            True if the operation is now terminally failed.
        """
        op.retry_count += 1
        op.error = str(error)
        op.status = OperationStatus.FAILED

        terminal = not is_retryable(error) or op.retry_count >= op.max_retries
        if terminal:
            op.next_attempt_at = None
            logger.error(
                f"Operation {op.id} ({op.type.value} {op.entity_type.value}/"
                f"{op.entity_id}) failed permanently after {op.retry_count} "
                f"attempt(s): {error}"
            )
        else:
            delay_ms = (2**op.retry_count) * 1000
            op.next_attempt_at = self._clock() + delay_ms
            logger.warning(
                f"Operation {op.id} failed (attempt {op.retry_count}/"
                f"{op.max_retries}), retrying in {delay_ms // 1000}s: {error}"
            )
        self.store.save_operation(op)

        if terminal:
            self.events.emit(
                EventType.OPERATION_FAILED,
                operation_id=op.id,
                entity_type=op.entity_type.value,
                entity_id=op.entity_id,
                error=op.error,
                retry_count=op.retry_count,
            )
        return terminal

    def assign_cloud_id(
        self, entity_type: EntityType | str, entity_id: str, cloud_id: str
    ) -> int:
        """Fill in the remote id on outstanding operations that lack it."""
        updated = 0
        for op in self.store.list_operations(
            statuses=[OperationStatus.PENDING, OperationStatus.FAILED],
            entity_type=entity_type,
            entity_id=entity_id,
        ):
            if op.cloud_id is None:
                op.cloud_id = cloud_id
                self.store.save_operation(op)
                updated += 1
        return updated

    def retry_failed_operations(self) -> int:
        """Reset every failed operation to pending with a fresh retry budget."""
        retried = 0
        for op in self.store.list_operations(statuses=[OperationStatus.FAILED]):
            op.status = OperationStatus.PENDING
            op.retry_count = 0
            op.next_attempt_at = None
            self.store.save_operation(op)
            retried += 1
        if retried:
            logger.info(f"Retrying {retried} failed operation(s)")
        return retried

    def discard_operation(self, operation_id: str) -> bool:
        """Remove a terminally failed operation.

        Returns:
            True if removed; False if missing or not terminal.
        """
        op = self.store.get_operation(operation_id)
        if op is None or not op.is_terminal:
            return False
        self.store.delete_operations([operation_id])
        logger.info(f"Discarded failed operation {operation_id}")
        return True

    def discard_failed_for_entity(
        self, entity_type: EntityType | str, entity_id: str
    ) -> int:
        """Remove an entity's terminally failed operations."""
        ops = self.store.list_operations(
            statuses=[OperationStatus.FAILED],
            entity_type=entity_type,
            entity_id=entity_id,
        )
        return self.store.delete_operations(op.id for op in ops if op.is_terminal)

    def remove_operations_for_entity(
        self, entity_type: EntityType | str, entity_id: str
    ) -> int:
        """Remove an entity's operations that are not in flight."""
        ops = self.store.list_operations(entity_type=entity_type, entity_id=entity_id)
        return self.store.delete_operations(
            op.id for op in ops if op.status != OperationStatus.SYNCING
        )

    def has_outstanding(self, entity_type: EntityType | str, entity_id: str) -> bool:
        return any(
            op.status != OperationStatus.COMPLETED
            for op in self.store.list_operations(
                entity_type=entity_type, entity_id=entity_id
            )
        )

    def clear_queue(self) -> int:
        """Remove every operation that is not in flight."""
        ops = self.store.list_operations()
        removed = self.store.delete_operations(
            op.id for op in ops if op.status != OperationStatus.SYNCING
        )
        logger.info(f"Cleared {removed} operation(s) from queue")
        return removed

    def cleanup_completed_operations(self) -> int:
        ops = self.store.list_operations(statuses=[OperationStatus.COMPLETED])
        return self.store.delete_operations(op.id for op in ops)

    def recover_stale_operations(self) -> int:
        """Return syncing operations with no live dispatch to pending.

        An operation is stale when it is marked syncing but nothing in this
        process is sending it (a crash mid-sync), or when its dispatch has run
        longer than ``processing_timeout``.
        """
        cutoff = self._clock() - int(self.processing_timeout * 1000)
        recovered = 0
        for op in self.store.list_operations(statuses=[OperationStatus.SYNCING]):
            started = self._in_flight.get(op.id)
            if started is not None and started > cutoff:
                continue
            op.status = OperationStatus.PENDING
            self.store.save_operation(op)
            recovered += 1
        if recovered:
            logger.warning(f"Recovered {recovered} stale syncing operation(s)")
        return recovered

    def get_queue_status(self) -> dict[str, Any]:
        """Counts by status and priority for status displays."""
        ops = self.store.list_operations()
        by_status = {status.value: 0 for status in OperationStatus}
        by_priority = {priority.value: 0 for priority in Priority}
        terminal = 0
        oldest_pending: int | None = None

        for op in ops:
            by_status[op.status.value] += 1
            if op.status != OperationStatus.COMPLETED:
                by_priority[op.priority.value] += 1
            if op.is_terminal:
                terminal += 1
            if op.status == OperationStatus.PENDING:
                if oldest_pending is None or op.timestamp < oldest_pending:
                    oldest_pending = op.timestamp

        return {
            "total": len(ops),
            "outstanding": len(ops) - by_status[OperationStatus.COMPLETED.value],
            "by_status": by_status,
            "by_priority": by_priority,
            "terminal_failures": terminal,
            "oldest_pending_timestamp": oldest_pending,
            "metrics": self.metrics.to_dict(),
            "estimated_sync_seconds": self.estimate_sync_time(
                by_status[OperationStatus.PENDING.value]
                + by_status[OperationStatus.SYNCING.value]
            ),
        }

    def estimate_sync_time(self, operation_count: int | None = None) -> float:
        """Estimate seconds needed to send ``operation_count`` operations.

        Batches are assumed to take as long as the average measured dispatch,
        or two seconds before anything has been measured. Defaults to the
        number of outstanding operations.
        """
        if operation_count is None:
            operation_count = self.size
        if operation_count <= 0:
            return 0.0
        average = self.metrics.average_processing_ms
        if average is None:
            average = DEFAULT_ESTIMATE_MS
        batches = math.ceil(operation_count / max(self.batch_size, 1))
        return batches * average / 1000

    @property
    def size(self) -> int:
        """Number of outstanding (not completed) operations."""
        return len(self._outstanding())
