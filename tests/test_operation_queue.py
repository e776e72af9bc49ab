"""Tests for the durable operation queue."""

import pytest
from unittest.mock import AsyncMock

from ledgersync.errors import RemoteValidationError, TransportError
from ledgersync.events import EventEmitter, EventType
from ledgersync.queue import OperationQueue
from ledgersync.store import OperationStatus, OperationType, Priority


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, start: int = 1_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def events():
    return EventEmitter()


@pytest.fixture
def queue(store, events, clock):
    return OperationQueue(store, events=events, clock=clock)


def _card(name: str) -> dict:
    return {"name": name}


class TestAddOperation:
    """Tests for enqueueing."""

    def test_default_priority_by_type(self, queue):
        create = queue.add_operation("create", "cards", "card_1", _card("a"))
        update = queue.add_operation("update", "cards", "card_2", _card("b"))
        delete = queue.add_operation("delete", "cards", "card_3", _card("c"))

        assert create.priority == Priority.HIGH
        assert update.priority == Priority.MEDIUM
        assert delete.priority == Priority.LOW
        assert create.status == OperationStatus.PENDING
        assert create.max_retries == 3

    def test_persisted(self, queue, store):
        op = queue.add_operation(OperationType.CREATE, "cards", "card_1", _card("a"))

        stored = store.get_operation(op.id)
        assert stored.payload.name == "a"
        assert stored.seq == op.seq

    def test_duplicate_pending_reused(self, queue):
        first = queue.add_operation("update", "cards", "card_1", _card("a"))
        second = queue.add_operation("update", "cards", "card_1", _card("a"))
        third = queue.add_operation("update", "cards", "card_1", _card("b"))

        assert second.id == first.id
        assert third.id != first.id
        assert queue.size == 2

    def test_max_size_drops_lowest_priority(self, store, events, clock):
        dropped = []
        events.subscribe(dropped.append)
        queue = OperationQueue(store, events=events, clock=clock, max_queue_size=2)

        low = queue.add_operation("delete", "cards", "card_1", _card("a"))
        queue.add_operation("create", "cards", "card_2", _card("b"))
        queue.add_operation("create", "cards", "card_3", _card("c"))

        assert queue.size == 2
        assert queue.get_operation(low.id) is None
        assert len(dropped) == 1
        assert dropped[0].type == EventType.OPERATION_DROPPED
        assert dropped[0].payload["operation_id"] == low.id


class TestOrdering:
    """Tests for batch selection."""

    def test_priority_then_fifo(self, queue, clock):
        """Test A(high, t1), B(low, t0), C(high, t2) dispatch as A, C, B."""
        b = queue.add_operation("update", "cards", "card_b", _card("b"), priority="low")
        clock.advance(10)
        a = queue.add_operation("update", "cards", "card_a", _card("a"), priority="high")
        clock.advance(10)
        c = queue.add_operation("update", "cards", "card_c", _card("c"), priority="high")

        batch = queue.get_next_batch()

        assert [op.id for op in batch] == [a.id, c.id, b.id]

    def test_one_operation_per_entity(self, queue):
        """Test an entity's later ops wait for the earlier one."""
        create = queue.add_operation("create", "cards", "card_1", _card("a"))
        queue.add_operation("update", "cards", "card_1", _card("b"), priority="high")

        batch = queue.get_next_batch()

        assert [op.id for op in batch] == [create.id]

    def test_min_priority_and_batch_size(self, store, clock):
        queue = OperationQueue(store, clock=clock, batch_size=2)
        for i in range(3):
            queue.add_operation("create", "cards", f"card_{i}", _card(str(i)))
        queue.add_operation("delete", "cards", "card_x", _card("x"))

        assert len(queue.get_next_batch()) == 2
        high_only = queue.get_next_batch(min_priority=Priority.HIGH)
        assert all(op.priority == Priority.HIGH for op in high_only)

    def test_restrict_to_ids(self, queue):
        first = queue.add_operation("create", "cards", "card_1", _card("a"))
        queue.add_operation("create", "cards", "card_2", _card("b"))

        batch = queue.get_next_batch(operations=[first.id])

        assert [op.id for op in batch] == [first.id]


class TestProcessQueue:
    """Tests for dispatch, retry and backoff."""

    @pytest.mark.asyncio
    async def test_success(self, queue):
        op = queue.add_operation("create", "cards", "card_1", _card("a"))
        dispatch = AsyncMock(return_value={"id": "cloud_1"})

        outcomes = await queue.process_queue(dispatch)

        assert len(outcomes) == 1
        assert outcomes[0].success
        assert outcomes[0].result == {"id": "cloud_1"}
        assert queue.get_operation(op.id).status == OperationStatus.COMPLETED
        assert queue.cleanup_completed_operations() == 1
        assert queue.size == 0

    @pytest.mark.asyncio
    async def test_retries_exactly_max_attempts(self, queue, clock, events):
        """Test an always-failing op is attempted 3 times with 2s, 4s backoff."""
        failed_events = []
        events.subscribe(failed_events.append)
        op = queue.add_operation("create", "cards", "card_1", _card("a"))
        dispatch = AsyncMock(side_effect=TransportError("offline"))

        await queue.process_queue(dispatch)
        stored = queue.get_operation(op.id)
        assert stored.retry_count == 1
        assert stored.next_attempt_at == clock.now + 2000

        # Not due yet
        assert await queue.process_queue(dispatch) == []

        clock.advance(2000)
        await queue.process_queue(dispatch)
        assert queue.get_operation(op.id).next_attempt_at == clock.now + 4000

        clock.advance(4000)
        outcomes = await queue.process_queue(dispatch)
        assert outcomes[0].terminal

        clock.advance(60_000)
        assert await queue.process_queue(dispatch) == []

        stored = queue.get_operation(op.id)
        assert dispatch.await_count == 3
        assert stored.retry_count == 3
        assert stored.is_terminal
        assert stored.error == "offline"
        assert [e.type for e in failed_events] == [EventType.OPERATION_FAILED]

    @pytest.mark.asyncio
    async def test_rejection_is_terminal_immediately(self, queue):
        op = queue.add_operation("create", "cards", "card_1", _card("a"))
        dispatch = AsyncMock(side_effect=RemoteValidationError("bad", 400))

        outcomes = await queue.process_queue(dispatch)

        assert outcomes[0].terminal
        assert queue.get_operation(op.id).retry_count == 1
        assert queue.get_operation(op.id).is_terminal

    @pytest.mark.asyncio
    async def test_terminal_failure_blocks_entity(self, queue):
        queue.add_operation("create", "cards", "card_1", _card("a"))
        queue.add_operation("update", "cards", "card_1", _card("b"))

        await queue.process_queue(AsyncMock(side_effect=RemoteValidationError("bad")))

        assert queue.get_next_batch() == []

    @pytest.mark.asyncio
    async def test_failure_does_not_abort_batch(self, queue):
        ok = queue.add_operation("create", "cards", "card_1", _card("a"))
        bad = queue.add_operation("create", "cards", "card_2", _card("b"))

        async def dispatch(op):
            if op.id == bad.id:
                raise TransportError("boom")
            return {"id": "cloud"}

        outcomes = await queue.process_queue(dispatch)

        by_id = {o.operation.id: o for o in outcomes}
        assert by_id[ok.id].success
        assert not by_id[bad.id].success

    @pytest.mark.asyncio
    async def test_should_continue_returns_ops_to_pending(self, queue):
        op = queue.add_operation("create", "cards", "card_1", _card("a"))
        dispatch = AsyncMock()

        outcomes = await queue.process_queue(dispatch, should_continue=lambda: False)

        assert outcomes[0].skipped
        dispatch.assert_not_awaited()
        assert queue.get_operation(op.id).status == OperationStatus.PENDING


class TestMaintenance:
    """Tests for retry, discard and recovery."""

    @pytest.mark.asyncio
    async def test_retry_failed_operations(self, queue):
        op = queue.add_operation("create", "cards", "card_1", _card("a"))
        await queue.process_queue(AsyncMock(side_effect=RemoteValidationError("bad")))

        assert queue.retry_failed_operations() == 1

        stored = queue.get_operation(op.id)
        assert stored.status == OperationStatus.PENDING
        assert stored.retry_count == 0

    @pytest.mark.asyncio
    async def test_discard_only_terminal(self, queue):
        pending = queue.add_operation("create", "cards", "card_1", _card("a"))
        assert queue.discard_operation(pending.id) is False

        await queue.process_queue(AsyncMock(side_effect=RemoteValidationError("bad")))

        assert queue.discard_operation(pending.id) is True
        assert queue.get_operation(pending.id) is None

    def test_recover_stale_operations(self, queue, store):
        op = queue.add_operation("create", "cards", "card_1", _card("a"))
        op.status = OperationStatus.SYNCING
        store.save_operation(op)

        assert queue.recover_stale_operations() == 1
        assert queue.get_operation(op.id).status == OperationStatus.PENDING

    def test_assign_cloud_id(self, queue):
        queue.add_operation("update", "cards", "card_1", _card("a"))

        assert queue.assign_cloud_id("cards", "card_1", "cloud_9") == 1
        assert queue.get_next_batch()[0].cloud_id == "cloud_9"

    def test_clear_and_status(self, queue):
        queue.add_operation("create", "cards", "card_1", _card("a"))
        queue.add_operation("delete", "cards", "card_2", _card("b"))

        status = queue.get_queue_status()
        assert status["outstanding"] == 2
        assert status["by_priority"]["high"] == 1
        assert status["by_priority"]["low"] == 1

        assert queue.clear_queue() == 2
        assert queue.size == 0

    def test_remove_operations_for_entity(self, queue):
        queue.add_operation("create", "cards", "card_1", _card("a"))
        queue.add_operation("update", "cards", "card_1", _card("b"))
        queue.add_operation("create", "cards", "card_2", _card("c"))

        assert queue.remove_operations_for_entity("cards", "card_1") == 2
        assert not queue.has_outstanding("cards", "card_1")
        assert queue.has_outstanding("cards", "card_2")


class TestMetrics:
    """Tests for dispatch timing and sync time estimates."""

    @pytest.mark.asyncio
    async def test_processing_time_and_success_rate(self, queue, clock):
        ok = queue.add_operation("create", "cards", "card_1", _card("a"))
        queue.add_operation("create", "cards", "card_2", _card("b"))

        async def dispatch(op):
            clock.advance(500)
            if op.id != ok.id:
                raise TransportError("offline")
            return {"id": "cloud_1"}

        await queue.process_queue(dispatch)

        metrics = queue.get_queue_status()["metrics"]
        assert metrics["successful"] == 1
        assert metrics["failed"] == 1
        assert metrics["success_rate"] == 0.5
        assert metrics["average_processing_ms"] > 0
        assert metrics["last_processed_at"] == clock.now

    def test_estimate_uses_default_before_measurement(self, queue):
        assert queue.estimate_sync_time() == 0.0

        for i in range(11):
            queue.add_operation("create", "cards", f"card_{i}", _card(str(i)))

        # Two batches of ten at two seconds each
        assert queue.estimate_sync_time() == 4.0
        assert queue.get_queue_status()["estimated_sync_seconds"] == 4.0
        assert queue.get_queue_status()["metrics"]["success_rate"] is None

    @pytest.mark.asyncio
    async def test_estimate_uses_measured_average(self, queue, clock):
        queue.add_operation("create", "cards", "card_1", _card("a"))

        async def dispatch(op):
            clock.advance(300)
            return {"id": "cloud_1"}

        await queue.process_queue(dispatch)

        assert queue.metrics.average_processing_ms == 300
        assert queue.estimate_sync_time(25) == pytest.approx(0.9)
