"""Tests for the durable operation queue."""

import asyncio
import uuid
from datetime import timedelta

import pytest

from storesync.sync.models import OperationStatus, OperationType, QueuedOperation
from storesync.sync.operation_queue import OperationQueue
from storesync.utils.datetime import now_utc


@pytest.fixture
def queue(database):
    return OperationQueue(database, base_delay=5.0, max_delay=30.0, max_attempts=5)


def upload(local_id=None, **payload):
    return QueuedOperation(op_type=OperationType.UPLOAD_INVENTORY, local_id=local_id or uuid.uuid4(),
                           payload=payload)


def delete(local_id, **payload):
    return QueuedOperation(op_type=OperationType.DELETE_INVENTORY, local_id=local_id, payload=payload)


class TestEnqueueDequeue:
    """Test ordering and claiming."""

    def test_enqueue_assigns_sequence_and_idempotency_key(self, queue):
        first = queue.enqueue(upload())
        second = queue.enqueue(upload())

        assert second.sequence > first.sequence
        assert first.idempotency_key and second.idempotency_key
        assert first.idempotency_key != second.idempotency_key
        assert queue.get(first.id).status is OperationStatus.PENDING

    def test_dequeue_is_fifo(self, queue):
        ops = [queue.enqueue(upload()) for _ in range(3)]

        claimed = [queue.dequeue_next().id for _ in range(3)]

        assert claimed == [op.id for op in ops]
        assert queue.dequeue_next() is None

    def test_dequeue_marks_in_progress(self, queue):
        op = queue.enqueue(upload())

        claimed = queue.dequeue_next()

        assert claimed.id == op.id
        assert claimed.status is OperationStatus.IN_PROGRESS
        assert queue.get(op.id).status is OperationStatus.IN_PROGRESS

    def test_payload_round_trip(self, queue):
        op = queue.enqueue(upload(entity_kind="inventory_item", snapshot={"name": "Widget"}))

        stored = queue.get(op.id)

        assert stored.payload == {"entity_kind": "inventory_item", "snapshot": {"name": "Widget"}}

    def test_same_entity_operations_wait_for_predecessor(self, queue):
        local_id = uuid.uuid4()
        update = queue.enqueue(upload(local_id))
        removal = queue.enqueue(delete(local_id))
        other = queue.enqueue(upload())

        first = queue.dequeue_next()
        second = queue.dequeue_next()

        assert first.id == update.id
        # the delete is blocked while the update is in flight
        assert second.id == other.id
        assert queue.dequeue_next() is None

        queue.complete(update.id)
        assert queue.dequeue_next().id == removal.id

    def test_backed_off_predecessor_still_blocks(self, queue):
        local_id = uuid.uuid4()
        update = queue.enqueue(upload(local_id))
        queue.enqueue(delete(local_id))

        queue.dequeue_next()
        queue.fail(update.id, "network down")

        assert queue.dequeue_next() is None

    def test_terminally_failed_predecessor_does_not_block(self, queue):
        local_id = uuid.uuid4()
        update = queue.enqueue(upload(local_id))
        removal = queue.enqueue(delete(local_id))

        queue.dequeue_next()
        queue.fail(update.id, "bad payload", retryable=False)

        assert queue.dequeue_next().id == removal.id

    def test_future_retry_is_not_eligible(self, queue):
        op = queue.enqueue(upload())
        queue.dequeue_next()
        failed = queue.fail(op.id, "timeout")

        assert queue.dequeue_next() is None
        assert queue.dequeue_next(now=failed.next_retry_at).id == op.id

    async def test_update_applied_before_delete_with_concurrent_workers(self, queue):
        local_id = uuid.uuid4()
        queue.enqueue(upload(local_id))
        queue.enqueue(delete(local_id))
        applied = []

        async def worker():
            while True:
                op = queue.dequeue_next()
                if op is None:
                    return
                await asyncio.sleep(0.01)
                applied.append(op.op_type)
                queue.complete(op.id)

        async def drain():
            while queue.pending_count():
                await asyncio.gather(*(worker() for _ in range(4)))

        await drain()

        assert applied == [OperationType.UPLOAD_INVENTORY, OperationType.DELETE_INVENTORY]


class TestFailureHandling:
    """Test backoff, terminal failure and manual retry."""

    def test_backoff_gaps_grow_and_cap(self, queue):
        op = queue.enqueue(upload())
        now = now_utc()
        gaps = []
        for _ in range(4):
            failed = queue.fail(op.id, "network down", now=now)
            gaps.append(failed.next_retry_at - now)

        assert gaps[0] == timedelta(seconds=5)
        assert gaps[0] < gaps[1] < gaps[2]
        assert gaps[2] == timedelta(seconds=20)
        assert gaps[3] == timedelta(seconds=30)

    def test_backoff_never_exceeds_max_delay(self, queue):
        for attempts in range(20):
            assert queue.backoff_delay(attempts) <= timedelta(seconds=30)

    def test_max_attempts_makes_failure_terminal(self, queue):
        op = queue.enqueue(upload())
        for attempt in range(5):
            failed = queue.fail(op.id, f"failure {attempt}")

        assert failed.status is OperationStatus.FAILED
        assert failed.attempt_count == 5
        assert failed.last_error == "failure 4"
        assert [o.id for o in queue.failed_operations()] == [op.id]

    def test_non_retryable_failure_is_terminal_immediately(self, queue):
        op = queue.enqueue(upload())

        failed = queue.fail(op.id, "invalid response", retryable=False)

        assert failed.status is OperationStatus.FAILED
        assert failed.attempt_count == 1

    def test_fail_unknown_operation(self, queue):
        assert queue.fail(uuid.uuid4(), "gone") is None

    def test_retry_keeps_idempotency_key(self, queue):
        op = queue.enqueue(upload())
        queue.fail(op.id, "invalid response", retryable=False)

        retried = queue.retry(op.id)

        assert retried.status is OperationStatus.PENDING
        assert retried.attempt_count == 0
        assert retried.idempotency_key == op.idempotency_key
        assert queue.dequeue_next().id == op.id

    def test_retry_only_applies_to_failed_operations(self, queue):
        op = queue.enqueue(upload())

        assert queue.retry(op.id) is None

    def test_recover_interrupted_returns_operations_to_pending(self, queue):
        op = queue.enqueue(upload())
        queue.dequeue_next()

        assert queue.recover_interrupted() == 1
        recovered = queue.dequeue_next()

        assert recovered.id == op.id
        assert recovered.idempotency_key == op.idempotency_key
        queue.complete(op.id)
        assert queue.dequeue_next() is None
        assert queue.recover_interrupted() == 0

    def test_has_pending_and_counts(self, queue):
        local_id = uuid.uuid4()
        op = queue.enqueue(upload(local_id))

        assert queue.has_pending(local_id)
        assert queue.has_pending(local_id, OperationType.UPLOAD_INVENTORY)
        assert not queue.has_pending(local_id, OperationType.DELETE_INVENTORY)
        assert queue.pending_count() == 1

        queue.dequeue_next()
        queue.complete(op.id)

        assert not queue.has_pending(local_id)
        assert queue.pending_count() == 0

    def test_composite_steps_are_persisted_in_order(self, queue):
        local_id = uuid.uuid4()
        composite = QueuedOperation.composite(
            local_id,
            [upload(local_id, entity_kind="inventory_item"), delete(local_id, remote_object_id="R1")],
        )

        stored = queue.get(queue.enqueue(composite).id)

        assert [step["op_type"] for step in stored.steps] == ["upload_inventory", "delete_inventory"]
