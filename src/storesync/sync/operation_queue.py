"""Durable offline operation queue with exponential backoff.

Operations are persisted in the ``queued_operations`` table and handed out in
enqueue order. An operation is only eligible when no earlier operation for the
same local entity is still pending or in progress, so an update can never
overtake the delete (or create) queued before it.
"""

import json
import sqlite3
import logging
import uuid
from datetime import datetime, timedelta
from typing import List, Optional

from ..utils.datetime import now_utc
from .database import SyncDatabase, to_db_timestamp, from_db_timestamp
from .models import OperationStatus, OperationType, QueuedOperation


logger = logging.getLogger(__name__)


DEFAULT_BASE_DELAY = 5.0
DEFAULT_MAX_DELAY = 15 * 60.0
DEFAULT_MAX_ATTEMPTS = 5


class OperationQueue:
    """SQLite-backed queue of pending sync operations."""

    def __init__(self, database: SyncDatabase, base_delay: float = DEFAULT_BASE_DELAY,
                 max_delay: float = DEFAULT_MAX_DELAY, max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        """Initialize the queue.

        Args:
            database: Sync database holding the queue table
            base_delay: Seconds before the first retry
            max_delay: Upper bound for the retry delay in seconds
            max_attempts: Failures after which an operation is terminal
        """
        self.db = database
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_attempts = max_attempts
        self.logger = logging.getLogger(__name__)

    def backoff_delay(self, attempts_before: int) -> timedelta:
        """Delay after a failure, given the attempt count before that failure."""
        seconds = min(self.base_delay * (2 ** attempts_before), self.max_delay)
        return timedelta(seconds=seconds)

    def enqueue(self, op: QueuedOperation, conn: Optional[sqlite3.Connection] = None) -> QueuedOperation:
        """Persist a new operation as pending.

        The idempotency key is generated here once and reused on every retry.
        """
        if not op.idempotency_key:
            op.idempotency_key = uuid.uuid4().hex
        if op.next_retry_at is None:
            op.next_retry_at = op.enqueued_at
        op.status = OperationStatus.PENDING

        with self.db.transaction(conn) as c:
            cursor = c.execute(
                """
                INSERT INTO queued_operations
                (id, op_type, local_id, payload, idempotency_key, enqueued_at,
                 attempt_count, last_attempt_at, next_retry_at, status, last_error)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(op.id),
                    op.op_type.value,
                    str(op.local_id) if op.local_id else None,
                    json.dumps(op.payload, default=str),
                    op.idempotency_key,
                    to_db_timestamp(op.enqueued_at),
                    op.attempt_count,
                    to_db_timestamp(op.last_attempt_at),
                    to_db_timestamp(op.next_retry_at),
                    op.status.value,
                    op.last_error,
                ),
            )
            op.sequence = cursor.lastrowid

        self.logger.debug(f"Enqueued {op.op_type.value} #{op.sequence} for {op.local_id}")
        return op

    def dequeue_next(self, now: Optional[datetime] = None) -> Optional[QueuedOperation]:
        """Claim the oldest eligible operation and mark it in progress.

        Args:
            now: Reference time for ``next_retry_at`` (defaults to now)

        Returns:
            The claimed operation, or None if nothing is eligible
        """
        now = now or now_utc()
        with self.db.transaction() as conn:
            row = conn.execute(
                """
                SELECT * FROM queued_operations q
                WHERE q.status = 'pending'
                  AND q.next_retry_at <= ?
                  AND NOT EXISTS (
                      SELECT 1 FROM queued_operations p
                      WHERE p.local_id = q.local_id
                        AND p.sequence < q.sequence
                        AND p.status IN ('pending', 'in_progress')
                  )
                ORDER BY q.sequence
                LIMIT 1
                """,
                (to_db_timestamp(now),),
            ).fetchone()
            if row is None:
                return None

            cursor = conn.execute(
                """
                UPDATE queued_operations
                SET status = 'in_progress', last_attempt_at = ?
                WHERE id = ? AND status = 'pending'
                """,
                (to_db_timestamp(now), row['id']),
            )
            if cursor.rowcount == 0:
                return None

            op = self._row_to_operation(row)
        op.status = OperationStatus.IN_PROGRESS
        op.last_attempt_at = now
        return op

    def complete(self, op_id: uuid.UUID, conn: Optional[sqlite3.Connection] = None):
        with self.db.transaction(conn) as c:
            c.execute(
                "UPDATE queued_operations SET status = 'completed', last_error = NULL WHERE id = ?",
                (str(op_id),),
            )

    def fail(self, op_id: uuid.UUID, error: str, retryable: bool = True,
             now: Optional[datetime] = None) -> Optional[QueuedOperation]:
        """Record a failed attempt.

        Retryable failures are rescheduled with exponential backoff until
        ``max_attempts`` is reached; after that, or for a non-retryable error,
        the operation is terminally failed and kept for manual retry.

        Returns:
            The updated operation, or None if it does not exist
        """
        now = now or now_utc()
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM queued_operations WHERE id = ?", (str(op_id),)
            ).fetchone()
            if row is None:
                return None

            op = self._row_to_operation(row)
            attempts_before = op.attempt_count
            op.attempt_count += 1
            op.last_attempt_at = now
            op.last_error = error

            if retryable and op.attempt_count < self.max_attempts:
                op.status = OperationStatus.PENDING
                op.next_retry_at = now + self.backoff_delay(attempts_before)
            else:
                op.status = OperationStatus.FAILED

            conn.execute(
                """
                UPDATE queued_operations
                SET attempt_count = ?, last_attempt_at = ?, next_retry_at = ?,
                    status = ?, last_error = ?
                WHERE id = ?
                """,
                (
                    op.attempt_count,
                    to_db_timestamp(op.last_attempt_at),
                    to_db_timestamp(op.next_retry_at),
                    op.status.value,
                    op.last_error,
                    str(op.id),
                ),
            )

        if op.status is OperationStatus.FAILED:
            self.logger.error(
                f"Operation {op.op_type.value} #{op.sequence} failed permanently "
                f"after {op.attempt_count} attempt(s): {error}"
            )
        else:
            self.logger.warning(
                f"Operation {op.op_type.value} #{op.sequence} failed, retrying at "
                f"{op.next_retry_at.isoformat()}: {error}"
            )
        return op

    def retry(self, op_id: uuid.UUID) -> Optional[QueuedOperation]:
        """Return a terminally failed operation to the queue.

        The idempotency key is kept so a write that did land is not repeated.
        """
        now = now_utc()
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE queued_operations
                SET status = 'pending', attempt_count = 0, next_retry_at = ?, last_error = NULL
                WHERE id = ? AND status = 'failed'
                """,
                (to_db_timestamp(now), str(op_id)),
            )
            if cursor.rowcount == 0:
                return None
        self.logger.info(f"Requeued operation {op_id}")
        return self.get(op_id)

    def recover_interrupted(self) -> int:
        """Return operations left in progress by a crashed run to pending.

        Returns:
            Number of operations recovered
        """
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE queued_operations SET status = 'pending' WHERE status = 'in_progress'"
            )
            recovered = cursor.rowcount
        if recovered:
            self.logger.info(f"Recovered {recovered} interrupted operation(s)")
        return recovered

    def has_pending(self, local_id: uuid.UUID, op_type: Optional[OperationType] = None) -> bool:
        """True if a not-yet-finished operation exists for the entity."""
        query = (
            "SELECT 1 FROM queued_operations "
            "WHERE local_id = ? AND status IN ('pending', 'in_progress')"
        )
        params = [str(local_id)]
        if op_type is not None:
            query += " AND op_type = ?"
            params.append(op_type.value)
        with self.db.connect() as conn:
            return conn.execute(query + " LIMIT 1", params).fetchone() is not None

    def get(self, op_id: uuid.UUID) -> Optional[QueuedOperation]:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM queued_operations WHERE id = ?", (str(op_id),)
            ).fetchone()
        return self._row_to_operation(row) if row else None

    def pending_count(self) -> int:
        with self.db.connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM queued_operations WHERE status IN ('pending', 'in_progress')"
            ).fetchone()[0]

    def failed_operations(self) -> List[QueuedOperation]:
        return self.list_operations(OperationStatus.FAILED)

    def list_operations(self, status: Optional[OperationStatus] = None,
                        limit: Optional[int] = None) -> List[QueuedOperation]:
        """List operations in enqueue order, optionally filtered by status."""
        query = "SELECT * FROM queued_operations"
        params: list = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(status.value)
        query += " ORDER BY sequence"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self.db.connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_operation(row) for row in rows]

    def _row_to_operation(self, row: sqlite3.Row) -> QueuedOperation:
        """Convert database row to QueuedOperation object."""
        return QueuedOperation(
            id=uuid.UUID(row['id']),
            sequence=row['sequence'],
            op_type=OperationType(row['op_type']),
            local_id=row['local_id'],
            payload=json.loads(row['payload']) if row['payload'] else {},
            idempotency_key=row['idempotency_key'],
            enqueued_at=from_db_timestamp(row['enqueued_at']),
            attempt_count=row['attempt_count'],
            last_attempt_at=from_db_timestamp(row['last_attempt_at']),
            next_retry_at=from_db_timestamp(row['next_retry_at']),
            status=OperationStatus(row['status']),
            last_error=row['last_error'],
        )
