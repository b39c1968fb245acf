"""Append-only audit trail of sync actions."""

import json
import sqlite3
import logging
import uuid
from datetime import datetime
from typing import Dict, List, Optional

from .database import SyncDatabase, to_db_timestamp, from_db_timestamp
from .identity_map import IdentityMap
from .models import AuditEntry, AuditOperation, SyncState


logger = logging.getLogger(__name__)


class SyncAuditLog:
    """Records every sync attempt; entries are never updated or deleted."""

    def __init__(self, database: SyncDatabase, identity_map: Optional[IdentityMap] = None):
        self.db = database
        self.identity_map = identity_map
        self.logger = logging.getLogger(__name__)

    def record(self, entry: AuditEntry, conn: Optional[sqlite3.Connection] = None) -> AuditEntry:
        with self.db.transaction(conn) as c:
            c.execute(
                """
                INSERT INTO audit_entries
                (id, timestamp, operation, outcome, batch_id, entity_id, remote_object_id,
                 error_message, changed_fields, duration_ms, details)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(entry.id),
                    to_db_timestamp(entry.timestamp),
                    entry.operation.value,
                    entry.outcome.value,
                    str(entry.batch_id) if entry.batch_id else None,
                    str(entry.entity_id) if entry.entity_id else None,
                    entry.remote_object_id,
                    entry.error_message,
                    json.dumps(list(entry.changed_fields)),
                    entry.duration_ms,
                    entry.details,
                ),
            )
        if entry.outcome is SyncState.FAILED:
            self.logger.debug(
                f"Audit {entry.operation.value} failed for {entry.entity_id or entry.remote_object_id}: "
                f"{entry.error_message}"
            )
        return entry

    def query_batch(self, batch_id: uuid.UUID) -> List[AuditEntry]:
        """All entries written by one batch, oldest first."""
        return self._query(
            "SELECT * FROM audit_entries WHERE batch_id = ? ORDER BY timestamp, rowid",
            (str(batch_id),),
        )

    def query_range(self, start: datetime, end: datetime) -> List[AuditEntry]:
        """Entries with start <= timestamp <= end, oldest first."""
        return self._query(
            "SELECT * FROM audit_entries WHERE timestamp >= ? AND timestamp <= ? "
            "ORDER BY timestamp, rowid",
            (to_db_timestamp(start), to_db_timestamp(end)),
        )

    def history_for_entity(self, local_id: uuid.UUID) -> List[AuditEntry]:
        """Entries about one local entity, including those only keyed by its remote id."""
        remote_id = None
        if self.identity_map is not None:
            mapping = self.identity_map.lookup(local_id)
            remote_id = mapping.remote_object_id if mapping else None

        if remote_id is None:
            return self._query(
                "SELECT * FROM audit_entries WHERE entity_id = ? ORDER BY timestamp, rowid",
                (str(local_id),),
            )
        return self._query(
            "SELECT * FROM audit_entries WHERE entity_id = ? OR remote_object_id = ? "
            "ORDER BY timestamp, rowid",
            (str(local_id), remote_id),
        )

    def recent(self, limit: int = 20, operation: Optional[AuditOperation] = None) -> List[AuditEntry]:
        """Most recent entries, newest first."""
        if operation is None:
            return self._query(
                "SELECT * FROM audit_entries ORDER BY timestamp DESC, rowid DESC LIMIT ?",
                (limit,),
            )
        return self._query(
            "SELECT * FROM audit_entries WHERE operation = ? "
            "ORDER BY timestamp DESC, rowid DESC LIMIT ?",
            (operation.value, limit),
        )

    def duration_stats(self) -> Dict[str, Optional[float]]:
        """Last and average duration of batch summaries in milliseconds."""
        batch_ops = (AuditOperation.BATCH_IMPORT.value, AuditOperation.BATCH_EXPORT.value)
        with self.db.connect() as conn:
            average = conn.execute(
                "SELECT AVG(duration_ms) FROM audit_entries WHERE operation IN (?, ?)",
                batch_ops,
            ).fetchone()[0]
            last = conn.execute(
                "SELECT duration_ms FROM audit_entries WHERE operation IN (?, ?) "
                "ORDER BY timestamp DESC, rowid DESC LIMIT 1",
                batch_ops,
            ).fetchone()
        return {
            'last_ms': last[0] if last else None,
            'average_ms': average,
        }

    def _query(self, sql: str, params: tuple) -> List[AuditEntry]:
        with self.db.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def _row_to_entry(self, row: sqlite3.Row) -> AuditEntry:
        return AuditEntry(
            id=uuid.UUID(row['id']),
            timestamp=from_db_timestamp(row['timestamp']),
            operation=AuditOperation(row['operation']),
            outcome=SyncState(row['outcome']),
            batch_id=row['batch_id'],
            entity_id=row['entity_id'],
            remote_object_id=row['remote_object_id'],
            error_message=row['error_message'],
            changed_fields=tuple(json.loads(row['changed_fields'] or '[]')),
            duration_ms=row['duration_ms'],
            details=row['details'],
        )
