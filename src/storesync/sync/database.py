"""SQLite persistence for the sync subsystem's own tables.

Identity mappings, audit entries, queued operations, run locks and sync
metadata live in one SQLite file that is independent of the business-entity
schema, so it can be wiped and rebuilt for a full resync.
"""

import json
import sqlite3
import logging
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional, Union

from ..utils.datetime import ensure_aware, parse_iso


logger = logging.getLogger(__name__)


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS identity_mappings (
        local_id TEXT PRIMARY KEY,
        entity_kind TEXT NOT NULL,
        remote_object_id TEXT NOT NULL,
        remote_sub_object_id TEXT,
        last_synced_at TEXT NOT NULL,
        sync_state TEXT NOT NULL DEFAULT 'pending',
        direction TEXT NOT NULL DEFAULT 'bidirectional',
        conflict_strategy TEXT NOT NULL DEFAULT 'most_recent_wins',
        version INTEGER NOT NULL DEFAULT 1,
        remote_version INTEGER,
        last_error TEXT,
        created_at TEXT NOT NULL
    )
    """,
    # at most one active mapping per remote object
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_mappings_active_remote
    ON identity_mappings(remote_object_id) WHERE sync_state != 'disabled'
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_mappings_state
    ON identity_mappings(sync_state)
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_entries (
        id TEXT PRIMARY KEY,
        timestamp TEXT NOT NULL,
        operation TEXT NOT NULL,
        outcome TEXT NOT NULL,
        batch_id TEXT,
        entity_id TEXT,
        remote_object_id TEXT,
        error_message TEXT,
        changed_fields TEXT NOT NULL DEFAULT '[]',
        duration_ms REAL NOT NULL DEFAULT 0,
        details TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_audit_batch ON audit_entries(batch_id)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_entries(timestamp)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_audit_entity ON audit_entries(entity_id)
    """,
    """
    CREATE TRIGGER IF NOT EXISTS audit_entries_no_update
    BEFORE UPDATE ON audit_entries
    BEGIN
        SELECT RAISE(ABORT, 'audit entries are append-only');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS audit_entries_no_delete
    BEFORE DELETE ON audit_entries
    BEGIN
        SELECT RAISE(ABORT, 'audit entries are append-only');
    END
    """,
    """
    CREATE TABLE IF NOT EXISTS queued_operations (
        sequence INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        op_type TEXT NOT NULL,
        local_id TEXT,
        payload TEXT NOT NULL DEFAULT '{}',
        idempotency_key TEXT NOT NULL,
        enqueued_at TEXT NOT NULL,
        attempt_count INTEGER NOT NULL DEFAULT 0,
        last_attempt_at TEXT,
        next_retry_at TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        last_error TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_queue_status
    ON queued_operations(status, next_retry_at)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_queue_local_id
    ON queued_operations(local_id, sequence)
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_locks (
        target TEXT PRIMARY KEY,
        owner_token TEXT NOT NULL,
        acquired_at TEXT NOT NULL,
        heartbeat_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_meta (
        key TEXT PRIMARY KEY,
        value TEXT
    )
    """,
]


def to_db_timestamp(dt: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC ISO string so timestamps sort lexicographically."""
    if dt is None:
        return None
    return ensure_aware(dt).isoformat(timespec="microseconds")


def from_db_timestamp(value: Optional[str]) -> Optional[datetime]:
    return parse_iso(value) if value else None


class SyncDatabase:
    """Connection factory and schema owner for the sync tables."""

    def __init__(self, db_path: Union[str, Path], busy_timeout: float = 30.0):
        """Initialize the database.

        Args:
            db_path: Path of the SQLite file (parent directories are created)
            busy_timeout: Seconds to wait on a locked database
        """
        self.db_path = Path(db_path)
        self.busy_timeout = busy_timeout
        self.logger = logging.getLogger(__name__)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_database()

    def _init_database(self):
        """Create tables, indexes and triggers if missing."""
        with self.connect() as conn:
            for statement in SCHEMA:
                conn.execute(statement)
        self.logger.debug(f"Initialized sync database at {self.db_path}")

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Open an autocommit connection; closed on exit."""
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self, conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
        """Run a block inside ``BEGIN IMMEDIATE`` ... ``COMMIT``.

        When an outer transaction's connection is passed in, the block joins it
        and the outer caller decides whether to commit.
        """
        if conn is not None:
            yield conn
            return

        with self.connect() as own:
            own.execute("BEGIN IMMEDIATE")
            try:
                yield own
            except BaseException:
                own.execute("ROLLBACK")
                raise
            else:
                own.execute("COMMIT")

    # Sync metadata

    def get_meta(self, key: str, conn: Optional[sqlite3.Connection] = None) -> Optional[str]:
        with self.transaction(conn) as c:
            row = c.execute("SELECT value FROM sync_meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_meta(self, key: str, value: Optional[str], conn: Optional[sqlite3.Connection] = None):
        with self.transaction(conn) as c:
            c.execute(
                "INSERT INTO sync_meta (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )

    def get_meta_json(self, key: str, default=None):
        raw = self.get_meta(key)
        return json.loads(raw) if raw else default

    def set_meta_json(self, key: str, value, conn: Optional[sqlite3.Connection] = None):
        self.set_meta(key, json.dumps(value), conn=conn)

    def reset_sync_state(self) -> dict:
        """Wipe mappings, queue, locks and cursors for a full resync.

        The audit trail is append-only and survives the reset.

        Returns:
            Number of rows removed per table
        """
        removed = {}
        with self.transaction() as conn:
            for table in ("identity_mappings", "queued_operations", "sync_locks", "sync_meta"):
                cursor = conn.execute(f"DELETE FROM {table}")
                removed[table] = cursor.rowcount
        self.logger.info(f"Reset sync state: {removed}")
        return removed
