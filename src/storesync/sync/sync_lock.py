"""Persisted run lock: one running batch per sync target."""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from ..utils.datetime import now_utc
from .database import SyncDatabase, to_db_timestamp, from_db_timestamp
from .errors import SyncInProgressError


logger = logging.getLogger(__name__)


class SyncLock:
    """Owner-token lock stored in ``sync_locks``.

    A lock whose heartbeat is older than ``lock_timeout`` seconds is treated
    as abandoned by a crashed process and may be taken over.
    """

    def __init__(self, database: SyncDatabase, lock_timeout: float = 600.0):
        self.db = database
        self.lock_timeout = lock_timeout
        self.logger = logging.getLogger(__name__)

    def acquire(self, target: str, owner_token: Optional[str] = None,
                now: Optional[datetime] = None) -> str:
        """Take the lock for a target.

        Returns:
            The owner token to pass to heartbeat/release

        Raises:
            SyncInProgressError: If another owner holds a live lock
        """
        owner_token = owner_token or uuid.uuid4().hex
        now = now or now_utc()
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT owner_token, heartbeat_at FROM sync_locks WHERE target = ?", (target,)
            ).fetchone()
            if row is not None and row['owner_token'] != owner_token:
                heartbeat_at = from_db_timestamp(row['heartbeat_at'])
                if now - heartbeat_at < timedelta(seconds=self.lock_timeout):
                    raise SyncInProgressError(f"Sync already in progress for {target}")
                self.logger.warning(
                    f"Taking over stale lock on {target} (last heartbeat {heartbeat_at.isoformat()})"
                )

            conn.execute(
                """
                INSERT INTO sync_locks (target, owner_token, acquired_at, heartbeat_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(target) DO UPDATE SET
                    owner_token = excluded.owner_token,
                    acquired_at = excluded.acquired_at,
                    heartbeat_at = excluded.heartbeat_at
                """,
                (target, owner_token, to_db_timestamp(now), to_db_timestamp(now)),
            )
        return owner_token

    def heartbeat(self, target: str, owner_token: str) -> bool:
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE sync_locks SET heartbeat_at = ? WHERE target = ? AND owner_token = ?",
                (to_db_timestamp(now_utc()), target, owner_token),
            )
            return cursor.rowcount > 0

    def release(self, target: str, owner_token: str) -> bool:
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM sync_locks WHERE target = ? AND owner_token = ?",
                (target, owner_token),
            )
            return cursor.rowcount > 0

    def is_locked(self, target: str) -> bool:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT heartbeat_at FROM sync_locks WHERE target = ?", (target,)
            ).fetchone()
        if row is None:
            return False
        age = now_utc() - from_db_timestamp(row['heartbeat_at'])
        return age < timedelta(seconds=self.lock_timeout)
