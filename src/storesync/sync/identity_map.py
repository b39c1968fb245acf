"""Durable storage for local <-> remote identity mappings.

Each mapping ties a local entity UUID to a remote object id (and optional
sub-object id such as a catalog variation) and carries the per-record sync
state, direction, conflict strategy and version.
"""

import sqlite3
import logging
import uuid
from typing import Dict, List, Optional

from .database import SyncDatabase, to_db_timestamp, from_db_timestamp
from .errors import DuplicateMappingError, MappingNotFoundError, StaleVersionError
from .models import (
    ConflictStrategy,
    EntityKind,
    IdentityMapping,
    SyncDirection,
    SyncState,
)


logger = logging.getLogger(__name__)


class IdentityMap:
    """Persistent storage for identity mappings."""

    def __init__(self, database: SyncDatabase):
        self.db = database
        self.logger = logging.getLogger(__name__)

    def lookup(self, local_id: uuid.UUID, conn: Optional[sqlite3.Connection] = None) -> Optional[IdentityMapping]:
        """Get the mapping for a local entity.

        Args:
            local_id: Local entity primary key

        Returns:
            IdentityMapping if found, None otherwise
        """
        with self.db.transaction(conn) as c:
            row = c.execute(
                "SELECT * FROM identity_mappings WHERE local_id = ?", (str(local_id),)
            ).fetchone()
        return self._row_to_mapping(row) if row else None

    def lookup_by_remote(self, remote_object_id: str,
                         conn: Optional[sqlite3.Connection] = None) -> Optional[IdentityMapping]:
        """Get the mapping for a remote object.

        The active mapping wins; otherwise the most recently synced disabled
        mapping is returned so callers can tell a retired object from an
        unknown one.
        """
        with self.db.transaction(conn) as c:
            row = c.execute(
                """
                SELECT * FROM identity_mappings
                WHERE remote_object_id = ?
                ORDER BY CASE WHEN sync_state = 'disabled' THEN 1 ELSE 0 END,
                         last_synced_at DESC
                LIMIT 1
                """,
                (remote_object_id,),
            ).fetchone()
        return self._row_to_mapping(row) if row else None

    def upsert(self, mapping: IdentityMapping, conn: Optional[sqlite3.Connection] = None) -> IdentityMapping:
        """Create or update a mapping.

        Raises:
            DuplicateMappingError: If another local id actively claims the
                same remote object
            StaleVersionError: If the stored version is newer than the one
                being written
        """
        with self.db.transaction(conn) as c:
            if mapping.is_active:
                claimant = c.execute(
                    """
                    SELECT local_id FROM identity_mappings
                    WHERE remote_object_id = ? AND sync_state != 'disabled' AND local_id != ?
                    """,
                    (mapping.remote_object_id, str(mapping.local_id)),
                ).fetchone()
                if claimant:
                    raise DuplicateMappingError(
                        mapping.remote_object_id, claimant["local_id"], mapping.local_id
                    )

            existing = c.execute(
                "SELECT version FROM identity_mappings WHERE local_id = ?", (str(mapping.local_id),)
            ).fetchone()
            if existing and existing["version"] > mapping.version:
                raise StaleVersionError(
                    f"Mapping {mapping.local_id} is at version {existing['version']}, "
                    f"refusing to write version {mapping.version}"
                )

            c.execute(
                """
                INSERT INTO identity_mappings
                (local_id, entity_kind, remote_object_id, remote_sub_object_id, last_synced_at,
                 sync_state, direction, conflict_strategy, version, remote_version,
                 last_error, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(local_id) DO UPDATE SET
                    entity_kind = excluded.entity_kind,
                    remote_object_id = excluded.remote_object_id,
                    remote_sub_object_id = excluded.remote_sub_object_id,
                    last_synced_at = excluded.last_synced_at,
                    sync_state = excluded.sync_state,
                    direction = excluded.direction,
                    conflict_strategy = excluded.conflict_strategy,
                    version = excluded.version,
                    remote_version = excluded.remote_version,
                    last_error = excluded.last_error
                """,
                (
                    str(mapping.local_id),
                    mapping.entity_kind.value,
                    mapping.remote_object_id,
                    mapping.remote_sub_object_id,
                    to_db_timestamp(mapping.last_synced_at),
                    mapping.sync_state.value,
                    mapping.direction.value,
                    mapping.conflict_strategy.value,
                    mapping.version,
                    mapping.remote_version,
                    mapping.last_error,
                    to_db_timestamp(mapping.created_at),
                ),
            )
        self.logger.debug(
            f"Saved mapping {mapping.local_id} -> {mapping.remote_object_id} "
            f"(v{mapping.version}, {mapping.sync_state.value})"
        )
        return mapping

    def mark_state(self, local_id: uuid.UUID, new_state: SyncState, error: Optional[str] = None,
                   conn: Optional[sqlite3.Connection] = None) -> IdentityMapping:
        """Change the sync state of a mapping.

        Raises:
            MappingNotFoundError: If no mapping exists for local_id
        """
        with self.db.transaction(conn) as c:
            cursor = c.execute(
                "UPDATE identity_mappings SET sync_state = ?, last_error = ? WHERE local_id = ?",
                (new_state.value, error, str(local_id)),
            )
            if cursor.rowcount == 0:
                raise MappingNotFoundError(f"No mapping for local id {local_id}")
            row = c.execute(
                "SELECT * FROM identity_mappings WHERE local_id = ?", (str(local_id),)
            ).fetchone()
        if new_state in (SyncState.FAILED, SyncState.CONFLICT):
            self.logger.warning(f"Mapping {local_id} marked {new_state.value}: {error or ''}")
        return self._row_to_mapping(row)

    def disable(self, local_id: uuid.UUID, reason: Optional[str] = None,
                conn: Optional[sqlite3.Connection] = None) -> IdentityMapping:
        """Soft-disable a mapping so a stale remote read cannot resurrect the entity."""
        return self.mark_state(local_id, SyncState.DISABLED, reason, conn=conn)

    def list_by_state(self, state: SyncState) -> List[IdentityMapping]:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM identity_mappings WHERE sync_state = ? ORDER BY last_synced_at DESC",
                (state.value,),
            ).fetchall()
        return [self._row_to_mapping(row) for row in rows]

    def all(self, entity_kind: Optional[EntityKind] = None) -> List[IdentityMapping]:
        with self.db.connect() as conn:
            if entity_kind is None:
                rows = conn.execute(
                    "SELECT * FROM identity_mappings ORDER BY last_synced_at DESC"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM identity_mappings WHERE entity_kind = ? ORDER BY last_synced_at DESC",
                    (entity_kind.value,),
                ).fetchall()
        return [self._row_to_mapping(row) for row in rows]

    def count_by_state(self) -> Dict[SyncState, int]:
        counts = {state: 0 for state in SyncState}
        with self.db.connect() as conn:
            for row in conn.execute(
                "SELECT sync_state, COUNT(*) AS n FROM identity_mappings GROUP BY sync_state"
            ):
                counts[SyncState(row["sync_state"])] = row["n"]
        return counts

    def _row_to_mapping(self, row: sqlite3.Row) -> IdentityMapping:
        """Convert database row to IdentityMapping object."""
        return IdentityMapping(
            local_id=uuid.UUID(row['local_id']),
            entity_kind=EntityKind(row['entity_kind']),
            remote_object_id=row['remote_object_id'],
            remote_sub_object_id=row['remote_sub_object_id'],
            last_synced_at=from_db_timestamp(row['last_synced_at']),
            sync_state=SyncState(row['sync_state']),
            direction=SyncDirection(row['direction']),
            conflict_strategy=ConflictStrategy(row['conflict_strategy']),
            version=row['version'],
            remote_version=row['remote_version'],
            last_error=row['last_error'],
            created_at=from_db_timestamp(row['created_at']),
        )
