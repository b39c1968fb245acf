"""Boundary contract for the local business-entity store.

The engine reads and writes customers and inventory items only through this
interface. ``InMemoryLocalStore`` is the reference implementation: an arena of
records addressed by UUID with snapshot rollback; ``JsonFileLocalStore``
persists the same arena to a JSON file.
"""

import asyncio
import copy
import json
import logging
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from ..utils.datetime import ensure_aware, now_utc
from .models import EntityKind, LocalRecord


logger = logging.getLogger(__name__)


# Fields that identify the same real-world entity on both sides, in match order
NATURAL_KEYS = {
    EntityKind.INVENTORY_ITEM: ("sku",),
    EntityKind.CUSTOMER: ("email", "phone"),
}


def normalize_key(name: str, value: Any) -> Optional[str]:
    """Comparable form of a natural-key value, None when blank."""
    if value is None:
        return None
    text = str(value).strip().lower()
    if name == "phone":
        text = "".join(ch for ch in text if ch.isdigit())
    return text or None


class LocalStore(ABC):
    """Interface to the local records the engine synchronizes."""

    @abstractmethod
    async def read(self, local_id: uuid.UUID) -> Optional[LocalRecord]:
        """Return the live record, None if it is absent or deleted."""
        pass

    @abstractmethod
    async def write(self, record: LocalRecord) -> LocalRecord:
        """Insert or replace a record, keeping its ``updated_at`` if set."""
        pass

    @abstractmethod
    async def delete(self, local_id: uuid.UUID) -> bool:
        """Delete a record, leaving a tombstone visible to ``changed_since``.

        Returns:
            True if a live record was deleted
        """
        pass

    @abstractmethod
    async def changed_since(self, entity_kind: EntityKind,
                            since: Optional[datetime]) -> List[LocalRecord]:
        """Records (tombstones included) updated after ``since``; all when None."""
        pass

    @abstractmethod
    def transaction(self):
        """Async context manager; an exception inside rolls back every write."""
        pass

    async def find_by_natural_key(self, entity_kind: EntityKind,
                                  fields: Dict[str, Any]) -> Optional[LocalRecord]:
        """Live record sharing a natural key (SKU, email, phone) with ``fields``.

        Stores that cannot search by natural key return None, so every
        unknown remote object becomes a new local entity.
        """
        return None


class InMemoryLocalStore(LocalStore):
    """Arena of LocalRecords keyed by UUID."""

    def __init__(self, records: Optional[List[LocalRecord]] = None):
        self._records: Dict[uuid.UUID, LocalRecord] = {}
        self._lock = asyncio.Lock()
        self._depth = 0
        self.logger = logging.getLogger(__name__)
        for record in records or []:
            self._records[record.local_id] = copy.deepcopy(record)

    async def read(self, local_id: uuid.UUID) -> Optional[LocalRecord]:
        record = self._records.get(local_id)
        if record is None or record.deleted:
            return None
        return copy.deepcopy(record)

    async def write(self, record: LocalRecord) -> LocalRecord:
        stored = copy.deepcopy(record)
        if stored.updated_at is None:
            stored.updated_at = now_utc()
        stored.deleted = False
        self._records[stored.local_id] = stored
        self._changed()
        return copy.deepcopy(stored)

    async def delete(self, local_id: uuid.UUID) -> bool:
        record = self._records.get(local_id)
        if record is None or record.deleted:
            return False
        record.deleted = True
        record.updated_at = now_utc()
        self._changed()
        return True

    async def changed_since(self, entity_kind: EntityKind,
                            since: Optional[datetime]) -> List[LocalRecord]:
        since = ensure_aware(since)
        changed = [
            copy.deepcopy(record) for record in self._records.values()
            if record.entity_kind is entity_kind
            and (since is None or (record.updated_at is not None and record.updated_at > since))
        ]
        changed.sort(key=lambda r: r.updated_at or now_utc())
        return changed

    async def find_by_natural_key(self, entity_kind: EntityKind,
                                  fields: Dict[str, Any]) -> Optional[LocalRecord]:
        for name in NATURAL_KEYS.get(entity_kind, ()):
            wanted = normalize_key(name, fields.get(name))
            if wanted is None:
                continue
            for record in self._records.values():
                if (record.entity_kind is entity_kind and not record.deleted
                        and normalize_key(name, record.fields.get(name)) == wanted):
                    return copy.deepcopy(record)
        return None

    def all(self, entity_kind: Optional[EntityKind] = None, include_deleted: bool = False) -> List[LocalRecord]:
        return [
            copy.deepcopy(record) for record in self._records.values()
            if (entity_kind is None or record.entity_kind is entity_kind)
            and (include_deleted or not record.deleted)
        ]

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["InMemoryLocalStore"]:
        """Serialize transactions and restore the arena on failure."""
        async with self._lock:
            snapshot = copy.deepcopy(self._records)
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._records = snapshot
                raise
            finally:
                self._depth -= 1
            self._changed()

    def _changed(self):
        """Hook called after writes that are not inside an open transaction."""
        if self._depth == 0:
            self.flush()

    def flush(self):
        pass


class JsonFileLocalStore(InMemoryLocalStore):
    """InMemoryLocalStore persisted to a JSON file on every committed change."""

    def __init__(self, path: Union[str, Path]):
        super().__init__()
        self.path = Path(path)
        if self.path.exists():
            with open(self.path, 'r') as f:
                data = json.load(f)
            for item in data.get('records', []):
                record = LocalRecord.from_dict(item)
                self._records[record.local_id] = record
            self.logger.debug(f"Loaded {len(self._records)} local record(s) from {self.path}")

    def flush(self):
        """Write the arena atomically through a temp file."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_file = self.path.with_suffix('.tmp')
        with open(temp_file, 'w') as f:
            json.dump({'records': [r.to_dict() for r in self._records.values()]}, f, indent=2)
        temp_file.replace(self.path)
