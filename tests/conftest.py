"""Pytest configuration and shared fixtures."""

import sys
import copy
import asyncio
import inspect
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest

# Ensure src directory is in Python path for all tests
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from storesync.config import RemoteCredentials, SyncSettings  # noqa: E402
from storesync.sync.database import SyncDatabase  # noqa: E402
from storesync.sync.engine import SyncEngine  # noqa: E402
from storesync.sync.errors import RequestTimeoutError, VersionConflictError  # noqa: E402
from storesync.sync.local_store import InMemoryLocalStore  # noqa: E402
from storesync.sync.models import EntityKind, RemotePage, RemoteRecord  # noqa: E402
from storesync.sync.remote import RemoteClient  # noqa: E402
from storesync.utils.datetime import now_utc  # noqa: E402


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem):
    """Execute async tests without external plugins."""
    testfunction = pyfuncitem.obj
    if inspect.iscoroutinefunction(testfunction):
        loop = asyncio.new_event_loop()
        try:
            asyncio.set_event_loop(loop)
            sig = inspect.signature(testfunction)
            call_kwargs = {name: pyfuncitem.funcargs[name] for name in sig.parameters}
            loop.run_until_complete(testfunction(**call_kwargs))
        finally:
            asyncio.set_event_loop(None)
            loop.close()
        return True
    return None


class FakeRemoteClient(RemoteClient):
    """In-memory remote system with a cursor-paginated change feed.

    Writes are de-duplicated by idempotency key the way a real commerce API
    does: a repeated key returns the first response and creates nothing.
    """

    page_size = 2

    def __init__(self):
        self.objects: Dict[Tuple[EntityKind, str], RemoteRecord] = {}
        self.feed: Dict[EntityKind, List[RemoteRecord]] = {kind: [] for kind in EntityKind}
        self.responses_by_key: Dict[str, RemoteRecord] = {}
        self.calls: List[tuple] = []
        self.fetch_failures: List[Exception] = []
        self.write_failures: List[Exception] = []
        self.lost_responses = 0
        self.created = 0
        self.delay = 0.0
        self.on_fetch = None
        self._next_id = 100

    # Remote-side helpers

    def put(self, kind: EntityKind, remote_id: str, fields: dict, updated_at: Optional[datetime] = None,
            version: int = 1, publish: bool = True, reference_id: Optional[str] = None) -> RemoteRecord:
        record = RemoteRecord(
            entity_kind=kind, fields=dict(fields), remote_id=remote_id,
            updated_at=updated_at or now_utc(), version=version, reference_id=reference_id,
        )
        self.objects[(kind, remote_id)] = record
        if publish:
            self.feed[kind].append(copy.deepcopy(record))
        return record

    def remove(self, kind: EntityKind, remote_id: str):
        self.objects.pop((kind, remote_id), None)
        self.feed[kind].append(
            RemoteRecord(entity_kind=kind, remote_id=remote_id, updated_at=now_utc(), deleted=True)
        )

    def get(self, kind: EntityKind, remote_id: str) -> Optional[RemoteRecord]:
        return self.objects.get((kind, remote_id))

    @property
    def write_calls(self) -> List[tuple]:
        return [call for call in self.calls if call[0] in ("create_or_update", "delete")]

    def _maybe_fail(self, failures: List[Exception]):
        if failures:
            raise failures.pop(0)

    # RemoteClient implementation

    async def fetch_changes(self, entity_kind, cursor=None):
        self.calls.append(("fetch_changes", entity_kind, cursor))
        if self.on_fetch is not None:
            self.on_fetch()
        self._maybe_fail(self.fetch_failures)
        start = int(cursor or 0)
        records = self.feed[entity_kind][start:start + self.page_size]
        return RemotePage(
            records=[copy.deepcopy(r) for r in records],
            next_cursor=str(start + len(records)),
        )

    async def create_or_update(self, record, idempotency_key, expected_version=None):
        self.calls.append(("create_or_update", record.remote_id, idempotency_key))
        if self.delay:
            await asyncio.sleep(self.delay)
        self._maybe_fail(self.write_failures)

        if idempotency_key in self.responses_by_key:
            return copy.deepcopy(self.responses_by_key[idempotency_key])

        kind = record.entity_kind
        reference_id = record.reference_id
        if record.remote_id is None:
            self.created += 1
            remote_id = f"R{self._next_id}"
            self._next_id += 1
            version = 1
        else:
            remote_id = record.remote_id
            existing = self.objects.get((kind, remote_id))
            current = existing.version if existing else 0
            if expected_version is not None and existing is not None and current != expected_version:
                raise VersionConflictError(remote_id, expected_version, current)
            version = current + 1
            if existing is not None:
                reference_id = existing.reference_id or reference_id

        stored = self.put(kind, remote_id, record.fields, version=version, reference_id=reference_id)
        self.responses_by_key[idempotency_key] = copy.deepcopy(stored)
        if self.lost_responses:
            self.lost_responses -= 1
            raise RequestTimeoutError("Response lost after the write landed")
        return copy.deepcopy(stored)

    async def delete(self, entity_kind, remote_id, idempotency_key=None):
        self.calls.append(("delete", remote_id, idempotency_key))
        if self.delay:
            await asyncio.sleep(self.delay)
        self._maybe_fail(self.write_failures)
        existed = (entity_kind, remote_id) in self.objects
        if existed:
            self.remove(entity_kind, remote_id)
        return existed

    async def fetch_by_remote_id(self, entity_kind, remote_id):
        self.calls.append(("fetch_by_remote_id", remote_id))
        self._maybe_fail(self.fetch_failures)
        record = self.objects.get((entity_kind, remote_id))
        return copy.deepcopy(record) if record else None


@pytest.fixture
def database(tmp_path):
    return SyncDatabase(tmp_path / "sync.db")


@pytest.fixture
def settings(tmp_path):
    return SyncSettings(
        credentials=RemoteCredentials(access_token="token", merchant_id="M1", location_id="L1"),
        data_dir=str(tmp_path),
        worker_count=2,
    )


@pytest.fixture
def remote():
    return FakeRemoteClient()


@pytest.fixture
def local_store():
    return InMemoryLocalStore()


@pytest.fixture
def engine(settings, remote, local_store, database):
    return SyncEngine(settings, remote, local_store, database)
