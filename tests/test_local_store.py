"""Tests for the local store implementations."""

import json
import uuid
from datetime import timedelta

import pytest

from storesync.sync.local_store import InMemoryLocalStore, JsonFileLocalStore
from storesync.sync.models import EntityKind, LocalRecord
from storesync.utils.datetime import now_utc


def item(name="Widget", updated_at=None, kind=EntityKind.INVENTORY_ITEM):
    return LocalRecord(local_id=uuid.uuid4(), entity_kind=kind, fields={"name": name},
                       updated_at=updated_at)


class TestInMemoryLocalStore:
    """Test the reference arena store."""

    async def test_write_and_read(self):
        store = InMemoryLocalStore()
        record = item(updated_at=now_utc() - timedelta(hours=1))

        written = await store.write(record)
        fetched = await store.read(record.local_id)

        assert fetched.fields == {"name": "Widget"}
        assert fetched.updated_at == written.updated_at == record.updated_at

    async def test_write_stamps_missing_timestamp(self):
        store = InMemoryLocalStore()

        written = await store.write(item())

        assert written.updated_at is not None

    async def test_returned_records_are_copies(self):
        store = InMemoryLocalStore()
        record = await store.write(item())

        fetched = await store.read(record.local_id)
        fetched.fields["name"] = "Mutated"

        assert (await store.read(record.local_id)).fields["name"] == "Widget"

    async def test_delete_leaves_tombstone(self):
        store = InMemoryLocalStore()
        record = await store.write(item(updated_at=now_utc() - timedelta(hours=2)))
        since = now_utc() - timedelta(hours=1)

        assert await store.delete(record.local_id)
        assert not await store.delete(record.local_id)
        assert await store.read(record.local_id) is None

        changed = await store.changed_since(EntityKind.INVENTORY_ITEM, since)
        assert [(r.local_id, r.deleted) for r in changed] == [(record.local_id, True)]

    async def test_changed_since_filters_kind_and_time(self):
        old = item("Old", updated_at=now_utc() - timedelta(days=2))
        new = item("New", updated_at=now_utc() - timedelta(minutes=5))
        customer = item("Ada", updated_at=now_utc(), kind=EntityKind.CUSTOMER)
        store = InMemoryLocalStore([old, new, customer])

        recent = await store.changed_since(EntityKind.INVENTORY_ITEM, now_utc() - timedelta(days=1))
        everything = await store.changed_since(EntityKind.INVENTORY_ITEM, None)

        assert [r.fields["name"] for r in recent] == ["New"]
        assert [r.fields["name"] for r in everything] == ["Old", "New"]

    async def test_transaction_rolls_back_on_error(self):
        store = InMemoryLocalStore()
        kept = await store.write(item("Kept"))

        with pytest.raises(RuntimeError):
            async with store.transaction():
                await store.write(item("Discarded"))
                await store.delete(kept.local_id)
                raise RuntimeError("mapping write failed")

        assert [r.fields["name"] for r in store.all()] == ["Kept"]

    async def test_transaction_commits(self):
        store = InMemoryLocalStore()

        async with store.transaction():
            record = await store.write(item())

        assert await store.read(record.local_id) is not None

    async def test_find_by_natural_key(self):
        widget = item()
        widget.fields["sku"] = "W-1"
        customer = item("Ada", kind=EntityKind.CUSTOMER)
        customer.fields.update(email="Ada@Example.com", phone="(555) 010-2000")
        store = InMemoryLocalStore([widget, customer])

        by_sku = await store.find_by_natural_key(EntityKind.INVENTORY_ITEM, {"sku": " w-1 "})
        by_email = await store.find_by_natural_key(EntityKind.CUSTOMER, {"email": "ada@example.com"})
        by_phone = await store.find_by_natural_key(EntityKind.CUSTOMER, {"email": "", "phone": "555.010.2000"})

        assert by_sku.local_id == widget.local_id
        assert by_email.local_id == customer.local_id
        assert by_phone.local_id == customer.local_id
        assert await store.find_by_natural_key(EntityKind.CUSTOMER, {"sku": "W-1"}) is None
        assert await store.find_by_natural_key(EntityKind.INVENTORY_ITEM, {"name": "Widget"}) is None

    async def test_deleted_records_have_no_natural_key(self):
        widget = item()
        widget.fields["sku"] = "W-1"
        store = InMemoryLocalStore([widget])
        await store.delete(widget.local_id)

        assert await store.find_by_natural_key(EntityKind.INVENTORY_ITEM, {"sku": "W-1"}) is None


class TestJsonFileLocalStore:
    """Test the file-backed store."""

    async def test_records_survive_reload(self, tmp_path):
        path = tmp_path / "local_records.json"
        store = JsonFileLocalStore(path)
        record = await store.write(item(updated_at=now_utc() - timedelta(hours=1)))
        removed = await store.write(item("Gone"))
        await store.delete(removed.local_id)

        reloaded = JsonFileLocalStore(path)

        fetched = await reloaded.read(record.local_id)
        assert fetched.fields == {"name": "Widget"}
        assert fetched.updated_at == record.updated_at
        assert await reloaded.read(removed.local_id) is None
        assert len(reloaded.all(include_deleted=True)) == 2

    async def test_rolled_back_transaction_is_not_flushed(self, tmp_path):
        path = tmp_path / "local_records.json"
        store = JsonFileLocalStore(path)
        await store.write(item("Kept"))

        with pytest.raises(RuntimeError):
            async with store.transaction():
                await store.write(item("Discarded"))
                raise RuntimeError("boom")

        with open(path) as f:
            data = json.load(f)
        assert [r["fields"]["name"] for r in data["records"]] == ["Kept"]

    def test_missing_file_starts_empty(self, tmp_path):
        store = JsonFileLocalStore(tmp_path / "missing.json")

        assert store.all() == []
