"""Tests for conflict resolution strategies."""

from datetime import datetime, timedelta, timezone

import pytest

from storesync.sync.conflict_resolver import ConflictResolver, Resolution
from storesync.sync.models import ConflictStrategy, RecordSnapshot, ResolutionAction


T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def resolver():
    return ConflictResolver()


def snap(updated_at=None, **fields):
    return RecordSnapshot(fields=fields, updated_at=updated_at)


class TestConflictResolver:
    """Test per-strategy decisions."""

    def test_remote_wins_ignores_timestamps(self, resolver):
        local = snap(T0 + timedelta(days=1), name="local")
        remote = snap(T0, name="remote")

        assert resolver.resolve(local, remote, ConflictStrategy.REMOTE_WINS).action is ResolutionAction.USE_REMOTE

    def test_local_wins_ignores_timestamps(self, resolver):
        local = snap(T0, name="local")
        remote = snap(T0 + timedelta(days=1), name="remote")

        assert resolver.resolve(local, remote, ConflictStrategy.LOCAL_WINS).action is ResolutionAction.USE_LOCAL

    def test_most_recent_wins_picks_newer_local(self, resolver):
        local = snap(T0 + timedelta(seconds=5))
        remote = snap(T0)

        assert resolver.resolve(local, remote, ConflictStrategy.MOST_RECENT_WINS).action is ResolutionAction.USE_LOCAL

    def test_most_recent_wins_picks_newer_remote(self, resolver):
        local = snap(T0)
        remote = snap(T0 + timedelta(seconds=5))

        assert resolver.resolve(local, remote, ConflictStrategy.MOST_RECENT_WINS).action is ResolutionAction.USE_REMOTE

    def test_most_recent_wins_tie_goes_to_remote(self, resolver):
        local = snap(T0, name="local")
        remote = snap(T0, name="remote")

        resolution = resolver.resolve(local, remote, ConflictStrategy.MOST_RECENT_WINS)

        assert resolution.action is ResolutionAction.USE_REMOTE

    def test_sub_second_difference_is_a_tie(self, resolver):
        local = snap(T0.replace(microsecond=900000))
        remote = snap(T0.replace(microsecond=100000))

        resolution = resolver.resolve(local, remote, ConflictStrategy.MOST_RECENT_WINS)

        assert resolution.action is ResolutionAction.USE_REMOTE

    def test_naive_and_aware_timestamps_compare(self, resolver):
        local = snap(datetime(2024, 5, 1, 12, 0, 10))
        remote = snap(T0)

        assert resolver.resolve(local, remote, ConflictStrategy.MOST_RECENT_WINS).action is ResolutionAction.USE_LOCAL

    def test_missing_timestamp_is_oldest(self, resolver):
        assert resolver.resolve(snap(None), snap(T0), ConflictStrategy.MOST_RECENT_WINS).action \
            is ResolutionAction.USE_REMOTE
        assert resolver.resolve(snap(T0), snap(None), ConflictStrategy.MOST_RECENT_WINS).action \
            is ResolutionAction.USE_LOCAL
        assert resolver.resolve(snap(None), snap(None), ConflictStrategy.MOST_RECENT_WINS).action \
            is ResolutionAction.USE_REMOTE

    def test_manual_always_requires_manual(self, resolver):
        resolution = resolver.resolve(snap(T0 + timedelta(hours=1)), snap(T0), ConflictStrategy.MANUAL)

        assert resolution.action is ResolutionAction.REQUIRES_MANUAL

    def test_resolve_never_merges(self, resolver):
        for strategy in ConflictStrategy:
            resolution = resolver.resolve(snap(T0, a=1), snap(T0, a=2), strategy)
            assert resolution.action is not ResolutionAction.MERGE

    def test_changed_fields_in_order(self, resolver):
        local = snap(T0, name="Widget", sku="W-1", price=100)
        remote = snap(T0, name="Widget", sku="W-2", price=120, color="red")

        assert resolver.changed_fields(local, remote) == ["sku", "price", "color"]

    def test_apply_merge_prefers_chosen_fields(self, resolver):
        local = snap(T0, name="Local name", price=100)
        remote = snap(T0, name="Remote name", price=120, sku="W-1")

        merged = resolver.apply_merge(local, remote, {"price": 120})

        assert merged == {"name": "Local name", "price": 120, "sku": "W-1"}

    def test_merge_resolution_carries_fields(self):
        resolution = Resolution.merge({"price": 5}, "picked by hand")

        assert resolution.action is ResolutionAction.MERGE
        assert resolution.fields == {"price": 5}
