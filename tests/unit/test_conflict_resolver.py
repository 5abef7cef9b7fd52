"""
Unit tests for conflict resolution and the pending-conflict backlog.
"""

import pytest

from replisync.models.records import Record, ReplicaState, WriterRole
from replisync.sync.conflict import (
    ConflictBacklog,
    MergePolicy,
    PendingConflict,
    detect_conflicts,
    merge_collections,
    resolve_record,
    separate,
)


PRIMARY = WriterRole.PRIMARY
SECONDARY = WriterRole.SECONDARY


def rec(record_id, ts, by=SECONDARY, origin=None, **fields):
    return Record(id=str(record_id), fields=fields, last_updated=ts, updated_by=by, origin=origin)


@pytest.fixture
def collection():
    return ReplicaState([
        rec(1, 100, title="Umbrella", status="unclaimed", location="Lobby"),
        rec(2, 120, PRIMARY, title="Keys", status="claimed", location=""),
        rec(10, 130, title="Scarf", status="unclaimed", location="N/A"),
    ])


class TestResolveRecord:
    """Test resolve_record tie-break order."""

    def test_identical_versions_return_same(self):
        """Test that resolving a record with itself yields it unchanged."""
        a = rec(1, 100, title="Umbrella")
        assert resolve_record(a, a, now=999) is a

    def test_primary_writer_beats_newer_secondary(self):
        """Test that authority overrides recency."""
        primary = rec(1, 50, PRIMARY, title="Umbrella", location="Desk")
        secondary = rec(1, 500, SECONDARY, title="Umbrella (red)", location="Lobby")

        assert resolve_record(primary, secondary, now=999) == primary
        assert resolve_record(secondary, primary, now=999) == primary

    def test_newer_timestamp_wins_between_equal_roles(self):
        """Test recency between two secondary versions."""
        older = rec(1, 100, title="Umbrella")
        newer = rec(1, 101, title="Black umbrella")

        assert resolve_record(older, newer) == newer
        assert resolve_record(newer, older) == newer

    def test_newer_timestamp_wins_between_primaries(self):
        """Test recency between two primary versions."""
        older = rec(1, 100, PRIMARY, title="A")
        newer = rec(1, 200, PRIMARY, title="B")
        assert resolve_record(older, newer) == newer

    def test_equal_timestamps_union_fields(self):
        """Test field union on equal timestamps."""
        a = rec(1, 100, title="Umbrella", location="", description="N/A")
        b = rec(1, 100, title="Parasol", location="Lobby", description="Black", contact="x@y.z")

        merged = resolve_record(a, b, now=777)

        assert merged.fields["title"] == "Umbrella"
        assert merged.fields["location"] == "Lobby"
        assert merged.fields["description"] == "Black"
        assert merged.fields["contact"] == "x@y.z"
        assert merged.updated_by is WriterRole.MERGED
        assert merged.last_updated == 777

    def test_equal_timestamps_no_field_regression(self):
        """Test that every field non-empty in either input stays non-empty."""
        a = rec(1, 100, title="", location="Lobby", colour=None)
        b = rec(1, 100, title="Umbrella", location="", colour="red")

        merged = resolve_record(a, b, now=1)

        policy = MergePolicy()
        for name in ("title", "location", "colour"):
            if not policy.is_empty(a.fields.get(name)) or not policy.is_empty(b.fields.get(name)):
                assert not policy.is_empty(merged.fields.get(name))

    def test_claim_dominates_authority(self):
        """Test that a claimed status survives losing to the primary writer."""
        claimed = rec(1, 100, SECONDARY, title="Umbrella", status="claimed", description="")
        primary = rec(1, 90, PRIMARY, title="Umbrella", status="unclaimed", description="Black, folding")

        for result in (resolve_record(claimed, primary), resolve_record(primary, claimed)):
            assert result.fields["status"] == "claimed"
            assert result.fields["description"] == "Black, folding"
            assert result.updated_by is WriterRole.PRIMARY

    def test_claim_dominates_recency(self):
        """Test that a newer unclaimed version does not reopen a claim."""
        claimed = rec(1, 100, status="claimed", title="Umbrella")
        newer = rec(1, 200, status="unclaimed", title="Umbrella!")

        result = resolve_record(claimed, newer)

        assert result.fields["title"] == "Umbrella!"
        assert result.fields["status"] == "claimed"

    def test_claim_dominates_union(self):
        """Test terminal dominance inside a field union."""
        a = rec(1, 100, status="unclaimed")
        b = rec(1, 100, status="claimed")
        assert resolve_record(a, b, now=5).fields["status"] == "claimed"

    def test_custom_policy(self):
        """Test a policy with a different terminal field and markers."""
        policy = MergePolicy(
            terminal_field="state",
            resolved_values=frozenset(("closed",)),
            open_values=frozenset(("open",)),
            empty_markers=frozenset(("-",)),
        )
        a = rec(1, 100, state="open", note="-")
        b = rec(1, 100, state="closed", note="done")

        merged = resolve_record(a, b, now=3, policy=policy)

        assert merged.fields == {"state": "closed", "note": "done"}


class TestMergeCollections:
    """Test merge_collections."""

    def test_merge_with_itself_is_identity(self, collection):
        """Test merge idempotence."""
        result = merge_collections(collection, collection.records, now=999)

        assert result.state == collection
        assert not result.changed

    def test_merge_twice_is_stable(self, collection):
        """Test that re-applying a merge result changes nothing."""
        incoming = [rec(1, 100, title="Brolly", status="unclaimed", location="Lobby", colour="red")]
        first = merge_collections(collection, incoming, now=500)
        second = merge_collections(first.state, first.state.records, now=600)

        assert second.state == first.state
        assert not second.changed

    def test_additions_commute(self, collection):
        """Test that merging new identifiers is order independent."""
        x = [rec(20, 10, title="Hat")]
        y = [rec(21, 11, title="Glove"), rec(22, 12, title="Book")]

        xy = merge_collections(merge_collections(collection, x).state, y).state
        yx = merge_collections(merge_collections(collection, y).state, x).state

        assert xy == yx
        assert set(xy.ids()) == {"1", "2", "10", "20", "21", "22"}

    def test_absence_is_not_deletion(self, collection):
        """Test that records missing from incoming are kept."""
        result = merge_collections(collection, [rec(1, 100, title="Umbrella", status="unclaimed", location="Lobby")])

        assert set(result.state.ids()) == {"1", "2", "10"}
        assert result.removed == []

    def test_records_sorted_by_identifier(self):
        """Test numeric-aware identifier ordering."""
        result = merge_collections([rec(10, 1)], [rec(9, 1), rec("abc-1", 1), rec(2, 1)])
        assert result.state.ids() == ["2", "9", "10", "abc-1"]

    def test_tombstone_removes_older_copies(self, collection):
        """Test that tombstones delete stale local and incoming copies."""
        result = merge_collections(
            collection,
            [rec(10, 130, title="Scarf", status="unclaimed", location="N/A")],
            tombstones={"10": 200},
        )

        assert "10" not in result.state
        assert result.removed == ["10"]

    def test_newer_write_outlives_tombstone(self):
        """Test that a write after the delete is kept."""
        result = merge_collections([], [rec(3, 300, title="Found again")], tombstones={"3": 200})
        assert "3" in result.state

    def test_identifier_collision_is_separated(self):
        """Test that same id from different origins keeps both records."""
        local = [rec(7, 100, origin="replica-a", title="Blue Backpack", location="Gym")]
        incoming = [rec(7, 105, origin="replica-b", title="Blue Backpack", location="Library")]

        result = merge_collections(local, incoming)

        assert len(result.collisions) == 1
        collision = result.collisions[0]
        assert collision.record_id == "7"
        assert collision.rekeyed_id == "7~replica-b"
        assert result.state.get("7").fields["location"] == "Gym"
        assert result.state.get("7~replica-b").fields["location"] == "Library"

    def test_collision_separation_converges(self):
        """Test that both sides end with the same separated collection."""
        a = [rec(7, 100, origin="replica-a", title="Blue Backpack")]
        b = [rec(7, 105, origin="replica-b", title="Blue Backpack")]

        at_a = merge_collections(a, b).state
        at_b = merge_collections(b, a).state

        assert at_a == at_b
        assert at_a.ids() == ["7", "7~replica-b"]

    def test_same_origin_is_not_collision(self):
        """Test that edits of one logical record are resolved, not separated."""
        local = [rec(7, 100, origin="replica-a", title="Bag")]
        incoming = [rec(7, 200, origin="replica-a", title="Blue Bag")]

        result = merge_collections(local, incoming)

        assert result.collisions == []
        assert result.state.get("7").fields["title"] == "Blue Bag"

    def test_separate_is_order_independent(self):
        """Test that either side of a collision picks the same record to re-key."""
        a = rec(7, 100, origin="replica-a", location="Library")
        b = rec(7, 90, origin="replica-b", location="Gym")

        keep, moved, collision = separate(b, a)

        assert keep is a
        assert moved.id == "7~replica-b"
        assert moved.fields == {"location": "Gym"}
        assert collision.origins == ("replica-a", "replica-b")
        assert separate(a, b)[1] == moved


class TestDetectConflicts:
    """Test detect_conflicts."""

    def test_reports_differing_shared_ids(self, collection):
        incoming = [rec(1, 100, title="Umbrella", status="claimed", location="Lobby"), rec(99, 1)]
        assert detect_conflicts(collection, incoming) == ["1"]


class TestConflictBacklog:
    """Test ConflictBacklog bounds."""

    def test_evicts_oldest_when_full(self, clock):
        backlog = ConflictBacklog(max_entries=2, retention_ms=10_000, clock=clock)
        first = PendingConflict(reason="a", recorded_at=clock())
        assert backlog.add(first) == []
        assert backlog.add(PendingConflict(reason="b", recorded_at=clock())) == []

        evicted = backlog.add(PendingConflict(reason="c", recorded_at=clock()))

        assert evicted == [first]
        assert [c.reason for c in backlog.entries] == ["b", "c"]

    def test_evicts_expired_entries(self, clock):
        backlog = ConflictBacklog(max_entries=10, retention_ms=1000, clock=clock)
        old = PendingConflict(reason="old", recorded_at=clock())
        backlog.add(old)
        clock.advance(1001)

        assert backlog.prune() == [old]
        assert len(backlog) == 0

    def test_round_trips_through_storage_form(self, clock):
        backlog = ConflictBacklog(clock=clock)
        backlog.add(PendingConflict(reason="bad payload", records=[{"id": 1}], recorded_at=clock()))

        restored = ConflictBacklog(clock=clock)
        restored.load(backlog.to_list())

        assert restored.to_list() == backlog.to_list()

    def test_resolve_by_id(self, clock):
        backlog = ConflictBacklog(clock=clock)
        conflict = PendingConflict(reason="x", recorded_at=clock())
        backlog.add(conflict)

        assert backlog.resolve(conflict.conflict_id) is conflict
        assert backlog.resolve(conflict.conflict_id) is None
