"""
Unit tests for the offline mutation queue.
"""

import pytest

from replisync.models.records import Operation, QueueEntry, Record
from replisync.storage.kv import SharedMemoryStore
from replisync.storage.state import StateRepository
from replisync.sync.queue import OfflineQueue
from replisync.utils.errors import RemoteError, StorageQuotaExceededError


def entry(operation, record_id, **fields):
    if operation is Operation.DELETE:
        return QueueEntry(operation, record_id=record_id)
    return QueueEntry(operation, record=Record(id=record_id, fields=fields, last_updated=1))


class TestOfflineQueue:
    """Test OfflineQueue class."""

    @pytest.fixture
    async def queue(self, repository):
        """Create a loaded queue."""
        queue = OfflineQueue(repository)
        await queue.load()
        return queue

    @pytest.mark.asyncio
    async def test_enqueue_persists(self, queue, repository):
        """Test that each enqueue is written through."""
        await queue.enqueue(entry(Operation.ADD, "1", title="Hat"))
        await queue.enqueue(entry(Operation.DELETE, "2"))

        stored = await repository.load_queue()
        assert [e.target_id for e in stored] == ["1", "2"]
        assert len(queue) == 2

    @pytest.mark.asyncio
    async def test_queue_survives_restart(self, repository):
        """Test that a new queue on the same store sees old entries."""
        first = OfflineQueue(repository)
        await first.load()
        await first.enqueue(entry(Operation.ADD, "1"))

        second = OfflineQueue(repository)
        await second.load()

        assert [e.target_id for e in second.entries] == ["1"]

    @pytest.mark.asyncio
    async def test_drain_in_fifo_order(self, queue):
        """Test that entries are applied in submission order."""
        for i in range(5):
            await queue.enqueue(entry(Operation.ADD, str(i)))
        applied = []

        result = await queue.drain(lambda e: applied.append(e.target_id))

        assert applied == ["0", "1", "2", "3", "4"]
        assert result.complete
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_failed_entry_stays_queued(self, queue, repository):
        """Test that a failing entry is retained for the next drain."""
        await queue.enqueue(entry(Operation.ADD, "1"))
        await queue.enqueue(entry(Operation.ADD, "2"))

        async def apply(e):
            if e.target_id == "1":
                raise RemoteError("down")

        result = await queue.drain(apply)

        assert [e.target_id for e in result.failed] == ["1"]
        assert [e.target_id for e in result.applied] == ["2"]
        assert result.remaining == 1
        assert [e.target_id for e in await repository.load_queue()] == ["1"]

    @pytest.mark.asyncio
    async def test_failure_blocks_later_entries_for_same_id(self, queue):
        """Test per-identifier ordering across a failure."""
        await queue.enqueue(entry(Operation.ADD, "1"))
        await queue.enqueue(entry(Operation.UPDATE, "1", status="claimed"))
        await queue.enqueue(entry(Operation.ADD, "2"))
        attempts = []

        def apply(e):
            attempts.append((e.operation, e.target_id))
            if e.operation is Operation.ADD and e.target_id == "1":
                raise RemoteError("down")

        result = await queue.drain(apply)

        assert attempts == [(Operation.ADD, "1"), (Operation.ADD, "2")]
        assert [e.operation for e in result.skipped] == [Operation.UPDATE]
        assert [(e.operation, e.target_id) for e in queue.entries] == [
            (Operation.ADD, "1"),
            (Operation.UPDATE, "1"),
        ]

        attempts.clear()
        result = await queue.drain(lambda e: attempts.append((e.operation, e.target_id)))

        assert attempts == [(Operation.ADD, "1"), (Operation.UPDATE, "1")]
        assert result.complete

    @pytest.mark.asyncio
    async def test_enqueue_rejected_by_quota(self):
        """Test that a refused write leaves the queue unchanged."""
        store = SharedMemoryStore(quota_bytes=400)
        queue = OfflineQueue(StateRepository(store.handle("a")))
        await queue.load()

        with pytest.raises(StorageQuotaExceededError):
            await queue.enqueue(entry(Operation.ADD, "1", description="x" * 1000))

        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_clear(self, queue, repository):
        """Test clearing the queue."""
        await queue.enqueue(entry(Operation.ADD, "1"))
        await queue.clear()

        assert len(queue) == 0
        assert await repository.load_queue() == []

    @pytest.mark.asyncio
    async def test_replicas_sharing_a_store_keep_their_entries(self, repository):
        """Test that two replicas on one device do not overwrite each other's queue."""
        first = OfflineQueue(repository, owner="replica-a")
        second = OfflineQueue(repository, owner="replica-b")
        await first.load()
        await second.load()

        await first.enqueue(entry(Operation.ADD, "7", title="Backpack", location="Library"))
        await second.enqueue(entry(Operation.ADD, "7", title="Backpack", location="Gym"))
        await first.drain(lambda e: None)

        stored = await repository.load_queue()
        assert [(e.owner, e.record.get("location")) for e in stored] == [("replica-b", "Gym")]

        restarted = OfflineQueue(repository, owner="replica-b")
        await restarted.load()
        assert [e.record.get("location") for e in restarted.entries] == ["Gym"]

    @pytest.mark.asyncio
    async def test_unowned_entries_are_adopted_once(self, repository):
        """Test that entries written without an owner go to the first replica that loads."""
        await repository.save_queue([entry(Operation.DELETE, "3")])

        first = OfflineQueue(repository, owner="replica-a")
        await first.load()
        second = OfflineQueue(repository, owner="replica-b")
        await second.load()

        assert [e.target_id for e in first.entries] == ["3"]
        assert len(second) == 0
        assert [e.owner for e in await repository.load_queue()] == ["replica-a"]
