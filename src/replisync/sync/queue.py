"""
Durable FIFO of mutations waiting for connectivity.

Entries are persisted on every change and removed only after the apply
function succeeded for them. A failed entry stays queued for the next drain,
and later entries for the same identifier are held back behind it so that
per-identifier submission order is preserved.
"""

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import List, Callable, Any, Optional, Set

from ..models.records import QueueEntry
from ..storage.state import StateRepository
from ..utils.errors import PersistenceError
from ..utils.logging import get_logger


logger = get_logger("replisync.sync.queue")

ApplyFn = Callable[[QueueEntry], Any]


@dataclass
class DrainResult:
    """Outcome of one drain pass."""
    applied: List[QueueEntry] = field(default_factory=list)
    failed: List[QueueEntry] = field(default_factory=list)
    skipped: List[QueueEntry] = field(default_factory=list)
    remaining: int = 0

    @property
    def complete(self) -> bool:
        return self.remaining == 0


class OfflineQueue:
    """FIFO of QueueEntries persisted through a StateRepository."""

    def __init__(self, repository: StateRepository, owner: Optional[str] = None):
        self.repository = repository
        self.owner = owner
        self._entries: List[QueueEntry] = []
        self._drain_lock = asyncio.Lock()
        self._loaded = False

    async def load(self) -> None:
        """Read persisted entries; called once on engine start."""
        self._entries = [e for e in await self.repository.load_queue() if self._owns(e)]
        adopted = [e for e in self._entries if e.owner != self.owner]
        for entry in adopted:
            entry.owner = self.owner
        if adopted:
            await self._save()
        self._loaded = True
        if self._entries:
            logger.info("offline_queue_restored", entries=len(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> List[QueueEntry]:
        return list(self._entries)

    @property
    def draining(self) -> bool:
        return self._drain_lock.locked()

    async def enqueue(self, entry: QueueEntry) -> None:
        """
        Append and persist an entry.

        Raises:
            PersistenceError: the store refused the write (e.g. quota); the
                entry is not kept in memory either
        """
        entry.owner = self.owner
        self._entries.append(entry)
        try:
            await self._save()
        except PersistenceError:
            self._entries.remove(entry)
            raise
        logger.info(
            "mutation_queued",
            operation=entry.operation.value,
            record_id=entry.target_id,
            queued=len(self._entries),
        )

    async def drain(self, apply_fn: ApplyFn) -> DrainResult:
        """
        Replay entries in FIFO order.

        Args:
            apply_fn: Called with each entry; may be async. An exception marks
                the entry as failed and leaves it queued.

        Returns:
            DrainResult describing what was applied and what is left
        """
        async with self._drain_lock:
            result = DrainResult()
            blocked: Set[str] = set()

            for entry in list(self._entries):
                if entry.target_id in blocked:
                    result.skipped.append(entry)
                    continue
                try:
                    outcome = apply_fn(entry)
                    if inspect.isawaitable(outcome):
                        await outcome
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    blocked.add(entry.target_id)
                    result.failed.append(entry)
                    logger.warning(
                        "queued_mutation_failed",
                        operation=entry.operation.value,
                        record_id=entry.target_id,
                        error=str(e),
                    )
                    # apply_fn may have recorded progress on the entry
                    await self._save()
                    continue

                self._entries.remove(entry)
                await self._save()
                result.applied.append(entry)

            result.remaining = len(self._entries)
            if result.applied or result.failed:
                logger.info(
                    "offline_queue_drained",
                    applied=len(result.applied),
                    failed=len(result.failed),
                    remaining=result.remaining,
                )
            return result

    async def clear(self) -> None:
        self._entries = []
        await self._save()

    def _owns(self, entry: QueueEntry) -> bool:
        # Unowned entries predate owner tracking and go to whoever loads first
        return entry.owner is None or entry.owner == self.owner

    async def _save(self) -> None:
        """Persist our entries without dropping those of other replicas."""
        stored = await self.repository.load_queue()
        others = [e for e in stored if not self._owns(e)]
        await self.repository.save_queue(others + self._entries)
