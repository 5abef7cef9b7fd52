"""
Persisted-state layout of a replicated collection.

Maps the logical pieces of replica state (collection, last update, presence,
queue, status, tombstones, conflicts) onto keys of a KeyValueStore.
"""

from typing import Optional, Dict, Any, List
import json

from .kv import KeyValueStore
from ..models.records import ReplicaState, QueueEntry
from ..utils.errors import PersistenceError, error_context


class StateRepository:
    """JSON (de)serialization of replica state under a key prefix."""

    def __init__(self, store: KeyValueStore, prefix: str = "replisync"):
        self.store = store
        self.prefix = prefix

    def key(self, name: str) -> str:
        return f"{self.prefix}:{name}"

    @property
    def collection_key(self) -> str:
        return self.key("collection")

    @property
    def last_update_key(self) -> str:
        return self.key("last_update")

    @property
    def presence_key(self) -> str:
        return self.key("presence")

    @property
    def queue_key(self) -> str:
        return self.key("queue")

    @property
    def status_key(self) -> str:
        return self.key("status")

    @property
    def tombstones_key(self) -> str:
        return self.key("tombstones")

    @property
    def conflicts_key(self) -> str:
        return self.key("conflicts")

    @property
    def signal_key(self) -> str:
        return self.key("sync_signal")

    async def _read_json(self, key: str, default: Any) -> Any:
        with error_context("state", "read", wrap=PersistenceError, key=key):
            raw = await self.store.get(key)
            if raw is None:
                return default
            return json.loads(raw)

    async def _write_json(self, key: str, value: Any) -> None:
        with error_context("state", "write", wrap=PersistenceError, key=key):
            await self.store.set(key, json.dumps(value, sort_keys=True))

    async def load_state(self) -> ReplicaState:
        """Read the persisted collection; empty when nothing was stored."""
        items = await self._read_json(self.collection_key, [])
        with error_context("state", "decode_collection", wrap=PersistenceError):
            return ReplicaState.from_list(items)

    async def save_state(self, state: ReplicaState, timestamp: int) -> None:
        """Persist the collection, then advance the last-update stamp."""
        await self._write_json(self.collection_key, state.to_list())
        await self._write_json(self.last_update_key, timestamp)

    async def last_update(self) -> int:
        return int(await self._read_json(self.last_update_key, 0) or 0)

    async def presence(self) -> Optional[int]:
        """Last heartbeat of the primary writer, if any."""
        value = await self._read_json(self.presence_key, None)
        return int(value) if value is not None else None

    async def write_presence(self, timestamp: int) -> None:
        await self._write_json(self.presence_key, timestamp)

    async def clear_presence(self) -> None:
        with error_context("state", "clear_presence", wrap=PersistenceError):
            await self.store.delete(self.presence_key)

    async def load_queue(self) -> List[QueueEntry]:
        items = await self._read_json(self.queue_key, [])
        with error_context("state", "decode_queue", wrap=PersistenceError):
            return [QueueEntry.from_dict(item) for item in items]

    async def save_queue(self, entries: List[QueueEntry]) -> None:
        await self._write_json(self.queue_key, [e.to_dict() for e in entries])

    async def load_status(self) -> Optional[Dict[str, Any]]:
        return await self._read_json(self.status_key, None)

    async def save_status(self, snapshot: Dict[str, Any]) -> None:
        await self._write_json(self.status_key, snapshot)

    async def load_tombstones(self) -> Dict[str, int]:
        return await self._read_json(self.tombstones_key, {})

    async def save_tombstones(self, tombstones: Dict[str, int]) -> None:
        await self._write_json(self.tombstones_key, tombstones)

    async def load_conflicts(self) -> List[Dict[str, Any]]:
        return await self._read_json(self.conflicts_key, [])

    async def save_conflicts(self, conflicts: List[Dict[str, Any]]) -> None:
        await self._write_json(self.conflicts_key, conflicts)

    async def load_counter(self, name: str) -> int:
        return int(await self._read_json(self.key(f"counter:{name}"), 0) or 0)

    async def save_counter(self, name: str, value: int) -> None:
        await self._write_json(self.key(f"counter:{name}"), value)
