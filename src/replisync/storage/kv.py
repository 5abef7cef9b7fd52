"""
Persistent key-value stores shared by the replicas of one device.

Every replica talks to the store through its own handle. A write made through
one handle is reported to the watchers of every *other* handle, never to the
writer itself, which is what the storage-signal transport relies on.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Dict, List, Callable, Any, Union
import asyncio
import inspect
import uuid

from .database import Database
from ..utils.errors import PersistenceError, StorageQuotaExceededError, error_context
from ..utils.logging import get_logger
from ..utils.notifications import Disposer


logger = get_logger("replisync.storage")


@dataclass
class StorageEvent:
    """A change made by another handle."""
    key: str
    old_value: Optional[str]
    new_value: Optional[str]
    writer: str


StorageWatcher = Callable[[StorageEvent], Any]


def _dispatch(callback: StorageWatcher, event: StorageEvent) -> None:
    """Invoke a watcher, scheduling it when it returns an awaitable."""
    try:
        result = callback(event)
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            task.add_done_callback(_log_watcher_failure)
    except Exception as e:
        logger.error("storage_watcher_failed", key=event.key, error=str(e), exc_info=True)


def _log_watcher_failure(task: asyncio.Future) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.error("storage_watcher_failed", error=str(task.exception()))


class KeyValueStore(ABC):
    """String-valued persistent store with cross-handle change notifications."""

    writer_id: str

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Read a value, None when absent."""

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """Write a value."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a key; removing an absent key is a no-op."""

    @abstractmethod
    async def keys(self, prefix: str = "") -> List[str]:
        """List keys starting with ``prefix``."""

    @abstractmethod
    def watch(self, callback: StorageWatcher) -> Disposer:
        """Receive StorageEvents for writes made by other handles."""

    async def close(self) -> None:
        """Release resources held by this handle."""


class SharedMemoryStore:
    """In-process backing store playing the role of one device's storage."""

    def __init__(self, quota_bytes: Optional[int] = None):
        self.quota_bytes = quota_bytes
        self._data: Dict[str, str] = {}
        self._watchers: Dict[str, List[StorageWatcher]] = {}

    def handle(self, writer_id: Optional[str] = None) -> 'MemoryStoreHandle':
        """Open a handle for one replica."""
        return MemoryStoreHandle(self, writer_id or uuid.uuid4().hex[:12])

    def usage(self) -> int:
        return sum(len(k) + len(v) for k, v in self._data.items())

    def _write(self, writer: str, key: str, value: Optional[str]) -> None:
        old_value = self._data.get(key)
        if value is None:
            if key not in self._data:
                return
            del self._data[key]
        else:
            if self.quota_bytes is not None:
                projected = self.usage() - (len(key) + len(old_value) if old_value is not None else 0)
                projected += len(key) + len(value)
                if projected > self.quota_bytes:
                    raise StorageQuotaExceededError(
                        f"Writing {key!r} would exceed the {self.quota_bytes} byte quota"
                    )
            self._data[key] = value

        if old_value == value:
            return

        event = StorageEvent(key=key, old_value=old_value, new_value=value, writer=writer)
        loop = asyncio.get_running_loop()
        for handle_id, callbacks in self._watchers.items():
            if handle_id == writer:
                continue
            for callback in list(callbacks):
                loop.call_soon(_dispatch, callback, event)


class MemoryStoreHandle(KeyValueStore):
    """A replica's view of a SharedMemoryStore."""

    def __init__(self, backing: SharedMemoryStore, writer_id: str):
        self.backing = backing
        self.writer_id = writer_id

    async def get(self, key: str) -> Optional[str]:
        return self.backing._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self.backing._write(self.writer_id, key, value)

    async def delete(self, key: str) -> None:
        self.backing._write(self.writer_id, key, None)

    async def keys(self, prefix: str = "") -> List[str]:
        return sorted(k for k in self.backing._data if k.startswith(prefix))

    def watch(self, callback: StorageWatcher) -> Disposer:
        callbacks = self.backing._watchers.setdefault(self.writer_id, [])
        callbacks.append(callback)

        def dispose() -> None:
            if callback in callbacks:
                callbacks.remove(callback)

        return dispose

    async def close(self) -> None:
        self.backing._watchers.pop(self.writer_id, None)


class SQLiteStore(KeyValueStore):
    """
    Key-value store persisted in SQLite.

    Every write is appended to a change log; a background task polls the log
    and reports rows written by other writers to this handle's watchers. Each
    replica process opens its own SQLiteStore on the same file.
    """

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS kv (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );
        CREATE TABLE IF NOT EXISTS changes (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            key TEXT NOT NULL,
            old_value TEXT,
            new_value TEXT,
            writer TEXT NOT NULL
        );
    """

    def __init__(
        self,
        path: Union[Path, str],
        writer_id: Optional[str] = None,
        watch_interval: float = 0.25,
        change_log_limit: int = 1000,
    ):
        self.db = Database(path)
        self.writer_id = writer_id or uuid.uuid4().hex[:12]
        self.watch_interval = watch_interval
        self.change_log_limit = change_log_limit
        self._watchers: List[StorageWatcher] = []
        self._watch_task: Optional[asyncio.Task] = None
        self._last_seq = 0
        self._initialized = False

    async def initialize(self) -> None:
        """Create tables and position the change cursor at the log head."""
        if self._initialized:
            return
        with error_context("storage", "initialize", wrap=PersistenceError, path=self.db.db_path):
            await self.db.connect()
            await self.db.executescript(self.SCHEMA)
            row = await self.db.fetchone("SELECT COALESCE(MAX(seq), 0) FROM changes")
            self._last_seq = row[0]
        self._initialized = True

    async def get(self, key: str) -> Optional[str]:
        await self.initialize()
        with error_context("storage", "get", wrap=PersistenceError, key=key):
            row = await self.db.fetchone("SELECT value FROM kv WHERE key = ?", (key,))
        return row[0] if row else None

    async def set(self, key: str, value: str) -> None:
        await self._write(key, value)

    async def delete(self, key: str) -> None:
        await self._write(key, None)

    async def _write(self, key: str, value: Optional[str]) -> None:
        await self.initialize()
        with error_context("storage", "write", wrap=PersistenceError, key=key):
            async with self.db.transaction() as conn:
                async with conn.execute("SELECT value FROM kv WHERE key = ?", (key,)) as cursor:
                    row = await cursor.fetchone()
                old_value = row[0] if row else None
                if old_value == value:
                    return
                if value is None:
                    await conn.execute("DELETE FROM kv WHERE key = ?", (key,))
                else:
                    await conn.execute(
                        "INSERT INTO kv (key, value) VALUES (?, ?) "
                        "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                        (key, value),
                    )
                await conn.execute(
                    "INSERT INTO changes (key, old_value, new_value, writer) VALUES (?, ?, ?, ?)",
                    (key, old_value, value, self.writer_id),
                )
                await conn.execute(
                    "DELETE FROM changes WHERE seq <= (SELECT MAX(seq) FROM changes) - ?",
                    (self.change_log_limit,),
                )

    async def keys(self, prefix: str = "") -> List[str]:
        await self.initialize()
        with error_context("storage", "keys", wrap=PersistenceError):
            rows = await self.db.fetchall(
                "SELECT key FROM kv WHERE substr(key, 1, ?) = ? ORDER BY key",
                (len(prefix), prefix),
            )
        return [row[0] for row in rows]

    def watch(self, callback: StorageWatcher) -> Disposer:
        self._watchers.append(callback)
        if self._watch_task is None or self._watch_task.done():
            self._watch_task = asyncio.create_task(self._watch_loop())

        def dispose() -> None:
            if callback in self._watchers:
                self._watchers.remove(callback)

        return dispose

    async def poll_changes(self) -> int:
        """Deliver pending foreign changes; returns how many were delivered."""
        await self.initialize()
        rows = await self.db.fetchall(
            "SELECT seq, key, old_value, new_value, writer FROM changes "
            "WHERE seq > ? ORDER BY seq",
            (self._last_seq,),
        )
        delivered = 0
        for seq, key, old_value, new_value, writer in rows:
            self._last_seq = seq
            if writer == self.writer_id:
                continue
            event = StorageEvent(key=key, old_value=old_value, new_value=new_value, writer=writer)
            for callback in list(self._watchers):
                _dispatch(callback, event)
            delivered += 1
        return delivered

    async def _watch_loop(self) -> None:
        while self._watchers:
            try:
                await self.poll_changes()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("change_log_poll_failed", error=str(e))
            await asyncio.sleep(self.watch_interval)

    async def close(self) -> None:
        if self._watch_task and not self._watch_task.done():
            self._watch_task.cancel()
            try:
                await self._watch_task
            except asyncio.CancelledError:
                pass
        self._watch_task = None
        await self.db.close()
        self._initialized = False


def create_store(config, writer_id: Optional[str] = None,
                 shared: Optional[SharedMemoryStore] = None) -> KeyValueStore:
    """Build a store handle from a StorageConfig."""
    if config.backend == "sqlite":
        return SQLiteStore(
            config.path,
            writer_id=writer_id,
            watch_interval=config.watch_interval_ms / 1000,
        )
    shared = shared or SharedMemoryStore(quota_bytes=config.quota_bytes)
    return shared.handle(writer_id)


__all__ = [
    'StorageEvent',
    'KeyValueStore',
    'SharedMemoryStore',
    'MemoryStoreHandle',
    'SQLiteStore',
    'create_store',
]
