"""Persistent stores and the persisted-state layout."""

from .database import Database
from .kv import KeyValueStore, SharedMemoryStore, MemoryStoreHandle, SQLiteStore, StorageEvent
from .state import StateRepository

__all__ = [
    "Database",
    "KeyValueStore",
    "SharedMemoryStore",
    "MemoryStoreHandle",
    "SQLiteStore",
    "StorageEvent",
    "StateRepository",
]
