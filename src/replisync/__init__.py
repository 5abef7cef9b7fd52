"""
replisync - multi-writer local replication for record collections.

This package lets several independent replicas on one device (tabs, windows,
processes) share one logical collection of records and converge on the same
state without a central coordinator:
- Transport channel with broadcast, storage-signal and polling fallbacks
- Durable offline mutation queue
- Deterministic merge and conflict resolution
- Health monitoring with adaptive polling
"""

__version__ = "0.1.0"

from .models.records import (
    ChangeMessage,
    MessageType,
    QueueEntry,
    Record,
    ReplicaRole,
    ReplicaState,
    WriterRole,
)
from .storage.kv import SharedMemoryStore, SQLiteStore, KeyValueStore
from .sync.conflict import merge_collections, resolve_record
from .sync.engine import SyncEngine, MutationResult, MutationStatus
from .sync.status import SyncStatus
from .transport.broadcast import BroadcastHub
from .transport.channel import TransportChannel
from .utils.config import ReplisyncConfig, load_config

__all__ = [
    'SyncEngine',
    'MutationResult',
    'MutationStatus',
    'SyncStatus',
    'Record',
    'ReplicaState',
    'ReplicaRole',
    'WriterRole',
    'ChangeMessage',
    'MessageType',
    'QueueEntry',
    'KeyValueStore',
    'SharedMemoryStore',
    'SQLiteStore',
    'BroadcastHub',
    'TransportChannel',
    'merge_collections',
    'resolve_record',
    'ReplisyncConfig',
    'load_config',
]
