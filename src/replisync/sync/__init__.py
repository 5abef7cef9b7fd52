"""
Synchronization core for replisync.

This package provides the replication engine, the offline queue, conflict
resolution and health monitoring.
"""

from .conflict import (
    MergePolicy,
    MergeResult,
    Collision,
    ConflictBacklog,
    PendingConflict,
    resolve_record,
    merge_collections,
    detect_conflicts,
)
from .queue import OfflineQueue, DrainResult
from .identifiers import IdGenerator
from .status import StatusMonitor, SyncStatus, SyncMetrics
from .engine import SyncEngine, MutationResult, MutationStatus

__all__ = [
    'MergePolicy',
    'MergeResult',
    'Collision',
    'ConflictBacklog',
    'PendingConflict',
    'resolve_record',
    'merge_collections',
    'detect_conflicts',
    'OfflineQueue',
    'DrainResult',
    'IdGenerator',
    'StatusMonitor',
    'SyncStatus',
    'SyncMetrics',
    'SyncEngine',
    'MutationResult',
    'MutationStatus',
]
