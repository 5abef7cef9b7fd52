"""
Models package for replisync.
"""

from .records import (
    Record,
    ReplicaState,
    ChangeMessage,
    QueueEntry,
    WriterRole,
    ReplicaRole,
    MessageType,
    Operation,
)

__all__ = [
    'Record',
    'ReplicaState',
    'ChangeMessage',
    'QueueEntry',
    'WriterRole',
    'ReplicaRole',
    'MessageType',
    'Operation',
]
