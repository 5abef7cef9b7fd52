"""
Data models for replicated record collections.

This module defines the records every replica holds, the envelope replicas
exchange over the transport channel, and the entries of the offline queue.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Dict, Any, Optional, Iterable, Tuple, Union
import time
import uuid

from ..utils.errors import MergeError
from ..utils.logging import get_logger


logger = get_logger("replisync.models")

RESERVED_KEYS = frozenset(("id", "lastUpdated", "updatedBy", "origin"))


def now_ms() -> int:
    """Current wall-clock time in integer milliseconds."""
    return int(time.time() * 1000)


class WriterRole(Enum):
    """Who produced a record version."""
    PRIMARY = "primary-writer"
    SECONDARY = "secondary-writer"
    MERGED = "merged"


class ReplicaRole(Enum):
    """Role a replica is constructed with."""
    PRIMARY = "primary"
    SECONDARY = "secondary"

    @property
    def writer(self) -> WriterRole:
        return WriterRole.PRIMARY if self is ReplicaRole.PRIMARY else WriterRole.SECONDARY


class MessageType(Enum):
    """Change message types exchanged between replicas."""
    DATA_UPDATE = "data_update"
    SYNC_REQUEST = "sync_request"
    SYNC_RESPONSE = "sync_response"
    CONFLICT_NOTICE = "conflict_notice"
    PRESENCE_ONLINE = "presence_online"
    PRESENCE_OFFLINE = "presence_offline"
    PING = "ping"
    PONG = "pong"


class Operation(Enum):
    """Mutation kinds held by the offline queue."""
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"


def normalize_id(value: Any) -> str:
    """Normalize an identifier to its string form; legacy ids are integers."""
    if isinstance(value, bool) or value is None:
        raise MergeError(f"Invalid record id: {value!r}")
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    raise MergeError(f"Invalid record id: {value!r}")


def id_sort_key(record_id: str) -> Tuple[int, Union[int, str]]:
    """Numeric identifiers sort first, in numeric order."""
    if record_id.isdigit():
        return (0, int(record_id))
    return (1, record_id)


@dataclass
class Record:
    """A logical entity in the replicated collection."""
    id: str
    fields: Dict[str, Any] = field(default_factory=dict)
    last_updated: int = 0
    updated_by: WriterRole = WriterRole.SECONDARY
    origin: Optional[str] = None

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)

    def content(self) -> Tuple:
        """Comparable view of everything except bookkeeping timestamps."""
        return (self.id, tuple(sorted(self.fields.items())), self.updated_by, self.origin)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the flat wire/storage representation."""
        data: Dict[str, Any] = {"id": self.id}
        data.update(self.fields)
        data["lastUpdated"] = self.last_updated
        data["updatedBy"] = self.updated_by.value
        if self.origin is not None:
            data["origin"] = self.origin
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Record':
        """
        Create from the flat representation.

        Raises:
            MergeError: if the payload is not a well-formed record
        """
        if not isinstance(data, dict):
            raise MergeError(f"Record payload must be an object, got {type(data).__name__}")
        if "id" not in data:
            raise MergeError("Record payload has no id")

        last_updated = data.get("lastUpdated", 0)
        if isinstance(last_updated, bool) or not isinstance(last_updated, (int, float)):
            raise MergeError(f"Invalid lastUpdated: {last_updated!r}")

        try:
            updated_by = WriterRole(data.get("updatedBy", WriterRole.SECONDARY.value))
        except ValueError:
            raise MergeError(f"Unknown updatedBy: {data.get('updatedBy')!r}")

        origin = data.get("origin")
        if origin is not None and not isinstance(origin, str):
            raise MergeError(f"Invalid origin: {origin!r}")

        return cls(
            id=normalize_id(data["id"]),
            fields={k: v for k, v in data.items() if k not in RESERVED_KEYS},
            last_updated=int(last_updated),
            updated_by=updated_by,
            origin=origin,
        )


class ReplicaState:
    """The full collection as seen by one replica, kept sorted by identifier."""

    def __init__(self, records: Optional[Iterable[Record]] = None):
        self._records: Dict[str, Record] = {}
        for record in records or ():
            self._records[record.id] = record

    @classmethod
    def from_list(cls, items: Iterable[Dict[str, Any]]) -> 'ReplicaState':
        return cls(Record.from_dict(item) for item in items)

    @property
    def records(self) -> List[Record]:
        return [self._records[k] for k in sorted(self._records, key=id_sort_key)]

    def ids(self) -> List[str]:
        return sorted(self._records, key=id_sort_key)

    def get(self, record_id: str) -> Optional[Record]:
        return self._records.get(record_id)

    def upsert(self, record: Record) -> None:
        self._records[record.id] = record

    def remove(self, record_id: str) -> Optional[Record]:
        return self._records.pop(record_id, None)

    def copy(self) -> 'ReplicaState':
        return ReplicaState(self._records.values())

    def to_list(self) -> List[Dict[str, Any]]:
        return [r.to_dict() for r in self.records]

    def __contains__(self, record_id: str) -> bool:
        return record_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self):
        return iter(self.records)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ReplicaState):
            return NotImplemented
        return self._records == other._records

    def __repr__(self) -> str:
        return f"ReplicaState({self.ids()!r})"


@dataclass
class ChangeMessage:
    """Envelope exchanged over the transport channel.

    ``data`` stays in wire form so that a malformed payload can be told apart
    from a malformed envelope; call :meth:`records` to parse it.
    """
    type: MessageType
    timestamp: int = field(default_factory=now_ms)
    data: Optional[List[Dict[str, Any]]] = None
    source: Optional[str] = None
    sender: Optional[str] = None
    deleted: Optional[Dict[str, int]] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    def records(self) -> List[Record]:
        """Parse the carried records; raises MergeError when malformed."""
        if self.data is None:
            return []
        if not isinstance(self.data, list):
            raise MergeError("Message data must be a list of records")
        return [Record.from_dict(item) for item in self.data]

    def tombstones(self) -> Dict[str, int]:
        """Parse the carried deletion stamps; raises MergeError when malformed."""
        if not self.deleted:
            return {}
        if not isinstance(self.deleted, dict):
            raise MergeError("Message deletions must map record ids to stamps")
        parsed: Dict[str, int] = {}
        for record_id, deleted_at in self.deleted.items():
            if isinstance(deleted_at, bool) or not isinstance(deleted_at, (int, float)):
                raise MergeError(f"Invalid deletion stamp for {record_id!r}: {deleted_at!r}")
            parsed[normalize_id(record_id)] = int(deleted_at)
        return parsed

    def validate(self) -> None:
        """Check the optional envelope fields; raises MergeError when malformed."""
        if not isinstance(self.payload, dict):
            raise MergeError("Message payload must be an object")
        self.tombstones()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        message: Dict[str, Any] = {
            "type": self.type.value,
            "timestamp": self.timestamp,
        }
        if self.data is not None:
            message["data"] = self.data
        if self.source is not None:
            message["source"] = self.source
        if self.sender is not None:
            message["sender"] = self.sender
        if self.deleted:
            message["deleted"] = self.deleted
        if self.payload:
            message["payload"] = self.payload
        return message

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional['ChangeMessage']:
        """
        Create from dictionary.

        Returns None for messages of an unknown type, which are logged and
        ignored. Raises MergeError for malformed envelopes.
        """
        if not isinstance(data, dict) or "type" not in data:
            raise MergeError("Change message has no type")
        try:
            message_type = MessageType(data["type"])
        except ValueError:
            logger.warning("unknown_message_type", message_type=data.get("type"))
            return None

        timestamp = data.get("timestamp", 0)
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            raise MergeError(f"Invalid message timestamp: {timestamp!r}")

        return cls(
            type=message_type,
            timestamp=int(timestamp),
            data=data.get("data"),
            source=data.get("source"),
            sender=data.get("sender"),
            deleted=data.get("deleted") or None,
            payload=data.get("payload") or {},
        )


@dataclass
class QueueEntry:
    """A mutation waiting for replay.

    ``local_applied`` marks a mutation already applied to local state whose
    remote push is still outstanding; replaying it only pushes.
    ``owner`` is the replica that queued it; replicas on one device share
    the persisted queue.
    """
    operation: Operation
    record: Optional[Record] = None
    record_id: Optional[str] = None
    enqueued_at: int = field(default_factory=now_ms)
    entry_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    local_applied: bool = False
    owner: Optional[str] = None

    @property
    def target_id(self) -> str:
        return self.record.id if self.record is not None else self.record_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entryId": self.entry_id,
            "operation": self.operation.value,
            "record": self.record.to_dict() if self.record else None,
            "recordId": self.record_id,
            "enqueuedAt": self.enqueued_at,
            "localApplied": self.local_applied,
            "owner": self.owner,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'QueueEntry':
        return cls(
            operation=Operation(data["operation"]),
            record=Record.from_dict(data["record"]) if data.get("record") else None,
            record_id=data.get("recordId"),
            enqueued_at=data.get("enqueuedAt", 0),
            entry_id=data.get("entryId") or uuid.uuid4().hex,
            local_applied=bool(data.get("localApplied", False)),
            owner=data.get("owner"),
        )
