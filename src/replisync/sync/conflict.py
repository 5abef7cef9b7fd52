"""
Deterministic conflict resolution for replicated collections.

Resolution order for two versions of one record:
1. A primary-writer version beats any other role.
2. Otherwise the strictly newer ``last_updated`` wins.
3. Otherwise fields are unioned and the result is marked ``merged``.

A resolved value of the terminal field (``claimed``) beats an open one
(``unclaimed``) whichever rule picked the winner. Absence never deletes;
only tombstones do. Records sharing an id but created by different replicas
are kept apart instead of being resolved against each other.
"""

from dataclasses import dataclass, field, replace
from typing import Optional, Dict, Any, List, Iterable, Callable, Tuple
import uuid

from ..models.records import Record, ReplicaState, WriterRole, id_sort_key, now_ms
from ..utils.logging import get_logger


logger = get_logger("replisync.sync.conflict")

REKEY_SEPARATOR = "~"


@dataclass(frozen=True)
class MergePolicy:
    """Field semantics used by the resolver."""
    terminal_field: str = "status"
    resolved_values: frozenset = frozenset(("claimed",))
    open_values: frozenset = frozenset(("unclaimed",))
    empty_markers: frozenset = frozenset(("", "N/A"))

    @classmethod
    def from_config(cls, config) -> 'MergePolicy':
        return cls(
            terminal_field=config.terminal_field,
            resolved_values=frozenset(config.resolved_values),
            open_values=frozenset(config.open_values),
            empty_markers=frozenset(config.empty_markers),
        )

    def is_empty(self, value: Any) -> bool:
        return value is None or (isinstance(value, str) and value in self.empty_markers)

    def is_resolved(self, value: Any) -> bool:
        return value in self.resolved_values


DEFAULT_POLICY = MergePolicy()


@dataclass
class Collision:
    """Two distinct records that were minted with the same identifier."""
    record_id: str
    origins: Tuple[Optional[str], Optional[str]]
    rekeyed_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recordId": self.record_id,
            "origins": list(self.origins),
            "rekeyedId": self.rekeyed_id,
        }


@dataclass
class MergeResult:
    """Outcome of merging an incoming collection into a local one."""
    state: ReplicaState
    changed: bool = False
    added: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    collisions: List[Collision] = field(default_factory=list)


def _terminal_override(winner: Record, loser: Record, policy: MergePolicy) -> Record:
    """Carry a resolved terminal value from the losing side onto the winner."""
    name = policy.terminal_field
    theirs = loser.fields.get(name)
    if policy.is_resolved(theirs) and not policy.is_resolved(winner.fields.get(name)):
        return replace(winner, fields={**winner.fields, name: theirs})
    return winner


def _field_union(a: Record, b: Record, now: int, policy: MergePolicy) -> Record:
    fields = dict(a.fields)
    for name, value in b.fields.items():
        if policy.is_empty(fields.get(name)) and not policy.is_empty(value):
            fields[name] = value

    name = policy.terminal_field
    if policy.is_resolved(b.fields.get(name)) and not policy.is_resolved(fields.get(name)):
        fields[name] = b.fields[name]

    return Record(
        id=a.id,
        fields=fields,
        last_updated=now,
        updated_by=WriterRole.MERGED,
        origin=a.origin if a.origin is not None else b.origin,
    )


def resolve_record(
    a: Record,
    b: Record,
    now: Optional[int] = None,
    policy: MergePolicy = DEFAULT_POLICY,
) -> Record:
    """
    Combine two versions of the same record.

    Args:
        a: Local version
        b: Incoming version
        now: Merge time stamped on field-union results
        policy: Field semantics

    Returns:
        The accepted version; ``a`` itself when both versions are identical
    """
    if a == b:
        return a

    a_primary = a.updated_by is WriterRole.PRIMARY
    b_primary = b.updated_by is WriterRole.PRIMARY
    if a_primary != b_primary:
        winner, loser = (a, b) if a_primary else (b, a)
        return _terminal_override(winner, loser, policy)

    if a.last_updated != b.last_updated:
        winner, loser = (a, b) if a.last_updated > b.last_updated else (b, a)
        return _terminal_override(winner, loser, policy)

    if a.content() == b.content():
        return a

    return _field_union(a, b, now if now is not None else now_ms(), policy)


def is_collision(a: Record, b: Record) -> bool:
    """Same identifier, different creating replicas."""
    return a.origin is not None and b.origin is not None and a.origin != b.origin


def rekeyed_id(record: Record) -> str:
    return f"{record.id}{REKEY_SEPARATOR}{record.origin}"


def separate(current: Record, incoming: Record) -> Tuple[Record, Record, Collision]:
    """
    Keep two records that share an identifier apart.

    The record whose origin sorts last is re-keyed to ``<id>~<origin>``. A
    record without an origin predates origin tracking and keeps its id.

    Returns:
        (record keeping the id, re-keyed record, collision report)
    """
    keep, move = sorted(
        (current, incoming), key=lambda r: (r.origin is not None, r.origin or "")
    )
    moved = replace(move, id=rekeyed_id(move))
    collision = Collision(
        record_id=current.id,
        origins=(keep.origin, move.origin),
        rekeyed_id=moved.id,
    )
    logger.warning("identifier_collision", **collision.to_dict())
    return keep, moved, collision


def is_tombstoned(record: Record, tombstones: Dict[str, int]) -> bool:
    deleted_at = tombstones.get(record.id)
    return deleted_at is not None and deleted_at >= record.last_updated


def merge_collections(
    local: Iterable[Record],
    incoming: Iterable[Record],
    tombstones: Optional[Dict[str, int]] = None,
    now: Optional[int] = None,
    policy: MergePolicy = DEFAULT_POLICY,
) -> MergeResult:
    """
    Merge an incoming collection into the local one.

    Identifiers only in ``incoming`` are adopted, identifiers only in
    ``local`` are kept, and identifiers in both are resolved with
    :func:`resolve_record`. Records covered by a tombstone newer than their
    last update are dropped from either side.
    """
    now = now if now is not None else now_ms()
    tombstones = tombstones or {}
    local_state = local if isinstance(local, ReplicaState) else ReplicaState(local)
    merged = local_state.copy()
    result = MergeResult(state=merged)

    for record in local_state.records:
        if is_tombstoned(record, tombstones):
            merged.remove(record.id)
            result.removed.append(record.id)

    def place(record: Record) -> None:
        current = merged.get(record.id)
        if current is None:
            merged.upsert(record)
            result.added.append(record.id)
            return
        resolved = resolve_record(current, record, now=now, policy=policy)
        if resolved != current:
            merged.upsert(resolved)
            result.updated.append(record.id)

    for record in sorted(incoming, key=lambda r: id_sort_key(r.id)):
        if is_tombstoned(record, tombstones):
            continue

        current = merged.get(record.id)
        if current is not None and is_collision(current, record):
            keep, moved, collision = separate(current, record)
            result.collisions.append(collision)

            if keep is not current:
                merged.upsert(keep)
                result.updated.append(keep.id)
            place(moved)
            continue

        place(record)

    result.changed = bool(result.added or result.updated or result.removed)
    return result


def detect_conflicts(local: Iterable[Record], incoming: Iterable[Record]) -> List[str]:
    """Identifiers present on both sides with differing content."""
    theirs = {r.id: r for r in incoming}
    return [
        r.id for r in local
        if r.id in theirs and r.content() != theirs[r.id].content()
    ]


@dataclass
class PendingConflict:
    """A conflict waiting for an authoritative resolution."""
    reason: str
    records: List[Dict[str, Any]] = field(default_factory=list)
    recorded_at: int = field(default_factory=now_ms)
    conflict_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conflictId": self.conflict_id,
            "reason": self.reason,
            "records": self.records,
            "recordedAt": self.recorded_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PendingConflict':
        return cls(
            reason=data.get("reason", ""),
            records=data.get("records") or [],
            recorded_at=data.get("recordedAt", 0),
            conflict_id=data.get("conflictId") or uuid.uuid4().hex[:12],
        )


class ConflictBacklog:
    """
    Conflicts that could not be resolved because no primary writer was live.

    Bounded by entry count and age; whatever falls out is returned to the
    caller so that it can be announced.
    """

    def __init__(
        self,
        max_entries: int = 100,
        retention_ms: int = 24 * 3600 * 1000,
        clock: Callable[[], int] = now_ms,
    ):
        self.max_entries = max_entries
        self.retention_ms = retention_ms
        self.clock = clock
        self._entries: List[PendingConflict] = []

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> List[PendingConflict]:
        return list(self._entries)

    def load(self, items: List[Dict[str, Any]]) -> None:
        self._entries = [PendingConflict.from_dict(item) for item in items]

    def to_list(self) -> List[Dict[str, Any]]:
        return [c.to_dict() for c in self._entries]

    def add(self, conflict: PendingConflict) -> List[PendingConflict]:
        """Record a conflict; returns the entries evicted to make room or by age."""
        self._entries.append(conflict)
        evicted = self.prune()
        while len(self._entries) > self.max_entries:
            evicted.append(self._entries.pop(0))
        return evicted

    def prune(self) -> List[PendingConflict]:
        cutoff = self.clock() - self.retention_ms
        expired = [c for c in self._entries if c.recorded_at < cutoff]
        if expired:
            self._entries = [c for c in self._entries if c.recorded_at >= cutoff]
        return expired

    def take_all(self) -> List[PendingConflict]:
        entries, self._entries = self._entries, []
        return entries

    def resolve(self, conflict_id: str) -> Optional[PendingConflict]:
        for i, conflict in enumerate(self._entries):
            if conflict.conflict_id == conflict_id:
                return self._entries.pop(i)
        return None
