"""
Replication engine for one replica of a shared record collection.

The engine owns the replica's in-memory view, persists it through a
StateRepository, exchanges change messages over a TransportChannel, queues
mutations while connectivity is down, and merges everything it receives with
the conflict resolver. Collaborators are injected, so several engines can run
side by side in one process.
"""

import asyncio
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .conflict import (
    Collision,
    ConflictBacklog,
    MergePolicy,
    MergeResult,
    PendingConflict,
    merge_collections,
    resolve_record,
    separate,
)
from .identifiers import IdGenerator
from .queue import OfflineQueue, DrainResult
from .status import StatusMonitor, SyncStatus
from ..models.records import (
    ChangeMessage,
    MessageType,
    Operation,
    QueueEntry,
    Record,
    ReplicaRole,
    ReplicaState,
    RESERVED_KEYS,
    now_ms,
)
from ..remote.client import RemoteStore, RetryingRemote
from ..storage.kv import KeyValueStore
from ..storage.state import StateRepository
from ..transport.broadcast import BroadcastHub
from ..transport.channel import TransportChannel
from ..transport.presence import PresenceTracker
from ..utils.config import ReplisyncConfig
from ..utils.errors import (
    MergeError,
    PersistenceError,
    RecordNotFoundError,
    RemoteError,
    ReplisyncError,
    TransportError,
    ValidationError,
)
from ..utils.logging import get_logger
from ..utils.notifications import Disposer, EventBus


logger = get_logger("replisync.sync.engine")

FIELD_TYPES = (str, int, float, bool, type(None))


class MutationStatus(Enum):
    """How far a mutation got."""
    APPLIED = "applied"
    QUEUED = "queued"


@dataclass
class MutationResult:
    """Result handed back to the host for every mutation call."""
    status: MutationStatus
    record: Optional[Record] = None
    record_id: Optional[str] = None
    records: List[Record] = field(default_factory=list)
    remote_pending: bool = False
    error: Optional[ReplisyncError] = None

    @property
    def applied(self) -> bool:
        return self.status is MutationStatus.APPLIED

    @property
    def queued(self) -> bool:
        return self.status is MutationStatus.QUEUED


def _validate_fields(fields: Any) -> Dict[str, Any]:
    if not isinstance(fields, dict):
        raise ValidationError("record", fields, "must be a mapping of field names to values")
    clean = {}
    for name, value in fields.items():
        if name in RESERVED_KEYS:
            continue
        if not isinstance(name, str) or not name:
            raise ValidationError("record", name, "field names must be non-empty strings")
        if not isinstance(value, FIELD_TYPES):
            raise ValidationError(name, value, "must be a string, number, boolean or null")
        clean[name] = value
    return clean


def _validate_id(value: Any) -> str:
    if isinstance(value, bool) or value is None:
        raise ValidationError("id", value, "must be a non-empty string or integer")
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    raise ValidationError("id", value, "must be a non-empty string or integer")


class SyncEngine:
    """
    One replica of the replicated collection.

    Args:
        role: "primary" for the authoritative writer, "secondary" otherwise
        store: This replica's handle on the device's persistent store
        channel: Transport channel (built from ``config`` when omitted)
        remote: Remote persistence collaborator, optional
        config: Engine configuration
        hub: Broadcast hub used when building the default channel
        clock: Millisecond clock
        replica_id: Stable identity of this replica (the store writer id by default)
        on_unresolved_conflict: Called with each conflict evicted from the backlog
    """

    def __init__(
        self,
        role: Union[ReplicaRole, str],
        store: KeyValueStore,
        channel: Optional[TransportChannel] = None,
        remote: Optional[RemoteStore] = None,
        config: Optional[ReplisyncConfig] = None,
        hub: Optional[BroadcastHub] = None,
        clock: Callable[[], int] = now_ms,
        replica_id: Optional[str] = None,
        on_unresolved_conflict: Optional[Callable[[PendingConflict], Any]] = None,
    ):
        self.role = ReplicaRole(role)
        self.config = config or ReplisyncConfig()
        self.store = store
        self.clock = clock
        self.replica_id = replica_id or store.writer_id
        self.repository = StateRepository(store, prefix=self.config.storage.key_prefix)
        self.events = EventBus(source=self.replica_id)
        self.status_monitor = StatusMonitor(
            failure_threshold=self.config.merge.failure_threshold,
            events=self.events,
            repository=self.repository,
            clock=clock,
        )
        self.channel = channel or TransportChannel.build(
            store,
            self.repository,
            hub=hub,
            config=self.config.transport,
            health=self.status_monitor.health,
            clock=clock,
        )
        if self.channel.polling is not None:
            self.channel.polling.health = self.status_monitor.health

        if remote is not None and not isinstance(remote, RetryingRemote):
            remote = RetryingRemote.from_config(remote, self.config.retry)
        self.remote = remote

        self.queue = OfflineQueue(self.repository, owner=self.replica_id)
        self.ids = IdGenerator(self.repository, self.config.merge.id_scheme, prefix=self.replica_id)
        self.policy = MergePolicy.from_config(self.config.merge)
        self.presence = PresenceTracker(
            liveness_window_ms=self.config.liveness.liveness_window_ms,
            initial_window_ms=self.config.liveness.initial_presence_window_ms,
            clock=clock,
        )
        self.backlog = ConflictBacklog(
            max_entries=self.config.queue.max_pending_conflicts,
            retention_ms=self.config.queue.conflict_retention_seconds * 1000,
            clock=clock,
        )
        self.on_unresolved_conflict = on_unresolved_conflict

        self.state = ReplicaState()
        self.tombstones: Dict[str, int] = {}
        self.peers: Dict[str, Dict[str, Any]] = {}
        self.online = True
        self._running = False
        self._last_stamp = 0
        self._lock = asyncio.Lock()
        self._disposers: List[Disposer] = []

    # Lifecycle

    @property
    def running(self) -> bool:
        return self._running

    @property
    def status(self) -> SyncStatus:
        return self.status_monitor.status

    @property
    def source(self) -> str:
        return self.role.value

    async def start(self) -> None:
        """Load persisted state, connect transports and request an initial sync."""
        if self._running:
            return

        self.state = await self.repository.load_state()
        self.tombstones = await self.repository.load_tombstones()
        self.backlog.load(await self.repository.load_conflicts())
        await self.queue.load()
        self._last_stamp = max(
            [await self.repository.last_update()] + [r.last_updated for r in self.state]
        )

        self._disposers.append(self.channel.on_message(self._on_message))
        self._disposers.append(self.channel.on_state_change(self._on_transport_change))
        tick = self.channel.on_tick(self._on_tick)
        if tick is not None:
            self._disposers.append(tick)

        await self.channel.start()
        self.channel.acknowledge_update(self._last_stamp)
        self._running = True

        await self.status_monitor.mark_ready()
        self.status_monitor.primary_active = self.channel.primary_active

        if self.role is ReplicaRole.PRIMARY:
            await self._heartbeat()
        else:
            self.presence.observe_stored(await self.repository.presence())
            self.status_monitor.peer_unreachable = False

        await self.status_monitor.evaluate()
        logger.info(
            "engine_started",
            replica_id=self.replica_id,
            role=self.role.value,
            records=len(self.state),
            queued=len(self.queue),
            transport=self.channel.active_mechanism,
        )

        await self.request_sync()
        if self.online and len(self.queue):
            await self.drain_queue()

    async def stop(self) -> None:
        """Announce departure (primary only) and release transports."""
        if not self._running:
            return
        if self.role is ReplicaRole.PRIMARY:
            await self._send(ChangeMessage(type=MessageType.PRESENCE_OFFLINE))
            try:
                await self.repository.clear_presence()
            except PersistenceError as e:
                logger.warning("presence_clear_failed", error=str(e))

        for dispose in self._disposers:
            dispose()
        self._disposers.clear()
        await self.channel.stop()
        self._running = False
        logger.info("engine_stopped", replica_id=self.replica_id)

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    # Queries

    def records(self) -> List[Record]:
        return self.state.records

    def get(self, record_id: Union[str, int]) -> Optional[Record]:
        return self.state.get(_validate_id(record_id))

    def on(self, event_name: str, handler: Callable) -> Disposer:
        """Register an observer; returns its disposer."""
        return self.events.subscribe(handler, event_name)

    # Mutations

    def _known_ids(self) -> List[str]:
        """Ids in local state plus those pending in the offline queue."""
        known = set(self.state.ids())
        for entry in self.queue.entries:
            if entry.operation is Operation.DELETE:
                known.discard(entry.target_id)
            else:
                known.add(entry.target_id)
        return sorted(known)

    async def add(self, record: Union[Dict[str, Any], Record]) -> MutationResult:
        """
        Add a new record.

        Raises:
            ValidationError: malformed input, checked before any I/O
            PersistenceError: the local store refused the write
        """
        if isinstance(record, Record):
            record = record.to_dict()
        fields = _validate_fields(record)
        if not fields:
            raise ValidationError("record", record, "must carry at least one field")

        known = self._known_ids()
        if record.get("id") is not None:
            record_id = _validate_id(record["id"])
            if record_id in known:
                raise ValidationError("id", record_id, "must not already exist")
        else:
            record_id = await self.ids.next_id(known)

        new = Record(
            id=record_id,
            fields=fields,
            last_updated=self._next_stamp(),
            updated_by=self.role.writer,
            origin=self.replica_id,
        )
        return await self._mutate(QueueEntry(operation=Operation.ADD, record=new))

    async def update(self, record: Union[Dict[str, Any], Record]) -> MutationResult:
        """
        Update fields of an existing record; fields not given are kept.

        Raises:
            ValidationError: malformed input
            RecordNotFoundError: the id is unknown to this replica
            PersistenceError: the local store refused the write
        """
        if isinstance(record, Record):
            record = record.to_dict()
        if not isinstance(record, dict) or "id" not in record:
            raise ValidationError("id", None, "update requires the record id")
        record_id = _validate_id(record["id"])
        fields = _validate_fields(record)
        if record_id not in self._known_ids():
            raise RecordNotFoundError(record_id)

        patch = Record(
            id=record_id,
            fields=fields,
            last_updated=self._next_stamp(),
            updated_by=self.role.writer,
        )
        return await self._mutate(QueueEntry(operation=Operation.UPDATE, record=patch))

    async def delete(self, record_id: Union[str, int]) -> MutationResult:
        """
        Delete a record; leaves a tombstone so stale copies are not resurrected.

        Raises:
            ValidationError: malformed id
            RecordNotFoundError: the id is unknown to this replica
            PersistenceError: the local store refused the write
        """
        record_id = _validate_id(record_id)
        if record_id not in self._known_ids():
            raise RecordNotFoundError(record_id)
        return await self._mutate(QueueEntry(operation=Operation.DELETE, record_id=record_id))

    async def _mutate(self, entry: QueueEntry) -> MutationResult:
        if not self.online:
            await self.queue.enqueue(entry)
            return MutationResult(
                status=MutationStatus.QUEUED,
                record=entry.record,
                record_id=entry.target_id,
                records=self.records(),
            )

        started = time.perf_counter()
        record, collisions = await self._apply_entry(entry)
        await self._announce(entry, record)
        await self._report_collisions(collisions)
        if await self._broadcast_update():
            await self.status_monitor.record_success(started)

        result = MutationResult(
            status=MutationStatus.APPLIED,
            record=record,
            record_id=record.id if record is not None else entry.target_id,
            records=self.records(),
        )
        if self.remote is not None:
            try:
                await self._push_remote(entry, record)
            except RemoteError as e:
                logger.warning(
                    "remote_push_failed",
                    operation=entry.operation.value,
                    record_id=result.record_id,
                    error=str(e),
                )
                result.error = e
                if not e.is_retryable:
                    return result
                if record is not None:
                    entry.record = record
                entry.local_applied = True
                await self.queue.enqueue(entry)
                result.remote_pending = True
        return result

    async def _apply_entry(self, entry: QueueEntry) -> Tuple[Optional[Record], List[Collision]]:
        """
        Apply one mutation to local state and persist it.

        Raises:
            RecordNotFoundError: an update whose record is gone
            PersistenceError: the write was refused; memory and store are rolled back
        """
        async with self._lock:
            collisions = await self._refresh_from_store()
            stamp = self._next_stamp()
            saved_state, saved_tombstones = self.state.copy(), dict(self.tombstones)

            if entry.operation is Operation.DELETE:
                record = self.state.remove(entry.record_id)
                self.tombstones[entry.record_id] = stamp
            elif entry.operation is Operation.UPDATE:
                current = self.state.get(entry.record.id)
                if current is None:
                    raise RecordNotFoundError(entry.record.id)
                record = replace(
                    current,
                    fields={**current.fields, **entry.record.fields},
                    last_updated=stamp,
                    updated_by=self.role.writer,
                )
                self.state.upsert(record)
            else:
                record = self._place_new(entry.record, stamp, collisions)

            await self._commit(stamp, saved_state, saved_tombstones)

        logger.info(
            "mutation_applied",
            operation=entry.operation.value,
            record_id=record.id if record is not None else entry.target_id,
            replica_id=self.replica_id,
        )
        return record, collisions

    def _place_new(self, incoming: Record, stamp: int, collisions: List[Collision]) -> Record:
        """Insert an added record, keeping it apart from another replica's record of the same id."""
        record = replace(incoming, last_updated=stamp, updated_by=self.role.writer)
        current = self.state.get(record.id)
        if current is None:
            self.state.upsert(record)
            return record
        if current.origin == record.origin:
            # Already applied by an earlier run of this replica.
            return current

        keep, moved, collision = separate(current, record)
        collisions.append(collision)
        self.state.upsert(keep)
        existing = self.state.get(moved.id)
        if existing is not None:
            moved = resolve_record(existing, moved, now=stamp, policy=self.policy)
        self.state.upsert(moved)
        return keep if keep.origin == record.origin else moved

    async def _announce(self, entry: QueueEntry, record: Optional[Record]) -> None:
        if entry.operation is Operation.ADD:
            await self.events.emit("record_added", record=record)
        elif entry.operation is Operation.DELETE:
            await self.events.emit("record_deleted", record_id=entry.record_id)
        await self.events.emit(
            "data_changed", records=self.records(), reason=entry.operation.value
        )

    async def _push_remote(self, entry: QueueEntry, record: Optional[Record]) -> None:
        if entry.operation is Operation.DELETE:
            await self.remote.delete(entry.record_id)
        elif entry.operation is Operation.ADD:
            await self.remote.insert(record.to_dict())
        else:
            await self.remote.update(record.id, record.to_dict())

    # Connectivity and queue

    async def set_online(self, online: bool) -> Optional[DrainResult]:
        """Connectivity signal from the host; coming back online drains the queue."""
        if online == self.online:
            return None
        self.online = online
        logger.info("connectivity_changed", online=online, replica_id=self.replica_id)
        await self.status_monitor.set_online(online)
        if not online:
            return None
        result = await self.drain_queue()
        await self.request_sync()
        return result

    async def drain_queue(self) -> DrainResult:
        """Replay queued mutations in submission order."""
        if not self.online:
            return DrainResult(remaining=len(self.queue))

        result = await self.queue.drain(self._replay)
        if result.applied:
            await self.events.emit(
                "data_changed", records=self.records(), reason="replay"
            )
        await self.events.emit(
            "queue_drained",
            applied=len(result.applied),
            failed=len(result.failed),
            remaining=result.remaining,
        )
        return result

    async def _replay(self, entry: QueueEntry) -> None:
        if entry.local_applied:
            await self._push_outstanding(entry)
            return

        try:
            record, collisions = await self._apply_entry(entry)
        except RecordNotFoundError:
            logger.warning(
                "queued_update_dropped",
                record_id=entry.target_id,
                reason="record deleted",
                replica_id=self.replica_id,
            )
            return

        if entry.operation is Operation.ADD:
            await self.events.emit("record_added", record=record)
        elif entry.operation is Operation.DELETE:
            await self.events.emit("record_deleted", record_id=entry.record_id)
        await self._report_collisions(collisions)
        await self._broadcast_update()
        if self.remote is None:
            return
        try:
            await self._push_remote(entry, record)
        except RemoteError as e:
            if not e.is_retryable:
                logger.error("remote_push_rejected", record_id=entry.target_id, error=str(e))
                return
            if record is not None:
                entry.record = record
            entry.local_applied = True
            raise

    async def _push_outstanding(self, entry: QueueEntry) -> None:
        """Push a mutation that local state already reflects, as it stands now."""
        if self.remote is None:
            return
        try:
            if entry.operation is Operation.DELETE:
                await self.remote.delete(entry.record_id)
                return

            current = self.state.get(entry.target_id)
            if current is None:
                logger.info("remote_push_skipped", record_id=entry.target_id, reason="record deleted")
                return
            await self._push_remote(entry, current)
        except RemoteError as e:
            if e.is_retryable:
                raise
            logger.error("remote_push_rejected", record_id=entry.target_id, error=str(e))

    # Sync requests and liveness

    async def request_sync(self) -> bool:
        """Ask the primary writer (or, without one, any replica) for its state."""
        return await self._send(ChangeMessage(type=MessageType.SYNC_REQUEST))

    async def notify_visible(self) -> bool:
        """The host's view became visible again."""
        return await self.request_sync()

    async def ping(self) -> bool:
        return await self._send(ChangeMessage(type=MessageType.PING))

    async def refresh_from_remote(self) -> MergeResult:
        """
        Pull the collection from the remote collaborator and merge it.

        Raises:
            RemoteError: no collaborator, or retries exhausted
        """
        if self.remote is None:
            raise RemoteError("No remote collaborator configured")
        rows = await self.remote.select(order="id")

        incoming = []
        for row in rows:
            try:
                incoming.append(Record.from_dict(row))
            except MergeError as e:
                logger.warning("remote_row_skipped", error=str(e))

        result = await self._merge(incoming, {}, reason="remote")
        if result.changed:
            await self._broadcast_update()
        return result

    # Internals

    def _next_stamp(self) -> int:
        """Wall-clock millis, forced strictly above every stamp issued before."""
        stamp = max(self.clock(), self._last_stamp + 1)
        self._last_stamp = stamp
        return stamp

    async def _persist(self, stamp: int) -> None:
        await self.repository.save_tombstones(self.tombstones)
        await self.repository.save_state(self.state, stamp)
        self.channel.acknowledge_update(stamp)

    async def _commit(self, stamp: int, saved_state: ReplicaState,
                      saved_tombstones: Dict[str, int]) -> None:
        """Persist memory; on failure put memory and the store back as they were."""
        try:
            await self._persist(stamp)
        except PersistenceError:
            self.state, self.tombstones = saved_state, saved_tombstones
            try:
                await self.repository.save_tombstones(saved_tombstones)
                await self.repository.save_state(saved_state, stamp)
            except PersistenceError as e:
                logger.error("store_restore_failed", replica_id=self.replica_id, error=str(e))
            raise

    async def _refresh_from_store(self) -> List[Collision]:
        """Fold what other replicas persisted into memory before writing."""
        stored = await self.repository.load_state()
        stored_tombstones = await self.repository.load_tombstones()
        for record_id, deleted_at in stored_tombstones.items():
            if deleted_at > self.tombstones.get(record_id, 0):
                self.tombstones[record_id] = deleted_at
        result = merge_collections(
            self.state, stored.records, self.tombstones,
            now=self._next_stamp(), policy=self.policy,
        )
        self.state = result.state
        return result.collisions

    async def _merge(self, records: List[Record], deleted: Dict[str, int],
                     reason: str) -> MergeResult:
        async with self._lock:
            collisions = await self._refresh_from_store()
            saved_state, saved_tombstones = self.state.copy(), dict(self.tombstones)
            tombstones_changed = False
            for record_id, deleted_at in deleted.items():
                if deleted_at > self.tombstones.get(record_id, 0):
                    self.tombstones[record_id] = deleted_at
                    tombstones_changed = True

            result = merge_collections(
                self.state, records, self.tombstones,
                now=self._next_stamp(), policy=self.policy,
            )
            result.collisions[:0] = collisions
            if result.changed or tombstones_changed or collisions:
                self.state = result.state
                await self._commit(self._next_stamp(), saved_state, saved_tombstones)

        if result.changed:
            logger.info(
                "remote_changes_merged",
                reason=reason,
                added=len(result.added),
                updated=len(result.updated),
                removed=len(result.removed),
                replica_id=self.replica_id,
            )
            for record_id in result.added:
                await self.events.emit("record_added", record=self.state.get(record_id))
            for record_id in result.removed:
                await self.events.emit("record_deleted", record_id=record_id)
            await self.events.emit("data_changed", records=self.records(), reason=reason)

        await self._report_collisions(result.collisions)
        return result

    async def _report_collisions(self, collisions: List[Collision]) -> None:
        if not collisions:
            return
        for collision in collisions:
            await self.events.emit("conflict", kind="collision", collision=collision)
        await self._send(ChangeMessage(
            type=MessageType.CONFLICT_NOTICE,
            payload={"collisions": [c.to_dict() for c in collisions]},
        ))

    async def _send(self, message: ChangeMessage) -> bool:
        message.source = self.source
        message.sender = self.replica_id
        if not self._running:
            return False
        delivered = await self.channel.send(message)
        if not delivered:
            await self._record_failure(
                TransportError(f"No transport accepted {message.type.value}")
            )
        return delivered

    async def _broadcast_update(self) -> bool:
        return await self._send(ChangeMessage(
            type=MessageType.DATA_UPDATE,
            timestamp=self._last_stamp,
            data=self.state.to_list(),
            deleted=dict(self.tombstones) or None,
        ))

    async def _record_failure(self, error: BaseException) -> None:
        if await self.status_monitor.record_failure(error):
            logger.warning("failure_threshold_reached", replica_id=self.replica_id)
            await self.channel.force_fallback()

    async def _on_transport_change(self, old: Optional[str], new: Optional[str]) -> None:
        await self.status_monitor.set_primary_active(self.channel.primary_active)

    async def _on_tick(self) -> None:
        if self.role is ReplicaRole.PRIMARY:
            await self._heartbeat()
        elif self.presence.check_lost():
            logger.warning("primary_writer_unreachable", replica_id=self.replica_id)
            await self.status_monitor.set_peer_unreachable(True)

        for conflict in self.backlog.prune():
            await self._announce_eviction(conflict)

    async def _heartbeat(self) -> None:
        stamp = self.clock()
        try:
            await self.repository.write_presence(stamp)
        except PersistenceError as e:
            logger.warning("heartbeat_write_failed", error=str(e))
        await self._send(ChangeMessage(type=MessageType.PRESENCE_ONLINE, timestamp=stamp))

    # Inbound messages

    async def _on_message(self, message: ChangeMessage) -> None:
        if message.sender is not None and message.sender == self.replica_id:
            return

        handler = {
            MessageType.DATA_UPDATE: self._on_data_update,
            MessageType.SYNC_REQUEST: self._on_sync_request,
            MessageType.SYNC_RESPONSE: self._on_sync_response,
            MessageType.CONFLICT_NOTICE: self._on_conflict_notice,
            MessageType.PRESENCE_ONLINE: self._on_presence_online,
            MessageType.PRESENCE_OFFLINE: self._on_presence_offline,
            MessageType.PING: self._on_ping,
            MessageType.PONG: self._on_pong,
        }[message.type]

        try:
            message.validate()
            await handler(message)
        except MergeError as e:
            logger.warning(
                "inbound_message_dropped",
                message_type=message.type.value,
                sender=message.sender,
                error=str(e),
            )
            await self._record_failure(e)
            if message.type is MessageType.SYNC_RESPONSE:
                await self._handle_unmergeable(message, e)
        except PersistenceError as e:
            logger.error("inbound_persist_failed", message_type=message.type.value, error=str(e))
            await self._record_failure(e)

    async def _apply_inbound(self, message: ChangeMessage, reason: str) -> MergeResult:
        started = time.perf_counter()
        result = await self._merge(message.records(), message.tombstones(), reason=reason)
        await self.status_monitor.record_success(started)
        if result.changed:
            await self.status_monitor.mark_synced()
        return result

    async def _on_data_update(self, message: ChangeMessage) -> None:
        await self._apply_inbound(message, reason="data_update")
        if self.role is ReplicaRole.PRIMARY and message.source == ReplicaRole.SECONDARY.value:
            await self._send_state(MessageType.SYNC_RESPONSE, requester=message.sender)

    async def _on_sync_request(self, message: ChangeMessage) -> None:
        if (self.role is ReplicaRole.PRIMARY
                or message.source == ReplicaRole.PRIMARY.value
                or not self.presence.is_live()):
            await self._send_state(MessageType.SYNC_RESPONSE, requester=message.sender)

    async def _on_sync_response(self, message: ChangeMessage) -> None:
        await self._apply_inbound(message, reason="sync_response")

    async def _send_state(self, message_type: MessageType, **payload: Any) -> bool:
        return await self._send(ChangeMessage(
            type=message_type,
            timestamp=self._last_stamp,
            data=self.state.to_list(),
            deleted=dict(self.tombstones) or None,
            payload={k: v for k, v in payload.items() if v is not None},
        ))

    async def _handle_unmergeable(self, message: ChangeMessage, error: MergeError) -> None:
        raw = message.data if isinstance(message.data, list) else []
        conflict = PendingConflict(
            reason=str(error),
            records=[r for r in raw if isinstance(r, dict)],
            recorded_at=self.clock(),
        )
        await self.events.emit("conflict", kind="unmergeable", conflict=conflict)

        if self.role is ReplicaRole.SECONDARY and self.presence.is_live():
            logger.info("conflict_escalated", conflict_id=conflict.conflict_id)
            await self._send(ChangeMessage(
                type=MessageType.CONFLICT_NOTICE,
                payload={"conflictId": conflict.conflict_id, "reason": conflict.reason},
            ))
            return

        logger.warning("conflict_deferred", conflict_id=conflict.conflict_id, pending=len(self.backlog) + 1)
        for evicted in self.backlog.add(conflict):
            await self._announce_eviction(evicted)
        try:
            await self.repository.save_conflicts(self.backlog.to_list())
        except PersistenceError as e:
            logger.error("conflict_backlog_persist_failed", error=str(e))

    async def _announce_eviction(self, conflict: PendingConflict) -> None:
        logger.warning("conflict_evicted", conflict_id=conflict.conflict_id, reason=conflict.reason)
        await self.events.emit("conflict_evicted", conflict=conflict)
        if self.on_unresolved_conflict is not None:
            try:
                result = self.on_unresolved_conflict(conflict)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error("conflict_callback_failed", error=str(e))

    async def _flush_backlog(self) -> None:
        """Escalate deferred conflicts now that a primary writer is live."""
        pending = self.backlog.take_all()
        if not pending:
            return
        await self.repository.save_conflicts(self.backlog.to_list())
        for conflict in pending:
            await self._send(ChangeMessage(
                type=MessageType.CONFLICT_NOTICE,
                payload={"conflictId": conflict.conflict_id, "reason": conflict.reason},
            ))

    async def _on_conflict_notice(self, message: ChangeMessage) -> None:
        from_primary = message.source == ReplicaRole.PRIMARY.value

        if not from_primary:
            if self.role is ReplicaRole.PRIMARY:
                await self._send_state(
                    MessageType.CONFLICT_NOTICE,
                    conflictId=message.payload.get("conflictId"),
                    requester=message.sender,
                )
            return

        if self.role is ReplicaRole.PRIMARY or (message.data is None and not message.deleted):
            return

        authoritative = message.records()
        deleted = message.tombstones()
        async with self._lock:
            await self._refresh_from_store()
            saved_state, saved_tombstones = self.state.copy(), dict(self.tombstones)
            for record_id, deleted_at in deleted.items():
                if deleted_at > self.tombstones.get(record_id, 0):
                    self.tombstones[record_id] = deleted_at
                    self.state.remove(record_id)
            for record in authoritative:
                self.state.upsert(record)
            await self._commit(self._next_stamp(), saved_state, saved_tombstones)

        conflict_id = message.payload.get("conflictId")
        if conflict_id:
            self.backlog.resolve(conflict_id)
            await self.repository.save_conflicts(self.backlog.to_list())

        logger.info("authoritative_resolution_applied", records=len(authoritative))
        await self.events.emit("data_changed", records=self.records(), reason="authoritative")
        await self.status_monitor.mark_synced()

    async def _on_presence_online(self, message: ChangeMessage) -> None:
        if self.role is ReplicaRole.PRIMARY:
            return
        came_online = self.presence.heartbeat(message.timestamp)
        if came_online:
            logger.info("primary_writer_online", replica_id=self.replica_id)
            await self.status_monitor.set_peer_unreachable(False)
            await self.request_sync()
            await self._flush_backlog()

    async def _on_presence_offline(self, message: ChangeMessage) -> None:
        if self.role is ReplicaRole.PRIMARY:
            return
        self.presence.went_offline()
        logger.info("primary_writer_offline", replica_id=self.replica_id)
        await self.status_monitor.set_peer_unreachable(True)

    async def _on_ping(self, message: ChangeMessage) -> None:
        await self._send(ChangeMessage(
            type=MessageType.PONG,
            payload={"role": self.role.value, "requester": message.sender},
        ))

    async def _on_pong(self, message: ChangeMessage) -> None:
        role = message.payload.get("role")
        self.peers[message.sender] = {"role": role, "seen_at": message.timestamp}
        if role == ReplicaRole.PRIMARY.value and self.role is ReplicaRole.SECONDARY:
            await self._on_presence_online(message)


__all__ = [
    'SyncEngine',
    'MutationResult',
    'MutationStatus',
]
