"""Shared-store sentinel transport, the first fallback.

The sender writes a small sentinel to the signal key and clears it shortly
after. Other handles of the store see the write through their change
notifications. For data messages the sentinel carries no records: receivers
read the collection key, which the sender persisted before signalling.
"""

import asyncio
import json
from typing import Optional, Dict, Any

from .base import Transport
from ..models.records import ChangeMessage, MessageType
from ..storage.kv import KeyValueStore, StorageEvent
from ..storage.state import StateRepository
from ..utils.errors import TransportError, ReplisyncError
from ..utils.logging import get_logger

logger = get_logger("replisync.transport.storage")

DATA_TYPES = (MessageType.DATA_UPDATE, MessageType.SYNC_RESPONSE)


class StorageSignalTransport(Transport):
    """Transport over change notifications of a shared key-value store"""

    mechanism = "storage"

    def __init__(self, store: KeyValueStore, repository: StateRepository,
                 clear_delay_ms: int = 100, name: Optional[str] = None):
        super().__init__(name)
        self.store = store
        self.repository = repository
        self.clear_delay = clear_delay_ms / 1000
        self._dispose_watch = None
        self._clear_task: Optional[asyncio.Task] = None

    async def connect(self) -> None:
        try:
            self._dispose_watch = self.store.watch(self._on_storage_event)
        except Exception as e:
            raise TransportError(f"Store does not support change notifications: {e}") from e
        self._mark_connected()

    async def disconnect(self) -> None:
        if self._dispose_watch:
            self._dispose_watch()
            self._dispose_watch = None
        if self._clear_task and not self._clear_task.done():
            self._clear_task.cancel()
        self._mark_disconnected()

    async def send_message(self, message: ChangeMessage) -> None:
        if not self.is_connected:
            raise TransportError(f"Storage transport {self.name} is not connected")

        sentinel = message.to_dict()
        if message.type in DATA_TYPES:
            sentinel.pop("data", None)
            sentinel.pop("deleted", None)

        try:
            await self.store.set(self.repository.signal_key, json.dumps(sentinel))
        except ReplisyncError as e:
            raise TransportError(f"Could not write sync signal: {e}", cause=e) from e

        self._stats["messages_sent"] += 1
        if self._clear_task and not self._clear_task.done():
            self._clear_task.cancel()
        self._clear_task = asyncio.create_task(self._clear_signal())

    async def _clear_signal(self) -> None:
        await asyncio.sleep(self.clear_delay)
        try:
            await self.store.delete(self.repository.signal_key)
        except ReplisyncError as e:
            logger.warning("sync_signal_clear_failed", error=str(e))

    async def _on_storage_event(self, event: StorageEvent) -> None:
        if event.key == self.repository.signal_key:
            if event.new_value is None:
                return
            await self._on_signal(event.new_value)
        elif event.key == self.repository.presence_key:
            await self._on_presence(event)

    async def _on_signal(self, value: str) -> None:
        try:
            sentinel: Dict[str, Any] = json.loads(value)
        except json.JSONDecodeError:
            self._stats["messages_dropped"] += 1
            logger.warning("malformed_sync_signal", value=value[:100])
            return

        if sentinel.get("type") in {t.value for t in DATA_TYPES}:
            try:
                state = await self.repository.load_state()
                tombstones = await self.repository.load_tombstones()
            except ReplisyncError as e:
                self._stats["errors"] += 1
                logger.error("sync_signal_read_failed", error=str(e))
                return
            sentinel["type"] = MessageType.DATA_UPDATE.value
            sentinel["data"] = state.to_list()
            if tombstones:
                sentinel["deleted"] = tombstones

        await self._handle_raw(sentinel)

    async def _on_presence(self, event: StorageEvent) -> None:
        if event.new_value is None:
            message = ChangeMessage(type=MessageType.PRESENCE_OFFLINE, source="primary")
        else:
            try:
                timestamp = int(json.loads(event.new_value))
            except (TypeError, ValueError):
                self._stats["messages_dropped"] += 1
                return
            message = ChangeMessage(
                type=MessageType.PRESENCE_ONLINE, timestamp=timestamp, source="primary"
            )
        await self._handle_message(message)
