"""Same-device publish/subscribe primitive, the preferred transport"""

import asyncio
import json
from typing import Dict, List, Optional, Any

from .base import Transport, ConnectionState
from ..models.records import ChangeMessage
from ..utils.errors import TransportError
from ..utils.logging import get_logger

logger = get_logger("replisync.transport.broadcast")


class BroadcastHub:
    """Named channels connecting the replicas of one device.

    Delivery is fire-and-forget: each post is scheduled on the event loop for
    every other subscriber of the channel, never for the poster.
    """

    def __init__(self):
        self._channels: Dict[str, List['BroadcastTransport']] = {}

    def subscribe(self, channel: str, transport: 'BroadcastTransport') -> None:
        self._channels.setdefault(channel, []).append(transport)

    def unsubscribe(self, channel: str, transport: 'BroadcastTransport') -> None:
        subscribers = self._channels.get(channel, [])
        if transport in subscribers:
            subscribers.remove(transport)

    def subscribers(self, channel: str) -> int:
        return len(self._channels.get(channel, []))

    def post(self, channel: str, sender: 'BroadcastTransport', payload: Dict[str, Any]) -> None:
        # structured-clone semantics: receivers never share the sender's objects
        try:
            encoded = json.dumps(payload)
        except (TypeError, ValueError) as e:
            raise TransportError(f"Message is not serializable: {e}") from e

        loop = asyncio.get_running_loop()
        for transport in list(self._channels.get(channel, [])):
            if transport is sender:
                continue
            loop.call_soon(transport._deliver, json.loads(encoded))


class BroadcastTransport(Transport):
    """Transport over a BroadcastHub channel"""

    mechanism = "broadcast"

    def __init__(self, hub: Optional[BroadcastHub], channel: str = "replisync-sync",
                 name: Optional[str] = None):
        super().__init__(name)
        self.hub = hub
        self.channel = channel
        self._tasks: set = set()

    async def connect(self) -> None:
        if self.hub is None:
            self.state = ConnectionState.ERROR
            raise TransportError("No broadcast hub available on this device")
        self.hub.subscribe(self.channel, self)
        self._mark_connected()
        logger.debug("broadcast_connected", channel=self.channel, transport=self.name)

    async def disconnect(self) -> None:
        if self.hub is not None:
            self.hub.unsubscribe(self.channel, self)
        for task in list(self._tasks):
            task.cancel()
        self._mark_disconnected()

    async def send_message(self, message: ChangeMessage) -> None:
        if not self.is_connected:
            raise TransportError(f"Broadcast transport {self.name} is not connected")
        self.hub.post(self.channel, self, message.to_dict())
        self._stats["messages_sent"] += 1

    def _deliver(self, raw: Dict[str, Any]) -> None:
        if not self.is_connected:
            return
        task = asyncio.ensure_future(self._handle_raw(raw))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
