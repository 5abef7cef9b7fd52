"""Transport channel with an ordered fallback ladder

Delivers change messages through the first working mechanism of its ladder
and degrades to the next one when it fails. Every connected mechanism keeps
listening, so messages sent by a replica that already fell back still arrive.
"""

import asyncio
import inspect
from typing import Dict, List, Optional, Any, Callable

from .base import Transport, MessageHandler
from .broadcast import BroadcastHub, BroadcastTransport
from .storage_signal import StorageSignalTransport
from .polling import PollingTransport, PollingPolicy, HealthProvider
from ..models.records import ChangeMessage, now_ms
from ..storage.kv import KeyValueStore
from ..storage.state import StateRepository
from ..utils.config import TransportConfig
from ..utils.logging import get_logger
from ..utils.notifications import Disposer

logger = get_logger("replisync.transport.channel")

StateHandler = Callable[[Optional[str], Optional[str]], Any]


class TransportChannel:
    """Sends through the active rung of a transport ladder, never raising"""

    def __init__(
        self,
        transports: List[Transport],
        primary_retry_ms: int = 30000,
        clock: Callable[[], int] = now_ms,
    ):
        self._ladder = list(transports)
        self.primary_retry_ms = primary_retry_ms
        self.clock = clock
        self._active: Optional[int] = None
        self._demoted_at: Optional[int] = None
        self._handlers: List[MessageHandler] = []
        self._state_handlers: List[StateHandler] = []
        self._disposers: List[Disposer] = []
        self._stats = {
            "messages_sent": 0,
            "messages_received": 0,
            "send_failures": 0,
            "fallbacks": 0,
            "undeliverable": 0,
        }

    @classmethod
    def build(
        cls,
        store: KeyValueStore,
        repository: StateRepository,
        hub: Optional[BroadcastHub] = None,
        config: Optional[TransportConfig] = None,
        health: Optional[HealthProvider] = None,
        clock: Callable[[], int] = now_ms,
    ) -> 'TransportChannel':
        """Standard ladder: broadcast, then storage signal, then polling."""
        config = config or TransportConfig()
        transports: List[Transport] = []
        if config.enable_broadcast:
            transports.append(BroadcastTransport(hub, channel=config.channel_name))
        if config.enable_storage_signal:
            transports.append(StorageSignalTransport(
                store, repository, clear_delay_ms=config.signal_clear_delay_ms
            ))
        transports.append(PollingTransport(
            repository,
            policy=PollingPolicy(
                base_ms=config.polling_interval_ms,
                min_ms=config.polling_min_ms,
                max_ms=config.polling_max_ms,
            ),
            health=health,
        ))
        return cls(transports, primary_retry_ms=config.primary_retry_ms, clock=clock)

    @property
    def transports(self) -> List[Transport]:
        return list(self._ladder)

    @property
    def active(self) -> Optional[Transport]:
        return self._ladder[self._active] if self._active is not None else None

    @property
    def active_mechanism(self) -> Optional[str]:
        return self.active.mechanism if self.active else None

    @property
    def primary_active(self) -> bool:
        return self._active == 0

    @property
    def polling(self) -> Optional[PollingTransport]:
        for transport in self._ladder:
            if isinstance(transport, PollingTransport):
                return transport
        return None

    async def start(self) -> None:
        """Connect every rung; unavailable mechanisms are skipped."""
        for transport in self._ladder:
            try:
                await transport.connect()
            except Exception as e:
                logger.warning(
                    "transport_unavailable",
                    mechanism=transport.mechanism,
                    error=str(e),
                )
                continue
            self._disposers.append(transport.on_message(self._dispatch))

        first = next((i for i, t in enumerate(self._ladder) if t.is_connected), None)
        await self._switch(first)

    async def stop(self) -> None:
        for dispose in self._disposers:
            dispose()
        self._disposers.clear()
        for transport in self._ladder:
            try:
                await transport.disconnect()
            except Exception as e:
                logger.warning("transport_disconnect_failed", mechanism=transport.mechanism, error=str(e))
        self._active = None

    async def send(self, message: ChangeMessage) -> bool:
        """
        Deliver through the active mechanism, falling down the ladder on failure.

        Returns False when no mechanism accepted the message. Never raises.
        """
        start = self._active
        if start is None:
            self._stats["undeliverable"] += 1
            return False

        if start > 0 and self._demoted_at is not None \
                and self.clock() - self._demoted_at >= self.primary_retry_ms:
            start = 0

        for index in range(start, len(self._ladder)):
            transport = self._ladder[index]
            if not transport.is_connected:
                continue
            try:
                await transport.send_message(message)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._stats["send_failures"] += 1
                logger.warning(
                    "transport_send_failed",
                    mechanism=transport.mechanism,
                    message_type=message.type.value,
                    error=str(e),
                )
                if index <= self._active:
                    self._demoted_at = self.clock()
                continue

            if index != self._active:
                await self._switch(index)
            self._stats["messages_sent"] += 1
            return True

        self._stats["undeliverable"] += 1
        logger.error("message_undeliverable", message_type=message.type.value)
        return False

    async def force_fallback(self) -> None:
        """Leave the primary mechanism even though it has not failed a send."""
        if self._active != 0:
            return
        nxt = next(
            (i for i in range(1, len(self._ladder)) if self._ladder[i].is_connected),
            None,
        )
        if nxt is not None:
            self._demoted_at = self.clock()
            await self._switch(nxt)

    def acknowledge_update(self, timestamp: int) -> None:
        """Tell the poller about a stamp this replica wrote itself."""
        polling = self.polling
        if polling is not None:
            polling.acknowledge(timestamp)

    def on_tick(self, callback: Callable[[], Any]) -> Optional[Disposer]:
        polling = self.polling
        if polling is None:
            return None
        return polling.on_tick(callback)

    def on_message(self, handler: MessageHandler) -> Disposer:
        """Register a handler for messages arriving through any mechanism."""
        self._handlers.append(handler)

        def dispose() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return dispose

    def on_state_change(self, handler: StateHandler) -> Disposer:
        """Register ``handler(old_mechanism, new_mechanism)``."""
        self._state_handlers.append(handler)

        def dispose() -> None:
            if handler in self._state_handlers:
                self._state_handlers.remove(handler)

        return dispose

    async def _switch(self, index: Optional[int]) -> None:
        old = self.active_mechanism
        previous = self._active
        self._active = index
        new = self.active_mechanism
        if old == new and previous is not None:
            return

        if previous is not None and index is not None and index > previous:
            self._stats["fallbacks"] += 1
            logger.warning("transport_fallback", from_mechanism=old, to_mechanism=new)
        elif index == 0 and previous is not None:
            self._demoted_at = None
            logger.info("transport_restored", mechanism=new)
        else:
            logger.info("transport_active", mechanism=new)

        for handler in list(self._state_handlers):
            try:
                result = handler(old, new)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("transport_state_handler_failed", error=str(e))

    async def _dispatch(self, message: ChangeMessage) -> None:
        self._stats["messages_received"] += 1
        for handler in list(self._handlers):
            result = handler(message)
            if inspect.isawaitable(result):
                await result

    def get_stats(self) -> Dict[str, Any]:
        return {
            "active": self.active_mechanism,
            "primary_active": self.primary_active,
            **self._stats,
            "transports": [t.get_stats() for t in self._ladder],
        }
