"""Adaptive polling transport, the last rung of the fallback ladder"""

import asyncio
import inspect
from dataclasses import dataclass
from typing import Optional, Callable, Tuple, List, Any

from .base import Transport
from ..models.records import ChangeMessage, MessageType
from ..storage.state import StateRepository
from ..utils.errors import ReplisyncError
from ..utils.logging import get_logger
from ..utils.notifications import Disposer

logger = get_logger("replisync.transport.polling")

HealthProvider = Callable[[], Tuple[bool, int]]


@dataclass
class PollingPolicy:
    """Polling cadence derived from transport health.

    A healthy primary mechanism doubles the base interval up to the cap; any
    consecutive failure halves it down to the floor.
    """
    base_ms: int = 5000
    min_ms: int = 1000
    max_ms: int = 10000

    def interval(self, primary_active: bool, consecutive_failures: int) -> int:
        if consecutive_failures > 0:
            return max(self.min_ms, self.base_ms // 2)
        if primary_active:
            return min(self.max_ms, self.base_ms * 2)
        return self.base_ms


class PollingTransport(Transport):
    """
    Periodically compares the persisted last-update stamp with the newest one
    seen locally and, when it moved, emits the persisted collection as an
    inbound data_update.

    Sending is a no-op: by the time a message is sent its data is already in
    the store where the other replicas' pollers will find it.
    """

    mechanism = "polling"

    def __init__(
        self,
        repository: StateRepository,
        policy: Optional[PollingPolicy] = None,
        health: Optional[HealthProvider] = None,
        name: Optional[str] = None,
    ):
        super().__init__(name)
        self.repository = repository
        self.policy = policy or PollingPolicy()
        self.health = health or (lambda: (False, 0))
        self.last_known_update = 0
        self.current_interval_ms = self.policy.base_ms
        self._task: Optional[asyncio.Task] = None
        self._tick_callbacks: List[Callable[[], Any]] = []

    async def connect(self) -> None:
        self.last_known_update = max(self.last_known_update, await self.repository.last_update())
        self._mark_connected()
        self._task = asyncio.create_task(self._poll_loop())

    async def disconnect(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._mark_disconnected()

    async def send_message(self, message: ChangeMessage) -> None:
        self._stats["messages_sent"] += 1

    def acknowledge(self, timestamp: int) -> None:
        """Record a stamp this replica already knows about (its own writes)."""
        self.last_known_update = max(self.last_known_update, timestamp)

    def on_tick(self, callback: Callable[[], Any]) -> Disposer:
        """Run ``callback`` after every poll."""
        self._tick_callbacks.append(callback)

        def dispose() -> None:
            if callback in self._tick_callbacks:
                self._tick_callbacks.remove(callback)

        return dispose

    async def poll_once(self) -> bool:
        """Check for a newer persisted update; returns True when one was emitted."""
        last_update = await self.repository.last_update()
        if last_update <= self.last_known_update:
            return False

        state = await self.repository.load_state()
        tombstones = await self.repository.load_tombstones()
        self.last_known_update = last_update
        logger.debug("poll_detected_update", last_update=last_update)
        await self._handle_message(ChangeMessage(
            type=MessageType.DATA_UPDATE,
            timestamp=last_update,
            data=state.to_list(),
            deleted=tombstones or None,
        ))
        return True

    async def _poll_loop(self) -> None:
        while True:
            primary_active, failures = self.health()
            self.current_interval_ms = self.policy.interval(primary_active, failures)
            await asyncio.sleep(self.current_interval_ms / 1000)

            try:
                await self.poll_once()
            except ReplisyncError as e:
                self._stats["errors"] += 1
                logger.error("poll_failed", error=str(e))

            for callback in list(self._tick_callbacks):
                try:
                    result = callback()
                    if inspect.isawaitable(result):
                        await result
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error("poll_tick_callback_failed", error=str(e))
