"""
Health state machine of a replica.

    initializing -> ready -> optimal | degraded | peer-unreachable
    any -> offline -> (state before going offline)
    optimal -> synced (right after inbound data was applied)

``optimal`` needs the primary transport mechanism and zero consecutive
failures; reaching the failure threshold forces ``degraded``.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, Any, Callable

from ..models.records import now_ms
from ..storage.state import StateRepository
from ..utils.errors import PersistenceError
from ..utils.logging import get_logger
from ..utils.notifications import EventBus


logger = get_logger("replisync.sync.status")


class SyncStatus(Enum):
    """Replica health."""
    INITIALIZING = "initializing"
    READY = "ready"
    OPTIMAL = "optimal"
    DEGRADED = "degraded"
    OFFLINE = "offline"
    PEER_UNREACHABLE = "peer-unreachable"
    SYNCED = "synced"


@dataclass
class SyncMetrics:
    """Counters behind the health classification."""
    successes: int = 0
    failures: int = 0
    consecutive_failures: int = 0
    last_sync_at: Optional[int] = None
    last_sync_duration_ms: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "successes": self.successes,
            "failures": self.failures,
            "consecutiveFailures": self.consecutive_failures,
            "lastSyncAt": self.last_sync_at,
            "lastSyncDurationMs": self.last_sync_duration_ms,
        }


class StatusMonitor:
    """Classifies replica health from success/failure signals."""

    def __init__(
        self,
        failure_threshold: int = 3,
        events: Optional[EventBus] = None,
        repository: Optional[StateRepository] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.failure_threshold = failure_threshold
        self.events = events or EventBus(source="status")
        self.repository = repository
        self.clock = clock
        self.metrics = SyncMetrics()
        self.online = True
        self.primary_active = False
        self.peer_unreachable = False
        self._status = SyncStatus.INITIALIZING
        self._before_offline: Optional[SyncStatus] = None

    @property
    def status(self) -> SyncStatus:
        return self._status

    @property
    def is_degraded(self) -> bool:
        return self._status is SyncStatus.DEGRADED

    @property
    def threshold_reached(self) -> bool:
        return self.metrics.consecutive_failures >= self.failure_threshold

    def health(self):
        """(primary mechanism active, consecutive failures) for the poller."""
        return self.primary_active, self.metrics.consecutive_failures

    async def mark_ready(self) -> None:
        if self._status is SyncStatus.INITIALIZING:
            await self._transition(SyncStatus.READY)

    async def record_success(self, started_at: Optional[float] = None) -> None:
        """Count a successful sync; ``started_at`` is a perf_counter reading."""
        self.metrics.successes += 1
        self.metrics.consecutive_failures = 0
        self.metrics.last_sync_at = self.clock()
        if started_at is not None:
            self.metrics.last_sync_duration_ms = (time.perf_counter() - started_at) * 1000
        await self.evaluate()

    async def record_failure(self, error: Optional[BaseException] = None) -> bool:
        """Count a failure; returns True when this one reached the threshold."""
        self.metrics.failures += 1
        self.metrics.consecutive_failures += 1
        logger.warning(
            "sync_failure_recorded",
            consecutive=self.metrics.consecutive_failures,
            error=str(error) if error else None,
        )
        await self.evaluate()
        return self.metrics.consecutive_failures == self.failure_threshold

    async def set_online(self, online: bool) -> None:
        if online == self.online:
            return
        self.online = online
        if not online:
            self._before_offline = self._status
            await self._transition(SyncStatus.OFFLINE)
            return

        prior = self._before_offline or SyncStatus.READY
        self._before_offline = None
        await self._transition(prior)
        await self.evaluate()

    async def set_primary_active(self, active: bool) -> None:
        self.primary_active = active
        await self.evaluate()

    async def set_peer_unreachable(self, unreachable: bool) -> None:
        self.peer_unreachable = unreachable
        await self.evaluate()

    async def mark_synced(self) -> None:
        """Inbound data was applied; shown only while otherwise optimal."""
        if self._status in (SyncStatus.OPTIMAL, SyncStatus.SYNCED):
            await self._transition(SyncStatus.SYNCED)

    def classify(self) -> SyncStatus:
        if self._status is SyncStatus.INITIALIZING:
            return SyncStatus.INITIALIZING
        if not self.online:
            return SyncStatus.OFFLINE
        if self.threshold_reached or not self.primary_active:
            return SyncStatus.DEGRADED
        if self.peer_unreachable:
            return SyncStatus.PEER_UNREACHABLE
        if self._status is SyncStatus.SYNCED:
            return SyncStatus.SYNCED
        return SyncStatus.OPTIMAL

    async def evaluate(self) -> SyncStatus:
        await self._transition(self.classify())
        return self._status

    def snapshot(self) -> Dict[str, Any]:
        return {
            "status": self._status.value,
            "online": self.online,
            "primaryActive": self.primary_active,
            "metrics": self.metrics.to_dict(),
            "timestamp": self.clock(),
        }

    async def _transition(self, new: SyncStatus) -> None:
        old = self._status
        if old is new:
            return
        self._status = new
        logger.info("status_changed", old=old.value, new=new.value)

        if self.repository is not None:
            try:
                await self.repository.save_status(self.snapshot())
            except PersistenceError as e:
                logger.error("status_snapshot_failed", error=str(e))

        await self.events.emit("status_changed", old=old, new=new)
