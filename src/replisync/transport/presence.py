"""Liveness tracking of the primary-writer replica"""

from typing import Optional, Callable

from ..models.records import now_ms


class PresenceTracker:
    """
    Tracks the primary writer's last heartbeat.

    The primary is live while its newest heartbeat is within the liveness
    window. A heartbeat read from storage at startup only counts within the
    shorter initial window.
    """

    def __init__(
        self,
        liveness_window_ms: int = 15000,
        initial_window_ms: int = 10000,
        clock: Callable[[], int] = now_ms,
    ):
        self.liveness_window_ms = liveness_window_ms
        self.initial_window_ms = initial_window_ms
        self.clock = clock
        self.last_seen: Optional[int] = None
        self.ever_seen = False
        self._was_live = False

    def observe_stored(self, timestamp: Optional[int]) -> bool:
        """Seed from a persisted heartbeat; returns whether the primary counts as live."""
        if timestamp is None or self.clock() - timestamp > self.initial_window_ms:
            return False
        self.heartbeat(timestamp)
        return True

    def heartbeat(self, timestamp: Optional[int] = None) -> bool:
        """Record a heartbeat; returns True when the primary just came online."""
        timestamp = timestamp if timestamp is not None else self.clock()
        came_online = not self.is_live()
        if self.last_seen is None or timestamp > self.last_seen:
            self.last_seen = timestamp
        self.ever_seen = True
        live = self.is_live()
        self._was_live = live
        return came_online and live

    def went_offline(self) -> None:
        self.last_seen = None
        self._was_live = False

    def is_live(self, now: Optional[int] = None) -> bool:
        if self.last_seen is None:
            return False
        now = now if now is not None else self.clock()
        return now - self.last_seen <= self.liveness_window_ms

    def check_lost(self) -> bool:
        """True exactly once when a live primary goes silent past the window."""
        live = self.is_live()
        lost = self._was_live and not live
        self._was_live = live
        return lost

    @property
    def unreachable(self) -> bool:
        """A primary was seen before and is not live now."""
        return self.ever_seen and not self.is_live()
