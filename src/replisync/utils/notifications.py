"""
Notification system for replisync.

Observers register for named events and receive a disposer that removes the
registration. Dispatch happens inline on the emitting task so that observers
see events in emission order; a failing observer is logged and skipped.
"""

from typing import Optional, Dict, Any, List, Callable, Union, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
import asyncio
import inspect

from .logging import get_logger


logger = get_logger("replisync.notifications")

Disposer = Callable[[], None]


@dataclass
class Event:
    """Event data structure."""
    name: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    source: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source,
        }


@dataclass
class Subscription:
    """Event subscription."""
    handler: Callable[[Event], Any]
    event_names: Optional[frozenset] = None

    def matches(self, event: Event) -> bool:
        """Check if subscription matches event."""
        return self.event_names is None or event.name in self.event_names


class EventBus:
    """Observer registry with disposer-based unsubscription."""

    def __init__(self, source: Optional[str] = None, max_history: int = 200):
        self.source = source
        self._subscriptions: List[Subscription] = []
        self._history: List[Event] = []
        self._max_history = max_history

    def subscribe(
        self,
        handler: Callable[[Event], Any],
        event_names: Optional[Union[str, Iterable[str]]] = None,
    ) -> Disposer:
        """
        Subscribe to events.

        Args:
            handler: Callable receiving an Event; may be async
            event_names: Event name(s) to receive, or None for every event

        Returns:
            Disposer that removes the subscription; calling it twice is harmless
        """
        if isinstance(event_names, str):
            names: Optional[frozenset] = frozenset((event_names,))
        elif event_names is not None:
            names = frozenset(event_names)
        else:
            names = None

        subscription = Subscription(handler=handler, event_names=names)
        self._subscriptions.append(subscription)

        logger.debug(
            "subscription_added",
            event_names=sorted(names) if names else None,
            handler=getattr(handler, '__name__', str(handler)),
        )

        def dispose() -> None:
            try:
                self._subscriptions.remove(subscription)
                logger.debug("subscription_removed")
            except ValueError:
                pass

        return dispose

    async def emit(self, name: str, **data: Any) -> None:
        """Emit an event to every matching subscriber."""
        event = Event(name=name, data=data, source=self.source)
        self._history.append(event)
        if len(self._history) > self._max_history:
            del self._history[:-self._max_history]

        for subscription in list(self._subscriptions):
            if not subscription.matches(event):
                continue
            try:
                result = subscription.handler(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "event_handler_failed",
                    event_name=name,
                    error=str(e),
                    exc_info=True,
                )

    def history(self, name: Optional[str] = None) -> List[Event]:
        """Recent events, optionally filtered by name."""
        if name is None:
            return list(self._history)
        return [e for e in self._history if e.name == name]

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)


__all__ = [
    'Event',
    'EventBus',
    'Subscription',
    'Disposer',
]
