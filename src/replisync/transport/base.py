"""Base transport implementation for replica change notifications"""

import asyncio
import enum
import inspect
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Callable, List
from datetime import datetime, timezone
import uuid

from ..models.records import ChangeMessage
from ..utils.errors import MergeError
from ..utils.logging import get_logger
from ..utils.notifications import Disposer

logger = get_logger("replisync.transport")

MessageHandler = Callable[[ChangeMessage], Any]


class ConnectionState(enum.Enum):
    """Connection state for transport"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"
    ERROR = "error"


class Transport(ABC):
    """Abstract base class for change-notification mechanisms"""

    mechanism: str = "base"

    def __init__(self, name: Optional[str] = None):
        self.name = name or f"{self.mechanism}_{uuid.uuid4().hex[:8]}"
        self.state = ConnectionState.DISCONNECTED
        self._message_handlers: List[MessageHandler] = []
        self._stats: Dict[str, Any] = {
            "messages_sent": 0,
            "messages_received": 0,
            "messages_dropped": 0,
            "errors": 0,
            "connected_at": None,
            "disconnected_at": None
        }

    @abstractmethod
    async def connect(self) -> None:
        """Establish the mechanism; raises TransportError when unavailable"""

    @abstractmethod
    async def disconnect(self) -> None:
        """Release the mechanism"""

    @abstractmethod
    async def send_message(self, message: ChangeMessage) -> None:
        """Send a message; raises TransportError on failure"""

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    def on_message(self, handler: MessageHandler) -> Disposer:
        """Register a message handler"""
        self._message_handlers.append(handler)

        def dispose() -> None:
            if handler in self._message_handlers:
                self._message_handlers.remove(handler)

        return dispose

    def _mark_connected(self) -> None:
        self.state = ConnectionState.CONNECTED
        self._stats["connected_at"] = datetime.now(timezone.utc).isoformat()

    def _mark_disconnected(self) -> None:
        self.state = ConnectionState.CLOSED
        self._stats["disconnected_at"] = datetime.now(timezone.utc).isoformat()

    async def _handle_raw(self, raw: Dict[str, Any]) -> None:
        """Parse an incoming wire message and dispatch it"""
        try:
            message = ChangeMessage.from_dict(raw)
        except MergeError as e:
            self._stats["messages_dropped"] += 1
            logger.warning("malformed_message_dropped", transport=self.name, error=str(e))
            return
        if message is None:
            self._stats["messages_dropped"] += 1
            return
        await self._handle_message(message)

    async def _handle_message(self, message: ChangeMessage) -> None:
        """Handle incoming message"""
        self._stats["messages_received"] += 1

        for handler in list(self._message_handlers):
            try:
                result = handler(message)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._stats["errors"] += 1
                logger.error(
                    "message_handler_error",
                    transport=self.name,
                    message_type=message.type.value,
                    error=str(e),
                )

    def get_stats(self) -> Dict[str, Any]:
        """Get transport statistics"""
        return {
            "name": self.name,
            "mechanism": self.mechanism,
            "state": self.state.value,
            **self._stats
        }
