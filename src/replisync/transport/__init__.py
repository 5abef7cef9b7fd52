"""Transport layer for replica change notifications

This module provides:
- Same-device broadcast (preferred)
- Shared-store sentinel signalling (first fallback)
- Adaptive polling (last resort)
- Primary-writer liveness tracking
"""

from .base import Transport, ConnectionState
from .broadcast import BroadcastHub, BroadcastTransport
from .storage_signal import StorageSignalTransport
from .polling import PollingTransport, PollingPolicy
from .presence import PresenceTracker
from .channel import TransportChannel

__all__ = [
    "Transport",
    "ConnectionState",
    "BroadcastHub",
    "BroadcastTransport",
    "StorageSignalTransport",
    "PollingTransport",
    "PollingPolicy",
    "PresenceTracker",
    "TransportChannel",
]
