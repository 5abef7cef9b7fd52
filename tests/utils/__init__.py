"""
Test utilities for replisync.
"""

from .async_helpers import AsyncTestHelper, EventRecorder
from .mock_helpers import (
    FailingBroadcastTransport,
    FakeRemote,
    Link,
    LinkTransport,
    RecordingRenderer,
    SleepRecorder,
    no_sleep,
)

__all__ = [
    "AsyncTestHelper",
    "EventRecorder",
    "FailingBroadcastTransport",
    "FakeRemote",
    "Link",
    "LinkTransport",
    "RecordingRenderer",
    "SleepRecorder",
    "no_sleep",
]
