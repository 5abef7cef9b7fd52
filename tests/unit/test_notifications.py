"""
Unit tests for the event bus and error helpers.
"""

import pytest

from replisync.utils.errors import (
    ErrorRecovery,
    MergeError,
    PersistenceError,
    RecordNotFoundError,
    RemoteError,
    ReplisyncError,
    ValidationError,
    error_context,
)
from replisync.utils.notifications import EventBus
from tests.utils.mock_helpers import SleepRecorder


class TestEventBus:
    """Test EventBus class."""

    @pytest.mark.asyncio
    async def test_subscribe_and_emit(self):
        bus = EventBus(source="kiosk")
        seen = []
        bus.subscribe(seen.append, "record_added")
        bus.subscribe(seen.append, ["data_changed", "conflict"])

        await bus.emit("record_added", record_id="a")
        await bus.emit("status_changed")
        await bus.emit("conflict", kind="collision")

        assert [e.name for e in seen] == ["record_added", "conflict"]
        assert seen[0].data == {"record_id": "a"}
        assert seen[0].source == "kiosk"
        assert seen[0].timestamp.tzinfo is not None

    @pytest.mark.asyncio
    async def test_wildcard_and_async_handlers(self):
        bus = EventBus()
        seen = []

        async def handler(event):
            seen.append(event.name)

        bus.subscribe(handler)
        await bus.emit("a")
        await bus.emit("b")

        assert seen == ["a", "b"]

    @pytest.mark.asyncio
    async def test_failing_handler_is_isolated(self):
        """Test that one broken observer does not stop the others."""
        bus = EventBus()
        seen = []

        def broken(event):
            raise RuntimeError("observer bug")

        bus.subscribe(broken)
        bus.subscribe(seen.append)

        await bus.emit("data_changed")

        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_disposer_and_history(self):
        bus = EventBus(max_history=2)
        dispose = bus.subscribe(lambda e: None)
        assert bus.subscriber_count == 1
        dispose()
        dispose()
        assert bus.subscriber_count == 0

        for name in ("a", "b", "c"):
            await bus.emit(name)

        assert [e.name for e in bus.history()] == ["b", "c"]
        assert bus.history("c")[0].to_dict()["name"] == "c"


class TestErrors:
    """Test the error hierarchy and helpers."""

    def test_hierarchy(self):
        assert issubclass(RecordNotFoundError, ValidationError)
        assert issubclass(MergeError, ReplisyncError)
        error = RecordNotFoundError("x")
        assert error.field == "id"
        assert error.to_dict()["error"]["code"] == "RECORD_NOT_FOUND"

    def test_error_context_wraps_foreign_errors(self):
        with pytest.raises(PersistenceError) as exc_info:
            with error_context("storage", "write", wrap=PersistenceError, key="k"):
                raise OSError("disk full")

        error = exc_info.value
        assert error.context.component == "storage"
        assert error.context.metadata == {"key": "k"}
        assert isinstance(error.cause, OSError)

    def test_error_context_annotates_own_errors(self):
        with pytest.raises(MergeError) as exc_info:
            with error_context("engine", "merge"):
                raise MergeError("bad")
        assert exc_info.value.context.operation == "merge"

    @pytest.mark.asyncio
    async def test_exponential_backoff(self):
        sleep = SleepRecorder()
        attempts = []

        def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise ConnectionError("down")
            return "ok"

        result = await ErrorRecovery.exponential_backoff(flaky, max_retries=3, base_delay=0.5, sleep=sleep)

        assert result == "ok"
        assert sleep.delays == [0.5, 1.0]

    def test_backoff_delay_jitter(self):
        for attempt in range(5):
            delay = ErrorRecovery.backoff_delay(attempt, 1.0, 8.0, jitter=0.5)
            base = min(2 ** attempt, 8.0)
            assert base <= delay <= base * 1.5

    @pytest.mark.asyncio
    async def test_exponential_backoff_stops_on_permanent_error(self):
        sleep = SleepRecorder()
        attempts = []

        def rejected():
            attempts.append(1)
            raise RemoteError("forbidden", status=403)

        with pytest.raises(RemoteError):
            await ErrorRecovery.exponential_backoff(
                rejected, max_retries=4, sleep=sleep, retry_if=lambda e: e.is_retryable
            )

        assert len(attempts) == 1
        assert sleep.delays == []

    def test_remote_error_retry_classification(self):
        assert RemoteError("unavailable", status=503).is_retryable
        assert RemoteError("timed out").is_retryable
        assert RemoteError("slow down", status=429).is_retryable
        assert not RemoteError("not found", status=404).is_retryable
        assert RemoteError("not found", status=404).to_dict()["error"]["context"]["timestamp"].endswith("+00:00")
