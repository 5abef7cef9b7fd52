"""
Async testing helpers.
"""

import asyncio
import inspect
from typing import Callable, Any, Optional, TypeVar, Coroutine

T = TypeVar('T')


class AsyncTestHelper:
    """Helper class for async testing."""

    @staticmethod
    async def wait_for_condition(
        condition: Callable[[], Any],
        timeout: float = 2.0,
        interval: float = 0.01
    ) -> bool:
        """Wait for a sync or async condition to become true."""
        loop = asyncio.get_running_loop()
        start = loop.time()

        while loop.time() - start < timeout:
            result = condition()
            if inspect.isawaitable(result):
                result = await result
            if result:
                return True
            await asyncio.sleep(interval)

        return False

    @staticmethod
    async def run_with_timeout(
        coro: Coroutine[Any, Any, T],
        timeout: float
    ) -> Optional[T]:
        """Run a coroutine with a timeout."""
        try:
            return await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError:
            return None

    @staticmethod
    async def settle(delay: float = 0.05) -> None:
        """Let scheduled deliveries and callbacks run."""
        await asyncio.sleep(delay)


class EventRecorder:
    """Collects engine events for assertions."""

    def __init__(self):
        self.events = []

    def __call__(self, event) -> None:
        self.events.append(event)

    def names(self):
        return [e.name for e in self.events]

    def of(self, name: str):
        return [e for e in self.events if e.name == name]
