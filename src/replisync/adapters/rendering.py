"""
Binding between an engine and a host-side renderer.

The renderer receives a container reference and records; it must tolerate
repeated full re-renders as well as single-record inserts and removals.
"""

import inspect
from typing import Any, List, Protocol

from ..models.records import Record
from ..utils.logging import get_logger
from ..utils.notifications import Event

logger = get_logger("replisync.adapters.rendering")

INCREMENTAL_REASONS = frozenset(("add", "delete"))


class Renderer(Protocol):
    """Host-side renderer contract."""

    def render(self, container: Any, records: List[Record]) -> Any:
        ...

    def insert(self, container: Any, record: Record) -> Any:
        ...

    def remove(self, container: Any, record_id: str) -> Any:
        ...


class RenderBinding:
    """Keeps a container in step with an engine's records."""

    def __init__(self, engine, renderer: Renderer, container: Any):
        self.engine = engine
        self.renderer = renderer
        self.container = container
        self._disposers = [
            engine.on("data_changed", self._on_data_changed),
            engine.on("record_added", self._on_record_added),
            engine.on("record_deleted", self._on_record_deleted),
        ]

    async def refresh(self) -> None:
        """Render the full current list."""
        await self._call(self.renderer.render, self.container, self.engine.records())

    async def _on_data_changed(self, event: Event) -> None:
        # single-record changes already reached the renderer incrementally
        if event.data.get("reason") in INCREMENTAL_REASONS:
            return
        await self._call(self.renderer.render, self.container, event.data["records"])

    async def _on_record_added(self, event: Event) -> None:
        record = event.data.get("record")
        if record is not None:
            await self._call(self.renderer.insert, self.container, record)

    async def _on_record_deleted(self, event: Event) -> None:
        await self._call(self.renderer.remove, self.container, event.data["record_id"])

    async def _call(self, method, *args) -> None:
        result = method(*args)
        if inspect.isawaitable(result):
            await result

    def close(self) -> None:
        for dispose in self._disposers:
            dispose()
        self._disposers.clear()
        logger.debug("render_binding_closed")
