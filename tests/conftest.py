"""
Pytest configuration and shared fixtures for replisync tests.
"""

import pytest
import tempfile
import shutil
from pathlib import Path
from typing import Generator, AsyncGenerator, List, Callable

# Add src to path
import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from replisync.storage.kv import SharedMemoryStore, SQLiteStore
from replisync.storage.state import StateRepository
from replisync.sync.engine import SyncEngine
from replisync.transport.broadcast import BroadcastHub
from replisync.utils.config import ReplisyncConfig, TransportConfig, MergeConfig


class FakeClock:
    """Millisecond clock under test control."""

    def __init__(self, start: int = 1_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now

    def set(self, ms: int) -> None:
        self.now = ms


def fast_transport() -> TransportConfig:
    """Polling and sentinel timings short enough for tests."""
    return TransportConfig(
        polling_interval_ms=50,
        polling_min_ms=20,
        polling_max_ms=100,
        signal_clear_delay_ms=10,
    )


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fast_config() -> ReplisyncConfig:
    """Configuration with test-speed polling."""
    return ReplisyncConfig(transport=fast_transport())


@pytest.fixture
def sequential_config() -> ReplisyncConfig:
    """Configuration using legacy max+1 identifiers."""
    return ReplisyncConfig(
        transport=fast_transport(),
        merge=MergeConfig(id_scheme="sequential"),
    )


@pytest.fixture
def hub() -> BroadcastHub:
    """One device's broadcast primitive."""
    return BroadcastHub()


@pytest.fixture
def shared_store() -> SharedMemoryStore:
    """One device's persistent storage."""
    return SharedMemoryStore()


@pytest.fixture
def repository(shared_store: SharedMemoryStore) -> StateRepository:
    return StateRepository(shared_store.handle("inspector"))


@pytest.fixture
async def sqlite_store(temp_dir: Path) -> AsyncGenerator[SQLiteStore, None]:
    """SQLite-backed store on a temporary file."""
    store = SQLiteStore(temp_dir / "replisync.db", writer_id="writer-a", watch_interval=0.02)
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
async def make_engine(
    hub: BroadcastHub,
    shared_store: SharedMemoryStore,
    fast_config: ReplisyncConfig,
) -> AsyncGenerator[Callable, None]:
    """Factory for started engines on the shared test device; stops them afterwards."""
    engines: List[SyncEngine] = []

    async def factory(role: str = "secondary", replica_id: str = None, start: bool = True,
                      **kwargs) -> SyncEngine:
        kwargs.setdefault("hub", hub)
        kwargs.setdefault("config", fast_config)
        store = kwargs.pop("store", None) or shared_store.handle(replica_id)
        engine = SyncEngine(role, store, replica_id=replica_id, **kwargs)
        engines.append(engine)
        if start:
            await engine.start()
        return engine

    yield factory

    for engine in engines:
        await engine.stop()
