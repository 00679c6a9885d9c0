import sys
from collections.abc import Collection
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import httpx
import pytest

from intake.core.config import get_settings
from intake.core.errors import StorageFault
from intake.main import create_app
from intake.state.backends import MemoryStateBackend, StateBackend
from intake.state.store import StateStore
from intake.state.types import StateSnapshot


class FakeClock:
    """Manually advanced epoch-millisecond clock."""

    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


class FailingBackend(StateBackend):
    """Backend whose every I/O call fails."""

    name = "failing"

    def __init__(self) -> None:
        self.persist_calls = 0

    async def load(self) -> StateSnapshot:
        raise StorageFault("disk unavailable", self.name)

    async def persist(self, snapshot: StateSnapshot, scopes: Collection[str]) -> None:
        self.persist_calls += 1
        raise StorageFault("disk unavailable", self.name)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(clock):
    return StateStore(MemoryStateBackend(), clock=clock)


@pytest.fixture
def failing_backend():
    return FailingBackend()


@pytest.fixture
def app(monkeypatch):
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("RUNTIME_STATE_BACKEND", "memory")
    monkeypatch.setenv("AI_MAX_CONCURRENCY", "3")
    get_settings.cache_clear()
    app = create_app()
    yield app
    get_settings.cache_clear()


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    await app.state.runtime.aclose("test")
