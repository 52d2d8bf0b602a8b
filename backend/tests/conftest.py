import random

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from agents.game_master import GameMaster
from agents.prompt_selector import PromptSelector, prompt_selector
from agents.scorer import Scorer
from config import settings
from models.game import MatchRecord, PromptPoolEntry
from services.memory_store import MemoryStore
from services.store import set_store


def make_prompts(n: int):
    return [PromptPoolEntry(id=f"p{i}", text=f"Prompt number {i}") for i in range(1, n + 1)]


class FakeClock:
    """Epoch-millisecond clock the tests move by hand."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def tick(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


@pytest.fixture
def store():
    memory = MemoryStore(prompts=make_prompts(5))
    set_store(memory)
    prompt_selector.reset()
    try:
        yield memory
    finally:
        set_store(None)
        prompt_selector.reset()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def selector(store):
    return PromptSelector(rng=random.Random(7))


@pytest.fixture
def gm(store, selector, clock):
    return GameMaster(selector=selector, scorer=Scorer(), clock=clock)


@pytest_asyncio.fixture
async def waiting_room(store):
    """A waiting room with host alice and players bob, carol."""
    record = MatchRecord(room_id="ROOM1", host_id="alice", players=["alice", "bob", "carol"])
    await store.create_match_record(record)
    return record


@pytest.fixture
def instant_phases(monkeypatch):
    """Zero-length phases so the real-clock singletons advance immediately."""
    for name in (
        "prompt_duration_seconds",
        "submission_duration_seconds",
        "voting_duration_seconds",
        "results_duration_seconds",
    ):
        monkeypatch.setattr(settings, name, 0)


@pytest_asyncio.fixture
async def api_client(store):
    from main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
