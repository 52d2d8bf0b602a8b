import asyncio
import random

import pytest

from agents.prompt_selector import PromptSelector
from models.errors import PromptPoolEmptyError
from models.game import PromptPoolEntry, PromptStatus
from services.memory_store import MemoryStore
from services.store import set_store

from conftest import make_prompts


class SlowMemoryStore(MemoryStore):
    async def query_active_prompts(self, limit):
        await asyncio.sleep(0.01)
        return await super().query_active_prompts(limit)


@pytest.mark.asyncio
async def test_prompts_do_not_repeat_until_pool_exhausted(store, selector):
    drawn = [(await selector.get_random_prompt("ROOM1")).id for _ in range(5)]
    assert len(set(drawn)) == 5
    assert selector.used_prompt_ids("ROOM1") == set(drawn)


@pytest.mark.asyncio
async def test_history_resets_on_draw_past_pool_size(store, selector):
    for _ in range(5):
        await selector.get_random_prompt("ROOM1")

    sixth = await selector.get_random_prompt("ROOM1")
    assert sixth.id in {p.id for p in store.prompts}
    # History was cleared, so only the fresh draw is recorded
    assert selector.used_prompt_ids("ROOM1") == {sixth.id}


@pytest.mark.asyncio
async def test_rooms_keep_separate_histories(store, selector):
    for _ in range(5):
        await selector.get_random_prompt("ROOM1")
    other = await selector.get_random_prompt("ROOM2")
    assert selector.used_prompt_ids("ROOM2") == {other.id}
    assert len(selector.used_prompt_ids("ROOM1")) == 5


@pytest.mark.asyncio
async def test_concurrent_refresh_queries_pool_once():
    slow = SlowMemoryStore(prompts=make_prompts(5))
    set_store(slow)
    try:
        selector = PromptSelector()
        results = await asyncio.gather(*(selector.get_prompts() for _ in range(10)))
        assert slow.prompt_queries == 1
        assert all(len(r) == 5 for r in results)
    finally:
        set_store(None)


@pytest.mark.asyncio
async def test_cache_refreshes_after_ttl(store):
    now = [0.0]
    selector = PromptSelector(ttl_seconds=300, clock=lambda: now[0])

    await selector.get_prompts()
    now[0] = 299
    await selector.get_prompts()
    assert store.prompt_queries == 1

    now[0] = 301
    await selector.get_prompts()
    assert store.prompt_queries == 2


@pytest.mark.asyncio
async def test_invalidate_forces_refresh(store, selector):
    await selector.get_prompts()
    selector.invalidate()
    await selector.get_prompts()
    assert store.prompt_queries == 2


@pytest.mark.asyncio
async def test_only_active_prompts_are_cached():
    prompts = make_prompts(2) + [
        PromptPoolEntry(id="retired", text="Old prompt", status=PromptStatus.INACTIVE),
    ]
    set_store(MemoryStore(prompts=prompts))
    try:
        selector = PromptSelector(rng=random.Random(1))
        cached = await selector.get_prompts()
        assert {p.id for p in cached} == {"p1", "p2"}
    finally:
        set_store(None)


@pytest.mark.asyncio
async def test_empty_pool_raises():
    set_store(MemoryStore(prompts=[]))
    try:
        selector = PromptSelector()
        with pytest.raises(PromptPoolEmptyError):
            await selector.get_random_prompt("ROOM1")
    finally:
        set_store(None)


@pytest.mark.asyncio
async def test_release_and_clear_history(store, selector):
    prompt = await selector.get_random_prompt("ROOM1")
    selector.release_prompt("ROOM1", prompt.id)
    assert selector.used_prompt_ids("ROOM1") == set()

    await selector.get_random_prompt("ROOM1")
    selector.clear_room_history("ROOM1")
    assert selector.used_prompt_ids("ROOM1") == set()


@pytest.mark.asyncio
async def test_releasing_a_reset_draw_restores_history(store, selector):
    for _ in range(4):
        await selector.get_random_prompt("ROOM1")
    # Last fresh prompt, drawn by the transition that goes on to commit
    kept = await selector.get_random_prompt("ROOM1")
    # A racing transition finds the pool exhausted, resets, then loses
    void = await selector.get_random_prompt("ROOM1")

    selector.release_prompt("ROOM1", void.id)

    assert kept.id in selector.used_prompt_ids("ROOM1")
    assert selector.used_prompt_ids("ROOM1") == {p.id for p in store.prompts}
