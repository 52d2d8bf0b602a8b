"""
Prompt Selector — per-room, non-repeating prompt draws over a shared cache.

The active prompt pool is cached process-wide and refreshed when older than
the TTL (or empty). Refresh is single-flight: callers that find the cache
stale queue on one lock and re-check freshness once they hold it, so a burst
of round starts costs a single pool query.

Each room keeps the ids it has already shown. When every cached prompt has
been used the room's history is cleared and the draw starts over.
"""
import asyncio
import logging
import random
import time
from typing import Callable, Dict, List, Optional, Set, Tuple

from config import settings
from models.errors import PromptPoolEmptyError
from models.game import PromptPoolEntry
from services.store import get_store

logger = logging.getLogger(__name__)


class PromptSelector:

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        pool_limit: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ):
        self.ttl_seconds = settings.prompt_cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        self.pool_limit = settings.prompt_pool_limit if pool_limit is None else pool_limit
        self._clock = clock
        self._rng = rng or random.Random()
        self._cache: List[PromptPoolEntry] = []
        self._cached_at: Optional[float] = None
        self._refresh_lock = asyncio.Lock()
        self._used: Dict[str, Set[str]] = {}   # room_id → prompt ids already shown
        # room_id → (prompt id drawn right after a history reset, history before it)
        self._resets: Dict[str, Tuple[str, Set[str]]] = {}

    # ── Cache ─────────────────────────────────────────────────────────────────

    def _is_fresh(self) -> bool:
        if not self._cache or self._cached_at is None:
            return False
        return (self._clock() - self._cached_at) < self.ttl_seconds

    async def get_prompts(self) -> List[PromptPoolEntry]:
        """Return the cached active prompts, refreshing at most once per expiry."""
        if self._is_fresh():
            return self._cache
        async with self._refresh_lock:
            # Another caller may have refreshed while we waited
            if self._is_fresh():
                return self._cache
            prompts = await get_store().query_active_prompts(self.pool_limit)
            self._cache = prompts
            self._cached_at = self._clock()
            logger.info("Prompt cache refreshed: %d active prompts", len(prompts))
            return self._cache

    def invalidate(self) -> None:
        self._cached_at = None

    def reset(self) -> None:
        """Drop the cache and every room's history (store swapped out)."""
        self._cache = []
        self._cached_at = None
        self._used.clear()
        self._resets.clear()

    # ── Per-room draws ────────────────────────────────────────────────────────

    async def get_random_prompt(self, room_id: str) -> PromptPoolEntry:
        prompts = await self.get_prompts()
        if not prompts:
            raise PromptPoolEmptyError("No active prompts available")

        used = self._used.setdefault(room_id, set())
        available = [p for p in prompts if p.id not in used]
        reset_from = None
        if not available:
            logger.info(
                "[%s] All %d prompts used — resetting room prompt history", room_id, len(prompts)
            )
            reset_from = set(used)
            used.clear()
            available = prompts

        prompt = self._rng.choice(available)
        used.add(prompt.id)
        if reset_from is not None:
            self._resets[room_id] = (prompt.id, reset_from)
        return prompt

    def release_prompt(self, room_id: str, prompt_id: str) -> None:
        """Forget a draw that was never shown (its transition lost the race)."""
        used = self._used.get(room_id)
        if used is None:
            return
        used.discard(prompt_id)
        reset = self._resets.get(room_id)
        if reset is not None and reset[0] == prompt_id:
            # The draw that wiped the history is void, so the wipe is too
            used |= reset[1]
            del self._resets[room_id]

    def used_prompt_ids(self, room_id: str) -> Set[str]:
        return set(self._used.get(room_id, set()))

    def clear_room_history(self, room_id: str) -> None:
        self._used.pop(room_id, None)
        self._resets.pop(room_id, None)


# Module-level singleton
prompt_selector = PromptSelector()
