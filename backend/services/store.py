"""
Room storage boundary.

Two documents per room:
  round_states/{room_id} — volatile RoundState, conditional (CAS) writes keyed
                           on the (phase, phase_started_at) pair and revision
  rooms/{room_id}        — durable MatchRecord

plus the prompt pool, the match-history log and the progression (XP) sink.
"""
from typing import Optional, List, Dict, Any, Protocol

from models.game import (
    RoundState, MatchRecord, MatchHistoryRecord, PromptPoolEntry, RewardDelta, Phase,
)
from config import settings


class RoomStore(Protocol):

    # ── Ephemeral room state ──────────────────────────────────────────────────

    async def read_round_state(self, room_id: str) -> Optional[RoundState]: ...

    async def write_round_state_if(
        self,
        room_id: str,
        expected_phase: Phase,
        expected_started_at: int,
        next_state: Optional[RoundState],
        match_updates: Optional[Dict[str, Any]] = None,
        expected_revision: int = 0,
        history: Optional[MatchHistoryRecord] = None,
    ) -> bool:
        """Atomically replace (or delete, when next_state is None) the RoundState
        if it still carries the expected phase/timestamp stamp and revision.
        match_updates are applied to the MatchRecord and `history` is written
        to the match-history log in the same atomic step.
        Returns False when the stamp or revision no longer matches."""
        ...

    async def write_round_state(
        self,
        room_id: str,
        state: RoundState,
        match_updates: Optional[Dict[str, Any]] = None,
    ) -> None: ...

    async def list_round_states(self) -> List[RoundState]: ...

    async def record_round_entry(
        self, room_id: str, phase: Phase, field: str, key: str, value: str
    ) -> bool:
        """Set state.<field>[key] = value and bump state.revision if the room
        is still in `phase` and `key` has no entry yet."""
        ...

    # ── Match records ─────────────────────────────────────────────────────────

    async def create_match_record(self, record: MatchRecord) -> MatchRecord: ...

    async def read_match_record(self, room_id: str) -> Optional[MatchRecord]: ...

    async def update_match_record(self, room_id: str, updates: Dict[str, Any]) -> None: ...

    async def finish_match_record(
        self, room_id: str, updates: Dict[str, Any], history: MatchHistoryRecord
    ) -> None:
        """Apply `updates` and write `history` in one atomic step."""
        ...

    # ── Prompt pool / progression ─────────────────────────────────────────────

    async def query_active_prompts(self, limit: int) -> List[PromptPoolEntry]: ...

    async def grant_reward(self, user_id: str, delta: RewardDelta) -> None: ...


_store: Optional[RoomStore] = None


def get_store() -> RoomStore:
    """Lazy singleton — the backend is picked from settings on first call,
    so a missing GCP credential only fails when Firestore is actually used."""
    global _store
    if _store is None:
        if settings.store_backend == "firestore":
            from services.firestore_service import FirestoreService
            _store = FirestoreService()
        else:
            from services.memory_store import MemoryStore
            from services.sample_prompts import sample_prompts
            _store = MemoryStore(prompts=sample_prompts())
    return _store


def set_store(store: Optional[RoomStore]) -> None:
    global _store
    _store = store
