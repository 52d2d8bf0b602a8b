import asyncio
from typing import Optional, List, Dict, Any

from models.game import (
    RoundState, MatchRecord, MatchHistoryRecord, PromptPoolEntry, PromptStatus,
    RewardDelta, Phase,
)


class MemoryStore:
    """
    In-process RoomStore. Every operation runs under one asyncio.Lock, which
    gives the same single-document (and round+match) atomicity the Firestore
    transactions give. Models are copied on the way in and out so callers
    never share mutable state with the store.
    """

    def __init__(self, prompts: Optional[List[PromptPoolEntry]] = None):
        self._lock = asyncio.Lock()
        self.round_states: Dict[str, RoundState] = {}
        self.match_records: Dict[str, MatchRecord] = {}
        self.prompts: List[PromptPoolEntry] = list(prompts or [])
        self.match_history: List[MatchHistoryRecord] = []
        self.rewards: Dict[str, List[RewardDelta]] = {}
        self.prompt_queries = 0

    async def reset(self) -> None:
        async with self._lock:
            self.round_states.clear()
            self.match_records.clear()
            self.match_history.clear()
            self.rewards.clear()
            self.prompt_queries = 0

    # ── Ephemeral room state ──────────────────────────────────────────────────

    async def read_round_state(self, room_id: str) -> Optional[RoundState]:
        async with self._lock:
            state = self.round_states.get(room_id)
            return state.model_copy(deep=True) if state else None

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
        async with self._lock:
            current = self.round_states.get(room_id)
            if (
                current is None
                or current.phase != expected_phase
                or current.phase_started_at != expected_started_at
                or current.revision != expected_revision
            ):
                return False
            # Build everything first so a failure leaves no partial write
            merged = self._merged_match(room_id, match_updates) if match_updates else None
            if next_state is None:
                del self.round_states[room_id]
            else:
                self.round_states[room_id] = next_state.model_copy(deep=True)
            if merged is not None:
                self.match_records[room_id] = merged
            if history is not None:
                self.match_history.append(history.model_copy(deep=True))
            return True

    async def write_round_state(
        self,
        room_id: str,
        state: RoundState,
        match_updates: Optional[Dict[str, Any]] = None,
    ) -> None:
        async with self._lock:
            merged = self._merged_match(room_id, match_updates) if match_updates else None
            self.round_states[room_id] = state.model_copy(deep=True)
            if merged is not None:
                self.match_records[room_id] = merged

    async def list_round_states(self) -> List[RoundState]:
        async with self._lock:
            return [s.model_copy(deep=True) for s in self.round_states.values()]

    async def record_round_entry(
        self, room_id: str, phase: Phase, field: str, key: str, value: str
    ) -> bool:
        async with self._lock:
            state = self.round_states.get(room_id)
            if state is None or state.phase != phase:
                return False
            entries: Dict[str, str] = getattr(state, field)
            if key in entries:
                return False
            entries[key] = value
            state.revision += 1
            return True

    # ── Match records ─────────────────────────────────────────────────────────

    async def create_match_record(self, record: MatchRecord) -> MatchRecord:
        async with self._lock:
            self.match_records[record.room_id] = record.model_copy(deep=True)
            return record

    async def read_match_record(self, room_id: str) -> Optional[MatchRecord]:
        async with self._lock:
            record = self.match_records.get(room_id)
            return record.model_copy(deep=True) if record else None

    async def update_match_record(self, room_id: str, updates: Dict[str, Any]) -> None:
        async with self._lock:
            self.match_records[room_id] = self._merged_match(room_id, updates)

    async def finish_match_record(
        self, room_id: str, updates: Dict[str, Any], history: MatchHistoryRecord
    ) -> None:
        async with self._lock:
            self.match_records[room_id] = self._merged_match(room_id, updates)
            self.match_history.append(history.model_copy(deep=True))

    def _merged_match(self, room_id: str, updates: Dict[str, Any]) -> MatchRecord:
        record = self.match_records.get(room_id)
        if record is None:
            raise KeyError(f"No match record for room {room_id}")
        merged = record.model_dump()
        merged.update(updates)
        return MatchRecord.model_validate(merged)

    # ── Prompt pool / progression ─────────────────────────────────────────────

    async def query_active_prompts(self, limit: int) -> List[PromptPoolEntry]:
        async with self._lock:
            self.prompt_queries += 1
            active = [p for p in self.prompts if p.status == PromptStatus.ACTIVE]
            return [p.model_copy() for p in active[:limit]]

    async def grant_reward(self, user_id: str, delta: RewardDelta) -> None:
        async with self._lock:
            self.rewards.setdefault(user_id, []).append(delta.model_copy())
