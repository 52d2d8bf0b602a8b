import asyncio
import os
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any

from pydantic import BaseModel

from models.game import (
    RoundState, MatchRecord, MatchHistoryRecord, PromptPoolEntry, PromptStatus,
    RewardDelta, Phase,
)
from config import settings


def _encode(value: Any) -> Any:
    """Convert models/enums/datetimes into Firestore-storable primitives."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _encode(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_encode(v) for v in value]
    return value


class FirestoreService:
    """
    Async-friendly Firestore RoomStore using run_in_executor to avoid
    blocking the event loop. Every conditional write is a Firestore
    transaction, so the (phase, phase_started_at, revision) check and the
    writes to round_states/{room}, rooms/{room} and match_history commit or
    fail together.
    """

    def __init__(self):
        if settings.firestore_emulator_host:
            os.environ["FIRESTORE_EMULATOR_HOST"] = settings.firestore_emulator_host
        if settings.google_application_credentials:
            os.environ.setdefault(
                "GOOGLE_APPLICATION_CREDENTIALS", settings.google_application_credentials
            )
        # Lazy import so the service can be instantiated before GCP creds exist
        from google.cloud import firestore
        self._firestore = firestore
        self.db = firestore.Client(project=settings.google_cloud_project or None)

    def _run(self, fn):
        """Run a sync Firestore call in the default thread pool."""
        loop = asyncio.get_running_loop()
        return loop.run_in_executor(None, fn)

    # ── Collection helpers ────────────────────────────────────────────────────

    def _state_ref(self, room_id: str):
        return self.db.collection("round_states").document(room_id)

    def _room_ref(self, room_id: str):
        return self.db.collection("rooms").document(room_id)

    def _prompts_ref(self):
        return self.db.collection("prompts")

    def _history_ref(self):
        return self.db.collection("match_history")

    def _user_ref(self, user_id: str):
        return self.db.collection("users").document(user_id)

    # ── Ephemeral room state ──────────────────────────────────────────────────

    async def read_round_state(self, room_id: str) -> Optional[RoundState]:
        doc = await self._run(lambda: self._state_ref(room_id).get())
        if doc.exists:
            return RoundState(**doc.to_dict())
        return None

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
        state_ref = self._state_ref(room_id)
        room_ref = self._room_ref(room_id)
        history_ref = self._history_ref().document(history.id) if history else None

        @self._firestore.transactional
        def _apply(transaction) -> bool:
            snap = state_ref.get(transaction=transaction)
            if not snap.exists:
                return False
            current = snap.to_dict()
            if (
                current.get("phase") != expected_phase.value
                or current.get("phase_started_at") != expected_started_at
                or current.get("revision", 0) != expected_revision
            ):
                return False
            if next_state is None:
                transaction.delete(state_ref)
            else:
                transaction.set(state_ref, next_state.model_dump(mode="json"))
            if match_updates:
                transaction.update(room_ref, _encode(match_updates))
            if history_ref is not None:
                transaction.set(history_ref, _encode(history))
            return True

        return await self._run(lambda: _apply(self.db.transaction()))

    async def write_round_state(
        self,
        room_id: str,
        state: RoundState,
        match_updates: Optional[Dict[str, Any]] = None,
    ) -> None:
        def _write():
            batch = self.db.batch()
            batch.set(self._state_ref(room_id), state.model_dump(mode="json"))
            if match_updates:
                batch.update(self._room_ref(room_id), _encode(match_updates))
            batch.commit()

        await self._run(_write)

    async def list_round_states(self) -> List[RoundState]:
        docs = await self._run(lambda: list(self.db.collection("round_states").stream()))
        return [RoundState(**d.to_dict()) for d in docs]

    async def record_round_entry(
        self, room_id: str, phase: Phase, field: str, key: str, value: str
    ) -> bool:
        state_ref = self._state_ref(room_id)
        # Player ids are user-supplied — quote them as a single path segment
        field_path = self._firestore.FieldPath(field, key).to_api_repr()

        @self._firestore.transactional
        def _apply(transaction) -> bool:
            snap = state_ref.get(transaction=transaction)
            if not snap.exists:
                return False
            current = snap.to_dict()
            if current.get("phase") != phase.value:
                return False
            if key in (current.get(field) or {}):
                return False
            transaction.update(state_ref, {
                field_path: value,
                "revision": current.get("revision", 0) + 1,
            })
            return True

        return await self._run(lambda: _apply(self.db.transaction()))

    # ── Match records ─────────────────────────────────────────────────────────

    async def create_match_record(self, record: MatchRecord) -> MatchRecord:
        data = _encode(record)
        await self._run(lambda: self._room_ref(record.room_id).set(data))
        return record

    async def read_match_record(self, room_id: str) -> Optional[MatchRecord]:
        doc = await self._run(lambda: self._room_ref(room_id).get())
        if doc.exists:
            return MatchRecord(**doc.to_dict())
        return None

    async def update_match_record(self, room_id: str, updates: Dict[str, Any]) -> None:
        data = _encode(updates)
        await self._run(lambda: self._room_ref(room_id).update(data))

    async def finish_match_record(
        self, room_id: str, updates: Dict[str, Any], history: MatchHistoryRecord
    ) -> None:
        def _write():
            batch = self.db.batch()
            batch.update(self._room_ref(room_id), _encode(updates))
            # match_history is an append-only audit log
            batch.set(self._history_ref().document(history.id), _encode(history))
            batch.commit()

        await self._run(_write)

    # ── Prompt pool ───────────────────────────────────────────────────────────

    async def query_active_prompts(self, limit: int) -> List[PromptPoolEntry]:
        query = (
            self._prompts_ref()
            .where("status", "==", PromptStatus.ACTIVE.value)
            .limit(limit)
        )
        docs = await self._run(lambda: list(query.stream()))
        return [PromptPoolEntry(id=d.id, **{k: v for k, v in d.to_dict().items() if k != "id"})
                for d in docs]

    # ── Progression ───────────────────────────────────────────────────────────

    async def grant_reward(self, user_id: str, delta: RewardDelta) -> None:
        increment = self._firestore.Increment
        data = {
            "xp": increment(delta.xp),
            "stats": {
                "roundsPlayed": increment(delta.round_participation),
                "roundsWon": increment(delta.round_win),
                "starsEarned": increment(delta.star),
                "gamesWon": increment(delta.match_win),
            },
        }
        await self._run(lambda: self._user_ref(user_id).set(data, merge=True))
