"""
Game Master — the per-room phase orchestrator. Pure deterministic Python.

Responsibilities:
- Match start (Waiting → Active, round 1 in Prompt)
- Phase transitions (Prompt → Submission → Voting → Results → Prompt | finished)
- Scoring on Voting → Results, win check on Results → next round
- Match finalization (threshold reached, or ended early)
- Accepting submissions and votes for the current phase

Transitions are driven by two racing callers: a client whose countdown hit
zero, and the reconciliation sweep. Neither takes a lock. Every transition is
a conditional write keyed on the (phase, phase_started_at) pair read at the
start of the call; whoever commits first wins and every other caller gets a
no-op outcome. The write also carries the state revision, which every
accepted submission and vote bumps, so a transition never overwrites player
input that arrived after its read.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Callable, Set, Tuple

from config import settings
from models.errors import (
    GameError, RoomNotFoundError, InvalidMatchStateError, WrongPhaseError, InvalidActionError,
)
from models.game import (
    Phase, MatchStatus, MatchRecord, RoundState, PlayerScore,
    MatchHistoryRecord, AdvanceOutcome, RewardDelta, now_ms,
)
from services.store import get_store
from agents.prompt_selector import PromptSelector, prompt_selector
from agents.scorer import Scorer, scorer as default_scorer, compute_reward

logger = logging.getLogger(__name__)


class GameMaster:

    PHASE_CYCLE = [
        Phase.PROMPT,
        Phase.SUBMISSION,
        Phase.VOTING,
        Phase.RESULTS,
    ]

    # Conditional-write misses tolerated by one advance or early end before giving up
    MAX_COMMIT_ATTEMPTS = 5

    def __init__(
        self,
        selector: Optional[PromptSelector] = None,
        scorer: Optional[Scorer] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.selector = selector or prompt_selector
        self.scorer = scorer or default_scorer
        self._clock = clock
        self._background: Set[asyncio.Task] = set()

    # ── Timing ────────────────────────────────────────────────────────────────

    def phase_duration(self, phase: Phase) -> float:
        """Configured duration of a phase, in seconds."""
        return {
            Phase.PROMPT: settings.prompt_duration_seconds,
            Phase.SUBMISSION: settings.submission_duration_seconds,
            Phase.VOTING: settings.voting_duration_seconds,
            Phase.RESULTS: settings.results_duration_seconds,
        }[phase]

    def remaining_seconds(self, state: RoundState, now: Optional[int] = None) -> float:
        now = self._clock() if now is None else now
        elapsed = (now - state.phase_started_at) / 1000
        return max(self.phase_duration(state.phase) - elapsed, 0.0)

    def is_overdue(self, state: RoundState, now: Optional[int] = None) -> bool:
        """True once the phase has outlived its duration plus the sweep grace."""
        now = self._clock() if now is None else now
        elapsed = (now - state.phase_started_at) / 1000
        return elapsed > self.phase_duration(state.phase) + settings.sweep_grace_seconds

    def _next_stamp(self, state: RoundState) -> int:
        # Stamps must strictly increase within a room, even inside one millisecond
        return max(self._clock(), state.phase_started_at + 1)

    def next_phase(self, phase: Phase) -> Phase:
        idx = self.PHASE_CYCLE.index(phase)
        return self.PHASE_CYCLE[(idx + 1) % len(self.PHASE_CYCLE)]

    # ── Match start ───────────────────────────────────────────────────────────

    async def start_match(self, room_id: str) -> RoundState:
        """
        Waiting → Active. Draws the first prompt and writes round 1 in the
        Prompt phase. Raises PromptPoolEmptyError (nothing written) when no
        prompt is available.
        """
        store = get_store()
        match = await self._require_match(room_id)
        if match.status != MatchStatus.WAITING:
            raise InvalidMatchStateError(f"Room {room_id} is {match.status.value}, not waiting")
        if len(match.players) < settings.min_players:
            raise InvalidMatchStateError(
                f"At least {settings.min_players} players are needed to start"
            )

        prompt = await self.selector.get_random_prompt(room_id)
        state = RoundState(
            room_id=room_id,
            phase=Phase.PROMPT,
            round_number=1,
            prompt_id=prompt.id,
            prompt_text=prompt.text,
            phase_started_at=self._clock(),
        )
        await store.write_round_state(room_id, state, {
            "status": MatchStatus.ACTIVE,
            "current_round": 1,
            "started_at": datetime.now(timezone.utc),
            "scores": {pid: PlayerScore() for pid in match.players},
        })
        logger.info(f"[{room_id}] Match started with {len(match.players)} players (round 1)")
        return state

    # ── Phase transitions ─────────────────────────────────────────────────────

    async def advance(
        self,
        room_id: str,
        expected_phase: Optional[Phase] = None,
        expected_phase_started_at: Optional[int] = None,
    ) -> AdvanceOutcome:
        """
        Move the room one phase forward.

        Clients pass the phase/timestamp they last observed; the sweep passes
        what it just read. A missing room, a stale expectation, a phase that
        has not run its course yet, or a transition another caller already
        made all return AdvanceOutcome(advanced=False) — never an error.

        The conditional write also checks the state's revision, so a
        submission or vote accepted after the read makes the commit miss.
        The transition is then rebuilt from a fresh read.
        """
        store = get_store()
        for _ in range(self.MAX_COMMIT_ATTEMPTS):
            state = await store.read_round_state(room_id)
            if state is None:
                logger.debug("[%s] advance: no active round state — skipping", room_id)
                return AdvanceOutcome()

            if expected_phase is not None and state.phase != expected_phase:
                logger.debug(
                    "[%s] advance: stale phase %s (now %s)",
                    room_id, expected_phase.value, state.phase.value,
                )
                return AdvanceOutcome(state=state)
            if (
                expected_phase_started_at is not None
                and state.phase_started_at != expected_phase_started_at
            ):
                logger.debug("[%s] advance: stale phase timestamp", room_id)
                return AdvanceOutcome(state=state)

            if self.remaining_seconds(state) > settings.advance_tolerance_seconds:
                logger.debug(
                    "[%s] advance: %s still has %.1fs left — ignoring early advance",
                    room_id, state.phase.value, self.remaining_seconds(state),
                )
                return AdvanceOutcome(state=state)

            outcome = await self._transition(state)
            if outcome is not None:
                return outcome
            # Pin the stamp we acted on: if another transition won, the
            # re-read is stale and returns a no-op
            expected_phase, expected_phase_started_at = state.phase, state.phase_started_at
        raise GameError(f"Could not advance room {room_id}: state kept changing")

    async def _transition(self, state: RoundState) -> Optional[AdvanceOutcome]:
        """One transition attempt. None when the conditional write missed."""
        if state.phase in (Phase.PROMPT, Phase.SUBMISSION):
            outcome = await self._enter_phase(state, self.next_phase(state.phase))
            if outcome is not None and state.phase == Phase.SUBMISSION:
                self._spawn(self._on_submissions_closed(
                    state.room_id, state.round_number, len(state.submissions)
                ))
            return outcome
        if state.phase == Phase.VOTING:
            return await self._enter_results(state)
        return await self._leave_results(state)

    async def _commit(
        self,
        state: RoundState,
        next_state: Optional[RoundState],
        match_updates: Optional[Dict[str, Any]] = None,
        history: Optional[MatchHistoryRecord] = None,
    ) -> bool:
        committed = await get_store().write_round_state_if(
            state.room_id, state.phase, state.phase_started_at, next_state, match_updates,
            expected_revision=state.revision,
            history=history,
        )
        if not committed:
            logger.debug(
                "[%s] %s transition missed — state changed since it was read",
                state.room_id, state.phase.value,
            )
            return False
        to_phase = next_state.phase.value if next_state else "finished"
        round_number = next_state.round_number if next_state else state.round_number
        logger.info(f"[{state.room_id}] Phase: {state.phase.value} → {to_phase} (round {round_number})")
        return True

    async def _enter_phase(self, state: RoundState, phase: Phase) -> Optional[AdvanceOutcome]:
        next_state = state.model_copy(update={
            "phase": phase,
            "phase_started_at": self._next_stamp(state),
        })
        if not await self._commit(state, next_state):
            return None
        return AdvanceOutcome(advanced=True, state=next_state)

    async def _enter_results(self, state: RoundState) -> Optional[AdvanceOutcome]:
        """Voting → Results. Scores are computed from the votes in the state
        being committed and written in the same conditional write, so the
        Results phase and the persisted scores can never disagree."""
        match = await self._require_match(state.room_id)
        result, scores = self.scorer.process_votes(match, state)

        next_state = state.model_copy(update={
            "phase": Phase.RESULTS,
            "phase_started_at": self._next_stamp(state),
            "last_round_winner_id": result.winner_id,
            "last_round_winners": result.winners,
            "last_vote_tally": result.tally,
            "last_round_stars": result.stars,
        })
        if not await self._commit(state, next_state, {"scores": scores}):
            return None

        await self._grant_rewards(state.room_id, self.scorer.round_rewards(result))
        return AdvanceOutcome(advanced=True, state=next_state, round_result=result)

    async def _leave_results(self, state: RoundState) -> Optional[AdvanceOutcome]:
        """Results → next round's Prompt, or match end if someone hit the threshold."""
        room_id = state.room_id
        match = await self._require_match(room_id)
        if self.scorer.check_win_condition(match):
            finished = await self._finish(state, match, early_end_reason=None)
            if finished is None:
                return None
            return AdvanceOutcome(advanced=True, finished=True)

        prompt = await self.selector.get_random_prompt(room_id)
        next_state = state.model_copy(update={
            "phase": Phase.PROMPT,
            "round_number": state.round_number + 1,
            "prompt_id": prompt.id,
            "prompt_text": prompt.text,
            "phase_started_at": self._next_stamp(state),
            "submissions": {},
            "votes": {},
        })
        if not await self._commit(state, next_state, {"current_round": next_state.round_number}):
            self.selector.release_prompt(room_id, prompt.id)
            return None
        return AdvanceOutcome(advanced=True, state=next_state)

    # ── Match end ─────────────────────────────────────────────────────────────

    async def _finish(
        self, state: RoundState, match: MatchRecord, early_end_reason: Optional[str]
    ) -> Optional[MatchRecord]:
        """Terminal commit: RoundState removed, record finished and the
        history entry written in one conditional write."""
        finished, history = self.scorer.finalize_match(
            match, datetime.now(timezone.utc), early_end_reason=early_end_reason
        )
        committed = await self._commit(state, None, self._finished_fields(finished), history)
        if not committed:
            return None
        await self._after_finish(finished)
        return finished

    def _finished_fields(self, finished: MatchRecord) -> Dict[str, Any]:
        return {
            "status": finished.status,
            "winner_id": finished.winner_id,
            "ended_at": finished.ended_at,
            "early_end_reason": finished.early_end_reason,
        }

    async def _after_finish(self, finished: MatchRecord) -> None:
        room_id = finished.room_id
        self.selector.clear_room_history(room_id)
        if finished.winner_id:
            await self._grant_rewards(room_id, {
                finished.winner_id: compute_reward(participated=False, won_match=True),
            })
        reason = f" (ended early: {finished.early_end_reason})" if finished.early_end_reason else ""
        logger.info(f"[{room_id}] Match over — winner: {finished.winner_id}{reason}")

    async def end_match_early(self, room_id: str, reason: str) -> Optional[MatchRecord]:
        """
        Finalize an active match with whatever scores exist (too few players,
        host abandoned, ...). Returns the finished record, or None when the
        match was not active.
        """
        store = get_store()
        for _ in range(self.MAX_COMMIT_ATTEMPTS):
            match = await self._require_match(room_id)
            if match.status != MatchStatus.ACTIVE:
                return None
            state = await store.read_round_state(room_id)
            if state is None:
                # Active record without a round — finalize the record alone
                finished, history = self.scorer.finalize_match(
                    match, datetime.now(timezone.utc), early_end_reason=reason
                )
                await store.finish_match_record(room_id, self._finished_fields(finished), history)
                await self._after_finish(finished)
                return finished
            finished = await self._finish(state, match, early_end_reason=reason)
            if finished is not None:
                return finished
            # A transition or player input committed in between — re-read and retry
        raise GameError(f"Could not end match in room {room_id}: state kept changing")

    async def leave_room(self, room_id: str, player_id: str) -> MatchRecord:
        """Remove a player. An active match that drops below min_players ends early."""
        store = get_store()
        match = await self._require_match(room_id)
        if player_id not in match.players:
            raise InvalidActionError(f"Player {player_id} is not in room {room_id}")

        players = [p for p in match.players if p != player_id]
        host_id = match.host_id
        if host_id == player_id:
            host_id = players[0] if players else None
        await store.update_match_record(room_id, {"players": players, "host_id": host_id})
        logger.info(f"[{room_id}] {player_id} left ({len(players)} remaining)")

        if match.status == MatchStatus.ACTIVE and len(players) < settings.min_players:
            logger.warning("[%s] Only %d players left — ending match early", room_id, len(players))
            await self.end_match_early(room_id, "insufficient_players")
        return await self._require_match(room_id)

    # ── Player input ──────────────────────────────────────────────────────────

    async def submit_response(self, room_id: str, player_id: str, text: str) -> RoundState:
        text = (text or "").strip()[: settings.max_submission_length]
        if not text:
            raise InvalidActionError("Response text is required")
        match = await self._require_match(room_id)
        if player_id not in match.players:
            raise InvalidActionError(f"Player {player_id} is not in room {room_id}")

        return await self._record_entry(
            room_id, Phase.SUBMISSION, "submissions", player_id, text,
            duplicate_message="You have already submitted a response this round",
        )

    async def cast_vote(self, room_id: str, voter_id: str, target_id: str) -> RoundState:
        match = await self._require_match(room_id)
        if voter_id not in match.players:
            raise InvalidActionError(f"Player {voter_id} is not in room {room_id}")
        if voter_id == target_id:
            raise InvalidActionError("You cannot vote for your own response")

        state = await get_store().read_round_state(room_id)
        if state is None or state.phase != Phase.VOTING:
            raise WrongPhaseError("Votes can only be cast during the voting phase")
        if target_id not in state.submissions:
            raise InvalidActionError(f"'{target_id}' has no response this round")

        return await self._record_entry(
            room_id, Phase.VOTING, "votes", voter_id, target_id,
            duplicate_message="You have already voted this round",
        )

    async def _record_entry(
        self, room_id: str, phase: Phase, field: str, key: str, value: str,
        duplicate_message: str,
    ) -> RoundState:
        store = get_store()
        recorded = await store.record_round_entry(room_id, phase, field, key, value)
        state = await store.read_round_state(room_id)
        if recorded and state is not None:
            return state
        if state is None or state.phase != phase:
            raise WrongPhaseError(f"Not accepted outside the {phase.value} phase")
        raise InvalidActionError(duplicate_message)

    # ── Helpers ───────────────────────────────────────────────────────────────

    async def get_room(self, room_id: str) -> Tuple[MatchRecord, Optional[RoundState]]:
        store = get_store()
        match, state = await asyncio.gather(
            self._require_match(room_id),
            store.read_round_state(room_id),
        )
        return match, state

    async def _require_match(self, room_id: str) -> MatchRecord:
        match = await get_store().read_match_record(room_id)
        if match is None:
            raise RoomNotFoundError(f"Room {room_id} not found")
        return match

    async def _grant_rewards(self, room_id: str, rewards: Dict[str, RewardDelta]) -> None:
        """Hand XP deltas to the progression system. Failures never undo a
        committed transition, so they are only logged."""
        store = get_store()
        for user_id, delta in rewards.items():
            try:
                await store.grant_reward(user_id, delta)
            except Exception:
                logger.warning("[%s] Could not grant reward to %s", room_id, user_id, exc_info=True)

    async def _on_submissions_closed(self, room_id: str, round_number: int, count: int) -> None:
        logger.info(f"[{room_id}] Submissions closed for round {round_number}: {count} responses")

    def _spawn(self, coro) -> None:
        # Keep a reference so the task is not garbage-collected mid-flight
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)


# Module-level singleton
game_master = GameMaster()
