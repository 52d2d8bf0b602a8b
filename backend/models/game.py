from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from enum import Enum
from datetime import datetime, timezone
import time
import uuid


def _utcnow() -> datetime:
    """Timezone-aware UTC datetime (replaces deprecated datetime.utcnow)."""
    return datetime.now(timezone.utc)


def now_ms() -> int:
    """Wall-clock epoch milliseconds — the unit of every phase timestamp."""
    return int(time.time() * 1000)


class Phase(str, Enum):
    PROMPT = "prompt"
    SUBMISSION = "submission"
    VOTING = "voting"
    RESULTS = "results"


class MatchStatus(str, Enum):
    WAITING = "waiting"     # room is filling up, no RoundState yet
    ACTIVE = "active"
    FINISHED = "finished"


class PromptStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class PromptPoolEntry(BaseModel):
    id: str
    text: str
    status: PromptStatus = PromptStatus.ACTIVE
    category: str = "general"


class RoundState(BaseModel):
    """Volatile per-room game state. Owned by the GameMaster only."""
    room_id: str
    phase: Phase = Phase.PROMPT
    round_number: int = 1
    prompt_id: str = ""
    prompt_text: str = ""
    # Epoch ms. Changes together with `phase`, always in one conditional write.
    phase_started_at: int
    # Bumped by every accepted submission/vote; transitions are conditional on it too
    revision: int = 0
    submissions: Dict[str, str] = {}   # player_id → response text
    votes: Dict[str, str] = {}         # voter_id → target player_id
    last_round_winner_id: Optional[str] = None
    last_round_winners: List[str] = []
    last_vote_tally: Dict[str, int] = {}
    last_round_stars: List[str] = []

    def to_public(self) -> Dict[str, Any]:
        """Client snapshot — who voted for whom stays hidden until results."""
        return {
            "roomId": self.room_id,
            "phase": self.phase.value,
            "round": self.round_number,
            "prompt": self.prompt_text,
            "phaseStartedAt": self.phase_started_at,
            "submittedPlayers": sorted(self.submissions),
            "submissions": (
                self.submissions
                if self.phase in (Phase.VOTING, Phase.RESULTS)
                else {}
            ),
            "voteCount": len(self.votes),
            "lastRoundWinnerId": self.last_round_winner_id,
            "lastRoundWinners": self.last_round_winners,
            "lastVoteTally": self.last_vote_tally,
            "lastRoundStars": self.last_round_stars,
        }


class PlayerScore(BaseModel):
    total_votes: int = 0   # sole ranking key for victory
    round_wins: int = 0
    stars: int = 0


class MatchRecord(BaseModel):
    """Durable per-room match document."""
    room_id: str = Field(default_factory=lambda: str(uuid.uuid4())[:8].upper())
    status: MatchStatus = MatchStatus.WAITING
    host_id: Optional[str] = None
    players: List[str] = []
    current_round: int = 0
    scores: Dict[str, PlayerScore] = {}
    winning_votes_threshold: int = 20
    early_end_reason: Optional[str] = None
    winner_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None


class RoundResult(BaseModel):
    winners: List[str] = []            # every player tied on the max count
    winner_id: Optional[str] = None    # the one surfaced for display
    tally: Dict[str, int] = {}
    stars: List[str] = []
    participants: List[str] = []


class RewardDelta(BaseModel):
    xp: int = 0
    round_participation: int = 0
    round_win: int = 0
    star: int = 0
    match_win: int = 0


class MatchHistoryRecord(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    room_id: str
    players: List[str] = []
    scores: Dict[str, PlayerScore] = {}
    rounds: int = 0
    winner_id: Optional[str] = None
    early_end_reason: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: datetime = Field(default_factory=_utcnow)


class AdvanceOutcome(BaseModel):
    advanced: bool = False
    state: Optional[RoundState] = None
    finished: bool = False
    round_result: Optional[RoundResult] = None


# ── HTTP request/response models ──────────────────────────────────────────────

class CreateRoomRequest(BaseModel):
    host_id: str
    winning_votes_threshold: Optional[int] = Field(default=None, ge=1)


class CreateRoomResponse(BaseModel):
    room_id: str
    host_id: str


class PlayerRequest(BaseModel):
    player_id: str


class AdvanceRequest(BaseModel):
    expected_phase: Optional[Phase] = None
    expected_phase_started_at: Optional[int] = None


class SubmitRequest(BaseModel):
    player_id: str
    text: str


class VoteRequest(BaseModel):
    voter_id: str
    target_id: str


class EndMatchRequest(BaseModel):
    reason: str = "ended_by_host"
