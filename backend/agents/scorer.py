"""
Vote Aggregator & Scorer — pure deterministic Python.

Responsibilities:
- Tally a voting phase (malformed votes are dropped, not fatal)
- Round winners (ties kept) and star detection
- Cumulative score updates on the MatchRecord
- Win condition and overall match winner
- XP reward deltas for the progression system

Nothing here touches storage; the GameMaster commits what these return.
"""
import logging
from datetime import datetime
from typing import Optional, Dict, List, Tuple

from config import settings
from models.game import (
    MatchRecord, MatchStatus, MatchHistoryRecord, PlayerScore, RoundResult,
    RewardDelta, RoundState,
)

logger = logging.getLogger(__name__)


def compute_reward(
    participated: bool,
    won_round: bool = False,
    earned_star: bool = False,
    won_match: bool = False,
    *,
    base: Optional[int] = None,
    round_win_bonus: Optional[int] = None,
    star_bonus: Optional[int] = None,
    match_win_bonus: Optional[int] = None,
) -> RewardDelta:
    """
    XP for one player for one event. Each flag adds its amount:
      participated → base (10), won_round → 25, earned_star → 50, won_match → 100
    Amounts default to the configured values.
    """
    base = settings.xp_round_participation if base is None else base
    round_win_bonus = settings.xp_round_win if round_win_bonus is None else round_win_bonus
    star_bonus = settings.xp_star_bonus if star_bonus is None else star_bonus
    match_win_bonus = settings.xp_match_win if match_win_bonus is None else match_win_bonus

    xp = 0
    if participated:
        xp += base
    if won_round:
        xp += round_win_bonus
    if earned_star:
        xp += star_bonus
    if won_match:
        xp += match_win_bonus
    return RewardDelta(
        xp=xp,
        round_participation=int(participated),
        round_win=int(won_round),
        star=int(earned_star),
        match_win=int(won_match),
    )


class Scorer:

    def __init__(self, star_threshold: Optional[int] = None):
        self.star_threshold = settings.star_threshold if star_threshold is None else star_threshold

    # ── Tallying ──────────────────────────────────────────────────────────────

    def tally_votes(self, votes: Dict[str, str], submissions: Dict[str, str]) -> Dict[str, int]:
        """
        Count votes per target. Entries that cannot count are skipped:
        empty ids, self votes, and targets with no submission this round.
        """
        tally: Dict[str, int] = {}
        for voter_id, target_id in votes.items():
            if not voter_id or not target_id:
                continue
            if voter_id == target_id:
                continue
            if target_id not in submissions:
                continue
            tally[target_id] = tally.get(target_id, 0) + 1
        return tally

    def round_outcome(self, tally: Dict[str, int]) -> Tuple[List[str], Optional[str], List[str]]:
        """Return (winners, surfaced winner, star earners) for a tally.
        Ties are all winners; the lowest player id is surfaced for display."""
        if not tally:
            return [], None, []
        max_votes = max(tally.values())
        winners = sorted(pid for pid, count in tally.items() if count == max_votes)
        stars = sorted(pid for pid, count in tally.items() if count >= self.star_threshold)
        return winners, winners[0], stars

    # ── Round scoring ─────────────────────────────────────────────────────────

    def process_votes(
        self, match: MatchRecord, state: RoundState
    ) -> Tuple[RoundResult, Dict[str, PlayerScore]]:
        """
        Score one voting phase against the match's cumulative scores.

        Returns the round result and the full, updated scores map. The caller
        commits the map; `match` itself is left unchanged.
        """
        tally = self.tally_votes(state.votes, state.submissions)
        winners, winner_id, stars = self.round_outcome(tally)

        scores = {pid: score.model_copy() for pid, score in match.scores.items()}
        for player_id, count in tally.items():
            score = scores.setdefault(player_id, PlayerScore())
            score.total_votes += count
        for player_id in winners:
            scores[player_id].round_wins += 1
        for player_id in stars:
            scores[player_id].stars += 1

        participants = sorted(set(state.submissions) | set(state.votes))
        result = RoundResult(
            winners=winners,
            winner_id=winner_id,
            tally=tally,
            stars=stars,
            participants=participants,
        )
        if winners:
            logger.info(
                "[%s] Round %d: winner %s with %d votes%s",
                state.room_id, state.round_number, winner_id, tally[winner_id],
                f" (tie: {winners})" if len(winners) > 1 else "",
            )
        else:
            logger.info("[%s] Round %d: no valid votes", state.room_id, state.round_number)
        return result, scores

    def round_rewards(self, result: RoundResult) -> Dict[str, RewardDelta]:
        rewards: Dict[str, RewardDelta] = {}
        for player_id in sorted(set(result.participants) | set(result.winners)):
            rewards[player_id] = compute_reward(
                participated=player_id in result.participants,
                won_round=player_id in result.winners,
                earned_star=player_id in result.stars,
            )
        return rewards

    # ── Match level ───────────────────────────────────────────────────────────

    def check_win_condition(self, match: MatchRecord) -> bool:
        if not match.scores:
            return False
        best = max(score.total_votes for score in match.scores.values())
        return best >= match.winning_votes_threshold

    def match_winner(self, match: MatchRecord) -> Optional[str]:
        """Highest total_votes; ties go to more round wins, then more stars,
        then the lowest player id."""
        if not match.scores:
            return None
        ranked = sorted(
            match.scores.items(),
            key=lambda item: (-item[1].total_votes, -item[1].round_wins, -item[1].stars, item[0]),
        )
        return ranked[0][0]

    def finalize_match(
        self,
        match: MatchRecord,
        ended_at: datetime,
        early_end_reason: Optional[str] = None,
    ) -> Tuple[MatchRecord, MatchHistoryRecord]:
        winner_id = self.match_winner(match)
        finished = match.model_copy(update={
            "status": MatchStatus.FINISHED,
            "winner_id": winner_id,
            "ended_at": ended_at,
            "early_end_reason": early_end_reason,
        })
        history = MatchHistoryRecord(
            room_id=match.room_id,
            players=list(match.players),
            scores={pid: s.model_copy() for pid, s in match.scores.items()},
            rounds=match.current_round,
            winner_id=winner_id,
            early_end_reason=early_end_reason,
            started_at=match.started_at,
            ended_at=ended_at,
        )
        return finished, history


# Module-level singleton
scorer = Scorer()
