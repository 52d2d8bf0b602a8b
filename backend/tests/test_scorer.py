from datetime import datetime, timezone

import pytest

from agents.scorer import Scorer, compute_reward
from models.game import MatchRecord, MatchStatus, Phase, PlayerScore, RoundState


def _state(votes, submissions=None):
    if submissions is None:
        submissions = {target: "an answer" for target in set(votes.values())}
    return RoundState(
        room_id="ROOM1",
        phase=Phase.VOTING,
        round_number=1,
        prompt_id="p1",
        prompt_text="Prompt",
        phase_started_at=0,
        submissions=submissions,
        votes=votes,
    )


def _match(**scores):
    return MatchRecord(
        room_id="ROOM1",
        status=MatchStatus.ACTIVE,
        players=sorted(scores),
        scores={pid: PlayerScore(total_votes=v) for pid, v in scores.items()},
    )


@pytest.fixture
def scorer():
    return Scorer(star_threshold=6)


def test_tally_ignores_malformed_votes(scorer):
    tally = scorer.tally_votes(
        {"a": "p1", "b": "p1", "c": "c", "d": "ghost", "": "p1", "e": ""},
        {"p1": "x", "c": "y"},
    )
    assert tally == {"p1": 2}


def test_star_awarded_at_six_not_five(scorer):
    votes = {f"v{i}": "p1" for i in range(6)}
    votes.update({f"w{i}": "p2" for i in range(5)})
    result, scores = scorer.process_votes(_match(p1=0, p2=0), _state(votes))

    assert result.stars == ["p1"]
    assert scores["p1"].stars == 1
    assert scores["p2"].stars == 0


def test_tie_records_every_winner_and_surfaces_lowest_id(scorer):
    votes = {"a": "p2", "b": "p2", "c": "p2", "d": "p1", "e": "p1", "f": "p1", "g": "p3"}
    result, scores = scorer.process_votes(_match(p1=0, p2=0, p3=0), _state(votes))

    assert result.winners == ["p1", "p2"]
    assert result.winner_id == "p1"
    assert scores["p1"].round_wins == 1
    assert scores["p2"].round_wins == 1
    assert scores["p3"].round_wins == 0


def test_no_valid_votes_means_no_winner(scorer):
    result, scores = scorer.process_votes(_match(p1=3), _state({}, {"p1": "x"}))
    assert result.winners == []
    assert result.winner_id is None
    assert scores["p1"].total_votes == 3


def test_scores_never_decrease(scorer):
    match = _match(p1=4, p2=7)
    result, scores = scorer.process_votes(match, _state({"a": "p1"}))

    for pid, before in match.scores.items():
        assert scores[pid].total_votes >= before.total_votes
    assert scores["p1"].total_votes == 5
    # The input record is left untouched
    assert match.scores["p1"].total_votes == 4


def test_participants_are_submitters_and_voters(scorer):
    state = _state({"v1": "p1"}, {"p1": "x", "p2": "y"})
    result, _ = scorer.process_votes(_match(p1=0, p2=0), state)
    assert result.participants == ["p1", "p2", "v1"]


def test_win_condition_at_threshold(scorer):
    assert scorer.check_win_condition(_match(p1=20, p2=3))
    assert not scorer.check_win_condition(_match(p1=19, p2=3))
    assert not scorer.check_win_condition(MatchRecord(room_id="ROOM1"))


def test_match_winner_tie_breaks(scorer):
    match = _match(p1=20, p2=20)
    match.scores["p2"].round_wins = 2
    assert scorer.match_winner(match) == "p2"

    level = _match(p2=20, p1=20)
    assert scorer.match_winner(level) == "p1"


def test_finalize_match_builds_history(scorer):
    match = _match(p1=21, p2=10)
    match.current_round = 7
    ended = datetime(2026, 1, 1, tzinfo=timezone.utc)

    finished, history = scorer.finalize_match(match, ended, early_end_reason="insufficient_players")

    assert finished.status == MatchStatus.FINISHED
    assert finished.winner_id == "p1"
    assert finished.ended_at == ended
    assert history.rounds == 7
    assert history.winner_id == "p1"
    assert history.early_end_reason == "insufficient_players"
    assert history.scores["p1"].total_votes == 21


def test_compute_reward_defaults():
    assert compute_reward(participated=True).xp == 10
    assert compute_reward(participated=True, won_round=True).xp == 35
    assert compute_reward(participated=True, won_round=True, earned_star=True).xp == 85
    full = compute_reward(participated=True, won_round=True, earned_star=True, won_match=True)
    assert full.xp == 185
    assert (full.round_participation, full.round_win, full.star, full.match_win) == (1, 1, 1, 1)
    assert compute_reward(participated=False).xp == 0


def test_round_rewards_cover_participants(scorer):
    state = _state({"v1": "p1", "v2": "p1"}, {"p1": "x", "p2": "y"})
    result, _ = scorer.process_votes(_match(p1=0, p2=0), state)
    rewards = scorer.round_rewards(result)

    assert set(rewards) == {"p1", "p2", "v1", "v2"}
    assert rewards["p1"].xp == 35
    assert rewards["p2"].xp == 10
