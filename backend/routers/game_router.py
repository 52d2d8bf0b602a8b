"""
Room HTTP endpoints.

Routes:
  POST /api/rooms                          — Create a waiting room with the host as first player
  POST /api/rooms/{room_id}/join           — Player joins while the room is waiting
  POST /api/rooms/{room_id}/leave          — Player leaves (may end an active match early)
  POST /api/rooms/{room_id}/start          — Start the match (round 1, prompt phase)
  POST /api/rooms/{room_id}/advance        — Client-side countdown hit zero
  POST /api/rooms/{room_id}/submissions    — Submit a response (submission phase)
  POST /api/rooms/{room_id}/votes          — Vote for a response (voting phase)
  POST /api/rooms/{room_id}/end            — End an active match early
  GET  /api/rooms/{room_id}                — Match record + live round snapshot
"""
import logging

from fastapi import APIRouter, HTTPException

from config import settings
from models.errors import (
    GameError, RoomNotFoundError, InvalidMatchStateError, WrongPhaseError,
    InvalidActionError, PromptPoolEmptyError,
)
from models.game import (
    CreateRoomRequest, CreateRoomResponse, PlayerRequest, AdvanceRequest,
    SubmitRequest, VoteRequest, EndMatchRequest, MatchRecord, MatchStatus,
    AdvanceOutcome,
)
from services.store import get_store
from agents.game_master import game_master
from routers.ws_router import manager as ws_manager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["rooms"])

_STATUS_BY_ERROR = {
    RoomNotFoundError: 404,
    InvalidMatchStateError: 409,
    WrongPhaseError: 409,
    InvalidActionError: 400,
    PromptPoolEmptyError: 503,
}


def _http_error(exc: GameError) -> HTTPException:
    status = _STATUS_BY_ERROR.get(type(exc), 400)
    return HTTPException(status_code=status, detail={"code": exc.code, "message": str(exc)})


def _outcome_body(outcome: AdvanceOutcome) -> dict:
    return {
        "advanced": outcome.advanced,
        "finished": outcome.finished,
        "state": outcome.state.to_public() if outcome.state else None,
        "roundResult": outcome.round_result.model_dump() if outcome.round_result else None,
    }


@router.post("/rooms", response_model=CreateRoomResponse, status_code=201)
async def create_room(body: CreateRoomRequest):
    """Create a waiting room and register the host as its first player."""
    record = MatchRecord(
        host_id=body.host_id,
        players=[body.host_id],
        winning_votes_threshold=body.winning_votes_threshold or settings.winning_votes_threshold,
    )
    await get_store().create_match_record(record)
    logger.info(f"Room {record.room_id} created by host {body.host_id}")
    return CreateRoomResponse(room_id=record.room_id, host_id=body.host_id)


@router.post("/rooms/{room_id}/join")
async def join_room(room_id: str, body: PlayerRequest):
    """Add a player to the room. Rejected once the match has started."""
    store = get_store()
    match = await store.read_match_record(room_id)
    if not match:
        raise HTTPException(status_code=404, detail="Room not found")
    if body.player_id in match.players:
        return {"room_id": room_id, "players": match.players}
    if match.status != MatchStatus.WAITING:
        raise HTTPException(status_code=409, detail="Match already in progress or finished")
    if len(match.players) >= settings.max_players:
        raise HTTPException(
            status_code=409, detail=f"Room is full (maximum {settings.max_players} players)"
        )

    players = match.players + [body.player_id]
    await store.update_match_record(room_id, {"players": players})
    await ws_manager.broadcast(room_id, {"type": "lobby_update", "players": players})
    logger.info(f"Player {body.player_id} joined room {room_id}")
    return {"room_id": room_id, "players": players}


@router.post("/rooms/{room_id}/leave")
async def leave_room(room_id: str, body: PlayerRequest):
    try:
        match = await game_master.leave_room(room_id, body.player_id)
    except GameError as exc:
        raise _http_error(exc)
    if match.status == MatchStatus.FINISHED and match.early_end_reason:
        await ws_manager.broadcast_match_over(room_id)
    return {"room_id": room_id, "players": match.players, "status": match.status.value}


@router.post("/rooms/{room_id}/start")
async def start_match(room_id: str):
    """
    Start the match: draws the first prompt and enters round 1 (prompt phase).
    503 when the prompt pool is empty — nothing is written, the caller may retry.
    """
    try:
        state = await game_master.start_match(room_id)
    except GameError as exc:
        raise _http_error(exc)

    await ws_manager.broadcast_outcome(room_id, AdvanceOutcome(advanced=True, state=state))
    return {"status": "started", "state": state.to_public()}


@router.post("/rooms/{room_id}/advance")
async def advance(room_id: str, body: AdvanceRequest):
    """
    Called by a client when its local countdown reaches zero, with the phase
    and phaseStartedAt it last saw. Stale or duplicate calls are successful
    no-ops (advanced=false).
    """
    try:
        outcome = await game_master.advance(
            room_id, body.expected_phase, body.expected_phase_started_at
        )
    except GameError as exc:
        raise _http_error(exc)

    await ws_manager.broadcast_outcome(room_id, outcome)
    return _outcome_body(outcome)


@router.post("/rooms/{room_id}/submissions")
async def submit_response(room_id: str, body: SubmitRequest):
    try:
        state = await game_master.submit_response(room_id, body.player_id, body.text)
    except GameError as exc:
        raise _http_error(exc)

    await ws_manager.broadcast(room_id, {
        "type": "submission_update",
        "submittedPlayers": sorted(state.submissions),
    })
    return {"accepted": True, "submittedPlayers": sorted(state.submissions)}


@router.post("/rooms/{room_id}/votes")
async def cast_vote(room_id: str, body: VoteRequest):
    try:
        state = await game_master.cast_vote(room_id, body.voter_id, body.target_id)
    except GameError as exc:
        raise _http_error(exc)

    await ws_manager.broadcast(room_id, {"type": "vote_update", "voteCount": len(state.votes)})
    return {"accepted": True, "voteCount": len(state.votes)}


@router.post("/rooms/{room_id}/end")
async def end_match(room_id: str, body: EndMatchRequest):
    """Finalize an active match early using the scores collected so far."""
    try:
        finished = await game_master.end_match_early(room_id, body.reason)
    except GameError as exc:
        raise _http_error(exc)
    if finished is None:
        raise HTTPException(status_code=409, detail="Match is not active")

    await ws_manager.broadcast_match_over(room_id)
    return {
        "status": finished.status.value,
        "winner_id": finished.winner_id,
        "early_end_reason": finished.early_end_reason,
    }


@router.get("/rooms/{room_id}")
async def get_room(room_id: str):
    """Durable match record plus the live round (null when not active)."""
    try:
        match, state = await game_master.get_room(room_id)
    except GameError as exc:
        raise _http_error(exc)

    return {
        "room_id": match.room_id,
        "status": match.status.value,
        "host_id": match.host_id,
        "players": match.players,
        "current_round": match.current_round,
        "winning_votes_threshold": match.winning_votes_threshold,
        "scores": {pid: s.model_dump() for pid, s in match.scores.items()},
        "winner_id": match.winner_id,
        "early_end_reason": match.early_end_reason,
        "round": state.to_public() if state else None,
        "remaining_seconds": game_master.remaining_seconds(state) if state else None,
    }
