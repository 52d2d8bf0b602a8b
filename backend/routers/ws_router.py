"""
WebSocket Hub — real-time room connection management.

URL: /ws/{room_id}?playerId={player_id}

Connection flow:
  1. Accept connection → validate room + player exist
  2. Send private "connected" message with the room snapshot
  3. Broadcast "player_joined" to everyone else
  4. Message loop (_handle_message dispatcher)
  5. On disconnect: broadcast "player_left"

Client → server message types:
  ping     — keep-alive heartbeat → responds with "pong"
  advance  — the client's countdown hit zero; carries the phase and
             phaseStartedAt it last observed
  submit   — response text (submission phase only)
  vote     — target player id (voting phase only)

Server → client pushes after every committed transition:
  phase_change   — new phase, round, prompt, phaseStartedAt, duration
  round_results  — tally, winners and stars (on entering results)
  match_over     — final scores and winner
"""
import json
import logging
from typing import Dict, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Query

from agents.game_master import game_master
from models.errors import GameError
from models.game import AdvanceOutcome, Phase
from services.store import get_store

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Connection Manager ─────────────────────────────────────────────────────────

class ConnectionManager:
    """
    Tracks active WebSocket connections per room.
    Safe for asyncio single-threaded event loop (no extra locking needed).
    """

    def __init__(self):
        # {room_id: {player_id: WebSocket}}
        self._rooms: Dict[str, Dict[str, WebSocket]] = {}

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    async def connect(self, room_id: str, player_id: str, ws: WebSocket) -> None:
        await ws.accept()
        self._rooms.setdefault(room_id, {})[player_id] = ws
        logger.debug(f"[{room_id}] {player_id} connected ({self.count(room_id)} total)")

    def disconnect(self, room_id: str, player_id: str) -> None:
        room_conns = self._rooms.get(room_id, {})
        room_conns.pop(player_id, None)
        if not room_conns:
            self._rooms.pop(room_id, None)

    def count(self, room_id: str) -> int:
        return len(self._rooms.get(room_id, {}))

    def is_connected(self, room_id: str, player_id: str) -> bool:
        return player_id in self._rooms.get(room_id, {})

    # ── Sending ────────────────────────────────────────────────────────────────

    async def send_to(self, room_id: str, player_id: str, message: Dict) -> None:
        """Send a private message to a single player."""
        ws = self._rooms.get(room_id, {}).get(player_id)
        if ws:
            try:
                await ws.send_json(message)
            except Exception as exc:
                logger.warning(f"[{room_id}] send_to {player_id} failed: {exc}")
                self.disconnect(room_id, player_id)

    async def broadcast(self, room_id: str, message: Dict, exclude: Optional[str] = None) -> None:
        """Broadcast a message to all connected players in a room."""
        for pid, ws in list(self._rooms.get(room_id, {}).items()):
            if pid == exclude:
                continue
            try:
                await ws.send_json(message)
            except Exception as exc:
                logger.warning(f"[{room_id}] broadcast to {pid} failed: {exc}")
                self.disconnect(room_id, pid)

    # ── High-level game event helpers ──────────────────────────────────────────

    async def broadcast_outcome(self, room_id: str, outcome: AdvanceOutcome) -> None:
        """Push the result of a committed transition (client, HTTP or sweep)."""
        if not outcome.advanced:
            return
        if outcome.finished:
            await self.broadcast_match_over(room_id)
            return
        state = outcome.state
        await self.broadcast(room_id, {
            "type": "phase_change",
            "phase": state.phase.value,
            "round": state.round_number,
            "prompt": state.prompt_text,
            "phaseStartedAt": state.phase_started_at,
            "duration": game_master.phase_duration(state.phase),
        })
        if state.phase == Phase.VOTING:
            await self.broadcast(room_id, {
                "type": "submissions",
                "submissions": state.submissions,
            })
        if outcome.round_result is not None:
            result = outcome.round_result
            await self.broadcast(room_id, {
                "type": "round_results",
                "round": state.round_number,
                "winnerId": result.winner_id,
                "winners": result.winners,
                "tally": result.tally,
                "stars": result.stars,
            })

    async def broadcast_match_over(self, room_id: str) -> None:
        match = await get_store().read_match_record(room_id)
        if match is None:
            return
        await self.broadcast(room_id, {
            "type": "match_over",
            "winnerId": match.winner_id,
            "earlyEndReason": match.early_end_reason,
            "rounds": match.current_round,
            "scores": {pid: s.model_dump() for pid, s in match.scores.items()},
        })


manager = ConnectionManager()


# ── WebSocket endpoint ────────────────────────────────────────────────────────

@router.websocket("/ws/{room_id}")
async def websocket_endpoint(
    ws: WebSocket,
    room_id: str,
    playerId: str = Query(..., description="Player id the room was joined with"),
):
    store = get_store()

    # ── Validate room and player ───────────────────────────────────────────────
    match = await store.read_match_record(room_id)
    if not match:
        await ws.close(code=4404, reason="Room not found")
        return
    if playerId not in match.players:
        await ws.close(code=4403, reason="Player not found in this room")
        return

    # ── Accept and register ────────────────────────────────────────────────────
    await manager.connect(room_id, playerId, ws)

    state = await store.read_round_state(room_id)
    await manager.send_to(room_id, playerId, {
        "type": "connected",
        "playerId": playerId,
        "roomState": {
            "status": match.status.value,
            "players": match.players,
            "scores": {pid: s.model_dump() for pid, s in match.scores.items()},
            "round": state.to_public() if state else None,
            "duration": game_master.phase_duration(state.phase) if state else None,
        },
    })
    await manager.broadcast(room_id, {
        "type": "player_joined",
        "playerId": playerId,
        "count": manager.count(room_id),
    }, exclude=playerId)

    # ── Message loop ───────────────────────────────────────────────────────────
    try:
        while True:
            raw = await ws.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                await manager.send_to(room_id, playerId, {
                    "type": "error",
                    "message": "Invalid JSON",
                    "code": "PARSE_ERROR",
                })
                continue

            msg_type = data.get("type", "")
            # Frontend sends { type, data: { ... } }; unwrap inner payload for handlers
            inner_data = data.get("data") if isinstance(data.get("data"), dict) else {}
            await _handle_message(room_id, playerId, msg_type, inner_data)

    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(room_id, playerId)
        await manager.broadcast(room_id, {
            "type": "player_left",
            "playerId": playerId,
            "count": manager.count(room_id),
        })


# ── Message dispatcher ─────────────────────────────────────────────────────────

async def _handle_message(room_id: str, player_id: str, msg_type: str, data: Dict) -> None:
    try:
        await _dispatch_message(room_id, player_id, msg_type, data)
    except WebSocketDisconnect:
        raise
    except GameError as exc:
        await manager.send_to(room_id, player_id, {
            "type": "error", "message": str(exc), "code": exc.code,
        })
    except Exception:
        logger.exception("[%s] Unhandled error in _handle_message (type=%s)", room_id, msg_type)
        await manager.send_to(room_id, player_id, {
            "type": "error", "message": "Internal server error", "code": "SERVER_ERROR"
        })


async def _dispatch_message(room_id: str, player_id: str, msg_type: str, data: Dict) -> None:
    if msg_type == "ping":
        await manager.send_to(room_id, player_id, {"type": "pong"})

    elif msg_type == "advance":
        await _on_advance(room_id, player_id, data)

    elif msg_type == "submit":
        state = await game_master.submit_response(room_id, player_id, str(data.get("text", "")))
        await manager.send_to(room_id, player_id, {"type": "submission_accepted"})
        await manager.broadcast(room_id, {
            "type": "submission_update",
            "submittedPlayers": sorted(state.submissions),
        })

    elif msg_type == "vote":
        target = str(data.get("target", "")).strip()
        state = await game_master.cast_vote(room_id, player_id, target)
        await manager.send_to(room_id, player_id, {"type": "vote_accepted", "target": target})
        await manager.broadcast(room_id, {
            "type": "vote_update",
            "voteCount": len(state.votes),
        })

    else:
        await manager.send_to(room_id, player_id, {
            "type": "error",
            "message": f"Unknown message type: '{msg_type}'",
            "code": "UNKNOWN_TYPE",
        })


# ── Handlers ──────────────────────────────────────────────────────────────────

async def _on_advance(room_id: str, player_id: str, data: Dict) -> None:
    raw_phase = data.get("phase")
    raw_started_at = data.get("phaseStartedAt")
    try:
        expected_phase = Phase(raw_phase) if raw_phase is not None else None
        expected_started_at = int(raw_started_at) if raw_started_at is not None else None
    except (TypeError, ValueError):
        await manager.send_to(room_id, player_id, {
            "type": "error",
            "message": "advance needs a valid phase and phaseStartedAt",
            "code": "INVALID_ADVANCE",
        })
        return

    outcome = await game_master.advance(room_id, expected_phase, expected_started_at)
    await manager.broadcast_outcome(room_id, outcome)
