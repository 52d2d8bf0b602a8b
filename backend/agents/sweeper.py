"""
Reconciliation sweep — liveness backstop for phase transitions.

Clients advance their own room when their countdown hits zero. If every
client of a room disconnects, nobody does; this loop finds rooms whose phase
has outlived its duration plus a grace period and advances them through the
same conditional-write path. It holds no game logic: a sweep that races a
client (or another sweep) simply becomes a no-op.
"""
import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from config import settings
from agents.game_master import GameMaster, game_master as default_game_master
from models.game import AdvanceOutcome
from services.store import get_store

logger = logging.getLogger(__name__)

OnAdvanced = Callable[[str, AdvanceOutcome], Awaitable[None]]


async def sweep_once(
    gm: Optional[GameMaster] = None,
    on_advanced: Optional[OnAdvanced] = None,
) -> List[str]:
    """Advance every overdue room once. Returns the ids that actually advanced."""
    gm = gm or default_game_master
    states = await get_store().list_round_states()
    overdue = [s for s in states if gm.is_overdue(s)]
    if not overdue:
        return []

    for s in overdue:
        logger.warning(
            "[%s] Sweep advancing stalled %s phase (round %d)",
            s.room_id, s.phase.value, s.round_number,
        )
    results = await asyncio.gather(
        *(gm.advance(s.room_id, s.phase, s.phase_started_at) for s in overdue),
        return_exceptions=True,
    )

    advanced: List[str] = []
    for s, result in zip(overdue, results):
        if isinstance(result, BaseException):
            # The next tick retries; advance is idempotent
            logger.error(
                "[%s] Sweep could not advance room: %r", s.room_id, result, exc_info=result
            )
        elif result.advanced:
            advanced.append(s.room_id)
            if on_advanced is not None:
                try:
                    await on_advanced(s.room_id, result)
                except Exception:
                    logger.warning("[%s] on_advanced hook failed", s.room_id, exc_info=True)
    return advanced


async def run_sweeper(
    stop_event: asyncio.Event,
    interval: Optional[float] = None,
    gm: Optional[GameMaster] = None,
    on_advanced: Optional[OnAdvanced] = None,
) -> None:
    """Run sweep_once every `interval` seconds until stop_event is set."""
    interval = settings.sweep_interval_seconds if interval is None else interval
    logger.info("Reconciliation sweep started (every %.1fs)", interval)
    while not stop_event.is_set():
        try:
            await sweep_once(gm, on_advanced)
        except Exception:
            logger.exception("Reconciliation sweep tick failed")
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
    logger.info("Reconciliation sweep stopped")
