# scheduler.py
"""
Round state machine: waiting -> active -> completed.

Each run is a short, stateless pass (triggered by POST /scheduler or by the
optional in-process loop). Transitions are monotonic and guarded by the
current status, so overlapping runs are safe to repeat.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import aiosqlite

import db as dbmod
from config import settings
from games import GAMES, GameVariant
from settlement import Draw, settle_round

logger = logging.getLogger(__name__)


async def advance_expired_active_rounds(
    conn: aiosqlite.Connection, variant: GameVariant, now: datetime, draw: Optional[Draw] = None
) -> int:
    """Settle every active round past its end_time. Returns how many were handled."""
    expired = await dbmod.select_rounds(
        conn, variant.key, status="active", end_before=dbmod.rfc3339(now), order="end_asc"
    )
    if expired:
        logger.info("[scheduler] %s: %d expired round(s) to complete", variant.key, len(expired))

    processed = 0
    for rnd in expired:
        try:
            await settle_round(conn, rnd, variant, now, draw=draw)
            processed += 1
        except Exception:
            logger.exception("[scheduler] %s: could not settle %s", variant.key, rnd["id"])
    return processed


async def activate_due_waiting_rounds(conn: aiosqlite.Connection, variant: GameVariant, now: datetime) -> int:
    """Flip waiting rounds whose start_time has passed to active."""
    due = await dbmod.select_rounds(
        conn, variant.key, status="waiting", start_before=dbmod.rfc3339(now), order="created_asc"
    )
    activated = 0
    for rnd in due:
        try:
            async with dbmod.tx(conn):
                n = await dbmod.set_round_status(conn, rnd["id"], "active", expected="waiting")
        except aiosqlite.IntegrityError:
            # predecessor still active; picked up on a later tick
            logger.warning("[scheduler] %s: %s not activated, another round is still active", variant.key, rnd["id"])
            continue
        except Exception:
            logger.exception("[scheduler] %s: error activating %s", variant.key, rnd["id"])
            continue
        if n:
            activated += 1
            logger.info("[scheduler] %s: round activated %s", variant.key, rnd["id"])
    return activated


def _needs_new_round(current: Optional[Dict[str, Any]], now: datetime) -> bool:
    if current is None:
        return True
    remaining = (dbmod.parse_iso_z(current["end_time"]) - now).total_seconds()
    return remaining < settings.NEXT_ROUND_LEAD_SECONDS


async def ensure_upcoming_round(
    conn: aiosqlite.Connection, variant: GameVariant, now: datetime
) -> Optional[Dict[str, Any]]:
    """
    Create the next waiting round when there is no pending round, or the
    current one ends within NEXT_ROUND_LEAD_SECONDS. Returns the new round or None.
    """
    current = await dbmod.current_round(conn, variant.key)
    if not _needs_new_round(current, now):
        return None

    start = now + timedelta(seconds=variant.wait_seconds)
    if current is not None:
        # successor never overlaps its predecessor
        start = max(start, dbmod.parse_iso_z(current["end_time"]))
    end = start + timedelta(seconds=variant.duration_seconds)

    key = dbmod.pointer_key(variant.key)
    try:
        async with dbmod.tx(conn):
            # re-check under the write lock: a concurrent run may have created it
            pending = await dbmod.select_rounds(conn, variant.key, status="waiting", limit=1)
            if pending:
                logger.info("[scheduler] %s: waiting round %s already exists", variant.key, pending[0]["id"])
                return None
            previous = await dbmod.kv_get(conn, key)
            rnd = await dbmod.insert_round(conn, variant.key, start, end, created_at=now)
            if not await dbmod.kv_compare_and_set(conn, key, previous, rnd["id"]):
                raise RuntimeError(f"current round pointer for {variant.key} moved concurrently")
    except aiosqlite.IntegrityError:
        logger.warning("[scheduler] %s: concurrent run created the waiting round first", variant.key)
        return None

    logger.info("[scheduler] %s: created round %s starts=%s ends=%s",
                variant.key, rnd["id"], rnd["start_time"], rnd["end_time"])
    return rnd


async def run_scheduler(
    conn: aiosqlite.Connection,
    variant: GameVariant,
    now: Optional[datetime] = None,
    draw: Optional[Draw] = None,
) -> Dict[str, Any]:
    """
    One full pass. Each step runs even if an earlier one failed; failures
    are collected in stats['errors'].
    """
    now = now or dbmod.utcnow()
    stats: Dict[str, Any] = {
        "processedRounds": 0,
        "activatedRounds": 0,
        "createdNewRound": False,
        "currentRoundId": None,
        "currentStatus": None,
        "errors": [],
    }

    try:
        stats["processedRounds"] = await advance_expired_active_rounds(conn, variant, now, draw=draw)
    except Exception as e:
        logger.exception("[scheduler] %s: expiry step failed", variant.key)
        stats["errors"].append(f"expire: {e}")

    try:
        stats["activatedRounds"] = await activate_due_waiting_rounds(conn, variant, now)
    except Exception as e:
        logger.exception("[scheduler] %s: activation step failed", variant.key)
        stats["errors"].append(f"activate: {e}")

    try:
        current = await dbmod.current_round(conn, variant.key)
        if current:
            stats["currentRoundId"] = current["id"]
            stats["currentStatus"] = current["status"]
        created = await ensure_upcoming_round(conn, variant, now)
        stats["createdNewRound"] = created is not None
    except Exception as e:
        logger.exception("[scheduler] %s: round creation step failed", variant.key)
        stats["errors"].append(f"create: {e}")

    logger.debug("[scheduler] %s: %s", variant.key, stats)
    return stats


async def scheduler_loop(conn: aiosqlite.Connection, interval: float):
    """In-process trigger: tick every game every `interval` seconds until cancelled."""
    logger.info("[scheduler] loop started (every %.1fs)", interval)
    while True:
        for variant in GAMES.values():
            try:
                await run_scheduler(conn, variant)
            except Exception:
                logger.exception("[scheduler] loop tick failed for %s", variant.key)
        await asyncio.sleep(interval)
