# settlement.py
"""
GOR Number Draw — settlement.py
Finalize an expired round: draw the outcome, split the pot equally among the
entries that picked it (net of the platform fee), persist the result.

Amounts are integer base units. The platform fee is rounded up to the next base
unit and the per-winner prize is floored, so the prizes never add up to more
than total_stake * (1 - fee%). The indivisible remainder stays in the treasury.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_CEILING
from typing import Any, Callable, Dict, List, Optional, Sequence
import logging
import secrets

import aiosqlite

import db as dbmod
from config import settings
from games import GameVariant
from units import to_base_units, display_amount

logger = logging.getLogger(__name__)

Draw = Callable[[GameVariant], int]


class RoundAlreadySettled(Exception):
    """Another invocation completed the round first."""


class SettlementError(Exception):
    pass


def draw_outcome(variant: GameVariant) -> int:
    """Uniform pick from the variant's outcome domain (CSPRNG)."""
    return secrets.choice(variant.outcomes)


@dataclass
class SettlementPlan:
    outcome: int
    participant_count: int
    total_stake: int
    platform_fee: int
    distributable: int
    winner_ids: List[str] = field(default_factory=list)
    prize_per_winner: int = 0

    @property
    def remainder(self) -> int:
        """Base units left undistributed by the equal split."""
        if not self.winner_ids:
            return 0
        return self.distributable - self.prize_per_winner * len(self.winner_ids)


def compute_settlement(
    entries: Sequence[Dict[str, Any]],
    outcome: int,
    entry_fee_base: int,
    platform_fee_percentage: Decimal,
) -> SettlementPlan:
    if entry_fee_base < 0:
        raise ValueError("entry fee must be >= 0")
    pct = Decimal(platform_fee_percentage)
    if pct < 0 or pct > 100:
        raise ValueError(f"platform fee percentage out of range: {pct}")

    participant_count = len(entries)
    total_stake = participant_count * int(entry_fee_base)
    platform_fee = int((Decimal(total_stake) * pct / 100).to_integral_value(rounding=ROUND_CEILING))
    distributable = total_stake - platform_fee

    winner_ids = [e["id"] for e in entries if int(e["selected_value"]) == int(outcome)]
    prize = distributable // len(winner_ids) if winner_ids else 0

    return SettlementPlan(
        outcome=int(outcome),
        participant_count=participant_count,
        total_stake=total_stake,
        platform_fee=platform_fee,
        distributable=distributable,
        winner_ids=winner_ids,
        prize_per_winner=prize,
    )


def entry_fee_for(variant: GameVariant, cfg: dbmod.SystemConfig) -> int:
    fee = variant.entry_fee if variant.entry_fee is not None else cfg.entry_fee
    return to_base_units(fee)


async def settle_round(
    conn: aiosqlite.Connection,
    rnd: Dict[str, Any],
    variant: GameVariant,
    now: datetime,
    draw: Optional[Draw] = None,
) -> Optional[SettlementPlan]:
    """
    Settle one expired active round. Returns the plan, or None when another
    invocation already completed it. Any other failure force-completes the
    round (see force_complete_round) and returns None.
    """
    rid = rnd["id"]
    draw = draw or draw_outcome
    outcome = draw(variant)
    if not variant.is_valid_outcome(outcome):
        raise ValueError(f"draw returned {outcome} outside {variant.outcomes}")

    try:
        cfg = await dbmod.get_system_config(conn)
        fee_base = entry_fee_for(variant, cfg)
        async with dbmod.tx(conn):
            entries = await dbmod.select_entries(conn, rid)
            plan = compute_settlement(entries, outcome, fee_base, cfg.platform_fee_percentage)

            for eid in plan.winner_ids:
                if await dbmod.mark_winner(conn, eid, plan.prize_per_winner) != 1:
                    raise SettlementError(f"entry {eid} already carries a settlement")

            updated = await dbmod.complete_round(
                conn,
                rid,
                outcome=plan.outcome,
                participant_count=plan.participant_count,
                total_stake=plan.total_stake,
                platform_fee=plan.platform_fee,
                prize_per_winner=plan.prize_per_winner,
                winner_count=len(plan.winner_ids),
                settlement="settled",
                completed_at=now,
            )
            if updated == 0:
                raise RoundAlreadySettled(rid)
    except RoundAlreadySettled:
        logger.info("[settle] %s already completed by another run; skipping", rid)
        return None
    except Exception as exc:
        logger.exception("[settle] settlement failed for %s", rid)
        await force_complete_round(conn, rnd, variant, now, exc)
        return None

    logger.info(
        "[settle] %s completed: outcome=%s players=%d pot=%s fee=%s winners=%d prize_each=%s %s",
        rid, variant.label_for(plan.outcome), plan.participant_count,
        display_amount(plan.total_stake), display_amount(plan.platform_fee),
        len(plan.winner_ids), display_amount(plan.prize_per_winner), settings.TOKEN_SYMBOL,
    )
    if plan.remainder:
        logger.info("[settle] %s rounding remainder retained: %d base units", rid, plan.remainder)
    return plan


async def force_complete_round(
    conn: aiosqlite.Connection,
    rnd: Dict[str, Any],
    variant: GameVariant,
    now: datetime,
    error: BaseException,
) -> bool:
    """
    Close a round whose settlement failed so the schedule keeps moving. The
    round is marked settlement='forced' with a fresh fallback outcome and no
    winners. Totals follow SETTLEMENT_FALLBACK. Returns False when even this
    write failed (the round stays active and is retried on the next tick).
    """
    rid = rnd["id"]
    outcome = draw_outcome(variant)
    participants, stake = 0, 0

    if settings.SETTLEMENT_FALLBACK == "counted":
        try:
            cfg = await dbmod.get_system_config(conn)
            participants = len(await dbmod.select_entries(conn, rid))
            stake = participants * entry_fee_for(variant, cfg)
        except Exception:
            logger.warning("[settle] %s could not count entries for forced close", rid, exc_info=True)
            participants, stake = 0, 0

    try:
        async with dbmod.tx(conn):
            updated = await dbmod.complete_round(
                conn,
                rid,
                outcome=outcome,
                participant_count=participants,
                total_stake=stake,
                settlement="forced",
                settlement_error=f"{type(error).__name__}: {error}"[:500],
                completed_at=now,
            )
    except Exception:
        logger.exception("[settle] FORCED close of %s failed; round stays active", rid)
        return False

    if updated:
        logger.error(
            "[settle] %s FORCE-COMPLETED after settlement error (%s); fallback outcome=%s players=%d",
            rid, error, outcome, participants,
        )
    return bool(updated)
