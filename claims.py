# claims.py
"""
GOR Number Draw — claims.py
At-most-once reward payout for a settled winning entry.

    unclaimed -> pending (claim lock) -> dispatched -> confirmed
    pending   -> unclaimed   (rollback when the transfer provably failed)
    pending   -> uncertain   (submit deadline hit; the transfer may have landed)
    dispatched/uncertain -> expired   (still unknown after PAYOUT_EXPIRY_SECONDS; manual review)

The claim lock is a compare-and-set on entries.reward_claimed, taken before
any chain call, so a second concurrent claim can never reach the transfer.
Only a proven failure releases the lock; anything unknown keeps it.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Protocol
import asyncio
import logging

import aiosqlite
from solders.keypair import Keypair

import db as dbmod
from config import settings
from errors import (
    AlreadyClaimed,
    ClaimError,
    Forbidden,
    InsufficientFunds,
    InvalidAmount,
    NotEligible,
    NotFound,
    PayoutError,
    RollbackFailed,
)
from payouts import SubmissionUncertain, load_treasury_signer
from units import display_amount

logger = logging.getLogger(__name__)


class Chain(Protocol):
    async def get_balance(self, address: Any) -> int: ...
    async def transfer(self, signer: Keypair, recipient: str, lamports: int) -> str: ...
    async def signature_statuses(self, signatures: Any) -> Dict[str, Optional[str]]: ...


@dataclass
class ClaimResult:
    entry_id: str
    transaction_signature: str
    amount: int
    recipient: str
    # submit hit its deadline; the transfer may or may not have landed
    uncertain: bool = False

    @property
    def status(self) -> str:
        return "submission_uncertain" if self.uncertain else "dispatched"

    @property
    def explorer_url(self) -> str:
        return settings.explorer_url(self.transaction_signature)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "transaction_signature": self.transaction_signature,
            "amount": display_amount(self.amount),
            "amount_base_units": self.amount,
            "recipient": self.recipient,
            "explorer_url": self.explorer_url,
            "status": self.status,
        }


# one spender per treasury wallet at a time (balance check + submit)
_treasury_locks: Dict[str, asyncio.Lock] = {}


def _treasury_lock(address: str) -> asyncio.Lock:
    lock = _treasury_locks.get(address)
    if lock is None:
        lock = _treasury_locks[address] = asyncio.Lock()
    return lock


async def _validate(conn: aiosqlite.Connection, entry_id: str, claimant: str) -> Dict[str, Any]:
    entry = await dbmod.get_entry(conn, entry_id)
    if entry is None:
        raise NotFound(f"Entry not found: {entry_id}")
    if claimant != entry["participant_address"]:
        raise Forbidden(
            f"Wallet address mismatch. Expected: {entry['participant_address']}, Got: {claimant}"
        )
    if not entry["is_winner"]:
        raise NotEligible(f"Entry {entry_id} is not a winner")
    if entry["reward_claimed"]:
        raise AlreadyClaimed(entry_id, entry["reward_tx_ref"])
    if int(entry["prize_amount"] or 0) <= 0:
        raise InvalidAmount(f"Invalid prize amount: {entry['prize_amount']}")
    return entry


async def _pay(chain: Chain, signer: Keypair, recipient: str, amount: int) -> str:
    treasury = str(signer.pubkey())
    async with _treasury_lock(treasury):
        balance = await chain.get_balance(treasury)
        required = amount + settings.network_fee_base
        if balance < required:
            raise InsufficientFunds(
                f"Insufficient funds in treasury. Balance: {display_amount(balance)} {settings.TOKEN_SYMBOL}, "
                f"Required: {display_amount(required)} {settings.TOKEN_SYMBOL} (including fees)"
            )
        return await chain.transfer(signer, recipient, amount)


async def claim_reward(
    conn: aiosqlite.Connection,
    chain: Chain,
    entry_id: str,
    claimant_address: str,
    now: Optional[datetime] = None,
) -> ClaimResult:
    now = now or dbmod.utcnow()
    entry = await _validate(conn, entry_id, claimant_address)
    amount = int(entry["prize_amount"])

    cfg = await dbmod.get_system_config(conn)
    signer = load_treasury_signer(cfg.treasury_address, cfg.treasury_signing_credential)

    async with dbmod.tx(conn):
        locked = await dbmod.mark_claim_pending(conn, entry_id, now)
    if not locked:
        current = await dbmod.get_entry(conn, entry_id)
        raise AlreadyClaimed(entry_id, current["reward_tx_ref"] if current else None)

    logger.info("[claim] %s locked; paying %s %s to %s",
                entry_id, display_amount(amount), settings.TOKEN_SYMBOL, claimant_address)

    uncertain = False
    try:
        signature = await _pay(chain, signer, claimant_address, amount)
    except SubmissionUncertain as e:
        # the transfer may have landed: keep the lock, let reconciliation decide
        logger.error("[claim] %s submit outcome unknown (%s); held for verification as %s",
                     entry_id, e, e.signature)
        signature, uncertain = e.signature, True
    except asyncio.CancelledError:
        logger.warning("[claim] %s cancelled during payout, releasing claim lock", entry_id)
        try:
            async with dbmod.tx(conn):
                await dbmod.rollback_claim(conn, entry_id, expected_ref=dbmod.CLAIM_SENTINEL)
        except Exception as rb_exc:
            logger.critical("[claim] %s ROLLBACK FAILED after cancel; entry stays pending: %s", entry_id, rb_exc)
        raise
    except Exception as exc:
        logger.error("[claim] %s payout failed, rolling back: %s", entry_id, exc)
        try:
            async with dbmod.tx(conn):
                await dbmod.rollback_claim(conn, entry_id)
        except Exception as rb_exc:
            logger.critical("[claim] %s ROLLBACK FAILED; entry is claimed but unpaid: %s", entry_id, rb_exc)
            raise RollbackFailed(
                f"Payout failed AND rollback failed. Manual intervention required for entry {entry_id}. "
                f"Original error: {exc}; rollback error: {rb_exc}"
            ) from exc
        if isinstance(exc, ClaimError):
            raise
        raise PayoutError(f"Payout transaction failed: {exc}") from exc

    status = "uncertain" if uncertain else "dispatched"
    try:
        async with dbmod.tx(conn):
            await dbmod.record_payout(conn, entry_id, signature, now, status=status)
    except Exception:
        # entry stays pending; reconcile_payouts reports it as stuck
        logger.exception("[claim] %s transfer sent (%s) but recording the signature failed", entry_id, signature)

    logger.info("[claim] %s %s %s", entry_id, status, signature)
    return ClaimResult(
        entry_id=entry_id,
        transaction_signature=signature,
        amount=amount,
        recipient=claimant_address,
        uncertain=uncertain,
    )


async def reconcile_payouts(
    conn: aiosqlite.Connection,
    chain: Chain,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """
    Check dispatched and uncertain payouts on-chain.

    - confirmed on-chain: payout_status='confirmed'
    - executed with an error: no funds moved, so the claim is released
      (payout_status='failed') and the entry can be claimed again
    - still unknown after PAYOUT_EXPIRY_SECONDS: payout_status='expired'; the
      entry stays claimed, since an RPC node without history also answers None
      for transfers that landed

    Claims stuck in 'pending' longer than PAYOUT_EXPIRY_SECONDS (lost process,
    failed signature write) are reported as 'stuck' and logged, not touched.
    """
    now = now or dbmod.utcnow()
    stats = {"checked": 0, "confirmed": 0, "failed": 0, "expired": 0, "pending": 0, "stuck": 0}
    expiry = settings.PAYOUT_EXPIRY_SECONDS

    stuck = await dbmod.select_stuck_claims(conn, dbmod.rfc3339(now - timedelta(seconds=expiry)))
    for e in stuck:
        logger.error("[reconcile] %s claim pending since %s with no recorded signature; needs manual review",
                     e["id"], e["claim_started_at"])
    stats["stuck"] = len(stuck)

    unsettled = await dbmod.select_unsettled_payouts(conn)
    if not unsettled:
        logger.info("[reconcile] %s", stats)
        return stats
    statuses = await chain.signature_statuses([e["reward_tx_ref"] for e in unsettled])

    for e in unsettled:
        stats["checked"] += 1
        sig = e["reward_tx_ref"]
        status = statuses.get(sig)
        if status == "confirmed":
            async with dbmod.tx(conn):
                await dbmod.set_payout_status(conn, e["id"], "confirmed", expected=e["payout_status"])
            stats["confirmed"] += 1
        elif status == "failed":
            async with dbmod.tx(conn):
                await dbmod.rollback_claim(conn, e["id"], payout_status="failed", expected_ref=sig)
            stats["failed"] += 1
            logger.warning("[reconcile] %s payout %s failed on-chain; released for re-claim", e["id"], sig)
        elif status is None and (now - dbmod.parse_iso_z(e["payout_dispatched_at"])).total_seconds() > expiry:
            async with dbmod.tx(conn):
                await dbmod.set_payout_status(conn, e["id"], "expired", expected=e["payout_status"])
            stats["expired"] += 1
            logger.error("[reconcile] %s payout %s unknown after %ss; held for manual review", e["id"], sig, expiry)
        else:
            stats["pending"] += 1

    logger.info("[reconcile] %s", stats)
    return stats
