import asyncio
from datetime import timedelta

import pytest
from solders.keypair import Keypair

import db as dbmod
from claims import claim_reward, reconcile_payouts
from errors import (
    AlreadyClaimed,
    ConfigurationError,
    Forbidden,
    InsufficientFunds,
    InvalidAmount,
    NotEligible,
    NotFound,
    PayoutError,
    RollbackFailed,
)
from games import NUMBER_DRAW
from payouts import SubmissionUncertain
from settlement import settle_round

from conftest import NOW, add_entries, configure_treasury, make_round, secret_b58


@pytest.fixture
async def settled(conn, treasury):
    """Completed round: entries[0] and entries[1] won 0.485 each, the rest lost."""
    await configure_treasury(conn, treasury)
    rnd = await make_round(conn, start=NOW - timedelta(seconds=70), end=NOW - timedelta(seconds=10), status="active")
    entries = await add_entries(conn, rnd, [7, 7, 1, 2, 3, 4, 5, 6, 8, 9])
    await settle_round(conn, rnd, NUMBER_DRAW, NOW, draw=lambda v: 7)
    return entries


async def _unchanged(conn, entry):
    e = await dbmod.get_entry(conn, entry["id"])
    return (e["reward_claimed"], e["reward_tx_ref"], e["payout_status"])


async def test_successful_claim(conn, chain, settled, treasury):
    winner = settled[0]
    result = await claim_reward(conn, chain, winner["id"], winner["participant_address"], now=NOW)

    assert result.amount == 485_000_000
    assert result.recipient == winner["participant_address"]
    assert chain.transfers == [
        (str(treasury.pubkey()), winner["participant_address"], 485_000_000, result.transaction_signature)
    ]
    e = await dbmod.get_entry(conn, winner["id"])
    assert e["reward_claimed"] is True
    assert e["reward_tx_ref"] == result.transaction_signature
    assert e["payout_status"] == "dispatched"
    assert e["payout_dispatched_at"] == dbmod.rfc3339(NOW)


async def test_second_claim_reports_first_signature(conn, chain, settled):
    winner = settled[0]
    first = await claim_reward(conn, chain, winner["id"], winner["participant_address"])
    with pytest.raises(AlreadyClaimed) as exc:
        await claim_reward(conn, chain, winner["id"], winner["participant_address"])
    assert exc.value.transaction_ref == first.transaction_signature
    assert len(chain.transfers) == 1


async def test_concurrent_claims_pay_once(conn, chain, settled):
    winner = settled[1]
    chain.delay = 0.01
    results = await asyncio.gather(
        claim_reward(conn, chain, winner["id"], winner["participant_address"]),
        claim_reward(conn, chain, winner["id"], winner["participant_address"]),
        return_exceptions=True,
    )
    ok = [r for r in results if not isinstance(r, Exception)]
    failed = [r for r in results if isinstance(r, Exception)]
    assert len(ok) == 1
    assert len(failed) == 1 and isinstance(failed[0], AlreadyClaimed)
    assert len(chain.transfers) == 1


async def test_loser_is_not_eligible(conn, chain, settled):
    loser = settled[2]
    before = await _unchanged(conn, loser)
    with pytest.raises(NotEligible):
        await claim_reward(conn, chain, loser["id"], loser["participant_address"])
    assert await _unchanged(conn, loser) == before
    assert chain.transfers == []


async def test_unknown_entry(conn, chain, settled):
    with pytest.raises(NotFound):
        await claim_reward(conn, chain, "nope", settled[0]["participant_address"])


async def test_other_wallet_is_forbidden(conn, chain, settled):
    with pytest.raises(Forbidden):
        await claim_reward(conn, chain, settled[0]["id"], settled[1]["participant_address"])
    assert not (await dbmod.get_entry(conn, settled[0]["id"]))["reward_claimed"]


async def test_zero_prize_is_invalid(conn, chain, settled):
    await conn.execute("UPDATE entries SET prize_amount=0 WHERE id=?", (settled[0]["id"],))
    await conn.commit()
    with pytest.raises(InvalidAmount):
        await claim_reward(conn, chain, settled[0]["id"], settled[0]["participant_address"])


async def test_insufficient_funds_rolls_back(conn, chain, settled):
    chain.balance = 485_000_000  # no room for the network fee
    winner = settled[0]
    with pytest.raises(InsufficientFunds):
        await claim_reward(conn, chain, winner["id"], winner["participant_address"])
    e = await dbmod.get_entry(conn, winner["id"])
    assert e["reward_claimed"] is False
    assert e["reward_tx_ref"] is None
    assert chain.transfers == []


async def test_submit_failure_rolls_back(conn, chain, settled):
    chain.fail_with = ConnectionError("rpc down")
    winner = settled[0]
    with pytest.raises(PayoutError) as exc:
        await claim_reward(conn, chain, winner["id"], winner["participant_address"])
    assert isinstance(exc.value.__cause__, ConnectionError)
    assert await _unchanged(conn, winner) == (False, None, None)

    # and can be claimed again once the chain is back
    chain.fail_with = None
    result = await claim_reward(conn, chain, winner["id"], winner["participant_address"])
    assert result.transaction_signature


async def test_rollback_failure_is_escalated(conn, chain, settled, monkeypatch):
    chain.fail_with = ConnectionError("rpc down")

    async def broken_rollback(*a, **kw):
        raise RuntimeError("db gone")

    monkeypatch.setattr(dbmod, "rollback_claim", broken_rollback)
    winner = settled[0]
    with pytest.raises(RollbackFailed) as exc:
        await claim_reward(conn, chain, winner["id"], winner["participant_address"])
    assert isinstance(exc.value.__cause__, ConnectionError)
    e = await dbmod.get_entry(conn, winner["id"])
    assert e["reward_claimed"] is True and e["reward_tx_ref"] == dbmod.CLAIM_SENTINEL


async def test_uncertain_submit_keeps_the_lock(conn, chain, settled):
    chain.fail_with = SubmissionUncertain("5igZ" * 10, "timed out")
    winner = settled[0]
    result = await claim_reward(conn, chain, winner["id"], winner["participant_address"], now=NOW)
    assert result.transaction_signature == "5igZ" * 10
    assert result.uncertain is True
    assert result.to_dict()["status"] == "submission_uncertain"
    e = await dbmod.get_entry(conn, winner["id"])
    assert e["reward_claimed"] and e["payout_status"] == "uncertain"

    chain.fail_with = None
    with pytest.raises(AlreadyClaimed):
        await claim_reward(conn, chain, winner["id"], winner["participant_address"])

    chain.statuses = {"5igZ" * 10: "confirmed"}
    stats = await reconcile_payouts(conn, chain, now=NOW + timedelta(seconds=10))
    assert stats["confirmed"] == 1
    assert (await dbmod.get_entry(conn, winner["id"]))["payout_status"] == "confirmed"


async def test_cancelled_payout_releases_the_lock(conn, chain, settled):
    chain.delay = 5
    winner = settled[0]
    task = asyncio.ensure_future(claim_reward(conn, chain, winner["id"], winner["participant_address"]))
    for _ in range(50):
        await asyncio.sleep(0.01)
        if (await dbmod.get_entry(conn, winner["id"]))["payout_status"] == "pending":
            break
    await asyncio.sleep(0.05)  # let it reach the transfer
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert await _unchanged(conn, winner) == (False, None, None)
    assert chain.transfers == []


async def test_missing_treasury_config(conn, chain, settled):
    async with dbmod.tx(conn):
        await dbmod.update_system_config(conn, NOW, treasury_signing_credential="")
    winner = settled[0]
    with pytest.raises(ConfigurationError):
        await claim_reward(conn, chain, winner["id"], winner["participant_address"])
    assert await _unchanged(conn, winner) == (False, None, None)


async def test_mismatched_treasury_key(conn, chain, settled):
    async with dbmod.tx(conn):
        await dbmod.update_system_config(conn, NOW, treasury_signing_credential=secret_b58(Keypair()))
    winner = settled[0]
    with pytest.raises(ConfigurationError, match="does not match"):
        await claim_reward(conn, chain, winner["id"], winner["participant_address"])
    assert await _unchanged(conn, winner) == (False, None, None)


async def test_reconcile_confirms_and_keeps_unknown_pending(conn, chain, settled):
    a, b = settled[0], settled[1]
    ra = await claim_reward(conn, chain, a["id"], a["participant_address"], now=NOW)
    await claim_reward(conn, chain, b["id"], b["participant_address"], now=NOW)

    chain.statuses = {ra.transaction_signature: "confirmed"}
    stats = await reconcile_payouts(conn, chain, now=NOW + timedelta(seconds=30))
    assert stats == {"checked": 2, "confirmed": 1, "failed": 0, "expired": 0, "pending": 1, "stuck": 0}
    assert (await dbmod.get_entry(conn, a["id"]))["payout_status"] == "confirmed"


async def test_unknown_payout_expires_but_is_never_reopened(conn, chain, settled):
    b = settled[1]
    rb = await claim_reward(conn, chain, b["id"], b["participant_address"], now=NOW)

    # node without history: the transfer may well have landed
    stats = await reconcile_payouts(conn, chain, now=NOW + timedelta(seconds=600))
    assert stats["expired"] == 1
    e = await dbmod.get_entry(conn, b["id"])
    assert (e["reward_claimed"], e["reward_tx_ref"], e["payout_status"]) == (True, rb.transaction_signature, "expired")

    with pytest.raises(AlreadyClaimed) as exc:
        await claim_reward(conn, chain, b["id"], b["participant_address"], now=NOW + timedelta(seconds=601))
    assert exc.value.transaction_ref == rb.transaction_signature
    assert len(chain.transfers) == 1

    # expired entries are out of the automatic loop
    again = await reconcile_payouts(conn, chain, now=NOW + timedelta(seconds=900))
    assert again["checked"] == 0


async def test_reconcile_releases_failed_transfer(conn, chain, settled):
    a = settled[0]
    r = await claim_reward(conn, chain, a["id"], a["participant_address"], now=NOW)
    chain.statuses = {r.transaction_signature: "failed"}
    stats = await reconcile_payouts(conn, chain, now=NOW + timedelta(seconds=5))
    assert stats["failed"] == 1
    again = await claim_reward(conn, chain, a["id"], a["participant_address"], now=NOW)
    assert again.transaction_signature != r.transaction_signature


async def test_unrecorded_payout_is_reported_as_stuck(conn, chain, settled, monkeypatch):
    async def broken_record(*a, **kw):
        raise RuntimeError("disk full")

    monkeypatch.setattr(dbmod, "record_payout", broken_record)
    a = settled[0]
    result = await claim_reward(conn, chain, a["id"], a["participant_address"], now=NOW)
    assert len(chain.transfers) == 1
    e = await dbmod.get_entry(conn, a["id"])
    assert (e["reward_tx_ref"], e["payout_status"]) == (dbmod.CLAIM_SENTINEL, "pending")

    early = await reconcile_payouts(conn, chain, now=NOW + timedelta(seconds=30))
    assert early["stuck"] == 0
    late = await reconcile_payouts(conn, chain, now=NOW + timedelta(seconds=600))
    assert late["stuck"] == 1
    # reported only; the lock is left for an operator holding the signature
    e = await dbmod.get_entry(conn, a["id"])
    assert e["reward_claimed"] and e["payout_status"] == "pending"
    assert result.transaction_signature == chain.transfers[0][3]


def test_module_compiles_without_warnings():
    import pathlib
    import warnings

    import claims

    src = pathlib.Path(claims.__file__).read_text()
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        compile(src, claims.__file__, "exec")
