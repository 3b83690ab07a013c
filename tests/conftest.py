import asyncio
import os
import secrets
from datetime import datetime, timedelta, timezone

import base58
import pytest
from solders.keypair import Keypair

import db as dbmod

NOW = datetime(2025, 7, 2, 12, 0, 0, tzinfo=timezone.utc)


class FakeChain:
    """In-memory stand-in for payouts.SolanaPayer."""

    def __init__(self, balance: int = 10 ** 12):
        self.balance = balance
        self.transfers = []
        self.fail_with = None
        self.delay = 0.0
        self.statuses = {}

    async def get_balance(self, address) -> int:
        return self.balance

    async def transfer(self, signer, recipient, lamports) -> str:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        sig = base58.b58encode(os.urandom(64)).decode()
        self.transfers.append((str(signer.pubkey()), recipient, lamports, sig))
        self.balance -= lamports
        return sig

    async def signature_statuses(self, signatures):
        return {s: self.statuses.get(s) for s in signatures}


def wallet() -> str:
    return str(Keypair().pubkey())


def secret_b58(kp: Keypair) -> str:
    return base58.b58encode(bytes(kp)).decode()


async def make_round(conn, game="number_draw", *, start, end, status="waiting"):
    async with dbmod.tx(conn):
        r = await dbmod.insert_round(conn, game, start, end, created_at=start - timedelta(seconds=10))
        if status == "active":
            await dbmod.set_round_status(conn, r["id"], "active", expected="waiting")
    return await dbmod.get_round(conn, r["id"])


async def add_entries(conn, rnd, picks):
    out = []
    async with dbmod.tx(conn):
        for v in picks:
            e = await dbmod.insert_entry(
                conn, rnd["id"], rnd["game"], wallet(), v, f"stake-{secrets.token_hex(8)}", NOW
            )
            out.append(e)
    return out


async def configure_treasury(conn, kp: Keypair, **extra):
    async with dbmod.tx(conn):
        await dbmod.update_system_config(
            conn, NOW,
            treasury_address=str(kp.pubkey()),
            treasury_signing_credential=secret_b58(kp),
            **extra,
        )


@pytest.fixture
async def conn(tmp_path):
    c = await dbmod.connect(str(tmp_path / "draw.db"))
    yield c
    await c.close()


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def treasury():
    return Keypair()
