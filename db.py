# db.py

"""
GOR Number Draw — db.py
Canonical schema + async (aiosqlite) helpers for rounds, entries and system config.
Target DB path: /data/drawpool.db

Every write goes through `tx()`; the helpers below never commit on their own.
"""

from __future__ import annotations
from typing import Any, Dict, Iterable, List, Optional, Union
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
import asyncio
import os
import secrets
import weakref
import aiosqlite

# =========================================================
# Canonical Schema
# =========================================================
SCHEMA = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS kv (
  k TEXT PRIMARY KEY,
  v TEXT
);

-- Rounds table: TEXT id like 'R0123'; amounts in base units (lamports)
CREATE TABLE IF NOT EXISTS rounds (
  id                TEXT PRIMARY KEY,
  game              TEXT NOT NULL,
  created_at        TEXT NOT NULL,
  start_time        TEXT NOT NULL,
  end_time          TEXT NOT NULL,
  status            TEXT NOT NULL DEFAULT 'waiting'
                    CHECK (status IN ('waiting', 'active', 'completed')),
  outcome           INTEGER,
  participant_count INTEGER NOT NULL DEFAULT 0,
  total_stake       INTEGER NOT NULL DEFAULT 0,
  platform_fee      INTEGER NOT NULL DEFAULT 0,
  prize_per_winner  INTEGER NOT NULL DEFAULT 0,
  winner_count      INTEGER NOT NULL DEFAULT 0,
  settlement        TEXT CHECK (settlement IS NULL OR settlement IN ('settled', 'forced')),
  settlement_error  TEXT,
  completed_at      TEXT,
  CHECK (end_time > start_time),
  CHECK ((status = 'completed') = (outcome IS NOT NULL))
);

CREATE TABLE IF NOT EXISTS entries (
  id                   TEXT PRIMARY KEY,
  round_id             TEXT NOT NULL,
  game                 TEXT NOT NULL,
  participant_address  TEXT NOT NULL,
  selected_value       INTEGER NOT NULL,
  stake_tx_ref         TEXT NOT NULL,
  is_winner            INTEGER NOT NULL DEFAULT 0,
  prize_amount         INTEGER NOT NULL DEFAULT 0,
  reward_claimed       INTEGER NOT NULL DEFAULT 0,
  reward_tx_ref        TEXT,
  payout_status        TEXT CHECK (payout_status IS NULL OR payout_status IN
                       ('pending', 'dispatched', 'uncertain', 'confirmed', 'failed', 'expired')),
  claim_started_at     TEXT,
  payout_dispatched_at TEXT,
  created_at           TEXT NOT NULL,
  FOREIGN KEY(round_id) REFERENCES rounds(id)
);

CREATE TABLE IF NOT EXISTS system_config (
  id                          TEXT PRIMARY KEY DEFAULT '1',
  treasury_address            TEXT NOT NULL DEFAULT '',
  treasury_signing_credential TEXT NOT NULL DEFAULT '',
  platform_fee_percentage     TEXT NOT NULL DEFAULT '3.00',
  entry_fee                   TEXT NOT NULL DEFAULT '0.1',
  updated_at                  TEXT
);

INSERT OR IGNORE INTO system_config (id) VALUES ('1');

-- at most one waiting and one active round per game
CREATE UNIQUE INDEX IF NOT EXISTS uq_rounds_waiting ON rounds(game) WHERE status = 'waiting';
CREATE UNIQUE INDEX IF NOT EXISTS uq_rounds_active  ON rounds(game) WHERE status = 'active';
CREATE INDEX IF NOT EXISTS idx_rounds_game_status   ON rounds(game, status);
CREATE INDEX IF NOT EXISTS idx_rounds_created       ON rounds(created_at);

CREATE UNIQUE INDEX IF NOT EXISTS uq_entries_round_addr ON entries(round_id, participant_address);
CREATE UNIQUE INDEX IF NOT EXISTS uq_entries_stake_tx   ON entries(stake_tx_ref);
CREATE INDEX IF NOT EXISTS idx_entries_round        ON entries(round_id);
CREATE INDEX IF NOT EXISTS idx_entries_addr         ON entries(participant_address);
CREATE INDEX IF NOT EXISTS idx_entries_payout       ON entries(payout_status);

CREATE TRIGGER IF NOT EXISTS trg_entries_selected_value_immutable
BEFORE UPDATE OF selected_value ON entries
WHEN NEW.selected_value IS NOT OLD.selected_value
BEGIN
  SELECT RAISE(ABORT, 'selected_value is immutable');
END;
""".strip()

# =========================================================
# Time helpers (stored as RFC3339 'Z', second precision)
# =========================================================
def rfc3339(dt: datetime) -> str:
    """UTC timestamp like 2025-07-02T00:17:44Z; naive datetimes are treated as UTC."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.replace(tzinfo=None, microsecond=0).isoformat() + "Z"


def parse_iso_z(s: str) -> datetime:
    """Parse a stored timestamp back into an aware UTC datetime."""
    s2 = str(s).strip()
    if s2.endswith("Z"):
        s2 = s2[:-1] + "+00:00"
    dt = datetime.fromisoformat(s2)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def utcnow() -> datetime:
    return datetime.now(timezone.utc)

# =========================================================
# Connection
# =========================================================
DB_PATH = os.getenv("DB_PATH", "/data/drawpool.db")

async def connect(db_path: str = DB_PATH) -> aiosqlite.Connection:
    """
    Async connection for FastAPI handlers; ensures schema and sets PRAGMAs.
    """
    folder = os.path.dirname(db_path)
    if folder:
        os.makedirs(folder, exist_ok=True)
    conn = await aiosqlite.connect(db_path)

    # Per-connection PRAGMAs to reduce locking and keep WAL fast
    await conn.execute("PRAGMA foreign_keys=ON")
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA synchronous=NORMAL")
    await conn.execute("PRAGMA temp_store=MEMORY")
    await conn.execute("PRAGMA busy_timeout=5000")

    # Use aiosqlite.Row for dict-like access
    conn.row_factory = aiosqlite.Row

    await conn.executescript(SCHEMA)
    await conn.commit()
    return conn

async def ensure_schema(conn: aiosqlite.Connection) -> None:
    """Apply canonical schema (idempotent)."""
    await conn.executescript(SCHEMA)
    await conn.commit()

# =========================================================
# Transactions
# =========================================================
_write_locks: "weakref.WeakKeyDictionary[aiosqlite.Connection, asyncio.Lock]" = weakref.WeakKeyDictionary()

def _lock_for(conn: aiosqlite.Connection) -> asyncio.Lock:
    lock = _write_locks.get(conn)
    if lock is None:
        lock = _write_locks[conn] = asyncio.Lock()
    return lock

@asynccontextmanager
async def tx(conn: aiosqlite.Connection):
    """
    Write transaction. Serializes writers sharing this connection and takes the
    SQLite write lock up front (BEGIN IMMEDIATE) so read-then-write checks hold.
    Usage:
        async with tx(conn):
            await conn.execute(...)
            await conn.execute(...)
    """
    async with _lock_for(conn):
        await conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
            await conn.commit()
        except BaseException:
            await conn.rollback()
            raise

# =========================================================
# KV Helpers
# =========================================================
async def kv_set(conn: aiosqlite.Connection, k: str, v: str) -> None:
    """
    Upsert a key/value pair in the KV table (call inside tx()).
    """
    await conn.execute(
        "INSERT INTO kv(k, v) VALUES(?, ?) "
        "ON CONFLICT(k) DO UPDATE SET v=excluded.v",
        (k, v),
    )

async def kv_get(conn: aiosqlite.Connection, k: str) -> Optional[str]:
    """
    Read a value from KV; return None if missing.
    """
    async with conn.execute("SELECT v FROM kv WHERE k=?", (k,)) as cur:
        row = await cur.fetchone()
        return row[0] if row else None

async def kv_compare_and_set(conn: aiosqlite.Connection, k: str, expected: Optional[str], v: str) -> bool:
    """Set k to v only if it currently holds `expected` (None = key absent)."""
    if expected is None:
        cur = await conn.execute("INSERT OR IGNORE INTO kv(k, v) VALUES(?, ?)", (k, v))
    else:
        cur = await conn.execute("UPDATE kv SET v=? WHERE k=? AND v=?", (v, k, expected))
    return cur.rowcount == 1

# -------------------------
# Sequential round id allocator
# -------------------------
async def alloc_next_round_id(conn: aiosqlite.Connection) -> str:
    """
    Allocate a sequential round id of the form RNNNN using KV counter 'round:next_id'.
    Returns the new id (e.g. 'R0001'). Call inside tx().
    """
    key = "round:next_id"
    cur = await kv_get(conn, key)
    try:
        n = int(cur or 0) + 1
    except ValueError:
        n = 1
    await kv_set(conn, key, str(n))
    return f"R{n:04d}"

def pointer_key(game: str) -> str:
    return f"current_round_id:{game}"

# =========================================================
# Rounds
# =========================================================
_ROUND_ORDER = {
    "created_desc": "created_at DESC, id DESC",
    "created_asc": "created_at ASC, id ASC",
    "start_desc": "start_time DESC, id DESC",
    "end_asc": "end_time ASC, id ASC",
}

async def get_round(conn: aiosqlite.Connection, round_id: str) -> Optional[Dict[str, Any]]:
    async with conn.execute("SELECT * FROM rounds WHERE id=?", (round_id,)) as cur:
        row = await cur.fetchone()
    return dict(row) if row else None

async def select_rounds(
    conn: aiosqlite.Connection,
    game: Optional[str] = None,
    *,
    status: Union[str, Iterable[str], None] = None,
    start_before: Optional[str] = None,
    end_before: Optional[str] = None,
    order: str = "created_desc",
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    sql = "SELECT * FROM rounds WHERE 1=1"
    params: List[Any] = []
    if game:
        sql += " AND game=?"
        params.append(game)
    if status is not None:
        statuses = [status] if isinstance(status, str) else list(status)
        sql += f" AND status IN ({','.join('?' * len(statuses))})"
        params.extend(statuses)
    if start_before is not None:
        sql += " AND start_time < ?"
        params.append(start_before)
    if end_before is not None:
        sql += " AND end_time < ?"
        params.append(end_before)
    sql += f" ORDER BY {_ROUND_ORDER[order]}"
    if limit is not None:
        sql += " LIMIT ?"
        params.append(int(limit))
    async with conn.execute(sql, params) as cur:
        rows = await cur.fetchall()
    return [dict(r) for r in rows]

async def insert_round(
    conn: aiosqlite.Connection,
    game: str,
    start_time: datetime,
    end_time: datetime,
    created_at: datetime,
) -> Dict[str, Any]:
    """Insert a waiting round with zeroed counters (call inside tx())."""
    rid = await alloc_next_round_id(conn)
    await conn.execute(
        "INSERT INTO rounds(id, game, created_at, start_time, end_time, status, participant_count, total_stake) "
        "VALUES(?, ?, ?, ?, ?, 'waiting', 0, 0)",
        (rid, game, rfc3339(created_at), rfc3339(start_time), rfc3339(end_time)),
    )
    return await get_round(conn, rid)

async def set_round_status(conn: aiosqlite.Connection, round_id: str, new: str, expected: str) -> int:
    cur = await conn.execute(
        "UPDATE rounds SET status=? WHERE id=? AND status=?", (new, round_id, expected)
    )
    return cur.rowcount

async def complete_round(
    conn: aiosqlite.Connection,
    round_id: str,
    *,
    outcome: int,
    participant_count: int,
    total_stake: int,
    platform_fee: int = 0,
    prize_per_winner: int = 0,
    winner_count: int = 0,
    settlement: str = "settled",
    settlement_error: Optional[str] = None,
    completed_at: datetime,
) -> int:
    """Move an active round to completed. Returns 0 if it was no longer active."""
    cur = await conn.execute(
        "UPDATE rounds SET status='completed', outcome=?, participant_count=?, total_stake=?, "
        "platform_fee=?, prize_per_winner=?, winner_count=?, settlement=?, settlement_error=?, completed_at=? "
        "WHERE id=? AND status='active'",
        (
            int(outcome), int(participant_count), int(total_stake),
            int(platform_fee), int(prize_per_winner), int(winner_count),
            settlement, settlement_error, rfc3339(completed_at),
            round_id,
        ),
    )
    return cur.rowcount

async def current_round(conn: aiosqlite.Connection, game: str) -> Optional[Dict[str, Any]]:
    """
    The round players should see next: the pointer target while it is still
    waiting/active, else the newest waiting/active round.
    """
    rid = await kv_get(conn, pointer_key(game))
    if rid:
        r = await get_round(conn, rid)
        if r and r["status"] in ("waiting", "active"):
            return r
    rows = await select_rounds(conn, game, status=("waiting", "active"), order="start_desc", limit=1)
    return rows[0] if rows else None

# =========================================================
# Entries
# =========================================================
def _entry(row) -> Dict[str, Any]:
    d = dict(row)
    d["is_winner"] = bool(d["is_winner"])
    d["reward_claimed"] = bool(d["reward_claimed"])
    return d

async def insert_entry(
    conn: aiosqlite.Connection,
    round_id: str,
    game: str,
    participant_address: str,
    selected_value: int,
    stake_tx_ref: str,
    created_at: datetime,
) -> Dict[str, Any]:
    """Insert an entry (call inside tx()). Uniqueness violations raise sqlite3.IntegrityError."""
    eid = secrets.token_hex(8)
    await conn.execute(
        "INSERT INTO entries(id, round_id, game, participant_address, selected_value, stake_tx_ref, created_at) "
        "VALUES(?, ?, ?, ?, ?, ?, ?)",
        (eid, round_id, game, participant_address, int(selected_value), stake_tx_ref, rfc3339(created_at)),
    )
    return await get_entry(conn, eid)

async def get_entry(conn: aiosqlite.Connection, entry_id: str) -> Optional[Dict[str, Any]]:
    async with conn.execute("SELECT * FROM entries WHERE id=?", (entry_id,)) as cur:
        row = await cur.fetchone()
    return _entry(row) if row else None

async def select_entries(conn: aiosqlite.Connection, round_id: str) -> List[Dict[str, Any]]:
    async with conn.execute(
        "SELECT * FROM entries WHERE round_id=? ORDER BY created_at ASC, id ASC", (round_id,)
    ) as cur:
        rows = await cur.fetchall()
    return [_entry(r) for r in rows]

async def select_player_entries(
    conn: aiosqlite.Connection, wallet: str, *, winners_only: bool = False, limit: int = 100
) -> List[Dict[str, Any]]:
    sql = "SELECT * FROM entries WHERE participant_address=?"
    if winners_only:
        sql += " AND is_winner=1"
    sql += " ORDER BY created_at DESC LIMIT ?"
    async with conn.execute(sql, (wallet, int(limit))) as cur:
        rows = await cur.fetchall()
    return [_entry(r) for r in rows]

async def bump_round_counters(conn: aiosqlite.Connection, round_id: str, stake: int) -> None:
    await conn.execute(
        "UPDATE rounds SET participant_count = participant_count + 1, total_stake = total_stake + ? WHERE id=?",
        (int(stake), round_id),
    )

async def mark_winner(conn: aiosqlite.Connection, entry_id: str, prize_amount: int) -> int:
    """Write-once winner flag; 0 rows means the entry was already settled."""
    cur = await conn.execute(
        "UPDATE entries SET is_winner=1, prize_amount=?, reward_claimed=0 WHERE id=? AND is_winner=0",
        (int(prize_amount), entry_id),
    )
    return cur.rowcount

CLAIM_SENTINEL = "PROCESSING"

# payout_status values that still wait for an on-chain answer
UNSETTLED_PAYOUTS = ("dispatched", "uncertain")

async def mark_claim_pending(conn: aiosqlite.Connection, entry_id: str, started_at: datetime) -> int:
    """Compare-and-set reward_claimed false -> true; 0 rows means another claim won."""
    cur = await conn.execute(
        "UPDATE entries SET reward_claimed=1, reward_tx_ref=?, payout_status='pending', claim_started_at=? "
        "WHERE id=? AND reward_claimed=0 AND is_winner=1",
        (CLAIM_SENTINEL, rfc3339(started_at), entry_id),
    )
    return cur.rowcount

async def rollback_claim(
    conn: aiosqlite.Connection,
    entry_id: str,
    payout_status: Optional[str] = None,
    expected_ref: Optional[str] = None,
) -> int:
    """Release the claim lock. With expected_ref, only if the entry still carries that reference."""
    sql = (
        "UPDATE entries SET reward_claimed=0, reward_tx_ref=NULL, payout_status=?, "
        "claim_started_at=NULL, payout_dispatched_at=NULL "
        "WHERE id=? AND reward_claimed=1"
    )
    params: List[Any] = [payout_status, entry_id]
    if expected_ref is not None:
        sql += " AND reward_tx_ref=?"
        params.append(expected_ref)
    cur = await conn.execute(sql, params)
    return cur.rowcount

async def record_payout(
    conn: aiosqlite.Connection,
    entry_id: str,
    signature: str,
    dispatched_at: datetime,
    status: str = "dispatched",
) -> int:
    if status not in UNSETTLED_PAYOUTS:
        raise ValueError(f"not a dispatch status: {status}")
    cur = await conn.execute(
        "UPDATE entries SET reward_tx_ref=?, payout_status=?, payout_dispatched_at=? "
        "WHERE id=? AND reward_claimed=1",
        (signature, status, rfc3339(dispatched_at), entry_id),
    )
    return cur.rowcount

async def set_payout_status(conn: aiosqlite.Connection, entry_id: str, status: str, expected: str) -> int:
    cur = await conn.execute(
        "UPDATE entries SET payout_status=? WHERE id=? AND payout_status=?", (status, entry_id, expected)
    )
    return cur.rowcount

async def select_unsettled_payouts(conn: aiosqlite.Connection, limit: int = 256) -> List[Dict[str, Any]]:
    """Entries whose transfer was submitted (or may have been) but is not yet confirmed."""
    async with conn.execute(
        f"SELECT * FROM entries WHERE payout_status IN ({','.join('?' * len(UNSETTLED_PAYOUTS))}) "
        "ORDER BY payout_dispatched_at ASC LIMIT ?",
        (*UNSETTLED_PAYOUTS, int(limit)),
    ) as cur:
        rows = await cur.fetchall()
    return [_entry(r) for r in rows]

async def select_stuck_claims(conn: aiosqlite.Connection, started_before: str) -> List[Dict[str, Any]]:
    """Claims still holding the lock sentinel that started before the given RFC3339 time."""
    async with conn.execute(
        "SELECT * FROM entries WHERE payout_status='pending' AND claim_started_at < ? ORDER BY claim_started_at ASC",
        (started_before,),
    ) as cur:
        rows = await cur.fetchall()
    return [_entry(r) for r in rows]

# =========================================================
# System config (single row)
# =========================================================
@dataclass
class SystemConfig:
    treasury_address: str
    treasury_signing_credential: str
    platform_fee_percentage: Decimal
    entry_fee: Decimal
    updated_at: Optional[str] = None

def _dec(v: Any, field: str) -> Decimal:
    try:
        return Decimal(str(v))
    except (InvalidOperation, ValueError):
        raise ValueError(f"system_config.{field} is not a decimal: {v!r}")

async def get_system_config(conn: aiosqlite.Connection) -> SystemConfig:
    async with conn.execute(
        "SELECT treasury_address, treasury_signing_credential, platform_fee_percentage, entry_fee, updated_at "
        "FROM system_config WHERE id='1'"
    ) as cur:
        row = await cur.fetchone()
    if row is None:
        raise LookupError("system_config row missing")
    return SystemConfig(
        treasury_address=(row["treasury_address"] or "").strip(),
        treasury_signing_credential=(row["treasury_signing_credential"] or "").strip(),
        platform_fee_percentage=_dec(row["platform_fee_percentage"], "platform_fee_percentage"),
        entry_fee=_dec(row["entry_fee"], "entry_fee"),
        updated_at=row["updated_at"],
    )

_CONFIG_FIELDS = ("treasury_address", "treasury_signing_credential", "platform_fee_percentage", "entry_fee")

async def update_system_config(conn: aiosqlite.Connection, updated_at: datetime, **fields: Any) -> None:
    """Update the given columns (call inside tx()). Unknown names raise ValueError."""
    unknown = set(fields) - set(_CONFIG_FIELDS)
    if unknown:
        raise ValueError(f"unknown system_config fields: {sorted(unknown)}")
    if not fields:
        return
    cols = ", ".join(f"{k}=?" for k in fields)
    params = [str(v) for v in fields.values()] + [rfc3339(updated_at)]
    await conn.execute(f"UPDATE system_config SET {cols}, updated_at=? WHERE id='1'", params)

# =========================================================
# Aggregates
# =========================================================
async def game_stats(conn: aiosqlite.Connection, game: Optional[str] = None) -> Dict[str, int]:
    where = "WHERE status='completed'" + (" AND game=?" if game else "")
    params = (game,) if game else ()
    async with conn.execute(
        f"SELECT COUNT(*), COALESCE(SUM(total_stake),0), COALESCE(SUM(platform_fee),0), "
        f"COALESCE(SUM(CASE WHEN settlement='forced' THEN 1 ELSE 0 END),0) FROM rounds {where}",
        params,
    ) as cur:
        r = await cur.fetchone()
    where_e = "WHERE game=?" if game else ""
    async with conn.execute(
        f"SELECT COUNT(DISTINCT participant_address), "
        f"COALESCE(SUM(CASE WHEN is_winner=1 THEN prize_amount ELSE 0 END),0), "
        f"COALESCE(SUM(CASE WHEN is_winner=1 AND reward_claimed=1 THEN prize_amount ELSE 0 END),0) "
        f"FROM entries {where_e}",
        params,
    ) as cur:
        e = await cur.fetchone()
    return {
        "total_rounds": int(r[0]),
        "total_collected": int(r[1]),
        "total_fees": int(r[2]),
        "forced_rounds": int(r[3]),
        "unique_players": int(e[0]),
        "total_prizes": int(e[1]),
        "total_claimed": int(e[2]),
    }
