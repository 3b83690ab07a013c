# main.py
# =========================================================
# GOR Number Draw Backend (FastAPI)
# =========================================================
from __future__ import annotations

import asyncio
import logging
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional

import aiosqlite
from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import AliasChoices, BaseModel, Field

import db as dbmod
from claims import claim_reward, reconcile_payouts
from config import settings
from errors import ClaimError
from games import GAMES, GameVariant, get_game
from payouts import SolanaPayer, load_treasury_signer, to_public_key
from scheduler import run_scheduler, scheduler_loop
from settlement import entry_fee_for
from units import display_amount

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

VERSION = "0.1.0"

# =========================================================
# Auth guards
# =========================================================
_auth_scheme = HTTPBearer(auto_error=False)

def admin_guard(creds: HTTPAuthorizationCredentials = Depends(_auth_scheme)):
    if not settings.ADMIN_TOKEN:
        # allow only if explicitly running in debug/dev
        if settings.DEBUG:
            return True
        raise HTTPException(401, "ADMIN_TOKEN required in production")
    if not creds or creds.credentials != settings.ADMIN_TOKEN:
        raise HTTPException(401, "Unauthorized")
    return True

def service_guard(creds: HTTPAuthorizationCredentials = Depends(_auth_scheme)):
    """Scheduler/reconcile triggers are idempotent; lock them down only when SERVICE_TOKEN is set."""
    if not settings.SERVICE_TOKEN:
        return True
    if not creds or creds.credentials != settings.SERVICE_TOKEN:
        raise HTTPException(401, "Unauthorized")
    return True

# =========================================================
# App Init
# =========================================================
app = FastAPI(title="GOR Number Draw Backend", version=VERSION)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

API = settings.API_PREFIX.rstrip("/")

def _variant(game: Optional[str]) -> GameVariant:
    try:
        return get_game(game)
    except KeyError as e:
        raise HTTPException(404, str(e.args[0]))

def _now_iso() -> str:
    return dbmod.rfc3339(dbmod.utcnow())

# =========================================================
# Lifecycle
# =========================================================
@app.on_event("startup")
async def on_startup():
    app.state.db = await dbmod.connect(settings.DB_PATH)
    if getattr(app.state, "chain", None) is None:
        app.state.chain = SolanaPayer()

    app.state.scheduler_task = None
    if settings.SCHEDULER_INTERVAL_SECONDS > 0:
        app.state.scheduler_task = asyncio.create_task(
            scheduler_loop(app.state.db, settings.SCHEDULER_INTERVAL_SECONDS)
        )
    logger.info("[startup] db=%s rpc=%s games=%s", settings.DB_PATH, settings.RPC_URL, ",".join(GAMES))

@app.on_event("shutdown")
async def on_shutdown():
    task = getattr(app.state, "scheduler_task", None)
    if task:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    await app.state.db.close()

# =========================================================
# Models
# =========================================================
class ClaimReq(BaseModel):
    entry_id: str = Field(min_length=1, validation_alias=AliasChoices("entry_id", "player_id"))
    wallet_address: str = Field(min_length=1)

class JoinReq(BaseModel):
    wallet_address: str = Field(min_length=32, max_length=44)
    selected_value: int
    transaction_hash: str = Field(min_length=1, description="Signature of the entry-fee transfer")

class ConfigUpdate(BaseModel):
    treasury_address: Optional[str] = None
    treasury_signing_credential: Optional[str] = None
    platform_fee_percentage: Optional[Decimal] = Field(default=None, ge=0, le=100)
    entry_fee: Optional[Decimal] = Field(default=None, gt=0)

def _round_out(r: Dict[str, Any]) -> Dict[str, Any]:
    variant = GAMES.get(r["game"])
    return {
        "id": r["id"],
        "game": r["game"],
        "status": r["status"],
        "start_time": r["start_time"],
        "end_time": r["end_time"],
        "outcome": r["outcome"],
        "outcome_label": variant.label_for(r["outcome"]) if variant else None,
        "participant_count": r["participant_count"],
        "total_stake": display_amount(r["total_stake"]),
        "platform_fee": display_amount(r["platform_fee"]),
        "prize_per_winner": display_amount(r["prize_per_winner"]),
        "winner_count": r["winner_count"],
        "settlement": r["settlement"],
        "completed_at": r["completed_at"],
    }

def _entry_out(e: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": e["id"],
        "round_id": e["round_id"],
        "game": e["game"],
        "wallet_address": e["participant_address"],
        "selected_value": e["selected_value"],
        "transaction_hash": e["stake_tx_ref"],
        "is_winner": e["is_winner"],
        "prize_amount": display_amount(e["prize_amount"]),
        "reward_claimed": e["reward_claimed"],
        "reward_transaction_hash": e["reward_tx_ref"],
        "payout_status": e["payout_status"],
        "created_at": e["created_at"],
    }

# =========================================================
# Health
# =========================================================
@app.get(f"{API}/health")
async def health():
    return {"ok": True, "ts": time.time(), "service": "gor-number-draw", "version": VERSION}

@app.get(f"{API}/games")
async def list_games():
    return [
        {
            "key": g.key,
            "label": g.label,
            "outcomes": list(g.outcomes),
            "outcome_labels": {str(k): v for k, v in g.outcome_labels.items()},
            "wait_seconds": g.wait_seconds,
            "duration_seconds": g.duration_seconds,
        }
        for g in GAMES.values()
    ]

# =========================================================
# Triggers
# =========================================================
@app.post(f"{API}/scheduler")
async def trigger_scheduler(game: Optional[str] = Query(None), auth: bool = Depends(service_guard)):
    """Tick one game when `game` is given, otherwise every game."""
    variants = [_variant(game)] if game else list(GAMES.values())
    per_game: Dict[str, Any] = {}
    for variant in variants:
        per_game[variant.key] = await run_scheduler(app.state.db, variant)
    ok = not any(s["errors"] for s in per_game.values())
    body: Dict[str, Any] = {
        "success": ok,
        "message": "Scheduler executed successfully" if ok else "Scheduler finished with errors",
        "timestamp": _now_iso(),
    }
    if game:
        body["game"] = variants[0].key
        body["stats"] = per_game[variants[0].key]
    else:
        body["games"] = per_game
    return JSONResponse(body, status_code=200 if ok else 500)

@app.post(f"{API}/reconcile")
async def trigger_reconcile(auth: bool = Depends(service_guard)):
    try:
        stats = await reconcile_payouts(app.state.db, app.state.chain)
    except Exception as e:
        logger.exception("[reconcile] run failed")
        return JSONResponse(
            {"success": False, "error": "Reconciliation failed", "technical_error": str(e), "timestamp": _now_iso()},
            status_code=500,
        )
    return {"success": True, "timestamp": _now_iso(), "stats": stats}

# =========================================================
# Claim
# =========================================================
@app.post(f"{API}/claim")
async def claim(body: ClaimReq):
    try:
        result = await claim_reward(app.state.db, app.state.chain, body.entry_id, body.wallet_address)
    except ClaimError as e:
        logger.warning("[claim] %s rejected (%s): %s", body.entry_id, e.kind, e)
        return JSONResponse({"success": False, **e.to_dict(), "timestamp": _now_iso()}, status_code=500)
    except Exception as e:
        logger.exception("[claim] %s unexpected error", body.entry_id)
        return JSONResponse(
            {
                "success": False,
                "kind": "internal",
                "error": "Failed to claim reward. Please try again.",
                "technical_error": str(e),
                "timestamp": _now_iso(),
            },
            status_code=500,
        )
    if result.uncertain:
        message = (f"Payout of {display_amount(result.amount)} {settings.TOKEN_SYMBOL} was submitted but not "
                   f"acknowledged in time; it is pending verification")
    else:
        message = f"Successfully sent {display_amount(result.amount)} {settings.TOKEN_SYMBOL} to your wallet"
    body_out = {"success": True, "message": message, **result.to_dict(), "timestamp": _now_iso()}
    # 202: accepted for payout, outcome not yet known
    return JSONResponse(body_out, status_code=202 if result.uncertain else 200)

# =========================================================
# Rounds & entries
# =========================================================
@app.get(f"{API}/rounds/current")
async def rounds_current(game: Optional[str] = Query(None)):
    variant = _variant(game)
    r = await dbmod.current_round(app.state.db, variant.key)
    if not r:
        raise HTTPException(404, "No current round")
    out = _round_out(r)
    out["entries"] = [_entry_out(e) for e in await dbmod.select_entries(app.state.db, r["id"])]
    return out

@app.get(f"{API}/rounds")
async def rounds_list(
    game: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    limit: int = Query(25, ge=1, le=200),
):
    variant = _variant(game)
    if status and status not in ("waiting", "active", "completed"):
        raise HTTPException(400, "status must be waiting, active or completed")
    rows = await dbmod.select_rounds(app.state.db, variant.key, status=status, limit=limit)
    return [_round_out(r) for r in rows]

@app.get(f"{API}/rounds/{{round_id}}")
async def get_round(round_id: str):
    r = await dbmod.get_round(app.state.db, round_id)
    if not r:
        raise HTTPException(404, "Round not found")
    return _round_out(r)

@app.get(f"{API}/rounds/{{round_id}}/entries")
async def list_round_entries(round_id: str):
    if not await dbmod.get_round(app.state.db, round_id):
        raise HTTPException(404, "Round not found")
    return [_entry_out(e) for e in await dbmod.select_entries(app.state.db, round_id)]

@app.post(f"{API}/rounds/{{round_id}}/entries", status_code=201)
async def join_round(round_id: str, body: JoinReq):
    """
    Record a player's pick for a waiting/active round. The entry-fee transfer
    itself is made by the wallet; its signature is stored as the stake reference.
    """
    conn = app.state.db
    rnd = await dbmod.get_round(conn, round_id)
    if not rnd:
        raise HTTPException(404, "Round not found")
    variant = GAMES[rnd["game"]]
    if not variant.is_valid_outcome(body.selected_value):
        raise HTTPException(400, f"selected_value must be one of {list(variant.outcomes)}")
    try:
        to_public_key(body.wallet_address)
    except Exception:
        raise HTTPException(400, "wallet_address is not a valid public key")

    cfg = await dbmod.get_system_config(conn)
    fee = entry_fee_for(variant, cfg)
    now = dbmod.utcnow()
    try:
        async with dbmod.tx(conn):
            current = await dbmod.get_round(conn, round_id)
            if current["status"] not in ("waiting", "active") or now >= dbmod.parse_iso_z(current["end_time"]):
                raise HTTPException(409, "Round is closed")
            entry = await dbmod.insert_entry(
                conn, round_id, variant.key, body.wallet_address, body.selected_value, body.transaction_hash, now
            )
            await dbmod.bump_round_counters(conn, round_id, fee)
    except aiosqlite.IntegrityError:
        raise HTTPException(409, "Wallet already joined this round or transaction already used")

    logger.info("[join] %s joined %s with %s", body.wallet_address, round_id, variant.label_for(body.selected_value))
    return _entry_out(entry)

# =========================================================
# Players & stats
# =========================================================
@app.get(f"{API}/players/{{wallet}}/rewards")
async def player_rewards(wallet: str, limit: int = Query(100, ge=1, le=500)):
    wins = await dbmod.select_player_entries(app.state.db, wallet, winners_only=True, limit=limit)
    total = sum(int(e["prize_amount"]) for e in wins)
    claimed = sum(int(e["prize_amount"]) for e in wins if e["reward_claimed"])
    return {
        "wallet": wallet,
        "wins": len(wins),
        "total_won": display_amount(total),
        "total_claimed": display_amount(claimed),
        "total_unclaimed": display_amount(total - claimed),
        "entries": [_entry_out(e) for e in wins],
    }

@app.get(f"{API}/stats")
async def stats(game: Optional[str] = Query(None)):
    key = _variant(game).key if game else None
    s = await dbmod.game_stats(app.state.db, key)
    out: Dict[str, Any] = {"game": key, "total_rounds": s["total_rounds"], "unique_players": s["unique_players"],
                           "forced_rounds": s["forced_rounds"]}
    for k in ("total_collected", "total_fees", "total_prizes", "total_claimed"):
        out[k] = display_amount(s[k])
    return out

# =========================================================
# Admin
# =========================================================
def _config_out(cfg: dbmod.SystemConfig) -> Dict[str, Any]:
    return {
        "treasury_address": cfg.treasury_address,
        "has_signing_credential": bool(cfg.treasury_signing_credential),
        "platform_fee_percentage": str(cfg.platform_fee_percentage),
        "entry_fee": str(cfg.entry_fee),
        "updated_at": cfg.updated_at,
    }

@app.get(f"{API}/admin/config")
async def admin_get_config(auth: bool = Depends(admin_guard)):
    return _config_out(await dbmod.get_system_config(app.state.db))

@app.put(f"{API}/admin/config")
async def admin_update_config(body: ConfigUpdate, auth: bool = Depends(admin_guard)):
    conn = app.state.db
    fields = body.model_dump(exclude_none=True)
    current = await dbmod.get_system_config(conn)

    address = fields.get("treasury_address", current.treasury_address)
    credential = fields.get("treasury_signing_credential", current.treasury_signing_credential)
    if "treasury_address" in fields or "treasury_signing_credential" in fields:
        if address and credential:
            try:
                load_treasury_signer(address, credential)
            except ClaimError as e:
                raise HTTPException(400, str(e))
        elif address:
            try:
                to_public_key(address)
            except Exception:
                raise HTTPException(400, "treasury_address is not a valid public key")

    async with dbmod.tx(conn):
        await dbmod.update_system_config(conn, dbmod.utcnow(), **fields)
    logger.info("[admin] system_config updated: %s", sorted(fields))
    return _config_out(await dbmod.get_system_config(conn))
