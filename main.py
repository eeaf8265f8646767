# main.py
# =========================================================
# TikShot read API (FastAPI) + optional in-process crank
# =========================================================
from __future__ import annotations

import asyncio
import json
import time
import traceback
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from config import settings
from errors import AccountNotFound, OracleUnavailable, RoundNotSettled
from gateway import AccountGateway, fetch_with_fallback
from oracle import OracleFeedClient
from payouts import calculate_payout, compute_fee, find_player_bet, format_credits
import db as dbmod
import program as prog
from scheduler import build_crank

VERSION = "0.1.0"

# =========================================================
# App Init
# =========================================================
app = FastAPI(title="TikShot API", version=VERSION)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

API = (getattr(settings, "API_PREFIX", "/api") or "/api").rstrip("/")

# =========================================================
# Lifecycle
# =========================================================
@app.on_event("startup")
async def on_startup():
    # read-only gateways never sign, so any keypair will do
    reader = Keypair()
    app.state.base = await AccountGateway(settings.SOLANA_RPC, reader, "base").open()
    app.state.ephemeral = await AccountGateway(settings.ER_RPC, reader, "ephemeral").open()
    app.state.oracle = OracleFeedClient(settings.HERMES_URL, settings.PYTH_FEED_ID, settings.HERMES_TIMEOUT_S)
    app.state.db = await dbmod.connect(settings.DB_PATH)
    app.state.crank_task = None
    app.state.crank_close = None

    if settings.CRANK_ENABLED:
        try:
            crank, close = await build_crank(settings, app.state.db)
            app.state.crank_close = close
            print("[API] starting crank task", flush=True)
            app.state.crank_task = asyncio.create_task(crank.run_forever())
        except Exception as e:
            print("[API] crank failed to start:", e, flush=True)
            traceback.print_exc()

@app.on_event("shutdown")
async def on_shutdown():
    task = getattr(app.state, "crank_task", None)
    if task is not None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    if getattr(app.state, "crank_close", None) is not None:
        await app.state.crank_close()
    await app.state.oracle.close()
    await app.state.ephemeral.close()
    await app.state.base.close()
    await app.state.db.close()

# =========================================================
# Models
# =========================================================
class GameResp(BaseModel):
    address: str
    authority: str
    fee_bps: int
    round_count: int

class BetResp(BaseModel):
    player: str
    up_amount: int
    down_amount: int

class RoundResp(BaseModel):
    address: str
    round_id: int
    start_ts: int
    lock_ts: int
    end_ts: int
    start_price: int
    end_price: int
    price_expo: int
    total_up: int
    total_down: int
    status: str
    result: str
    bets: List[BetResp]

class PlayerResp(BaseModel):
    address: str
    owner: str
    credits: int
    credits_display: str

class PayoutResp(BaseModel):
    round_id: int
    wallet: str
    result: str
    stake: int
    fee: int
    payout: int
    payout_display: str

class PriceResp(BaseModel):
    feed_id: str
    price: int
    conf: int
    expo: int
    publish_time: int

class ConfigResp(BaseModel):
    program_id: str
    solana_rpc: str
    er_rpc: str
    feed_id: str
    round_duration_s: int
    betting_window_s: float
    lock_duration_s: float

# =========================================================
# Helpers
# =========================================================
def _wallet(s: str) -> Pubkey:
    try:
        return Pubkey.from_string(s)
    except ValueError:
        raise HTTPException(400, f"invalid wallet address: {s}")

def _round_resp(rnd: prog.Round) -> RoundResp:
    return RoundResp(
        address=str(prog.round_address(rnd.round_id)),
        round_id=rnd.round_id,
        start_ts=rnd.start_ts,
        lock_ts=rnd.lock_ts,
        end_ts=rnd.end_ts,
        start_price=rnd.start_price,
        end_price=rnd.end_price,
        price_expo=rnd.price_expo,
        total_up=rnd.total_up,
        total_down=rnd.total_down,
        status=rnd.status.name,
        result=rnd.result.name,
        bets=[BetResp(player=str(b.player), up_amount=b.up_amount, down_amount=b.down_amount) for b in rnd.bets],
    )

async def _game() -> prog.Game:
    try:
        return await app.state.base.fetch_game()
    except AccountNotFound:
        raise HTTPException(404, "game not initialized")

async def _round(round_id: int) -> prog.Round:
    """Settled copy on base if there is one, else the live (ephemeral-first) copy."""
    if round_id < 0:
        raise HTTPException(400, "round id must be >= 0")
    # settle and claim only land on base; the rollup may still hold a Locked copy
    try:
        on_base = await app.state.base.fetch_round(round_id)
        if on_base.is_settled:
            return on_base
    except (AccountNotFound, ValueError):
        pass
    try:
        return await fetch_with_fallback(app.state.ephemeral, app.state.base, lambda g: g.fetch_round(round_id))
    except AccountNotFound:
        raise HTTPException(404, f"round {round_id} not found")

# =========================================================
# Routes
# =========================================================
@app.get(f"{API}/health")
async def health():
    return {"ok": True, "ts": time.time(), "service": "tikshot", "version": VERSION}

@app.get(f"{API}/config", response_model=ConfigResp)
async def get_config():
    return ConfigResp(
        program_id=str(prog.PROGRAM_ID),
        solana_rpc=settings.SOLANA_RPC,
        er_rpc=settings.ER_RPC,
        feed_id=settings.PYTH_FEED_ID,
        round_duration_s=settings.ROUND_DURATION_S,
        betting_window_s=settings.BETTING_WINDOW_S,
        lock_duration_s=settings.LOCK_DURATION_S,
    )

@app.get(f"{API}/game", response_model=GameResp)
async def get_game():
    game = await _game()
    return GameResp(
        address=str(prog.game_address()),
        authority=str(game.authority),
        fee_bps=game.fee_bps,
        round_count=game.round_count,
    )

@app.get(f"{API}/rounds/current", response_model=RoundResp)
async def rounds_current():
    game = await _game()
    if game.round_count == 0:
        raise HTTPException(404, "no round started yet")
    return _round_resp(await _round(game.round_count - 1))

@app.get(f"{API}/rounds/recent")
async def rounds_recent(limit: int = Query(10, ge=1, le=100)):
    return await dbmod.recent_rounds(app.state.db, limit)

@app.get(f"{API}/rounds/{{round_id}}", response_model=RoundResp)
async def get_round(round_id: int):
    return _round_resp(await _round(round_id))

@app.get(f"{API}/rounds/{{round_id}}/payout/{{wallet}}", response_model=PayoutResp)
async def get_payout(round_id: int, wallet: str):
    pk = _wallet(wallet)
    rnd = await _round(round_id)
    game = await _game()
    bet = find_player_bet(rnd, pk)
    if bet is None:
        raise HTTPException(404, f"no bet from {wallet} in round {round_id}")
    try:
        amount = calculate_payout(rnd, bet, game.fee_bps)
    except RoundNotSettled:
        raise HTTPException(409, f"round {round_id} is not settled")
    fee = 0 if rnd.result == prog.RoundResult.TIE else compute_fee(rnd.total_pool, game.fee_bps)
    return PayoutResp(
        round_id=round_id,
        wallet=wallet,
        result=rnd.result.name,
        stake=bet.total,
        fee=fee,
        payout=amount,
        payout_display=format_credits(amount),
    )

@app.get(f"{API}/players/{{wallet}}", response_model=PlayerResp)
async def get_player(wallet: str):
    pk = _wallet(wallet)
    try:
        player = await fetch_with_fallback(app.state.ephemeral, app.state.base, lambda g: g.fetch_player(pk))
    except AccountNotFound:
        raise HTTPException(404, f"player {wallet} not registered")
    return PlayerResp(
        address=str(prog.player_address(pk)),
        owner=str(player.owner),
        credits=player.credits,
        credits_display=format_credits(player.credits),
    )

@app.get(f"{API}/price/latest", response_model=PriceResp)
async def price_latest():
    try:
        p = await app.state.oracle.latest_update()
    except OracleUnavailable as e:
        raise HTTPException(503, str(e))
    return PriceResp(feed_id=p.feed_id, price=p.price, conf=p.conf, expo=p.expo, publish_time=p.publish_time)

@app.get(f"{API}/price/stream")
async def price_stream():
    async def events():
        try:
            async for p in app.state.oracle.stream_prices():
                body = PriceResp(feed_id=p.feed_id, price=p.price, conf=p.conf, expo=p.expo,
                                 publish_time=p.publish_time)
                yield f"data: {body.model_dump_json()}\n\n"
        except OracleUnavailable as e:
            print("[API] price stream ended:", e, flush=True)
            yield f"event: error\ndata: {json.dumps({'detail': str(e)})}\n\n"

    return StreamingResponse(events(), media_type="text/event-stream",
                             headers={"Cache-Control": "no-cache"})
