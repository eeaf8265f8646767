# db.py

"""
TikShot — db.py
Round history (append-only audit of settled rounds) + a small KV table, via aiosqlite.
The ledger is the source of truth; nothing here is read back by the crank to decide what to do.
"""

from __future__ import annotations
from typing import List, Optional
from datetime import datetime, timezone
import os

import aiosqlite

from program import Round, RoundResult
from payouts import compute_fee

# =========================================================
# Canonical Schema
# =========================================================
SCHEMA = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS kv (
  k TEXT PRIMARY KEY,
  v TEXT
);

CREATE TABLE IF NOT EXISTS rounds (
  round_id     INTEGER PRIMARY KEY,
  start_ts     INTEGER NOT NULL,
  lock_ts      INTEGER NOT NULL,
  end_ts       INTEGER NOT NULL,
  start_price  INTEGER NOT NULL,
  end_price    INTEGER NOT NULL,
  price_expo   INTEGER NOT NULL,
  total_up     INTEGER NOT NULL DEFAULT 0,
  total_down   INTEGER NOT NULL DEFAULT 0,
  num_bets     INTEGER NOT NULL DEFAULT 0,
  result       TEXT NOT NULL,
  fee_bps      INTEGER NOT NULL,
  fee          INTEGER NOT NULL DEFAULT 0,
  settled_at   TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_rounds_settled_at ON rounds(settled_at);
""".strip()

# =========================================================
# Connection
# =========================================================
async def connect(db_path: str) -> aiosqlite.Connection:
    """
    Async connection; ensures schema and sets PRAGMAs.
    """
    if db_path != ":memory:" and os.path.dirname(db_path):
        os.makedirs(os.path.dirname(db_path), exist_ok=True)
    conn = await aiosqlite.connect(db_path)

    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA synchronous=NORMAL")
    await conn.execute("PRAGMA busy_timeout=5000")

    conn.row_factory = aiosqlite.Row

    await ensure_schema(conn)
    return conn

async def ensure_schema(conn: aiosqlite.Connection) -> None:
    """Apply canonical schema (idempotent)."""
    await conn.executescript(SCHEMA)
    await conn.commit()

# =========================================================
# KV Helpers
# =========================================================
async def kv_set(conn: aiosqlite.Connection, k: str, v: str, commit: bool = True) -> None:
    await conn.execute(
        "INSERT INTO kv(k, v) VALUES(?, ?) "
        "ON CONFLICT(k) DO UPDATE SET v=excluded.v",
        (k, v),
    )
    if commit:
        await conn.commit()

async def kv_get(conn: aiosqlite.Connection, k: str) -> Optional[str]:
    async with conn.execute("SELECT v FROM kv WHERE k=?", (k,)) as cur:
        row = await cur.fetchone()
        return row[0] if row else None

# =========================================================
# Round history
# =========================================================
async def record_round(conn: aiosqlite.Connection, rnd: Round, fee_bps: int) -> None:
    """Upsert a settled round; recording the same round twice keeps one row."""
    fee = 0 if rnd.result == RoundResult.TIE else compute_fee(rnd.total_pool, fee_bps)
    settled_at = datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")
    await conn.execute(
        "INSERT INTO rounds(round_id,start_ts,lock_ts,end_ts,start_price,end_price,price_expo,"
        "total_up,total_down,num_bets,result,fee_bps,fee,settled_at) "
        "VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?) "
        "ON CONFLICT(round_id) DO UPDATE SET "
        "end_price=excluded.end_price, total_up=excluded.total_up, total_down=excluded.total_down, "
        "num_bets=excluded.num_bets, result=excluded.result, fee_bps=excluded.fee_bps, fee=excluded.fee",
        (
            rnd.round_id, rnd.start_ts, rnd.lock_ts, rnd.end_ts,
            rnd.start_price, rnd.end_price, rnd.price_expo,
            rnd.total_up, rnd.total_down, len(rnd.bets),
            rnd.result.name, fee_bps, fee,
            settled_at,
        ),
    )
    await kv_set(conn, "crank:last_round", str(rnd.round_id), commit=False)
    await conn.commit()

async def get_round(conn: aiosqlite.Connection, round_id: int) -> Optional[dict]:
    async with conn.execute("SELECT * FROM rounds WHERE round_id=?", (round_id,)) as cur:
        row = await cur.fetchone()
        return dict(row) if row else None

async def recent_rounds(conn: aiosqlite.Connection, limit: int = 10) -> List[dict]:
    limit = max(1, min(int(limit), 100))
    async with conn.execute(
        "SELECT * FROM rounds ORDER BY round_id DESC LIMIT ?", (limit,)
    ) as cur:
        rows = await cur.fetchall()
        return [dict(r) for r in rows]
