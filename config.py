# config.py
"""
TikShot — Config
Centralized environment + constants, powered by pydantic-settings (Pydantic v2).
"""

from __future__ import annotations
from typing import Optional, List
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator

class Settings(BaseSettings):
    # pydantic-settings config
    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="",            # read raw names (e.g., SOLANA_RPC)
        extra="ignore",
        case_sensitive=False,
    )

    # =========================
    # App / API
    # =========================
    API_PREFIX: str = "/api"
    CRANK_ENABLED: bool = False

    # normalize API_PREFIX (no trailing slash; always starts with '/')
    @field_validator("API_PREFIX")
    @classmethod
    def _norm_api_prefix(cls, v: str) -> str:
        v = (v or "/api").strip()
        if not v.startswith("/"):
            v = "/" + v
        if v != "/" and v.endswith("/"):
            v = v[:-1]
        return v

    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    # =========================
    # RPC endpoints / program
    # =========================
    SOLANA_RPC: str = "https://api.devnet.solana.com"
    ER_RPC: str = "https://devnet.magicblock.app"
    PROGRAM_ID: str = "33MmuiaGXz9yngFx7kLTEWPmqaALZirSwsNeFF5DJDxX"

    # =========================
    # Authority (never ship real keys; point at a keypair file or set the secret)
    # =========================
    ANCHOR_WALLET: str = "~/.config/solana/id.json"
    AUTHORITY_SECRET: Optional[str] = None   # base58, 64b secret or 32b seed

    # =========================
    # Oracle (Pyth Hermes)
    # =========================
    HERMES_URL: str = "https://hermes.pyth.network"
    PYTH_FEED_ID: str = "ef0d8b6fda2ceba41da15d4095d1da392a0d2f8ed0c6c7bc0f4cfac8c280b56d"  # SOL/USD
    PYTH_SIGNATURES: int = 5
    HERMES_TIMEOUT_S: float = 10.0

    @field_validator("PYTH_FEED_ID")
    @classmethod
    def _norm_feed_id(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if v.startswith("0x"):
            v = v[2:]
        if len(v) != 64:
            raise ValueError(f"PYTH_FEED_ID must be 32 bytes of hex ({len(v)} chars given)")
        bytes.fromhex(v)
        return v

    # =========================
    # Round timing (seconds)
    # =========================
    ROUND_DURATION_S: int = 120
    BETTING_WINDOW_S: float = 115      # round duration - lock window
    LOCK_DURATION_S: float = 5
    COMMIT_WAIT_S: float = 2
    CRANK_BACKOFF_S: float = 5

    # =========================
    # Economics
    # =========================
    INIT_FEE_BPS: int = 100            # 1% house fee, used only when the game is first created

    @field_validator("INIT_FEE_BPS")
    @classmethod
    def _check_fee(cls, v: int) -> int:
        if not 0 <= int(v) <= 10_000:
            raise ValueError("INIT_FEE_BPS must be within 0..10000")
        return int(v)

    # =========================
    # Priority fees for the consuming instruction
    # =========================
    COMPUTE_UNIT_LIMIT: int = 200_000
    COMPUTE_UNIT_PRICE: int = 50_000   # micro-lamports per CU

    # =========================
    # Database (round history)
    # =========================
    DB_PATH: str = "/data/tikshot.db"

# Instantiate global settings (values resolved from environment)
settings = Settings()
