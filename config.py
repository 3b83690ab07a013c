# config.py
"""
GOR Number Draw — Config
Centralized environment + constants, powered by pydantic-settings (Pydantic v2).
"""

from __future__ import annotations
from decimal import Decimal
from typing import Optional, List, Literal
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator

class Settings(BaseSettings):
    # pydantic-settings config
    model_config = SettingsConfigDict(
        env_file=".drawpool.env",
        env_prefix="",            # read raw names (e.g., RPC_URL)
        extra="ignore",
        case_sensitive=False,
    )

    # =========================
    # App / API
    # =========================
    API_PREFIX: str = "/api"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

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

    @field_validator("LOG_LEVEL")
    @classmethod
    def _norm_log_level(cls, v: str) -> str:
        return (v or "INFO").strip().upper()

    # =========================
    # CORS
    # =========================
    CORS_ORIGINS: List[str] = [
        "http://localhost:5173",
        "http://127.0.0.1:8000",
        "http://localhost:8000",
    ]

    # =========================
    # RPC / Auth
    # =========================
    RPC_URL: str = "https://rpc.gorbagana.wtf"
    EXPLORER_TX_URL: str = "https://explorer.gorbagana.wtf/tx/{sig}"
    ADMIN_TOKEN: Optional[str] = None      # guards /admin/*
    SERVICE_TOKEN: Optional[str] = None    # guards /scheduler and /reconcile when set

    # =========================
    # Token
    # =========================
    TOKEN_SYMBOL: str = "GOR"
    TOKEN_DECIMALS: int = 9               # lamports per GOR = 10**9
    ESTIMATED_NETWORK_FEE: Decimal = Decimal("0.000005")

    # =========================
    # Round timing (seconds)
    # =========================
    ROUND_WAIT_SECONDS: int = 10
    ROUND_DURATION_SECONDS: int = 60
    NEXT_ROUND_LEAD_SECONDS: int = 15
    # 0 disables the in-process loop; rounds then advance only via POST /scheduler
    SCHEDULER_INTERVAL_SECONDS: float = 0

    # =========================
    # Chain calls
    # =========================
    RPC_RETRIES: int = 3
    RPC_RETRY_DELAY: float = 1.0
    SEND_TIMEOUT_SECONDS: float = 20.0
    PAYOUT_EXPIRY_SECONDS: int = 180

    # =========================
    # Settlement
    # =========================
    # What a force-completed round records: "zeroed" totals or the "counted" entries
    SETTLEMENT_FALLBACK: Literal["zeroed", "counted"] = "zeroed"

    # =========================
    # Database
    # =========================
    DB_PATH: str = "/data/drawpool.db"

    @field_validator("ROUND_DURATION_SECONDS", "ROUND_WAIT_SECONDS", "RPC_RETRIES")
    @classmethod
    def _positive(cls, v: int) -> int:
        if int(v) < 1:
            raise ValueError("must be >= 1")
        return int(v)

    # -------------------------
    # Derived helpers
    # -------------------------
    @property
    def network_fee_base(self) -> int:
        """Estimated network fee in base units (lamports)."""
        return int(self.ESTIMATED_NETWORK_FEE * (10 ** int(self.TOKEN_DECIMALS)))

    def explorer_url(self, sig: str) -> str:
        return self.EXPLORER_TX_URL.format(sig=sig)

# Instantiate global settings (values resolved from environment)
settings = Settings()
