# relaybot/core/config.py
from __future__ import annotations

import json
import logging
from typing import Any, List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

log = logging.getLogger("relaybot.config")


def _parse_list(v: Any, *, upper: bool = False) -> List[str]:
    """
    Accepts:
      - list: ["admin","owner"]
      - csv:  "admin,owner"
      - json: '["admin","owner"]'
    Returns trimmed values (uppercased when upper=True).
    """
    if v is None:
        return []

    def _norm(x: Any) -> str:
        s = str(x).strip()
        return s.upper() if upper else s.lower()

    if isinstance(v, (list, tuple, set)):
        return [_norm(x) for x in v if str(x).strip()]
    s = str(v).strip()
    if not s:
        return []
    if s.startswith("["):
        try:
            arr = json.loads(s)
            return [_norm(x) for x in arr if str(x).strip()]
        except Exception:
            # fall back to csv parse
            pass
    return [_norm(p) for p in s.split(",") if p.strip()]


class Settings(BaseSettings):
    """Runtime configuration loaded from .env / environment variables."""

    # enable_decoding=False keeps pydantic-settings from json-decoding List fields.
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        enable_decoding=False,
    )

    # --- Exchange endpoints ---
    BITGET_API_BASE_URL: str = "https://api.bitget.com"
    BYBIT_API_BASE_URL: str = "https://api.bybit.com"
    BYBIT_RECV_WINDOW: int = 5000
    HTTP_TIMEOUT_SECONDS: float = 15.0
    PUBLIC_MAX_RETRIES: int = 3

    # --- Market defaults (alert may override) ---
    DEFAULT_PRODUCT_TYPE: str = "USDT-FUTURES"
    DEFAULT_MARGIN_COIN: str = "USDT"
    DEFAULT_MARGIN_MODE: str = "isolated"

    # --- Caches ---
    CONTRACT_CACHE_TTL_SECONDS: float = 300.0
    PRICE_CACHE_TTL_SECONDS: float = 5.0

    # --- Leverage ---
    DEFAULT_LEVERAGE: int = 10

    # --- Sizing ---
    MIN_NOTIONAL_MARGIN: float = 1.05
    USER_SIZE_MARGIN: float = 1.10
    USER_SIZE_MARGIN_THRESHOLD: float = 1.5

    # --- Orchestration timing ---
    LEVERAGE_SETTLE_SECONDS: float = 0.5
    POSITION_SETTLE_SECONDS: float = 1.0

    # --- Client order ids ---
    CLIENT_OID_MODE: str = "random"  # random/correlated

    # --- Fan-out ---
    DISPATCH_MAX_WORKERS: int = 1
    DISPATCH_ACCOUNT_DELAY_SECONDS: float = 0.5

    # --- Accounts ---
    PRIVILEGED_ROLES: List[str] = Field(default_factory=lambda: ["admin"])

    # --- Persistence / logging ---
    DB_PATH: str = "data/relay.db"
    AUDIT_JSONL_PATH: str = "logs/exchange_audit.jsonl"
    LOG_LEVEL: str = "INFO"

    @field_validator("PRIVILEGED_ROLES", mode="before")
    @classmethod
    def parse_privileged_roles(cls, v: Any) -> List[str]:
        return _parse_list(v)

    def model_post_init(self, __context: Any) -> None:
        self.CLIENT_OID_MODE = (self.CLIENT_OID_MODE or "random").lower().strip()
        self.DEFAULT_PRODUCT_TYPE = (
            self.DEFAULT_PRODUCT_TYPE or "USDT-FUTURES"
        ).upper().strip()
        self.DEFAULT_MARGIN_COIN = (self.DEFAULT_MARGIN_COIN or "USDT").upper().strip()
        self.DEFAULT_MARGIN_MODE = (
            self.DEFAULT_MARGIN_MODE or "isolated"
        ).lower().strip()
        self.LOG_LEVEL = (self.LOG_LEVEL or "INFO").upper().strip()

        self.BITGET_API_BASE_URL = self.BITGET_API_BASE_URL.rstrip("/")
        self.BYBIT_API_BASE_URL = self.BYBIT_API_BASE_URL.rstrip("/")

    def validate_runtime(self) -> List[str]:
        """
        Fail-fast validation. Returns warnings (non-fatal).
        Raises ValueError for fatal misconfiguration.
        """
        errors: List[str] = []
        warnings: List[str] = []

        if self.CLIENT_OID_MODE not in {"random", "correlated"}:
            errors.append("CLIENT_OID_MODE must be 'random' or 'correlated'.")

        if self.DEFAULT_MARGIN_MODE not in {"isolated", "crossed"}:
            errors.append("DEFAULT_MARGIN_MODE must be 'isolated' or 'crossed'.")

        # Timeouts must stay bounded
        if self.HTTP_TIMEOUT_SECONDS <= 0 or self.HTTP_TIMEOUT_SECONDS > 30:
            errors.append("HTTP_TIMEOUT_SECONDS must be in (0, 30].")

        if self.PUBLIC_MAX_RETRIES < 0:
            errors.append("PUBLIC_MAX_RETRIES must be >= 0.")

        # Leverage sanity
        if self.DEFAULT_LEVERAGE < 1:
            errors.append("DEFAULT_LEVERAGE must be >= 1.")
        if self.DEFAULT_LEVERAGE > 50:
            warnings.append(
                f"DEFAULT_LEVERAGE is {self.DEFAULT_LEVERAGE}x; check if this is intended."
            )

        # Sizing sanity
        if self.MIN_NOTIONAL_MARGIN < 1.0:
            errors.append("MIN_NOTIONAL_MARGIN must be >= 1.0.")
        if self.USER_SIZE_MARGIN < 1.0:
            errors.append("USER_SIZE_MARGIN must be >= 1.0.")

        # Cache sanity
        if self.CONTRACT_CACHE_TTL_SECONDS < 0 or self.PRICE_CACHE_TTL_SECONDS < 0:
            errors.append("Cache TTLs must be >= 0.")
        if self.PRICE_CACHE_TTL_SECONDS > 60:
            warnings.append(
                "PRICE_CACHE_TTL_SECONDS above 60s may size orders from stale prices."
            )

        # Fan-out sanity
        if self.DISPATCH_MAX_WORKERS < 1:
            errors.append("DISPATCH_MAX_WORKERS must be >= 1.")
        if self.DISPATCH_MAX_WORKERS == 1 and self.DISPATCH_ACCOUNT_DELAY_SECONDS <= 0:
            warnings.append(
                "Sequential dispatch without inter-account delay may hit exchange rate limits."
            )

        if self.LEVERAGE_SETTLE_SECONDS < 0 or self.POSITION_SETTLE_SECONDS < 0:
            errors.append("Settle delays must be >= 0.")

        if not self.PRIVILEGED_ROLES:
            warnings.append(
                "PRIVILEGED_ROLES is empty. Every account needs an active payment subscription."
            )

        if errors:
            msg = "Config validation failed:\n" + "\n".join([f"- {e}" for e in errors])
            raise ValueError(msg)

        return warnings


# Pydantic v2 + postponed annotations safety
Settings.model_rebuild()
settings = Settings()
