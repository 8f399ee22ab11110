from __future__ import annotations

import threading
from typing import Dict, Optional, Tuple

from relaybot.core.config import Settings, settings as default_settings
from relaybot.exchange.base import ExchangeConnector, ExchangeError
from relaybot.exchange.bitget.client import BitgetFuturesClient
from relaybot.exchange.bybit.client import BybitFuturesClient
from relaybot.exchange.cache import TTLCache
from relaybot.execution.models import ExecutionContext
from relaybot.persistence.audit import AuditSink

SUPPORTED_EXCHANGES = ("bitget", "bybit")

# Public market data is identical for every account on one exchange, so the
# contract/price caches are shared per exchange.
_caches: Dict[str, Tuple[TTLCache, TTLCache]] = {}
_caches_lock = threading.Lock()


def shared_caches(exchange: str, cfg: Settings) -> Tuple[TTLCache, TTLCache]:
    with _caches_lock:
        pair = _caches.get(exchange)
        if pair is None:
            pair = (
                TTLCache(cfg.CONTRACT_CACHE_TTL_SECONDS),
                TTLCache(cfg.PRICE_CACHE_TTL_SECONDS),
            )
            _caches[exchange] = pair
        return pair


def reset_shared_caches() -> None:
    with _caches_lock:
        _caches.clear()


def build_connector(
    ctx: ExecutionContext,
    audit: Optional[AuditSink] = None,
    cfg: Optional[Settings] = None,
) -> ExchangeConnector:
    """One connector per (account, strategy) execution."""
    cfg = cfg or default_settings
    exchange = (ctx.exchange or "bitget").lower()
    if exchange not in SUPPORTED_EXCHANGES:
        raise ExchangeError(f"Unsupported exchange: {ctx.exchange}")

    contract_cache, price_cache = shared_caches(exchange, cfg)
    common = dict(
        timeout=cfg.HTTP_TIMEOUT_SECONDS,
        public_max_retries=cfg.PUBLIC_MAX_RETRIES,
        audit=audit,
        contract_cache=contract_cache,
        price_cache=price_cache,
        user_id=ctx.user_id,
        strategy_id=ctx.strategy_id,
        default_product_type=cfg.DEFAULT_PRODUCT_TYPE,
        default_margin_coin=cfg.DEFAULT_MARGIN_COIN,
    )

    if exchange == "bybit":
        return BybitFuturesClient(
            ctx.credentials,
            cfg.BYBIT_API_BASE_URL,
            recv_window=cfg.BYBIT_RECV_WINDOW,
            **common,
        )
    return BitgetFuturesClient(
        ctx.credentials,
        cfg.BITGET_API_BASE_URL,
        default_margin_mode=cfg.DEFAULT_MARGIN_MODE,
        **common,
    )
