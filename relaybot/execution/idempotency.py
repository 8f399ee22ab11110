# relaybot/execution/idempotency.py
from __future__ import annotations

import hashlib
import re
import secrets
import time
from typing import Iterable, Optional

from relaybot.execution.models import Position, Side

_NOT_ALLOWED = re.compile(r"[^A-Za-z0-9_]")

# shortest base id fragment worth keeping when the exchange limit is tight
MIN_BASE_LEN = 8
SYMBOL_FRAGMENT_LEN = 12


def sanitize(raw: str) -> str:
    return _NOT_ALLOWED.sub("", str(raw or ""))


def new_base_id(now_ms: Optional[int] = None) -> str:
    """Millisecond timestamp + 8 random hex chars."""
    ms = int(time.time() * 1000) if now_ms is None else int(now_ms)
    return f"{ms}{secrets.token_hex(4)}"


def correlated_base_id(
    user_id: int, strategy_id: int, trade_id: str, category: str
) -> str:
    """
    Deterministic base id for one (account, strategy, trade, category).
    A redelivered alert yields the same client ids, so the exchange rejects
    the replay as a duplicate.
    """
    raw = f"{user_id}:{strategy_id}:{trade_id}:{category}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:24]


def build_client_oid(
    prefix: str, symbol: str, base_id: str, suffix: str, max_len: int = 64
) -> str:
    """
    <prefix>_<symbol>_<base>_<suffix> in [A-Za-z0-9_], at most max_len.
    The base id is trimmed from the left first (its random tail survives),
    then the symbol fragment, so prefix and suffix always stay readable.
    """
    p = sanitize(prefix)
    sym = sanitize(symbol)[:SYMBOL_FRAGMENT_LEN]
    base = sanitize(base_id)
    s = sanitize(suffix)

    def _join(*parts: str) -> str:
        return "_".join(x for x in parts if x)

    oid = _join(p, sym, base, s)
    if len(oid) <= max_len:
        return oid

    room = max_len - len(_join(p, sym, "", s)) - 1
    if room >= MIN_BASE_LEN:
        return _join(p, sym, base[-room:], s)

    # tight limit: keep MIN_BASE_LEN of the base and shrink the symbol
    base = base[-MIN_BASE_LEN:]
    sym_room = max_len - len(_join(p, "", base, s)) - 1
    sym = sym[:sym_room] if sym_room > 0 else ""
    return _join(p, sym, base, s)[:max_len]


class ClientOidFactory:
    """Client ids for every order of one alert, sharing one base id."""

    def __init__(self, symbol: str, base_id: str, max_len: int = 64):
        self.symbol = symbol
        self.base_id = base_id
        self.max_len = max_len

    @classmethod
    def for_alert(
        cls,
        *,
        mode: str,
        symbol: str,
        user_id: int,
        strategy_id: int,
        trade_id: Optional[str],
        category: str,
        max_len: int,
    ) -> "ClientOidFactory":
        if mode == "correlated" and trade_id:
            base = correlated_base_id(user_id, strategy_id, trade_id, category)
        else:
            base = new_base_id()
        return cls(symbol, base, max_len)

    def make(self, prefix: str, suffix: str) -> str:
        return build_client_oid(prefix, self.symbol, self.base_id, suffix, self.max_len)


# =========================
# Reconciliation helpers
# =========================
def find_matching_position(
    positions: Iterable[Position], symbol: str, side: Side
) -> Optional[Position]:
    """Largest live position for (symbol, side); None when flat."""
    best: Optional[Position] = None
    for p in positions:
        if p.symbol.upper() != symbol.upper() or p.side is not side:
            continue
        if p.size <= 0:
            continue
        if best is None or p.size > best.size:
            best = p
    return best
