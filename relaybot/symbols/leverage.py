# relaybot/symbols/leverage.py
from __future__ import annotations

from typing import Any, Optional, Tuple


def _positive_int(v: Any) -> Optional[int]:
    if v is None or v == "":
        return None
    try:
        n = int(v)
    except (TypeError, ValueError):
        return None
    return n if n >= 1 else None


def resolve_leverage(
    account_leverage: Any, strategy_leverage: Any, default_lev: int = 10
) -> Tuple[int, str]:
    """
    account override > strategy default > system default.
    Returns (leverage, source) where source is account/strategy/default.
    """
    lev = _positive_int(account_leverage)
    if lev is not None:
        return lev, "account"
    lev = _positive_int(strategy_leverage)
    if lev is not None:
        return lev, "strategy"
    return max(1, int(default_lev)), "default"
