# relaybot/symbols/sizing.py
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from relaybot.exchange.filters import round_qty_down, round_qty_up
from relaybot.execution.models import ContractSpec


def _d(x: Any) -> Decimal:
    return x if isinstance(x, Decimal) else Decimal(str(x))


# Used when the contract query fails; conservative values that most USDT
# perpetuals accept.
FALLBACK_MIN_SIZE = Decimal("0.01")
FALLBACK_SIZE_STEP = Decimal("0.01")
FALLBACK_MIN_NOTIONAL = Decimal("5")
FALLBACK_VOLUME_PLACE = 2
FALLBACK_PRICE_PLACE = 1


def fallback_contract_spec(symbol: str, product_type: str) -> ContractSpec:
    return ContractSpec(
        symbol=symbol,
        product_type=product_type,
        min_size=FALLBACK_MIN_SIZE,
        size_step=FALLBACK_SIZE_STEP,
        min_notional=FALLBACK_MIN_NOTIONAL,
        price_place=FALLBACK_PRICE_PLACE,
        volume_place=FALLBACK_VOLUME_PLACE,
    )


def order_size(requested: Any, min_size: Any, step: Any) -> Decimal:
    """ceil(max(requested, min_size) / step) * step"""
    req = _d(requested)
    floor = _d(min_size)
    return round_qty_up(max(req, floor), step)


@dataclass
class SizeResult:
    size: Decimal
    requested: Decimal
    source: str  # user_usdt / alert / auto_min_notional / min_size
    notional: Optional[Decimal]
    reason: str
    details: Dict[str, Any] = field(default_factory=dict)


def requested_size_for(
    *,
    spec: ContractSpec,
    price: Optional[Decimal],
    position_size_usdt: Optional[Decimal] = None,
    alert_size: Optional[Decimal] = None,
    min_notional_margin: Any = "1.05",
    user_size_margin: Any = "1.10",
    user_size_threshold: Any = "1.5",
) -> Tuple[Decimal, str]:
    """
    Requested contracts before exchange rounding, with its source.

    Precedence:
      1. account position size in quote currency / price
         (+ safety margin when it sits close to the exchange minimum)
      2. explicit alert size
      3. exchange min notional * margin / price
      4. contract min size when no price is known
    """
    px = _d(price) if price is not None else None

    if position_size_usdt is not None and _d(position_size_usdt) > 0 and px and px > 0:
        usdt = _d(position_size_usdt)
        qty = usdt / px
        if usdt < spec.min_notional * _d(user_size_threshold):
            qty = qty * _d(user_size_margin)
        return qty, "user_usdt"

    if alert_size is not None and _d(alert_size) > 0:
        return _d(alert_size), "alert"

    if px and px > 0:
        return (spec.min_notional * _d(min_notional_margin)) / px, "auto_min_notional"

    return spec.min_size, "min_size"


def compute_open_size(
    *,
    spec: ContractSpec,
    price: Optional[Decimal],
    position_size_usdt: Optional[Decimal] = None,
    alert_size: Optional[Decimal] = None,
    min_notional_margin: Any = "1.05",
    user_size_margin: Any = "1.10",
    user_size_threshold: Any = "1.5",
) -> SizeResult:
    """
    Exchange-legal opening size. Rounds up to the lot step, never below
    min size, never below the requested size. When the rounded size misses
    the min notional at `price`, it is rebuilt from min notional * margin.
    """
    requested, source = requested_size_for(
        spec=spec,
        price=price,
        position_size_usdt=position_size_usdt,
        alert_size=alert_size,
        min_notional_margin=min_notional_margin,
        user_size_margin=user_size_margin,
        user_size_threshold=user_size_threshold,
    )
    size = order_size(requested, spec.min_size, spec.size_step)

    details: Dict[str, Any] = {
        "symbol": spec.symbol,
        "requested": str(requested),
        "min_size": str(spec.min_size),
        "size_step": str(spec.size_step),
        "min_notional": str(spec.min_notional),
    }

    if price is None or _d(price) <= 0:
        return SizeResult(
            size=size,
            requested=requested,
            source=source,
            notional=None,
            reason="no_price",
            details=details,
        )

    px = _d(price)
    notional = size * px
    reason = "ok"
    if notional < spec.min_notional:
        raised = (spec.min_notional * _d(min_notional_margin)) / px
        size = order_size(max(raised, requested), spec.min_size, spec.size_step)
        notional = size * px
        reason = "raised_to_min_notional"
        details["raised_from"] = str(raised)

    details.update(price=str(px), size=str(size), notional=str(notional))
    return SizeResult(
        size=size,
        requested=requested,
        source=source,
        notional=notional,
        reason=reason,
        details=details,
    )


def split_half(size: Decimal, spec: ContractSpec) -> Optional[Tuple[Decimal, Decimal]]:
    """
    50/50 split of a held size for partial take-profit or partial close.
    First half rounds down, the remainder takes the rest so the legs never
    exceed what is held. None when either leg falls below the min size.
    """
    half = round_qty_down(_d(size) / 2, spec.size_step)
    rest = _d(size) - half
    if half <= 0 or half < spec.min_size or rest < spec.min_size:
        return None
    return half, rest
