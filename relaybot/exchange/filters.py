from __future__ import annotations

from decimal import ROUND_DOWN, ROUND_HALF_UP, ROUND_UP, Decimal
from typing import Any


def _to_decimal(x: Any) -> Decimal:
    return x if isinstance(x, Decimal) else Decimal(str(x))


def decimals_of(step: Any) -> int:
    """Number of decimal places in a step (0.1 -> 1, 0.001 -> 3, 1 -> 0)."""
    d = _to_decimal(step).normalize()
    return max(0, -d.as_tuple().exponent)


def round_qty_up(qty: Any, step_size: Any) -> Decimal:
    """Round quantity UP to the nearest valid step (opening sizes)."""
    q = _to_decimal(qty)
    step = _to_decimal(step_size)
    if step <= 0:
        return q
    return (q / step).to_integral_value(rounding=ROUND_UP) * step


def round_qty_down(qty: Any, step_size: Any) -> Decimal:
    """Round quantity DOWN to the nearest valid step (closing sizes)."""
    q = _to_decimal(qty)
    step = _to_decimal(step_size)
    if step <= 0:
        return q
    return (q / step).to_integral_value(rounding=ROUND_DOWN) * step


def quantize_price(px: Any, price_place: int) -> Decimal:
    """Round a trigger/limit price to the exchange price precision."""
    p = _to_decimal(px)
    return p.quantize(Decimal(1).scaleb(-int(price_place)), rounding=ROUND_HALF_UP)


def to_wire(value: Any) -> str:
    """Plain decimal string for request bodies (value is already quantized)."""
    s = format(_to_decimal(value), "f")
    if "." in s:
        s = s.rstrip("0").rstrip(".")
    return s or "0"
