# relaybot/execution/protection.py
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from relaybot.exchange.base import ExchangeConnector, ExchangeError, readable_reason
from relaybot.exchange.filters import quantize_price
from relaybot.execution.idempotency import ClientOidFactory
from relaybot.execution.models import (
    ContractSpec,
    Side,
    StepOutcome,
    TriggerKind,
    TriggerRequest,
    failed,
    success,
)
from relaybot.symbols.sizing import split_half

log = logging.getLogger("relaybot.protection")

# step names, also used as client id suffixes
STOP_LOSS = "stop_loss"
TAKE_PROFIT = "take_profit"
TAKE_PROFIT_PARTIAL = "take_profit_partial"
TAKE_PROFIT_FINAL = "take_profit_final"

_OID_SUFFIX = {
    STOP_LOSS: "sl",
    TAKE_PROFIT: "tp",
    TAKE_PROFIT_PARTIAL: "tp1",
    TAKE_PROFIT_FINAL: "tp2",
}


@dataclass(frozen=True)
class ProtectionLeg:
    name: str
    kind: TriggerKind
    price: Decimal
    size: Decimal


@dataclass
class ProtectionPlan:
    legs: List[ProtectionLeg]
    rejected: List[StepOutcome]
    split: bool
    note: Optional[str] = None


def price_on_protective_side(
    side: Side, kind: TriggerKind, entry: Optional[Decimal], price: Decimal
) -> bool:
    """SL below entry for a long (above for a short), TP the other way."""
    if price <= 0:
        return False
    if entry is None or entry <= 0:
        return True
    if kind is TriggerKind.STOP_LOSS:
        return price < entry if side is Side.LONG else price > entry
    return price > entry if side is Side.LONG else price < entry


def validate_protection_prices(
    side: Side,
    entry: Optional[Decimal],
    stop_loss: Optional[Decimal],
    take_profit: Optional[Decimal],
) -> Dict[str, str]:
    """name -> reason for every leg that must not be sent."""
    problems: Dict[str, str] = {}
    if stop_loss is None:
        problems[STOP_LOSS] = "missing_stop_loss_price"
    elif not price_on_protective_side(side, TriggerKind.STOP_LOSS, entry, stop_loss):
        problems[STOP_LOSS] = "stop_loss_wrong_side_of_entry"
    if take_profit is None:
        problems[TAKE_PROFIT] = "missing_take_profit_price"
    elif not price_on_protective_side(side, TriggerKind.TAKE_PROFIT, entry, take_profit):
        problems[TAKE_PROFIT] = "take_profit_wrong_side_of_entry"
    return problems


def plan_protection(
    *,
    side: Side,
    size: Decimal,
    spec: ContractSpec,
    entry_price: Optional[Decimal],
    stop_loss: Optional[Decimal],
    take_profit: Optional[Decimal],
    breakeven: Optional[Decimal] = None,
    use_partial_tp: bool = True,
) -> ProtectionPlan:
    """
    Split plan (3 legs): SL 100%, TP 50% at breakeven, TP rest at target.
    Unsplit plan (2 legs): SL 100%, TP 100% at target.

    The split is used only when a breakeven price is present, partial TP is
    enabled, and both halves clear the contract min size.
    """
    problems = validate_protection_prices(side, entry_price, stop_loss, take_profit)
    legs: List[ProtectionLeg] = []
    rejected: List[StepOutcome] = []

    if STOP_LOSS in problems:
        rejected.append(failed(STOP_LOSS, problems[STOP_LOSS]))
    else:
        legs.append(
            ProtectionLeg(
                STOP_LOSS,
                TriggerKind.STOP_LOSS,
                quantize_price(stop_loss, spec.price_place),
                size,
            )
        )

    if TAKE_PROFIT in problems:
        rejected.append(failed(TAKE_PROFIT, problems[TAKE_PROFIT]))
        return ProtectionPlan(legs, rejected, split=False)

    halves: Optional[Tuple[Decimal, Decimal]] = None
    note = None
    if breakeven is not None and use_partial_tp:
        if not price_on_protective_side(side, TriggerKind.TAKE_PROFIT, entry_price, breakeven):
            note = "breakeven_wrong_side_of_entry"
        else:
            halves = split_half(size, spec)
            if halves is None:
                note = "half_below_min_size"

    tp_price = quantize_price(take_profit, spec.price_place)
    if halves is None:
        legs.append(ProtectionLeg(TAKE_PROFIT, TriggerKind.TAKE_PROFIT, tp_price, size))
        return ProtectionPlan(legs, rejected, split=False, note=note)

    half, rest = halves
    legs.append(
        ProtectionLeg(
            TAKE_PROFIT_PARTIAL,
            TriggerKind.TAKE_PROFIT,
            quantize_price(breakeven, spec.price_place),
            half,
        )
    )
    legs.append(ProtectionLeg(TAKE_PROFIT_FINAL, TriggerKind.TAKE_PROFIT, tp_price, rest))
    return ProtectionPlan(legs, rejected, split=True)


def _place_leg(
    connector: ExchangeConnector,
    leg: ProtectionLeg,
    *,
    symbol: str,
    side: Side,
    oids: ClientOidFactory,
    product_type: Optional[str],
    margin_coin: Optional[str],
) -> StepOutcome:
    oid = oids.make("tpsl", _OID_SUFFIX.get(leg.name, leg.name))
    req = TriggerRequest(
        kind=leg.kind,
        symbol=symbol,
        side=side,
        trigger_price=leg.price,
        size=leg.size,
        client_oid=oid,
        product_type=product_type,
        margin_coin=margin_coin,
    )
    data = {"price": str(leg.price), "size": str(leg.size), "client_oid": oid}
    try:
        ack = connector.place_trigger_order(req)
    except ExchangeError as e:
        if e.is_duplicate:
            # same client id already accepted by an earlier delivery
            return success(leg.name, duplicate=True, **data)
        log.warning("%s %s failed: %s", symbol, leg.name, e)
        return failed(leg.name, readable_reason(e), **data)
    except Exception as e:
        log.exception("%s %s crashed", symbol, leg.name)
        return failed(leg.name, f"{type(e).__name__}: {e}", **data)
    return success(leg.name, order_id=ack.order_id, **data)


def place_protection(
    connector: ExchangeConnector,
    legs: List[ProtectionLeg],
    *,
    symbol: str,
    side: Side,
    oids: ClientOidFactory,
    product_type: Optional[str] = None,
    margin_coin: Optional[str] = None,
) -> List[StepOutcome]:
    """
    Legs are independent exchange calls: issued concurrently, all joined
    before returning. Outcomes come back in leg order.
    """
    if not legs:
        return []

    kwargs = dict(
        symbol=symbol,
        side=side,
        oids=oids,
        product_type=product_type,
        margin_coin=margin_coin,
    )
    with ThreadPoolExecutor(max_workers=len(legs)) as pool:
        futures = [pool.submit(_place_leg, connector, leg, **kwargs) for leg in legs]
        return [f.result() for f in futures]
