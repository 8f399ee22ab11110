# relaybot/execution/models.py
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


def to_decimal(x: Any) -> Optional[Decimal]:
    """Lenient Decimal parse: None/''/0-like garbage -> None."""
    if x is None or x == "":
        return None
    if isinstance(x, Decimal):
        return x
    try:
        d = Decimal(str(x).strip())
    except (InvalidOperation, ValueError):
        return None
    if not d.is_finite():
        return None
    return d


def normalize_symbol(raw: str) -> str:
    """TradingView perpetual symbols carry a '.P' suffix the exchanges reject."""
    s = (raw or "").strip().upper()
    if s.endswith(".P"):
        s = s[:-2]
    return s


# =========================
# Enums
# =========================
class AlertCategory(str, Enum):
    ENTRY = "ENTRY"
    BREAKEVEN = "BREAKEVEN"
    INFO = "INFO"


# raw alert type -> category
_ALERT_TYPES = {
    "ENTRY": AlertCategory.ENTRY,
    "BREAKEVEN": AlertCategory.BREAKEVEN,
    "STOP_LOSS": AlertCategory.INFO,
    "TAKE_PROFIT": AlertCategory.INFO,
    "INFO": AlertCategory.INFO,
}


class Side(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @classmethod
    def parse(cls, raw: Any) -> "Side":
        s = str(raw or "").strip().upper()
        if s in ("LONG", "BUY"):
            return cls.LONG
        if s in ("SHORT", "SELL"):
            return cls.SHORT
        raise ValueError(f"Unsupported side: {raw!r}")

    @property
    def hold_side(self) -> str:
        return "long" if self is Side.LONG else "short"

    @property
    def order_side(self) -> str:
        """Side of the order that opens this position."""
        return "buy" if self is Side.LONG else "sell"

    @property
    def close_side(self) -> str:
        """Side of the order that reduces this position."""
        return "sell" if self is Side.LONG else "buy"


class TriggerKind(str, Enum):
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"


class PositionState(str, Enum):
    NO_POSITION = "NO_POSITION"
    LEVERAGE_SET = "LEVERAGE_SET"
    OPENING = "OPENING"
    OPEN_UNPROTECTED = "OPEN_UNPROTECTED"
    OPEN_PROTECTED = "OPEN_PROTECTED"
    BREAKEVEN_MIGRATING = "BREAKEVEN_MIGRATING"
    BREAKEVEN_DONE = "BREAKEVEN_DONE"
    CLOSED = "CLOSED"
    ABORTED = "ABORTED"


class StepStatus(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


class Outcome(str, Enum):
    EXECUTED = "executed"
    DISCARDED = "discarded"
    FAILED = "failed"


# =========================
# Alert / account context
# =========================
@dataclass(frozen=True)
class Alert:
    category: AlertCategory
    symbol: str
    side: Side
    trade_id: Optional[str] = None
    entry_price: Optional[Decimal] = None
    stop_loss: Optional[Decimal] = None
    take_profit: Optional[Decimal] = None
    breakeven: Optional[Decimal] = None
    size: Optional[Decimal] = None
    order_type: str = "market"
    product_type: Optional[str] = None
    margin_mode: Optional[str] = None
    margin_coin: Optional[str] = None
    alert_type: str = "ENTRY"

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Alert":
        """
        Build an Alert from a signal-source payload (TradingView style):
          {"alertType": "ENTRY", "symbol": "BTCUSDT.P", "side": "LONG",
           "entryPrice": 50000, "stopLoss": 49000, "takeProfit": 52000,
           "breakeven": 51000, "trade_id": 42}
        """
        alert_type = str(payload.get("alertType") or "ENTRY").strip().upper()
        if alert_type not in _ALERT_TYPES:
            raise ValueError(f"Unsupported alertType: {alert_type!r}")

        symbol = normalize_symbol(str(payload.get("symbol") or ""))
        if not symbol:
            raise ValueError("Symbol is required")

        trade_id = payload.get("trade_id")
        entry = to_decimal(payload.get("entryPrice")) or to_decimal(
            payload.get("price")
        )
        order_type = str(payload.get("orderType") or "market").strip().lower()
        if order_type not in ("market", "limit"):
            raise ValueError(f"Unsupported orderType: {order_type!r}")

        return cls(
            category=_ALERT_TYPES[alert_type],
            symbol=symbol,
            side=Side.parse(payload.get("side")),
            trade_id=str(trade_id).strip() if trade_id not in (None, "") else None,
            entry_price=entry,
            stop_loss=to_decimal(payload.get("stopLoss")),
            take_profit=to_decimal(payload.get("takeProfit")),
            breakeven=to_decimal(payload.get("breakeven")),
            size=to_decimal(payload.get("size")),
            order_type=order_type,
            product_type=payload.get("productType") or None,
            margin_mode=payload.get("marginMode") or None,
            margin_coin=payload.get("marginCoin") or None,
            alert_type=alert_type,
        )


@dataclass(frozen=True)
class ExecutionContext:
    """Resolved account view for one (account, strategy) pair."""

    user_id: int
    strategy_id: int
    exchange: str = "bitget"
    credentials: Any = None  # ExchangeCredentials | None
    role: str = "user"
    has_active_payment: bool = False
    strategy_subscription_enabled: bool = True
    account_leverage: Optional[int] = None
    strategy_leverage: Optional[int] = None
    position_size_usdt: Optional[Decimal] = None
    allowed_symbols: Tuple[str, ...] = ()
    excluded_symbols: Tuple[str, ...] = ()
    use_partial_tp: bool = True
    strategy_name: str = ""


# =========================
# Exchange-side records
# =========================
@dataclass(frozen=True)
class ContractSpec:
    symbol: str
    product_type: str
    min_size: Decimal
    size_step: Decimal
    min_notional: Decimal
    price_place: int
    volume_place: int


@dataclass(frozen=True)
class Position:
    symbol: str
    side: Side
    size: Decimal
    entry_price: Optional[Decimal] = None
    position_id: Optional[str] = None


@dataclass(frozen=True)
class OrderRequest:
    symbol: str
    side: Side
    size: Decimal
    client_oid: str
    order_type: str = "market"
    price: Optional[Decimal] = None
    reduce_only: bool = False
    product_type: Optional[str] = None
    margin_mode: Optional[str] = None
    margin_coin: Optional[str] = None


@dataclass(frozen=True)
class TriggerRequest:
    kind: TriggerKind
    symbol: str
    side: Side  # side of the position being protected
    trigger_price: Decimal
    size: Decimal
    client_oid: str
    product_type: Optional[str] = None
    margin_coin: Optional[str] = None


@dataclass(frozen=True)
class OrderAck:
    order_id: str
    client_oid: str


@dataclass(frozen=True)
class TriggerOrder:
    kind: TriggerKind
    symbol: str
    side: Optional[Side]
    trigger_price: Optional[Decimal]
    size: Optional[Decimal]
    order_id: str
    client_oid: Optional[str] = None


# =========================
# Orchestration records
# =========================
@dataclass
class StepOutcome:
    name: str
    status: StepStatus
    reason: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status is StepStatus.SUCCESS


def success(name: str, **data: Any) -> StepOutcome:
    return StepOutcome(name, StepStatus.SUCCESS, None, data)


def skipped(name: str, reason: str, **data: Any) -> StepOutcome:
    return StepOutcome(name, StepStatus.SKIPPED, reason, data)


def failed(name: str, reason: str, **data: Any) -> StepOutcome:
    return StepOutcome(name, StepStatus.FAILED, reason, data)


@dataclass
class PositionIntent:
    symbol: str
    side: Side
    size: Decimal = Decimal("0")
    entry_price: Optional[Decimal] = None
    stop_loss: Optional[Decimal] = None
    take_profit: Optional[Decimal] = None
    breakeven: Optional[Decimal] = None
    state: PositionState = PositionState.NO_POSITION
    order_id: Optional[str] = None
    client_oid: Optional[str] = None
    leverage: Optional[int] = None


@dataclass
class ExecResult:
    """What the account-level caller sees for one alert."""

    action: str
    outcome: Outcome
    state: PositionState
    order_id: Optional[str] = None
    size: Optional[Decimal] = None
    reason: Optional[str] = None
    steps: List[StepOutcome] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.outcome is Outcome.EXECUTED

    def step(self, name: str) -> Optional[StepOutcome]:
        for s in self.steps:
            if s.name == name:
                return s
        return None
