# relaybot/exchange/base.py
from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any, List, Optional, Protocol, Tuple

from relaybot.execution.models import (
    ContractSpec,
    OrderAck,
    OrderRequest,
    Position,
    Side,
    TriggerKind,
    TriggerOrder,
    TriggerRequest,
)


class ErrorKind(str, Enum):
    DUPLICATE_CLIENT_ID = "duplicate_client_id"
    NO_POSITION = "no_position"
    OTHER = "other"


class ExchangeError(RuntimeError):
    """
    Provider rejection or transport failure.

    kind is classified by the concrete connector so the orchestrator never
    has to parse provider-specific messages.
    """

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind = ErrorKind.OTHER,
        code: Optional[str] = None,
        http_status: Optional[int] = None,
        response: Any = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.code = code
        self.http_status = http_status
        self.response = response

    @property
    def is_duplicate(self) -> bool:
        return self.kind is ErrorKind.DUPLICATE_CLIENT_ID

    @property
    def is_no_position(self) -> bool:
        return self.kind is ErrorKind.NO_POSITION


class ExchangeConnector(Protocol):
    """Capability set every exchange variant provides."""

    name: str
    client_oid_max_len: int

    def get_contract_spec(
        self, symbol: str, product_type: Optional[str] = None
    ) -> ContractSpec: ...

    def get_last_price(
        self, symbol: str, product_type: Optional[str] = None
    ) -> Decimal: ...

    def set_leverage(
        self,
        symbol: str,
        leverage: int,
        side: Optional[Side] = None,
        product_type: Optional[str] = None,
        margin_coin: Optional[str] = None,
    ) -> dict: ...

    def place_order(self, request: OrderRequest) -> OrderAck: ...

    def place_trigger_order(self, request: TriggerRequest) -> OrderAck: ...

    def cancel_trigger_orders(
        self,
        symbol: str,
        kind: Optional[TriggerKind] = None,
        side: Optional[Side] = None,
        product_type: Optional[str] = None,
        margin_coin: Optional[str] = None,
    ) -> int: ...

    def get_open_positions(
        self, symbol: Optional[str] = None, product_type: Optional[str] = None
    ) -> List[Position]: ...

    def get_pending_trigger_orders(
        self,
        symbol: str,
        kind: Optional[TriggerKind] = None,
        product_type: Optional[str] = None,
    ) -> List[TriggerOrder]: ...

    def get_order(
        self, symbol: str, order_id: str, product_type: Optional[str] = None
    ) -> dict: ...

    def validate_connection(self) -> Tuple[bool, str]: ...


# Common provider messages -> readable reasons for the account-level caller
_READABLE = {
    "The order amount exceeds the balance": "Insufficient balance to open this position",
    "Insufficient balance": "Insufficient balance",
    "Order amount is less than the minimum": "Order amount is below the exchange minimum",
    "The leverage is too high": "Leverage is too high for this symbol",
    "Position does not exist": "Position does not exist",
    "Duplicate clientOid": "Duplicate order",
    "The symbol is not supported": "Symbol is not supported by the exchange",
    "The order price is not within the price limit": "Order price is outside the allowed range",
    "Trigger price should be higher than the market price": "Trigger price must be above the market price",
    "Trigger price should be lower than the market price": "Trigger price must be below the market price",
}


def readable_reason(err: BaseException) -> str:
    msg = str(err)
    for needle, text in _READABLE.items():
        if needle.lower() in msg.lower():
            return text
    return msg.replace("Bitget API Error: ", "").replace("Bybit API Error: ", "")
