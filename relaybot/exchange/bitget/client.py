from __future__ import annotations

import time
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from relaybot.exchange.base import ErrorKind, ExchangeError, readable_reason
from relaybot.exchange.bitget.signing import prehash, sign
from relaybot.exchange.filters import decimals_of, to_wire
from relaybot.exchange.rest import RestClient
from relaybot.execution.models import (
    ContractSpec,
    OrderAck,
    OrderRequest,
    Position,
    Side,
    TriggerKind,
    TriggerOrder,
    TriggerRequest,
    to_decimal,
)

SUCCESS_CODE = "00000"
NO_POSITION_CODES = {"22002"}

_PLAN_TYPES = {
    TriggerKind.STOP_LOSS: "loss_plan",
    TriggerKind.TAKE_PROFIT: "profit_plan",
}
# planType values reported by orders-plan-pending
_PENDING_KINDS = {
    "loss_plan": TriggerKind.STOP_LOSS,
    "pos_loss": TriggerKind.STOP_LOSS,
    "profit_plan": TriggerKind.TAKE_PROFIT,
    "pos_profit": TriggerKind.TAKE_PROFIT,
}


def _hold_side(raw: Any) -> Optional[Side]:
    s = str(raw or "").lower()
    if s in ("long", "buy"):
        return Side.LONG
    if s in ("short", "sell"):
        return Side.SHORT
    return None


class BitgetFuturesClient(RestClient):
    """Bitget v2 mix (USDT-M futures) connector."""

    name = "bitget"
    client_oid_max_len = 64

    def __init__(
        self,
        credentials,
        base_url: str = "https://api.bitget.com",
        *,
        default_product_type: str = "USDT-FUTURES",
        default_margin_coin: str = "USDT",
        default_margin_mode: str = "isolated",
        **kwargs: Any,
    ):
        super().__init__(credentials, base_url, **kwargs)
        self.default_product_type = default_product_type
        self.default_margin_coin = default_margin_coin
        self.default_margin_mode = default_margin_mode

    # ---------------- SIGNING ----------------

    def _auth_headers(
        self, method: str, path: str, query: str, body: str
    ) -> Dict[str, str]:
        timestamp = str(int(time.time() * 1000))
        request_path = f"{path}?{query}" if query else path
        signature = sign(
            self.credentials.api_secret, prehash(timestamp, method, request_path, body)
        )
        return {
            "ACCESS-KEY": self.credentials.api_key,
            "ACCESS-SIGN": signature,
            "ACCESS-TIMESTAMP": timestamp,
            "ACCESS-PASSPHRASE": self.credentials.passphrase,
            "Content-Type": "application/json",
            "locale": "en-US",
        }

    def _unwrap(self, http_status: int, data: Any) -> Any:
        if isinstance(data, dict) and str(data.get("code")) == SUCCESS_CODE:
            return data.get("data")
        code = data.get("code") if isinstance(data, dict) else None
        msg = data.get("msg") if isinstance(data, dict) else None
        raise self._error(
            f"Bitget API Error: {msg or f'HTTP {http_status}'}",
            code,
            http_status,
            data,
        )

    def _classify(self, code: Optional[str], message: str) -> ErrorKind:
        low = message.lower()
        if "duplicate clientoid" in low:
            return ErrorKind.DUPLICATE_CLIENT_ID
        if code in NO_POSITION_CODES or "no position to close" in low:
            return ErrorKind.NO_POSITION
        return ErrorKind.OTHER

    def _pt(self, product_type: Optional[str]) -> str:
        return product_type or self.default_product_type

    # ---------------- PUBLIC ----------------

    def get_contract_spec(
        self, symbol: str, product_type: Optional[str] = None
    ) -> ContractSpec:
        pt = self._pt(product_type)
        return self.contract_cache.get_or_load(
            (symbol, pt), lambda: self._load_contract(symbol, pt)
        )

    def _load_contract(self, symbol: str, product_type: str) -> ContractSpec:
        data = self._public_get(
            "/api/v2/mix/market/contracts",
            {"symbol": symbol, "productType": product_type.lower()},
        )
        if not data:
            raise ExchangeError(f"Bitget contract not found: {symbol}")
        c = data[0]
        step = to_decimal(c.get("sizeMultiplier")) or Decimal("0.01")
        return ContractSpec(
            symbol=symbol,
            product_type=product_type,
            min_size=to_decimal(c.get("minTradeNum")) or Decimal("0.01"),
            size_step=step,
            min_notional=to_decimal(c.get("minTradeUSDT")) or Decimal("5"),
            price_place=int(c.get("pricePlace") or 1),
            volume_place=int(c.get("volumePlace") or decimals_of(step)),
        )

    def get_last_price(self, symbol: str, product_type: Optional[str] = None) -> Decimal:
        pt = self._pt(product_type)
        return self.price_cache.get_or_load(
            (symbol, pt), lambda: self._load_price(symbol, pt)
        )

    def _load_price(self, symbol: str, product_type: str) -> Decimal:
        data = self._public_get(
            "/api/v2/mix/market/ticker",
            {"symbol": symbol, "productType": product_type},
        )
        row = data[0] if isinstance(data, list) and data else data
        price = to_decimal((row or {}).get("lastPr")) or to_decimal(
            (row or {}).get("last")
        )
        if price is None or price <= 0:
            raise ExchangeError(f"Failed to get ticker price for {symbol}")
        return price

    # ---------------- ACCOUNT / TRADING ----------------

    def set_leverage(
        self,
        symbol: str,
        leverage: int,
        side: Optional[Side] = None,
        product_type: Optional[str] = None,
        margin_coin: Optional[str] = None,
    ) -> dict:
        body = {
            "symbol": symbol,
            "productType": self._pt(product_type),
            "marginCoin": margin_coin or self.default_margin_coin,
            "leverage": str(int(leverage)),
        }
        # holdSide is required for hedge-mode isolated positions
        if side is not None:
            body["holdSide"] = side.hold_side
        return self._signed(
            "POST", "/api/v2/mix/account/set-leverage", "set_leverage",
            body=body, symbol=symbol,
        ) or {}

    def place_order(self, request: OrderRequest) -> OrderAck:
        # hedge mode: side names the position, tradeSide says open or close
        body = {
            "symbol": request.symbol,
            "productType": self._pt(request.product_type),
            "marginMode": request.margin_mode or self.default_margin_mode,
            "marginCoin": request.margin_coin or self.default_margin_coin,
            "size": to_wire(request.size),
            "side": request.side.order_side,
            "tradeSide": "close" if request.reduce_only else "open",
            "orderType": request.order_type,
            "clientOid": request.client_oid,
        }
        if request.order_type == "limit":
            if request.price is None:
                raise ValueError("Limit order requires a price")
            body["price"] = to_wire(request.price)
            body["force"] = "gtc"

        op = "close_position" if request.reduce_only else "open_position"
        data = self._signed(
            "POST", "/api/v2/mix/order/place-order", op,
            body=body, symbol=request.symbol, client_oid=request.client_oid,
        ) or {}
        return OrderAck(
            order_id=str(data.get("orderId") or data.get("clientOid") or ""),
            client_oid=str(data.get("clientOid") or request.client_oid),
        )

    def place_trigger_order(self, request: TriggerRequest) -> OrderAck:
        body = {
            "marginCoin": request.margin_coin or self.default_margin_coin,
            "productType": self._pt(request.product_type),
            "symbol": request.symbol,
            "planType": _PLAN_TYPES[request.kind],
            "triggerPrice": to_wire(request.trigger_price),
            "triggerType": "fill_price",
            "executePrice": "0",  # market on trigger
            "holdSide": request.side.hold_side,
            "size": to_wire(request.size),
            "clientOid": request.client_oid,
        }
        data = self._signed(
            "POST", "/api/v2/mix/order/place-tpsl-order", request.kind.value,
            body=body, symbol=request.symbol, client_oid=request.client_oid,
        ) or {}
        return OrderAck(
            order_id=str(data.get("orderId") or ""),
            client_oid=str(data.get("clientOid") or request.client_oid),
        )

    def cancel_trigger_orders(
        self,
        symbol: str,
        kind: Optional[TriggerKind] = None,
        side: Optional[Side] = None,
        product_type: Optional[str] = None,
        margin_coin: Optional[str] = None,
    ) -> int:
        pending = self.get_pending_trigger_orders(symbol, kind, product_type)
        if side is not None:
            pending = [o for o in pending if o.side in (None, side)]
        if not pending:
            return 0

        body = {
            "symbol": symbol,
            "productType": self._pt(product_type),
            "marginCoin": margin_coin or self.default_margin_coin,
            "orderIdList": [{"orderId": o.order_id} for o in pending],
        }
        data = self._signed(
            "POST", "/api/v2/mix/order/cancel-plan-order", "cancel_trigger_orders",
            body=body, symbol=symbol,
        ) or {}
        if isinstance(data, dict) and "successList" in data:
            return len(data.get("successList") or [])
        return len(pending)

    def get_open_positions(
        self, symbol: Optional[str] = None, product_type: Optional[str] = None
    ) -> List[Position]:
        data = self._signed(
            "GET", "/api/v2/mix/position/all-position", "get_positions",
            params={
                "productType": self._pt(product_type),
                "marginCoin": self.default_margin_coin,
            },
            symbol=symbol,
        ) or []

        out: List[Position] = []
        for p in data:
            if symbol and str(p.get("symbol", "")).upper() != symbol.upper():
                continue
            size = to_decimal(p.get("total")) or Decimal("0")
            side = _hold_side(p.get("holdSide"))
            if size <= 0 or side is None:
                continue
            out.append(
                Position(
                    symbol=str(p.get("symbol")).upper(),
                    side=side,
                    size=size,
                    entry_price=to_decimal(p.get("openPriceAvg"))
                    or to_decimal(p.get("averageOpenPrice")),
                    position_id=str(p.get("positionId") or "") or None,
                )
            )
        return out

    def get_pending_trigger_orders(
        self,
        symbol: str,
        kind: Optional[TriggerKind] = None,
        product_type: Optional[str] = None,
    ) -> List[TriggerOrder]:
        data = self._signed(
            "GET", "/api/v2/mix/order/orders-plan-pending", "get_pending_triggers",
            params={
                "symbol": symbol,
                "productType": self._pt(product_type),
                "planType": "profit_loss",
            },
            symbol=symbol,
        ) or {}
        rows = data.get("entrustedList") if isinstance(data, dict) else data

        out: List[TriggerOrder] = []
        for o in rows or []:
            k = _PENDING_KINDS.get(str(o.get("planType") or ""))
            if k is None or (kind is not None and k is not kind):
                continue
            out.append(
                TriggerOrder(
                    kind=k,
                    symbol=str(o.get("symbol") or symbol).upper(),
                    side=_hold_side(o.get("posSide") or o.get("holdSide")),
                    trigger_price=to_decimal(o.get("triggerPrice")),
                    size=to_decimal(o.get("size")),
                    order_id=str(o.get("orderId")),
                    client_oid=o.get("clientOid"),
                )
            )
        return out

    def get_order(
        self, symbol: str, order_id: str, product_type: Optional[str] = None
    ) -> dict:
        return self._signed(
            "GET", "/api/v2/mix/order/detail", "get_order",
            params={
                "symbol": symbol,
                "productType": self._pt(product_type),
                "orderId": order_id,
            },
            symbol=symbol,
        ) or {}

    def validate_connection(self) -> Tuple[bool, str]:
        try:
            self._signed(
                "GET", "/api/v2/mix/account/accounts", "validate_connection",
                params={"productType": self.default_product_type},
            )
            return True, "Connection successful"
        except ExchangeError as e:
            return False, readable_reason(e)
