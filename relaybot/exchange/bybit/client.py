from __future__ import annotations

import time
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from relaybot.exchange.base import ErrorKind, ExchangeError, readable_reason
from relaybot.exchange.bybit.signing import prehash, sign
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

CATEGORY = "linear"
DUPLICATE_CODES = {"110072"}
NO_POSITION_CODES = {"110017"}
LEVERAGE_NOT_MODIFIED = "110043"

_STOP_ORDER_KINDS = {
    "StopLoss": TriggerKind.STOP_LOSS,
    "PartialStopLoss": TriggerKind.STOP_LOSS,
    "TakeProfit": TriggerKind.TAKE_PROFIT,
    "PartialTakeProfit": TriggerKind.TAKE_PROFIT,
}


def _position_side(raw: Any) -> Optional[Side]:
    s = str(raw or "")
    if s == "Buy":
        return Side.LONG
    if s == "Sell":
        return Side.SHORT
    return None


class BybitFuturesClient(RestClient):
    """
    Bybit v5 linear perpetual connector (one-way mode, positionIdx 0).

    Protection uses position trading-stop in Partial mode so SL and each TP
    leg carry their own size.
    """

    name = "bybit"
    client_oid_max_len = 36

    def __init__(
        self,
        credentials,
        base_url: str = "https://api.bybit.com",
        *,
        recv_window: int = 5000,
        default_product_type: str = "USDT-FUTURES",
        default_margin_coin: str = "USDT",
        **kwargs: Any,
    ):
        super().__init__(credentials, base_url, **kwargs)
        self.recv_window = int(recv_window)
        self.default_product_type = default_product_type
        self.default_margin_coin = default_margin_coin

    # ---------------- SIGNING ----------------

    def _auth_headers(
        self, method: str, path: str, query: str, body: str
    ) -> Dict[str, str]:
        timestamp = str(int(time.time() * 1000))
        payload = query if method == "GET" else body
        signature = sign(
            self.credentials.api_secret,
            prehash(timestamp, self.credentials.api_key, self.recv_window, payload),
        )
        return {
            "X-BAPI-API-KEY": self.credentials.api_key,
            "X-BAPI-TIMESTAMP": timestamp,
            "X-BAPI-SIGN": signature,
            "X-BAPI-RECV-WINDOW": str(self.recv_window),
            "Content-Type": "application/json",
        }

    def _unwrap(self, http_status: int, data: Any) -> Any:
        if isinstance(data, dict) and str(data.get("retCode")) == "0":
            return data.get("result")
        code = data.get("retCode") if isinstance(data, dict) else None
        msg = data.get("retMsg") if isinstance(data, dict) else None
        raise self._error(
            f"Bybit API Error: {msg or f'HTTP {http_status}'}",
            code,
            http_status,
            data,
        )

    def _classify(self, code: Optional[str], message: str) -> ErrorKind:
        if code in DUPLICATE_CODES or "duplicate" in message.lower():
            return ErrorKind.DUPLICATE_CLIENT_ID
        if code in NO_POSITION_CODES:
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
            "/v5/market/instruments-info", {"category": CATEGORY, "symbol": symbol}
        )
        rows = (data or {}).get("list") or []
        if not rows:
            raise ExchangeError(f"Bybit instrument not found: {symbol}")
        c = rows[0]
        lot = c.get("lotSizeFilter") or {}
        step = to_decimal(lot.get("qtyStep")) or Decimal("0.001")
        return ContractSpec(
            symbol=symbol,
            product_type=product_type,
            min_size=to_decimal(lot.get("minOrderQty")) or step,
            size_step=step,
            min_notional=to_decimal(lot.get("minNotionalValue")) or Decimal("5"),
            price_place=int(c.get("priceScale") or 2),
            volume_place=decimals_of(step),
        )

    def get_last_price(self, symbol: str, product_type: Optional[str] = None) -> Decimal:
        pt = self._pt(product_type)
        return self.price_cache.get_or_load(
            (symbol, pt), lambda: self._load_price(symbol)
        )

    def _load_price(self, symbol: str) -> Decimal:
        data = self._public_get(
            "/v5/market/tickers", {"category": CATEGORY, "symbol": symbol}
        )
        rows = (data or {}).get("list") or []
        price = to_decimal(rows[0].get("lastPrice")) if rows else None
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
        lev = str(int(leverage))
        body = {
            "category": CATEGORY,
            "symbol": symbol,
            "buyLeverage": lev,
            "sellLeverage": lev,
        }
        try:
            return self._signed(
                "POST", "/v5/position/set-leverage", "set_leverage",
                body=body, symbol=symbol,
            ) or {}
        except ExchangeError as e:
            # already at the requested leverage
            if e.code == LEVERAGE_NOT_MODIFIED:
                return {"leverage": lev, "unchanged": True}
            raise

    def place_order(self, request: OrderRequest) -> OrderAck:
        # one-way mode: closing a long is a reduce-only Sell
        side = request.side.close_side if request.reduce_only else request.side.order_side
        body: Dict[str, Any] = {
            "category": CATEGORY,
            "symbol": request.symbol,
            "side": side.capitalize(),
            "orderType": "Limit" if request.order_type == "limit" else "Market",
            "qty": to_wire(request.size),
            "orderLinkId": request.client_oid,
            "positionIdx": 0,
        }
        if request.reduce_only:
            body["reduceOnly"] = True
        if request.order_type == "limit":
            if request.price is None:
                raise ValueError("Limit order requires a price")
            body["price"] = to_wire(request.price)
            body["timeInForce"] = "GTC"

        op = "close_position" if request.reduce_only else "open_position"
        data = self._signed(
            "POST", "/v5/order/create", op,
            body=body, symbol=request.symbol, client_oid=request.client_oid,
        ) or {}
        return OrderAck(
            order_id=str(data.get("orderId") or ""),
            client_oid=str(data.get("orderLinkId") or request.client_oid),
        )

    def place_trigger_order(self, request: TriggerRequest) -> OrderAck:
        """
        Partial-mode SL/TP through /v5/position/trading-stop.

        trading-stop takes no orderLinkId, so request.client_oid is only kept
        for the audit row and the ack. The exchange cannot reject a replayed
        leg; the pending-trigger check on adopted positions is the only replay
        protection on Bybit.
        """
        body: Dict[str, Any] = {
            "category": CATEGORY,
            "symbol": request.symbol,
            "tpslMode": "Partial",
            "positionIdx": 0,
        }
        if request.kind is TriggerKind.STOP_LOSS:
            body.update(
                stopLoss=to_wire(request.trigger_price),
                slSize=to_wire(request.size),
                slTriggerBy="LastPrice",
                slOrderType="Market",
            )
        else:
            body.update(
                takeProfit=to_wire(request.trigger_price),
                tpSize=to_wire(request.size),
                tpTriggerBy="LastPrice",
                tpOrderType="Market",
            )
        data = self._signed(
            "POST", "/v5/position/trading-stop", request.kind.value,
            body=body, symbol=request.symbol, client_oid=request.client_oid,
        ) or {}
        # trading-stop does not echo an order id
        return OrderAck(
            order_id=str(data.get("orderId") or ""), client_oid=request.client_oid
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

        cancelled = 0
        for o in pending:
            self._signed(
                "POST", "/v5/order/cancel", "cancel_trigger_orders",
                body={
                    "category": CATEGORY,
                    "symbol": symbol,
                    "orderId": o.order_id,
                    "orderFilter": "tpslOrder",
                },
                symbol=symbol,
            )
            cancelled += 1
        return cancelled

    def get_open_positions(
        self, symbol: Optional[str] = None, product_type: Optional[str] = None
    ) -> List[Position]:
        params: Dict[str, Any] = {"category": CATEGORY}
        if symbol:
            params["symbol"] = symbol
        else:
            params["settleCoin"] = self.default_margin_coin
        data = self._signed(
            "GET", "/v5/position/list", "get_positions", params=params, symbol=symbol
        ) or {}

        out: List[Position] = []
        for p in data.get("list") or []:
            size = to_decimal(p.get("size")) or Decimal("0")
            side = _position_side(p.get("side"))
            if size <= 0 or side is None:
                continue
            out.append(
                Position(
                    symbol=str(p.get("symbol")).upper(),
                    side=side,
                    size=size,
                    entry_price=to_decimal(p.get("avgPrice")),
                    position_id=str(p.get("positionIdx", "")) or None,
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
            "GET", "/v5/order/realtime", "get_pending_triggers",
            params={"category": CATEGORY, "symbol": symbol, "orderFilter": "tpslOrder"},
            symbol=symbol,
        ) or {}

        out: List[TriggerOrder] = []
        for o in data.get("list") or []:
            k = _STOP_ORDER_KINDS.get(str(o.get("stopOrderType") or ""))
            if k is None or (kind is not None and k is not kind):
                continue
            # the trigger's own side closes the position: Sell protects a long
            closing = _position_side(o.get("side"))
            held = None
            if closing is not None:
                held = Side.SHORT if closing is Side.LONG else Side.LONG
            out.append(
                TriggerOrder(
                    kind=k,
                    symbol=str(o.get("symbol") or symbol).upper(),
                    side=held,
                    trigger_price=to_decimal(o.get("triggerPrice")),
                    size=to_decimal(o.get("qty")),
                    order_id=str(o.get("orderId")),
                    client_oid=o.get("orderLinkId") or None,
                )
            )
        return out

    def get_order(
        self, symbol: str, order_id: str, product_type: Optional[str] = None
    ) -> dict:
        data = self._signed(
            "GET", "/v5/order/realtime", "get_order",
            params={"category": CATEGORY, "symbol": symbol, "orderId": order_id},
            symbol=symbol,
        ) or {}
        rows = data.get("list") or []
        return rows[0] if rows else {}

    def validate_connection(self) -> Tuple[bool, str]:
        try:
            self._signed(
                "GET", "/v5/account/wallet-balance", "validate_connection",
                params={"accountType": "UNIFIED"},
            )
            return True, "Connection successful"
        except ExchangeError as e:
            return False, readable_reason(e)
