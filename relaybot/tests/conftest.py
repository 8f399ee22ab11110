import json
from decimal import Decimal

import pytest

from relaybot.core.config import Settings
from relaybot.exchange.credentials import ExchangeCredentials
from relaybot.exchange.registry import reset_shared_caches
from relaybot.execution.models import (
    ContractSpec,
    ExecutionContext,
    OrderAck,
    Position,
    TriggerKind,
    TriggerOrder,
)
from relaybot.execution.orchestrator import TradeOrchestrator
from relaybot.persistence.trade_ledger import TradeRecord


@pytest.fixture(autouse=True)
def _test_env(monkeypatch, tmp_path):
    """
    Ensure tests never hit a real exchange or write outside tmp.
    """
    monkeypatch.setenv("BITGET_API_BASE_URL", "https://bitget.invalid")
    monkeypatch.setenv("BYBIT_API_BASE_URL", "https://bybit.invalid")
    monkeypatch.setenv("DB_PATH", str(tmp_path / "relay.db"))
    monkeypatch.setenv("AUDIT_JSONL_PATH", str(tmp_path / "audit.jsonl"))
    reset_shared_caches()
    yield
    reset_shared_caches()


BTC_SPEC = ContractSpec(
    symbol="BTCUSDT",
    product_type="USDT-FUTURES",
    min_size=Decimal("0.0001"),
    size_step=Decimal("0.0001"),
    min_notional=Decimal("5"),
    price_place=1,
    volume_place=4,
)


class FakeConnector:
    """
    In-memory exchange. Positions and pending triggers behave like the real
    thing closely enough for orchestration tests.

    fail: method name -> ExchangeError raised on every call
    trigger_fail: TriggerKind -> ExchangeError raised for that trigger kind
    sticky_stop_losses: number of cancel calls that leave SLs in place
    """

    name = "fake"
    client_oid_max_len = 64

    def __init__(self, spec=BTC_SPEC, price=Decimal("50000")):
        self.spec = spec
        self.price = price
        self.positions = []
        self.pending = []
        self.calls = []
        self.orders = []
        self.triggers = []
        self.fail = {}
        self.trigger_fail = {}
        self.sticky_stop_losses = 0
        self._seq = 0

    def _next_id(self):
        self._seq += 1
        return str(self._seq)

    def _check(self, method):
        if method in self.fail:
            raise self.fail[method]

    def mutating_calls(self):
        mutating = {"set_leverage", "place_order", "place_trigger_order", "cancel_trigger_orders"}
        return [c for c in self.calls if c[0] in mutating]

    # ---- capability set ----

    def get_contract_spec(self, symbol, product_type=None):
        self.calls.append(("get_contract_spec", symbol))
        self._check("get_contract_spec")
        return self.spec

    def get_last_price(self, symbol, product_type=None):
        self.calls.append(("get_last_price", symbol))
        self._check("get_last_price")
        return self.price

    def set_leverage(self, symbol, leverage, side=None, product_type=None, margin_coin=None):
        self.calls.append(("set_leverage", symbol, leverage))
        self._check("set_leverage")
        return {"leverage": str(leverage)}

    def place_order(self, request):
        self.calls.append(("place_order", request))
        self._check("place_order")
        self.orders.append(request)
        order_id = self._next_id()
        live = [p for p in self.positions if p.symbol == request.symbol and p.side is request.side]
        if request.reduce_only:
            for p in live:
                self.positions.remove(p)
                left = p.size - request.size
                if left > 0:
                    self.positions.append(
                        Position(p.symbol, p.side, left, p.entry_price, p.position_id)
                    )
        else:
            size = request.size + sum((p.size for p in live), Decimal("0"))
            for p in live:
                self.positions.remove(p)
            self.positions.append(
                Position(request.symbol, request.side, size, self.price, "pos-" + order_id)
            )
        return OrderAck(order_id=order_id, client_oid=request.client_oid)

    def place_trigger_order(self, request):
        self.calls.append(("place_trigger_order", request))
        self._check("place_trigger_order")
        if request.kind in self.trigger_fail:
            raise self.trigger_fail[request.kind]
        self.triggers.append(request)
        order_id = self._next_id()
        self.pending.append(
            TriggerOrder(
                kind=request.kind,
                symbol=request.symbol,
                side=request.side,
                trigger_price=request.trigger_price,
                size=request.size,
                order_id=order_id,
                client_oid=request.client_oid,
            )
        )
        return OrderAck(order_id=order_id, client_oid=request.client_oid)

    def cancel_trigger_orders(self, symbol, kind=None, side=None, product_type=None, margin_coin=None):
        self.calls.append(("cancel_trigger_orders", symbol, kind))
        self._check("cancel_trigger_orders")
        if kind is TriggerKind.STOP_LOSS and self.sticky_stop_losses > 0:
            self.sticky_stop_losses -= 1
            return 0
        hit = [
            o for o in self.pending
            if o.symbol == symbol
            and (kind is None or o.kind is kind)
            and (side is None or o.side in (None, side))
        ]
        for o in hit:
            self.pending.remove(o)
        return len(hit)

    def get_open_positions(self, symbol=None, product_type=None):
        self.calls.append(("get_open_positions", symbol))
        self._check("get_open_positions")
        return [p for p in self.positions if symbol is None or p.symbol == symbol]

    def get_pending_trigger_orders(self, symbol, kind=None, product_type=None):
        self.calls.append(("get_pending_trigger_orders", symbol, kind))
        self._check("get_pending_trigger_orders")
        return [
            o for o in self.pending
            if o.symbol == symbol and (kind is None or o.kind is kind)
        ]

    def get_order(self, symbol, order_id, product_type=None):
        return {"orderId": order_id, "state": "filled"}

    def validate_connection(self):
        return True, "ok"

    # ---- helpers for arranging state ----

    def open_position(self, symbol, side, size, entry=None):
        self.positions.append(
            Position(symbol, side, Decimal(str(size)), Decimal(str(entry or self.price)), "pos-x")
        )

    def add_trigger(self, kind, symbol, side, price, size):
        self.pending.append(
            TriggerOrder(
                kind=kind,
                symbol=symbol,
                side=side,
                trigger_price=Decimal(str(price)),
                size=Decimal(str(size)),
                order_id=self._next_id(),
            )
        )


class FakeLedger:
    def __init__(self):
        self.records = []
        self.fail_writes = False

    def record(self, rec):
        if self.fail_writes:
            raise RuntimeError("ledger down")
        rec.id = len(self.records) + 1
        self.records.append(rec)
        return rec.id

    def find_entry(self, user_id, strategy_id, trade_id, symbol):
        for rec in reversed(self.records):
            if rec.user_id != user_id or rec.strategy_id != strategy_id:
                continue
            if rec.alert_type != "ENTRY" or not rec.success:
                continue
            if trade_id and rec.trade_id == trade_id:
                return rec
            if not trade_id and rec.symbol == symbol:
                return rec
        return None

    def find_breakeven(self, user_id, strategy_id, trade_id, symbol, after_id):
        for rec in reversed(self.records):
            if rec.id <= after_id or rec.user_id != user_id or rec.strategy_id != strategy_id:
                continue
            if rec.alert_type != "BREAKEVEN" or rec.state != "BREAKEVEN_DONE":
                continue
            if (trade_id and rec.trade_id == trade_id) or (not trade_id and rec.symbol == symbol):
                return rec
        return None

    def update_stop_loss(self, record_id, stop_loss):
        for rec in self.records:
            if rec.id == record_id:
                rec.stop_loss = stop_loss

    def seed_entry(self, *, trade_id, symbol="BTCUSDT", side="LONG", entry="50000", tp="52000",
                   user_id=1, strategy_id=7):
        return self.record(
            TradeRecord(
                user_id=user_id,
                strategy_id=strategy_id,
                trade_id=trade_id,
                alert_type="ENTRY",
                symbol=symbol,
                side=side,
                success=True,
                state="OPEN_PROTECTED",
                size=Decimal("0.002"),
                entry_price=Decimal(entry),
                take_profit=Decimal(tp) if tp else None,
            )
        )


class FakeNotifier:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    def emit(self, notification):
        if self.fail:
            raise RuntimeError("notifier down")
        self.sent.append(notification)


class FakeResponse:
    def __init__(self, payload=None, status_code=200, headers=None, raw=None):
        self.status_code = status_code
        self.headers = headers or {}
        if raw is not None:
            self.content = raw.encode("utf-8")
        elif payload is None:
            self.content = b""
        else:
            self.content = json.dumps(payload).encode("utf-8")
        self.text = self.content.decode("utf-8")

    def json(self):
        return json.loads(self.content)


class FakeHttp:
    """Stands in for requests.request; replies from a queue, records every call."""

    def __init__(self):
        self.replies = []
        self.calls = []

    def reply(self, payload=None, status_code=200, headers=None, raw=None):
        self.replies.append(FakeResponse(payload, status_code, headers, raw))
        return self

    def fail(self, exc):
        self.replies.append(exc)
        return self

    def __call__(self, method, url, **kwargs):
        self.calls.append(dict(method=method, url=url, **kwargs))
        if not self.replies:
            raise AssertionError(f"unexpected request {method} {url}")
        r = self.replies.pop(0)
        if isinstance(r, Exception):
            raise r
        return r


class RecordingAudit:
    def __init__(self):
        self.calls = []
        self.events = []

    def exchange_call(self, call):
        self.calls.append(call)

    def event(self, event_type, **kwargs):
        self.events.append((event_type, kwargs))


@pytest.fixture
def settings():
    return Settings(
        DEFAULT_LEVERAGE=10,
        LEVERAGE_SETTLE_SECONDS=0,
        POSITION_SETTLE_SECONDS=0,
        DISPATCH_ACCOUNT_DELAY_SECONDS=0,
        CLIENT_OID_MODE="random",
    )


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def ctx():
    return ExecutionContext(
        user_id=1,
        strategy_id=7,
        exchange="bitget",
        credentials=ExchangeCredentials("key-abcdef", "secret", "pass"),
        has_active_payment=True,
    )


@pytest.fixture
def orchestrator(connector, ledger, notifier, settings):
    return TradeOrchestrator(
        ledger=ledger,
        notifier=notifier,
        connector_factory=lambda _ctx: connector,
        settings=settings,
        sleep=lambda _s: None,
    )


@pytest.fixture
def http(monkeypatch):
    fake = FakeHttp()
    monkeypatch.setattr("relaybot.exchange.rest.requests.request", fake)
    monkeypatch.setattr("relaybot.exchange.rest.time.sleep", lambda _s: None)
    return fake


@pytest.fixture
def audit():
    return RecordingAudit()
