from dataclasses import replace
from decimal import Decimal

from relaybot.exchange.base import ErrorKind, ExchangeError
from relaybot.execution.models import (
    Alert,
    AlertCategory,
    Outcome,
    PositionState,
    Side,
    StepStatus,
    TriggerKind,
)


def _entry(**kw):
    base = dict(
        category=AlertCategory.ENTRY,
        symbol="BTCUSDT",
        side=Side.LONG,
        trade_id="42",
        entry_price=Decimal("50000"),
        stop_loss=Decimal("49000"),
        take_profit=Decimal("52000"),
        alert_type="ENTRY",
    )
    base.update(kw)
    return Alert(**base)


def _trigger_calls(connector):
    return [c[1] for c in connector.calls if c[0] == "place_trigger_order"]


def _order_calls(connector):
    return [c[1] for c in connector.calls if c[0] == "place_order"]


# ---------------- sizing scenario ----------------


def test_entry_below_min_notional_is_raised_and_gets_single_sl_and_tp(orchestrator, connector, ctx):
    connector.spec = replace(
        connector.spec, min_size=Decimal("0.00001"), size_step=Decimal("0.00001")
    )
    res = orchestrator.handle(_entry(size=Decimal("0.00001")), ctx)

    assert res.outcome is Outcome.EXECUTED
    assert res.state is PositionState.OPEN_PROTECTED

    (order,) = _order_calls(connector)
    assert order.size >= Decimal("5.05") / Decimal("50000")
    assert order.size == Decimal("0.00011")
    assert order.size * Decimal("50000") >= Decimal("5")
    assert (order.size / Decimal("0.00001")) % 1 == 0

    triggers = _trigger_calls(connector)
    assert len(triggers) == 2
    kinds = sorted(t.kind.value for t in triggers)
    assert kinds == ["stop_loss", "take_profit"]
    assert all(t.size == order.size for t in triggers)


def test_entry_auto_size_from_min_notional(orchestrator, connector, ctx):
    res = orchestrator.handle(_entry(), ctx)

    # 5 * 1.05 / 50000 = 0.000105 -> step 0.0001 -> 0.0002
    assert res.size == Decimal("0.0002")
    assert res.step("sizing").data["source"] == "auto_min_notional"


def test_entry_user_position_size_takes_precedence(orchestrator, connector, ctx):
    ctx = replace(ctx, position_size_usdt=Decimal("100"))
    res = orchestrator.handle(_entry(size=Decimal("0.5")), ctx)

    # 100 / 50000 = 0.002 (well above 1.5x min notional, no margin added)
    assert res.size == Decimal("0.002")
    assert res.step("sizing").data["source"] == "user_usdt"


# ---------------- protection ----------------


def test_both_triggers_fail_leaves_open_unprotected_and_notifies_critical(
    orchestrator, connector, ctx, ledger, notifier
):
    connector.trigger_fail = {
        TriggerKind.STOP_LOSS: ExchangeError("Bitget API Error: trigger rejected"),
        TriggerKind.TAKE_PROFIT: ExchangeError("Bitget API Error: trigger rejected"),
    }
    res = orchestrator.handle(_entry(), ctx)

    assert res.success is True
    assert res.state is PositionState.OPEN_UNPROTECTED
    assert len(_order_calls(connector)) == 1

    assert [n.severity for n in notifier.sent] == ["critical"]
    assert notifier.sent[0].type == "tp_sl_failed"

    (rec,) = ledger.records
    assert rec.success is True
    assert rec.state == "OPEN_UNPROTECTED"


def test_take_profit_failure_only_is_a_warning(orchestrator, connector, ctx, notifier):
    connector.trigger_fail = {TriggerKind.TAKE_PROFIT: ExchangeError("Bitget API Error: nope")}
    res = orchestrator.handle(_entry(), ctx)

    assert res.state is PositionState.OPEN_UNPROTECTED
    assert notifier.sent[0].type == "tp_failed"
    assert notifier.sent[0].severity == "warning"


def test_stop_loss_failure_only_is_critical(orchestrator, connector, ctx, notifier):
    connector.trigger_fail = {TriggerKind.STOP_LOSS: ExchangeError("Bitget API Error: nope")}
    res = orchestrator.handle(_entry(), ctx)

    assert res.state is PositionState.OPEN_UNPROTECTED
    assert notifier.sent[0].type == "sl_failed"
    assert notifier.sent[0].severity == "critical"


def test_fully_protected_entry_notifies_info(orchestrator, connector, ctx, notifier):
    res = orchestrator.handle(_entry(), ctx)

    assert res.state is PositionState.OPEN_PROTECTED
    assert notifier.sent[0].severity == "info"


def test_partial_tp_split_places_three_legs(orchestrator, connector, ctx):
    res = orchestrator.handle(_entry(size=Decimal("0.002"), breakeven=Decimal("51000")), ctx)

    assert res.state is PositionState.OPEN_PROTECTED
    triggers = _trigger_calls(connector)
    assert len(triggers) == 3

    sl = [t for t in triggers if t.kind is TriggerKind.STOP_LOSS]
    tps = sorted(
        (t for t in triggers if t.kind is TriggerKind.TAKE_PROFIT), key=lambda t: t.trigger_price
    )
    assert sl[0].size == Decimal("0.002")
    assert [t.trigger_price for t in tps] == [Decimal("51000"), Decimal("52000")]
    assert [t.size for t in tps] == [Decimal("0.001"), Decimal("0.001")]


def test_partial_tp_falls_back_to_single_tp_when_half_below_min(orchestrator, connector, ctx):
    connector.spec = replace(connector.spec, min_notional=Decimal("1"))
    res = orchestrator.handle(_entry(breakeven=Decimal("51000")), ctx)

    assert res.size == Decimal("0.0001")
    triggers = _trigger_calls(connector)
    assert len(triggers) == 2
    tp = [t for t in triggers if t.kind is TriggerKind.TAKE_PROFIT]
    assert len(tp) == 1
    assert tp[0].trigger_price == Decimal("52000")
    assert tp[0].size == Decimal("0.0001")
    assert all(t.size >= connector.spec.min_size for t in triggers)


def test_partial_tp_disabled_by_account(orchestrator, connector, ctx):
    ctx = replace(ctx, use_partial_tp=False)
    orchestrator.handle(_entry(size=Decimal("0.002"), breakeven=Decimal("51000")), ctx)

    assert len(_trigger_calls(connector)) == 2


def test_stop_loss_on_wrong_side_is_not_sent(orchestrator, connector, ctx, notifier):
    res = orchestrator.handle(_entry(stop_loss=Decimal("51000")), ctx)

    assert res.state is PositionState.OPEN_UNPROTECTED
    assert res.step("stop_loss").status is StepStatus.FAILED
    assert res.step("stop_loss").reason == "stop_loss_wrong_side_of_entry"
    assert all(t.kind is TriggerKind.TAKE_PROFIT for t in _trigger_calls(connector))
    assert notifier.sent[0].type == "sl_failed"


def test_short_entry_prices(orchestrator, connector, ctx):
    alert = _entry(side=Side.SHORT, stop_loss=Decimal("51000"), take_profit=Decimal("48000"))
    res = orchestrator.handle(alert, ctx)

    assert res.state is PositionState.OPEN_PROTECTED
    assert _order_calls(connector)[0].side is Side.SHORT


# ---------------- idempotency / reconciliation ----------------


def test_replayed_entry_with_open_position_does_not_open_again(orchestrator, connector, ctx):
    connector.open_position("BTCUSDT", Side.LONG, "0.003")
    connector.add_trigger(TriggerKind.STOP_LOSS, "BTCUSDT", Side.LONG, 49000, "0.003")
    connector.add_trigger(TriggerKind.TAKE_PROFIT, "BTCUSDT", Side.LONG, 52000, "0.003")

    res = orchestrator.handle(_entry(), ctx)

    assert res.success is True
    assert res.size == Decimal("0.003")
    assert _order_calls(connector) == []
    assert _trigger_calls(connector) == []
    assert res.state is PositionState.OPEN_PROTECTED


def test_adopted_position_without_protection_gets_missing_legs(orchestrator, connector, ctx):
    connector.open_position("BTCUSDT", Side.LONG, "0.003")
    connector.add_trigger(TriggerKind.STOP_LOSS, "BTCUSDT", Side.LONG, 49000, "0.003")

    res = orchestrator.handle(_entry(), ctx)

    triggers = _trigger_calls(connector)
    assert [t.kind for t in triggers] == [TriggerKind.TAKE_PROFIT]
    assert triggers[0].size == Decimal("0.003")
    assert res.state is PositionState.OPEN_PROTECTED


def test_adopted_split_position_gets_the_missing_final_take_profit(orchestrator, connector, ctx):
    # first delivery placed SL and the partial TP, the final TP failed
    connector.open_position("BTCUSDT", Side.LONG, "0.002")
    connector.add_trigger(TriggerKind.STOP_LOSS, "BTCUSDT", Side.LONG, 49000, "0.002")
    connector.add_trigger(TriggerKind.TAKE_PROFIT, "BTCUSDT", Side.LONG, 51000, "0.001")

    res = orchestrator.handle(_entry(size=Decimal("0.002"), breakeven=Decimal("51000")), ctx)

    assert _order_calls(connector) == []
    (tp,) = _trigger_calls(connector)
    assert (tp.kind, tp.trigger_price, tp.size) == (
        TriggerKind.TAKE_PROFIT, Decimal("52000"), Decimal("0.001"),
    )
    assert res.step("take_profit_partial").data["existing"] is True
    assert res.step("take_profit_final").data.get("existing") is None
    assert res.state is PositionState.OPEN_PROTECTED
    pending_tps = sorted(
        (o.trigger_price, o.size) for o in connector.pending if o.kind is TriggerKind.TAKE_PROFIT
    )
    assert pending_tps == [(Decimal("51000"), Decimal("0.001")), (Decimal("52000"), Decimal("0.001"))]


def test_adopted_position_with_unrelated_take_profit_still_gets_planned_one(orchestrator, connector, ctx):
    connector.open_position("BTCUSDT", Side.LONG, "0.003")
    connector.add_trigger(TriggerKind.STOP_LOSS, "BTCUSDT", Side.LONG, 49000, "0.003")
    connector.add_trigger(TriggerKind.TAKE_PROFIT, "BTCUSDT", Side.LONG, 55000, "0.003")

    orchestrator.handle(_entry(), ctx)

    (tp,) = _trigger_calls(connector)
    assert tp.trigger_price == Decimal("52000")


def test_duplicate_client_id_on_open_adopts_matching_position(orchestrator, connector, ctx):
    def _duplicate(request):
        connector.calls.append(("place_order", request))
        # an earlier delivery of the same alert already filled
        connector.open_position("BTCUSDT", Side.LONG, "0.003")
        raise ExchangeError(
            "Bitget API Error: Duplicate clientOid", kind=ErrorKind.DUPLICATE_CLIENT_ID
        )

    connector.place_order = _duplicate
    res = orchestrator.handle(_entry(), ctx)

    assert res.success is True
    assert res.size == Decimal("0.003")
    assert len(_order_calls(connector)) == 1
    assert res.step("open").data["adopted"] is True
    assert all(t.size == Decimal("0.003") for t in _trigger_calls(connector))


def test_duplicate_client_id_without_position_fails(orchestrator, connector, ctx):
    connector.fail["place_order"] = ExchangeError(
        "Bitget API Error: Duplicate clientOid", kind=ErrorKind.DUPLICATE_CLIENT_ID
    )
    res = orchestrator.handle(_entry(), ctx)

    assert res.outcome is Outcome.FAILED
    assert res.state is PositionState.ABORTED
    assert _trigger_calls(connector) == []


def test_position_query_failure_aborts_before_opening(orchestrator, connector, ctx):
    connector.fail["get_open_positions"] = ExchangeError("Bitget API Error: timeout")
    res = orchestrator.handle(_entry(), ctx)

    assert res.state is PositionState.ABORTED
    assert _order_calls(connector) == []


# ---------------- fatal-for-trade ----------------


def test_leverage_failure_aborts_without_orders(orchestrator, connector, ctx, ledger):
    connector.fail["set_leverage"] = ExchangeError("Bitget API Error: The leverage is too high")
    res = orchestrator.handle(_entry(), ctx)

    assert res.outcome is Outcome.FAILED
    assert res.state is PositionState.ABORTED
    assert res.reason == "Leverage is too high for this symbol"
    assert _order_calls(connector) == []
    assert _trigger_calls(connector) == []

    (rec,) = ledger.records
    assert rec.success is False
    assert rec.error == res.reason


def test_leverage_precedence_account_over_strategy(orchestrator, connector, ctx):
    ctx = replace(ctx, account_leverage=20, strategy_leverage=5)
    res = orchestrator.handle(_entry(), ctx)

    assert ("set_leverage", "BTCUSDT", 20) in connector.calls
    assert res.step("leverage").data["source"] == "account"


def test_no_payment_subscription_blocks_entry(orchestrator, connector, ctx):
    ctx = replace(ctx, has_active_payment=False)
    res = orchestrator.handle(_entry(), ctx)

    assert res.outcome is Outcome.FAILED
    assert res.reason == "payment_subscription_inactive"
    assert connector.calls == []


def test_admin_bypasses_payment_check(orchestrator, connector, ctx):
    ctx = replace(ctx, has_active_payment=False, role="admin")
    res = orchestrator.handle(_entry(), ctx)

    assert res.success is True


def test_excluded_symbol_blocks_entry(orchestrator, connector, ctx):
    ctx = replace(ctx, excluded_symbols=("BTCUSDT.P",))
    res = orchestrator.handle(_entry(), ctx)

    assert res.reason == "symbol_excluded"
    assert connector.calls == []


def test_missing_credentials_blocks_entry(orchestrator, connector, ctx):
    res = orchestrator.handle(_entry(), replace(ctx, credentials=None))

    assert res.reason == "missing_credentials"
    assert connector.calls == []


# ---------------- degraded collaborators ----------------


def test_contract_spec_failure_uses_fallback_defaults(orchestrator, connector, ctx):
    connector.fail["get_contract_spec"] = ExchangeError("Bitget API Error: down")
    res = orchestrator.handle(_entry(), ctx)

    assert res.success is True
    assert res.size == Decimal("0.01")
    assert res.step("contract").data["fallback"] is True


def test_missing_entry_price_uses_ticker(orchestrator, connector, ctx):
    res = orchestrator.handle(_entry(entry_price=None), ctx)

    assert ("get_last_price", "BTCUSDT") in connector.calls
    assert res.size == Decimal("0.0002")


def test_ledger_and_notifier_failures_do_not_change_outcome(orchestrator, ctx, ledger, notifier):
    ledger.fail_writes = True
    notifier.fail = True
    res = orchestrator.handle(_entry(), ctx)

    assert res.outcome is Outcome.EXECUTED
    assert res.state is PositionState.OPEN_PROTECTED
    assert ledger.records == []
