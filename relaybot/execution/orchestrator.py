# relaybot/execution/orchestrator.py
from __future__ import annotations

import logging
import time
from decimal import Decimal
from typing import Callable, List, Optional

from relaybot.core.config import Settings, settings as default_settings
from relaybot.exchange.base import ExchangeConnector, ExchangeError, readable_reason
from relaybot.exchange.registry import build_connector
from relaybot.execution.breakeven import BreakevenMigration
from relaybot.execution.idempotency import ClientOidFactory, find_matching_position
from relaybot.execution.models import (
    Alert,
    AlertCategory,
    ContractSpec,
    ExecResult,
    ExecutionContext,
    OrderRequest,
    Outcome,
    Position,
    PositionIntent,
    PositionState,
    Side,
    StepOutcome,
    TriggerKind,
    failed,
    skipped,
    success,
)
from relaybot.execution.protection import (
    STOP_LOSS,
    ProtectionLeg,
    place_protection,
    plan_protection,
)
from relaybot.execution.state import (
    derive_breakeven_state,
    derive_entry_state,
    first_failure,
    protection_notice,
)
from relaybot.persistence.audit import AuditSink, NullAudit
from relaybot.persistence.notifications import Notification, NotificationSink, safe_emit
from relaybot.persistence.trade_ledger import TradeLedger, TradeRecord
from relaybot.policy.eligibility import EligibilityGate
from relaybot.symbols.leverage import resolve_leverage
from relaybot.symbols.sizing import compute_open_size, fallback_contract_spec

log = logging.getLogger("relaybot.orchestrator")

ConnectorFactory = Callable[[ExecutionContext], ExchangeConnector]


class TradeOrchestrator:
    """
    Alert-driven state machine for one (account, strategy) at a time.

    handle() never raises for business failures: the caller always gets one
    ExecResult. Ledger, notification and audit failures are logged and
    swallowed.
    """

    def __init__(
        self,
        *,
        ledger: TradeLedger,
        notifier: Optional[NotificationSink] = None,
        audit: Optional[AuditSink] = None,
        connector_factory: Optional[ConnectorFactory] = None,
        gate: Optional[EligibilityGate] = None,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings or default_settings
        self.ledger = ledger
        self.notifier = notifier
        self.audit = audit or NullAudit()
        self.connector_factory = connector_factory or (
            lambda ctx: build_connector(ctx, self.audit, self.settings)
        )
        self.gate = gate or EligibilityGate(privileged_roles=self.settings.PRIVILEGED_ROLES)
        self._sleep = sleep

    # ------------------------------------------------------------------
    # entry point
    # ------------------------------------------------------------------
    def handle(self, alert: Alert, ctx: ExecutionContext) -> ExecResult:
        try:
            if alert.category is AlertCategory.ENTRY:
                result = self._entry(alert, ctx)
            elif alert.category is AlertCategory.BREAKEVEN:
                result = self._breakeven(alert, ctx)
            else:
                result = self._info(alert, ctx)
        except Exception as e:
            log.exception(
                "unexpected failure user=%s strategy=%s %s %s",
                ctx.user_id, ctx.strategy_id, alert.alert_type, alert.symbol,
            )
            result = ExecResult(
                action=alert.category.value,
                outcome=Outcome.FAILED,
                state=PositionState.ABORTED,
                reason=f"{type(e).__name__}: {e}",
            )

        self._event(alert, ctx, result)
        return result

    # ------------------------------------------------------------------
    # ENTRY
    # ------------------------------------------------------------------
    def _entry(self, alert: Alert, ctx: ExecutionContext) -> ExecResult:
        cfg = self.settings
        steps: List[StepOutcome] = []
        product_type = alert.product_type or cfg.DEFAULT_PRODUCT_TYPE
        margin_coin = alert.margin_coin or cfg.DEFAULT_MARGIN_COIN
        margin_mode = alert.margin_mode or cfg.DEFAULT_MARGIN_MODE
        intent = PositionIntent(
            symbol=alert.symbol,
            side=alert.side,
            entry_price=alert.entry_price,
            stop_loss=alert.stop_loss,
            take_profit=alert.take_profit,
            breakeven=alert.breakeven,
        )

        # ---- eligibility (fatal) ----
        decision = self.gate.can_open(ctx, alert.symbol)
        if not decision.allowed:
            steps.append(failed("eligibility", decision.reason))
            return self._finish_entry(alert, ctx, intent, steps, decision.reason)
        steps.append(success("eligibility"))

        try:
            connector = self.connector_factory(ctx)
        except ExchangeError as e:
            steps.append(failed("connector", readable_reason(e)))
            return self._finish_entry(alert, ctx, intent, steps, readable_reason(e))

        spec = self._contract_spec(connector, alert.symbol, product_type, steps)
        price = alert.entry_price or self._last_price(connector, alert.symbol, product_type)

        # ---- leverage (fatal) ----
        lev, lev_source = resolve_leverage(
            ctx.account_leverage, ctx.strategy_leverage, cfg.DEFAULT_LEVERAGE
        )
        intent.leverage = lev
        try:
            connector.set_leverage(
                alert.symbol, lev, side=alert.side,
                product_type=product_type, margin_coin=margin_coin,
            )
        except ExchangeError as e:
            steps.append(failed("leverage", readable_reason(e), leverage=lev, source=lev_source))
            return self._finish_entry(alert, ctx, intent, steps, readable_reason(e))
        steps.append(success("leverage", leverage=lev, source=lev_source))
        intent.state = PositionState.LEVERAGE_SET
        self._sleep(cfg.LEVERAGE_SETTLE_SECONDS)

        # ---- sizing ----
        sized = compute_open_size(
            spec=spec,
            price=price,
            position_size_usdt=ctx.position_size_usdt,
            alert_size=alert.size,
            min_notional_margin=cfg.MIN_NOTIONAL_MARGIN,
            user_size_margin=cfg.USER_SIZE_MARGIN,
            user_size_threshold=cfg.USER_SIZE_MARGIN_THRESHOLD,
        )
        intent.size = sized.size
        steps.append(success("sizing", size=str(sized.size), source=sized.source, reason=sized.reason))

        oids = ClientOidFactory.for_alert(
            mode=cfg.CLIENT_OID_MODE,
            symbol=alert.symbol,
            user_id=ctx.user_id,
            strategy_id=ctx.strategy_id,
            trade_id=alert.trade_id,
            category=AlertCategory.ENTRY.value,
            max_len=connector.client_oid_max_len,
        )

        # ---- reconcile before opening (fatal when the exchange can't tell us) ----
        try:
            existing = find_matching_position(
                connector.get_open_positions(alert.symbol, product_type),
                alert.symbol,
                alert.side,
            )
        except ExchangeError as e:
            steps.append(failed("reconcile", readable_reason(e)))
            return self._finish_entry(alert, ctx, intent, steps, readable_reason(e))
        steps.append(success("reconcile", existing=existing is not None))

        adopted = existing is not None
        if existing is not None:
            self._adopt(intent, existing)
            steps.append(skipped("open", "position_exists", size=str(existing.size)))
        else:
            opened = self._open(connector, alert, intent, oids, product_type, margin_mode, margin_coin)
            steps.append(opened)
            if not opened.ok:
                return self._finish_entry(alert, ctx, intent, steps, opened.reason)
            adopted = bool(opened.data.get("adopted"))

        # ---- protection ----
        steps.extend(
            self._protect(connector, alert, ctx, intent, spec, oids, product_type, margin_coin, adopted)
        )
        return self._finish_entry(alert, ctx, intent, steps, None)

    def _contract_spec(
        self,
        connector: ExchangeConnector,
        symbol: str,
        product_type: str,
        steps: List[StepOutcome],
    ) -> ContractSpec:
        try:
            spec = connector.get_contract_spec(symbol, product_type)
            steps.append(success("contract"))
            return spec
        except ExchangeError as e:
            log.warning("%s contract spec unavailable, using defaults: %s", symbol, e)
            steps.append(success("contract", fallback=True))
            return fallback_contract_spec(symbol, product_type)

    def _last_price(
        self, connector: ExchangeConnector, symbol: str, product_type: str
    ) -> Optional[Decimal]:
        try:
            return connector.get_last_price(symbol, product_type)
        except ExchangeError as e:
            log.warning("%s ticker unavailable: %s", symbol, e)
            return None

    @staticmethod
    def _adopt(intent: PositionIntent, position: Position) -> None:
        intent.size = position.size
        if position.entry_price:
            intent.entry_price = position.entry_price
        intent.state = PositionState.OPEN_UNPROTECTED

    def _open(
        self,
        connector: ExchangeConnector,
        alert: Alert,
        intent: PositionIntent,
        oids: ClientOidFactory,
        product_type: str,
        margin_mode: str,
        margin_coin: str,
    ) -> StepOutcome:
        intent.state = PositionState.OPENING
        intent.client_oid = oids.make("open", alert.side.hold_side)
        req = OrderRequest(
            symbol=alert.symbol,
            side=alert.side,
            size=intent.size,
            client_oid=intent.client_oid,
            order_type=alert.order_type,
            price=alert.entry_price if alert.order_type == "limit" else None,
            product_type=product_type,
            margin_mode=margin_mode,
            margin_coin=margin_coin,
        )
        try:
            ack = connector.place_order(req)
        except ExchangeError as e:
            if not e.is_duplicate:
                return failed("open", readable_reason(e), client_oid=intent.client_oid)
            # possible prior success: look before giving up, never re-send
            try:
                match = find_matching_position(
                    connector.get_open_positions(alert.symbol, product_type),
                    alert.symbol,
                    alert.side,
                )
            except ExchangeError as qe:
                return failed("open", readable_reason(qe), duplicate=True)
            if match is None:
                return failed("open", readable_reason(e), duplicate=True)
            self._adopt(intent, match)
            return success("open", duplicate=True, adopted=True, size=str(match.size))

        intent.order_id = ack.order_id
        intent.state = PositionState.OPEN_UNPROTECTED
        self._sleep(self.settings.POSITION_SETTLE_SECONDS)

        # sizes after the open come from the exchange
        try:
            live = find_matching_position(
                connector.get_open_positions(alert.symbol, product_type),
                alert.symbol,
                alert.side,
            )
        except ExchangeError as e:
            log.warning("%s post-open position query failed: %s", alert.symbol, e)
            live = None
        if live is not None:
            intent.size = live.size
            if live.entry_price:
                intent.entry_price = live.entry_price
        return success(
            "open", order_id=ack.order_id, client_oid=ack.client_oid, size=str(intent.size)
        )

    def _protect(
        self,
        connector: ExchangeConnector,
        alert: Alert,
        ctx: ExecutionContext,
        intent: PositionIntent,
        spec: ContractSpec,
        oids: ClientOidFactory,
        product_type: str,
        margin_coin: str,
        adopted: bool,
    ) -> List[StepOutcome]:
        # validate against the signal's entry; the fill may sit on the other side of a tight SL
        plan = plan_protection(
            side=alert.side,
            size=intent.size,
            spec=spec,
            entry_price=alert.entry_price or intent.entry_price,
            stop_loss=alert.stop_loss,
            take_profit=alert.take_profit,
            breakeven=alert.breakeven,
            use_partial_tp=ctx.use_partial_tp,
        )
        out: List[StepOutcome] = list(plan.rejected)
        legs = plan.legs
        if plan.note:
            log.info("%s protection unsplit: %s", alert.symbol, plan.note)

        if adopted:
            legs, present = self._drop_existing_legs(connector, alert, legs, product_type)
            out.extend(present)

        out.extend(
            place_protection(
                connector,
                legs,
                symbol=alert.symbol,
                side=alert.side,
                oids=oids,
                product_type=product_type,
                margin_coin=margin_coin,
            )
        )
        return out

    def _drop_existing_legs(
        self,
        connector: ExchangeConnector,
        alert: Alert,
        legs: List[ProtectionLeg],
        product_type: str,
    ):
        """
        An adopted position may already carry its triggers from the first
        delivery. Any pending SL covers the SL leg; each pending TP covers at
        most one TP leg, matched on trigger price.
        """
        try:
            pending = [
                o for o in connector.get_pending_trigger_orders(alert.symbol, None, product_type)
                if o.side in (None, alert.side)
            ]
        except ExchangeError as e:
            log.warning("%s pending trigger query failed, placing all legs: %s", alert.symbol, e)
            return legs, []

        has_sl = any(o.kind is TriggerKind.STOP_LOSS for o in pending)
        open_tps = [o for o in pending if o.kind is TriggerKind.TAKE_PROFIT]
        keep: List[ProtectionLeg] = []
        present: List[StepOutcome] = []
        for leg in legs:
            if leg.name == STOP_LOSS:
                already = has_sl
            else:
                match = next((o for o in open_tps if o.trigger_price == leg.price), None)
                if match is None:
                    match = next((o for o in open_tps if o.trigger_price is None), None)
                already = match is not None
                if match is not None:
                    open_tps.remove(match)
            if already:
                present.append(success(leg.name, existing=True))
            else:
                keep.append(leg)
        return keep, present

    def _finish_entry(
        self,
        alert: Alert,
        ctx: ExecutionContext,
        intent: PositionIntent,
        steps: List[StepOutcome],
        reason: Optional[str],
    ) -> ExecResult:
        state = derive_entry_state(steps)
        intent.state = state
        opened = state in (PositionState.OPEN_PROTECTED, PositionState.OPEN_UNPROTECTED)

        if opened:
            ntype, severity = protection_notice(steps)
            problem = first_failure(steps)
            result = ExecResult(
                action="ENTRY",
                outcome=Outcome.EXECUTED,
                state=state,
                order_id=intent.order_id,
                size=intent.size,
                reason=problem.reason if problem else None,
                steps=steps,
                details=self._details(alert, intent),
            )
            self._notify_entry(alert, ctx, intent, ntype, severity, steps)
        else:
            fail = first_failure(steps)
            result = ExecResult(
                action="ENTRY",
                outcome=Outcome.FAILED,
                state=state,
                size=intent.size or None,
                reason=reason or (fail.reason if fail else "entry_failed"),
                steps=steps,
                details=self._details(alert, intent),
            )

        self._record(
            TradeRecord(
                user_id=ctx.user_id,
                strategy_id=ctx.strategy_id,
                trade_id=alert.trade_id,
                alert_type=alert.alert_type,
                symbol=alert.symbol,
                side=alert.side.value,
                success=result.success,
                state=state.value,
                order_id=intent.order_id,
                size=intent.size or None,
                entry_price=intent.entry_price,
                stop_loss=alert.stop_loss,
                take_profit=alert.take_profit,
                breakeven=alert.breakeven,
                error=None if result.success else result.reason,
            )
        )
        return result

    def _notify_entry(
        self,
        alert: Alert,
        ctx: ExecutionContext,
        intent: PositionIntent,
        ntype: str,
        severity: str,
        steps: List[StepOutcome],
    ) -> None:
        if ntype == "trade_executed":
            title = f"{alert.symbol} {alert.side.value} opened"
            message = f"Position of {intent.size} opened with stop-loss and take-profit."
        else:
            failed_legs = [s.name for s in steps if s.name.startswith(("stop_loss", "take_profit")) and not s.ok]
            title = f"{alert.symbol} {alert.side.value} protection incomplete"
            message = (
                f"Position of {intent.size} is open but these protective orders "
                f"were not placed: {', '.join(failed_legs)}."
            )
        safe_emit(
            self.notifier,
            Notification(
                user_id=ctx.user_id,
                type=ntype,
                severity=severity,
                title=title,
                message=message,
                metadata={
                    "strategy_id": ctx.strategy_id,
                    "trade_id": alert.trade_id,
                    "symbol": alert.symbol,
                    "order_id": intent.order_id,
                    "state": intent.state.value,
                },
            ),
        )

    # ------------------------------------------------------------------
    # BREAKEVEN
    # ------------------------------------------------------------------
    def _breakeven(self, alert: Alert, ctx: ExecutionContext) -> ExecResult:
        cfg = self.settings
        entry = self._find_entry(alert, ctx)
        if isinstance(entry, ExecResult):
            return entry
        repeat = self._applied_breakeven(alert, ctx, entry)
        if repeat is not None:
            return repeat

        if not ctx.credentials:
            return ExecResult(
                action="BREAKEVEN",
                outcome=Outcome.FAILED,
                state=PositionState.ABORTED,
                reason="missing_credentials",
                steps=[failed("eligibility", "missing_credentials")],
            )

        product_type = alert.product_type or cfg.DEFAULT_PRODUCT_TYPE
        steps: List[StepOutcome] = []
        try:
            connector = self.connector_factory(ctx)
        except ExchangeError as e:
            return ExecResult(
                action="BREAKEVEN",
                outcome=Outcome.FAILED,
                state=PositionState.ABORTED,
                reason=readable_reason(e),
                steps=[failed("connector", readable_reason(e))],
            )
        spec = self._contract_spec(connector, alert.symbol, product_type, steps)

        side = Side.parse(entry.side) if entry.side else alert.side
        migration = BreakevenMigration(
            connector,
            symbol=alert.symbol,
            side=side,
            spec=spec,
            oids=ClientOidFactory.for_alert(
                mode=cfg.CLIENT_OID_MODE,
                symbol=alert.symbol,
                user_id=ctx.user_id,
                strategy_id=ctx.strategy_id,
                trade_id=alert.trade_id,
                category=AlertCategory.BREAKEVEN.value,
                max_len=connector.client_oid_max_len,
            ),
            entry_price=entry.entry_price or alert.entry_price,
            take_profit=alert.take_profit or entry.take_profit,
            product_type=product_type,
            margin_coin=alert.margin_coin or cfg.DEFAULT_MARGIN_COIN,
            margin_mode=alert.margin_mode or cfg.DEFAULT_MARGIN_MODE,
            settle_seconds=cfg.POSITION_SETTLE_SECONDS,
            sleep=self._sleep,
        )
        steps.extend(migration.run())
        state = derive_breakeven_state(steps)

        done = state in (PositionState.BREAKEVEN_DONE, PositionState.CLOSED)
        problem = first_failure(steps)
        new_sl = next((s for s in steps if s.name == "new_stop_loss"), None)
        result = ExecResult(
            action="BREAKEVEN",
            outcome=Outcome.EXECUTED if done else Outcome.FAILED,
            state=state,
            order_id=new_sl.data.get("order_id") if new_sl else None,
            reason=problem.reason if problem else None,
            steps=steps,
            details={"symbol": alert.symbol, "side": side.value, "entry_id": entry.id},
        )

        if state is PositionState.BREAKEVEN_DONE:
            if entry.id is not None and new_sl is not None:
                self._safe("ledger update", self.ledger.update_stop_loss, entry.id, Decimal(new_sl.data["price"]))
            safe_emit(
                self.notifier,
                Notification(
                    user_id=ctx.user_id,
                    type="breakeven_applied",
                    title=f"{alert.symbol} stop-loss moved to entry",
                    message=f"Stop-loss moved to {new_sl.data.get('price')} for the remaining position.",
                    metadata={"strategy_id": ctx.strategy_id, "trade_id": alert.trade_id},
                ),
            )
        elif state is PositionState.BREAKEVEN_MIGRATING:
            safe_emit(
                self.notifier,
                Notification(
                    user_id=ctx.user_id,
                    type="breakeven_failed",
                    title=f"{alert.symbol} breakeven stop-loss not placed",
                    message=f"Breakeven migration incomplete: {result.reason}.",
                    metadata={"strategy_id": ctx.strategy_id, "trade_id": alert.trade_id},
                ),
            )

        self._record(
            TradeRecord(
                user_id=ctx.user_id,
                strategy_id=ctx.strategy_id,
                trade_id=alert.trade_id,
                alert_type=alert.alert_type,
                symbol=alert.symbol,
                side=side.value,
                success=result.success,
                state=state.value,
                order_id=result.order_id,
                entry_price=entry.entry_price,
                stop_loss=Decimal(new_sl.data["price"]) if new_sl and new_sl.ok and "price" in new_sl.data else None,
                breakeven=alert.breakeven,
                error=None if result.success else result.reason,
            )
        )
        return result

    # ------------------------------------------------------------------
    # INFO
    # ------------------------------------------------------------------
    def _info(self, alert: Alert, ctx: ExecutionContext) -> ExecResult:
        entry = self._find_entry(alert, ctx)
        if isinstance(entry, ExecResult):
            return entry

        try:
            state = PositionState(entry.state)
        except ValueError:
            state = PositionState.OPEN_UNPROTECTED
        self._record(
            TradeRecord(
                user_id=ctx.user_id,
                strategy_id=ctx.strategy_id,
                trade_id=alert.trade_id,
                alert_type=alert.alert_type,
                symbol=alert.symbol,
                side=alert.side.value,
                success=True,
                state=state.value,
                entry_price=alert.entry_price,
                stop_loss=alert.stop_loss,
                take_profit=alert.take_profit,
            )
        )
        return ExecResult(
            action="INFO",
            outcome=Outcome.EXECUTED,
            state=state,
            details={"symbol": alert.symbol, "alert_type": alert.alert_type, "entry_id": entry.id},
        )

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _find_entry(self, alert: Alert, ctx: ExecutionContext):
        """Prior ENTRY record, or the ExecResult to return when there is none."""
        action = alert.category.value
        try:
            entry = self.ledger.find_entry(
                ctx.user_id, ctx.strategy_id, alert.trade_id, alert.symbol
            )
        except Exception as e:
            log.exception("ledger lookup failed for %s", alert.symbol)
            return ExecResult(
                action=action,
                outcome=Outcome.FAILED,
                state=PositionState.ABORTED,
                reason=f"ledger_unavailable: {e}",
            )
        if entry is None:
            log.info(
                "discarding %s for user=%s strategy=%s trade_id=%s: no prior entry",
                alert.alert_type, ctx.user_id, ctx.strategy_id, alert.trade_id,
            )
            return ExecResult(
                action=action,
                outcome=Outcome.DISCARDED,
                state=PositionState.NO_POSITION,
                reason="no_prior_entry",
            )
        return entry

    def _applied_breakeven(self, alert: Alert, ctx: ExecutionContext, entry: TradeRecord):
        """
        A redelivered BREAKEVEN must not close another half. Returns the
        ExecResult to stop with, or None to go ahead.
        """
        if entry.id is None:
            return None
        try:
            done = self.ledger.find_breakeven(
                ctx.user_id, ctx.strategy_id, alert.trade_id, alert.symbol, entry.id
            )
        except Exception as e:
            log.exception("ledger lookup failed for %s", alert.symbol)
            return ExecResult(
                action="BREAKEVEN",
                outcome=Outcome.FAILED,
                state=PositionState.ABORTED,
                reason=f"ledger_unavailable: {e}",
            )
        if done is None:
            return None
        log.info(
            "discarding BREAKEVEN for user=%s strategy=%s trade_id=%s: already applied (record %s)",
            ctx.user_id, ctx.strategy_id, alert.trade_id, done.id,
        )
        return ExecResult(
            action="BREAKEVEN",
            outcome=Outcome.DISCARDED,
            state=PositionState.BREAKEVEN_DONE,
            reason="duplicate_breakeven",
            details={"symbol": alert.symbol, "entry_id": entry.id, "breakeven_id": done.id},
        )

    def _details(self, alert: Alert, intent: PositionIntent) -> dict:
        return {
            "symbol": alert.symbol,
            "side": alert.side.value,
            "trade_id": alert.trade_id,
            "leverage": intent.leverage,
            "entry_price": str(intent.entry_price) if intent.entry_price else None,
            "client_oid": intent.client_oid,
        }

    def _record(self, rec: TradeRecord) -> None:
        self._safe("ledger record", self.ledger.record, rec)

    def _safe(self, what: str, fn, *args) -> None:
        try:
            fn(*args)
        except Exception:
            log.exception("%s failed", what)

    def _event(self, alert: Alert, ctx: ExecutionContext, result: ExecResult) -> None:
        try:
            self.audit.event(
                "ALERT_" + result.outcome.value.upper(),
                user_id=ctx.user_id,
                strategy_id=ctx.strategy_id,
                symbol=alert.symbol,
                action=result.action,
                details={
                    "state": result.state.value,
                    "order_id": result.order_id,
                    "size": str(result.size) if result.size is not None else None,
                    "reason": result.reason,
                    "steps": [
                        {"name": s.name, "status": s.status.value, "reason": s.reason}
                        for s in result.steps
                    ],
                },
            )
        except Exception:
            log.exception("audit event failed")
