# relaybot/execution/breakeven.py
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Callable, List, Optional

from relaybot.exchange.base import ExchangeConnector, ExchangeError, readable_reason
from relaybot.exchange.filters import quantize_price
from relaybot.execution.idempotency import ClientOidFactory, find_matching_position
from relaybot.execution.models import (
    ContractSpec,
    OrderRequest,
    Position,
    Side,
    StepOutcome,
    TriggerKind,
    TriggerRequest,
    failed,
    skipped,
    success,
)
from relaybot.symbols.sizing import split_half

log = logging.getLogger("relaybot.breakeven")


class BreakevenMigration:
    """
    Best-effort multi-step stop-loss migration for one open position:

      find_position -> cancel_stop_loss -> close_partial -> new_stop_loss -> take_profit

    Every step reports its own outcome; a failed close does not stop the
    stop-loss migration. The new SL is never placed while an old SL is still
    pending for the same (symbol, side).
    """

    def __init__(
        self,
        connector: ExchangeConnector,
        *,
        symbol: str,
        side: Side,
        spec: ContractSpec,
        oids: ClientOidFactory,
        entry_price: Optional[Decimal],
        take_profit: Optional[Decimal] = None,
        product_type: Optional[str] = None,
        margin_coin: Optional[str] = None,
        margin_mode: Optional[str] = None,
        settle_seconds: float = 1.0,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.connector = connector
        self.symbol = symbol
        self.side = side
        self.spec = spec
        self.oids = oids
        self.entry_price = entry_price
        self.take_profit = take_profit
        self.product_type = product_type
        self.margin_coin = margin_coin
        self.margin_mode = margin_mode
        self.settle_seconds = float(settle_seconds)
        self._sleep = sleep or (lambda _s: None)
        self.steps: List[StepOutcome] = []

    # ---------------- helpers ----------------

    def _position(self) -> Optional[Position]:
        positions = self.connector.get_open_positions(self.symbol, self.product_type)
        return find_matching_position(positions, self.symbol, self.side)

    def _pending_stop_losses(self) -> list:
        pending = self.connector.get_pending_trigger_orders(
            self.symbol, TriggerKind.STOP_LOSS, self.product_type
        )
        return [o for o in pending if o.side in (None, self.side)]

    def _cleanup_triggers(self) -> None:
        try:
            n = self.connector.cancel_trigger_orders(
                self.symbol,
                side=self.side,
                product_type=self.product_type,
                margin_coin=self.margin_coin,
            )
            self.steps.append(success("cleanup_triggers", cancelled=n))
        except ExchangeError as e:
            self.steps.append(failed("cleanup_triggers", readable_reason(e)))

    # ---------------- steps ----------------

    def run(self) -> List[StepOutcome]:
        try:
            position = self._position()
        except ExchangeError as e:
            self.steps.append(failed("find_position", readable_reason(e)))
            return self.steps

        if position is None:
            # closed by a trigger (or by hand) since the entry
            self.steps.append(skipped("find_position", "no_open_position"))
            self._cleanup_triggers()
            return self.steps
        self.steps.append(
            success("find_position", size=str(position.size), position_id=position.position_id)
        )

        sl_cleared = self._cancel_stop_losses()

        remaining = self._close_half(position)
        if remaining is None:
            # position is gone, triggers already cleaned up
            return self.steps

        self._place_new_stop_loss(remaining, sl_cleared)
        self._ensure_take_profit(remaining)
        return self.steps

    def _cancel_stop_losses(self) -> bool:
        """Cancel, confirm absent, retry the cancel once. True when no SL remains."""
        cancelled = 0
        remaining: list = []
        for attempt in range(2):
            try:
                cancelled += self.connector.cancel_trigger_orders(
                    self.symbol,
                    kind=TriggerKind.STOP_LOSS,
                    side=self.side,
                    product_type=self.product_type,
                    margin_coin=self.margin_coin,
                )
            except ExchangeError as e:
                log.warning("%s cancel SL attempt %d failed: %s", self.symbol, attempt + 1, e)
            try:
                remaining = self._pending_stop_losses()
            except ExchangeError as e:
                log.warning("%s pending SL query failed: %s", self.symbol, e)
                remaining = [None]
            if not remaining:
                self.steps.append(
                    success("cancel_stop_loss", cancelled=cancelled, attempts=attempt + 1)
                )
                return True

        self.steps.append(
            failed(
                "cancel_stop_loss",
                "stop_loss_still_active",
                cancelled=cancelled,
                attempts=2,
            )
        )
        return False

    def _close_half(self, position: Position) -> Optional[Decimal]:
        """Remaining size after the partial close; None when the position is gone."""
        halves = split_half(position.size, self.spec)
        if halves is None:
            self.steps.append(
                skipped("close_partial", "half_below_min_size", size=str(position.size))
            )
            return position.size

        half, _rest = halves
        req = OrderRequest(
            symbol=self.symbol,
            side=self.side,
            size=half,
            client_oid=self.oids.make("close", "half"),
            reduce_only=True,
            product_type=self.product_type,
            margin_mode=self.margin_mode,
            margin_coin=self.margin_coin,
        )
        try:
            ack = self.connector.place_order(req)
        except ExchangeError as e:
            if e.is_no_position:
                return self._after_no_position(position)
            if e.is_duplicate:
                # a previous delivery already closed this half
                self.steps.append(success("close_partial", size=str(half), duplicate=True))
                return self._refresh_size(position.size - half)
            self.steps.append(failed("close_partial", readable_reason(e), size=str(half)))
            return position.size

        self.steps.append(success("close_partial", size=str(half), order_id=ack.order_id))
        return self._refresh_size(position.size - half)

    def _after_no_position(self, position: Position) -> Optional[Decimal]:
        try:
            live = self._position()
        except ExchangeError:
            live = position
        if live is None:
            self.steps.append(success("close_partial", already_closed=True))
            self.steps.append(success("position_closed"))
            self._cleanup_triggers()
            return None
        self.steps.append(skipped("close_partial", "no_position_to_close", size=str(live.size)))
        return live.size

    def _refresh_size(self, expected: Decimal) -> Optional[Decimal]:
        """Exchange-reported size after the close settles."""
        self._sleep(self.settle_seconds)
        try:
            live = self._position()
        except ExchangeError as e:
            log.warning("%s position refresh failed, using %s: %s", self.symbol, expected, e)
            return expected
        if live is None:
            self.steps.append(success("position_closed"))
            self._cleanup_triggers()
            return None
        return live.size

    def _place_new_stop_loss(self, size: Decimal, sl_cleared: bool) -> None:
        if not sl_cleared:
            self.steps.append(failed("new_stop_loss", "previous_stop_loss_still_active"))
            return
        if self.entry_price is None or self.entry_price <= 0:
            self.steps.append(failed("new_stop_loss", "missing_entry_price"))
            return

        price = quantize_price(self.entry_price, self.spec.price_place)
        oid = self.oids.make("be", "sl")
        req = TriggerRequest(
            kind=TriggerKind.STOP_LOSS,
            symbol=self.symbol,
            side=self.side,
            trigger_price=price,
            size=size,
            client_oid=oid,
            product_type=self.product_type,
            margin_coin=self.margin_coin,
        )
        try:
            ack = self.connector.place_trigger_order(req)
        except ExchangeError as e:
            if e.is_duplicate:
                self.steps.append(
                    success("new_stop_loss", price=str(price), size=str(size), duplicate=True)
                )
                return
            self.steps.append(failed("new_stop_loss", readable_reason(e), price=str(price)))
            return
        self.steps.append(
            success(
                "new_stop_loss",
                price=str(price),
                size=str(size),
                order_id=ack.order_id,
                client_oid=oid,
            )
        )

    def _ensure_take_profit(self, size: Decimal) -> None:
        try:
            pending = self.connector.get_pending_trigger_orders(
                self.symbol, TriggerKind.TAKE_PROFIT, self.product_type
            )
        except ExchangeError as e:
            self.steps.append(failed("take_profit", readable_reason(e)))
            return
        if [o for o in pending if o.side in (None, self.side)]:
            self.steps.append(skipped("take_profit", "take_profit_present"))
            return
        if self.take_profit is None:
            self.steps.append(skipped("take_profit", "no_take_profit_price"))
            return

        price = quantize_price(self.take_profit, self.spec.price_place)
        req = TriggerRequest(
            kind=TriggerKind.TAKE_PROFIT,
            symbol=self.symbol,
            side=self.side,
            trigger_price=price,
            size=size,
            client_oid=self.oids.make("be", "tp"),
            product_type=self.product_type,
            margin_coin=self.margin_coin,
        )
        try:
            ack = self.connector.place_trigger_order(req)
        except ExchangeError as e:
            if e.is_duplicate:
                self.steps.append(success("take_profit", price=str(price), duplicate=True))
                return
            self.steps.append(failed("take_profit", readable_reason(e), price=str(price)))
            return
        self.steps.append(
            success("take_profit", price=str(price), size=str(size), order_id=ack.order_id)
        )
