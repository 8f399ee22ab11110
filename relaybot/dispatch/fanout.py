from __future__ import annotations

import contextvars
import dataclasses
import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional

from relaybot.core.config import Settings, settings as default_settings
from relaybot.exchange.credentials import CredentialStore
from relaybot.execution.models import (
    Alert,
    ExecResult,
    ExecutionContext,
    Outcome,
    PositionState,
)
from relaybot.execution.orchestrator import TradeOrchestrator
from relaybot.ops.context import (
    clear_account,
    clear_dispatch_id,
    set_account,
    set_dispatch_id,
)

log = logging.getLogger("relaybot.dispatch")


@dataclass
class AccountResult:
    user_id: int
    strategy_id: int
    result: ExecResult


@dataclass
class DispatchSummary:
    dispatch_id: str
    alert: Alert
    results: List[AccountResult] = field(default_factory=list)

    def count(self, outcome: Outcome) -> int:
        return sum(1 for r in self.results if r.result.outcome is outcome)

    @property
    def executed(self) -> int:
        return self.count(Outcome.EXECUTED)

    @property
    def discarded(self) -> int:
        return self.count(Outcome.DISCARDED)

    @property
    def failed(self) -> int:
        return self.count(Outcome.FAILED)


class AlertDispatcher:
    """
    Fans one alert out to every subscribed account.

    Accounts share no mutable state. Default is sequential with a fixed
    inter-account delay (burst-rate friendly); DISPATCH_MAX_WORKERS > 1 runs
    accounts on a bounded thread pool instead. One account's crash never
    affects another.
    """

    def __init__(
        self,
        orchestrator: TradeOrchestrator,
        *,
        credential_store: Optional[CredentialStore] = None,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.orchestrator = orchestrator
        self.credential_store = credential_store
        self.settings = settings or default_settings
        self._sleep = sleep

    def dispatch(
        self, alert: Alert, contexts: Iterable[ExecutionContext]
    ) -> DispatchSummary:
        dispatch_id = uuid.uuid4().hex[:12]
        contexts = list(contexts)
        summary = DispatchSummary(dispatch_id=dispatch_id, alert=alert)

        set_dispatch_id(dispatch_id)
        try:
            log.info(
                "dispatch %s: %s %s %s to %d account(s)",
                dispatch_id, alert.alert_type, alert.symbol, alert.side.value, len(contexts),
            )
            workers = max(1, int(self.settings.DISPATCH_MAX_WORKERS))
            if workers == 1 or len(contexts) <= 1:
                for i, ctx in enumerate(contexts):
                    if i > 0 and self.settings.DISPATCH_ACCOUNT_DELAY_SECONDS > 0:
                        self._sleep(self.settings.DISPATCH_ACCOUNT_DELAY_SECONDS)
                    summary.results.append(self._run_one(alert, ctx))
            else:
                with ThreadPoolExecutor(max_workers=workers) as pool:
                    # each task runs in a copy of this context so the dispatch id follows it
                    futures = [
                        pool.submit(contextvars.copy_context().run, self._run_one, alert, ctx)
                        for ctx in contexts
                    ]
                    summary.results.extend(f.result() for f in futures)

            log.info(
                "dispatch %s done: executed=%d discarded=%d failed=%d",
                dispatch_id, summary.executed, summary.discarded, summary.failed,
            )
            return summary
        finally:
            clear_dispatch_id()

    def _resolve(self, ctx: ExecutionContext) -> ExecutionContext:
        if ctx.credentials or self.credential_store is None:
            return ctx
        creds = self.credential_store.get_credentials(ctx.user_id, ctx.strategy_id)
        return dataclasses.replace(ctx, credentials=creds)

    def _run_one(self, alert: Alert, ctx: ExecutionContext) -> AccountResult:
        set_account(ctx.user_id, ctx.strategy_id)
        try:
            result = self.orchestrator.handle(alert, self._resolve(ctx))
        except Exception as e:
            log.exception("account user=%s strategy=%s crashed", ctx.user_id, ctx.strategy_id)
            result = ExecResult(
                action=alert.category.value,
                outcome=Outcome.FAILED,
                state=PositionState.ABORTED,
                reason=f"{type(e).__name__}: {e}",
            )
        finally:
            clear_account()
        return AccountResult(ctx.user_id, ctx.strategy_id, result)
