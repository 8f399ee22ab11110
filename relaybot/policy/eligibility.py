from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from relaybot.execution.models import ExecutionContext, normalize_symbol


@dataclass
class EligibilityDecision:
    allowed: bool
    reason: str


class EligibilityGate:
    """
    Single source of truth for whether an account may open a trade.

    Only ENTRY goes through this gate. BREAKEVEN must still be allowed for a
    position that is already open, even if the subscription lapsed since.
    """

    def __init__(self, *, privileged_roles: Iterable[str] = ("admin",)):
        self.privileged_roles = {r.strip().lower() for r in privileged_roles}

    def is_privileged(self, ctx: ExecutionContext) -> bool:
        return (ctx.role or "").strip().lower() in self.privileged_roles

    def can_open(self, ctx: ExecutionContext, symbol: str) -> EligibilityDecision:
        if not ctx.credentials:
            return EligibilityDecision(False, "missing_credentials")

        if not ctx.has_active_payment and not self.is_privileged(ctx):
            return EligibilityDecision(False, "payment_subscription_inactive")

        if not ctx.strategy_subscription_enabled:
            return EligibilityDecision(False, "strategy_subscription_disabled")

        sym = normalize_symbol(symbol)
        allowed = {normalize_symbol(s) for s in ctx.allowed_symbols if s}
        if allowed and sym not in allowed:
            return EligibilityDecision(False, "symbol_not_allowed")

        excluded = {normalize_symbol(s) for s in ctx.excluded_symbols if s}
        if sym in excluded:
            return EligibilityDecision(False, "symbol_excluded")

        return EligibilityDecision(True, "ok")
