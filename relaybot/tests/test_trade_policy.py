from dataclasses import replace

import pytest

from relaybot.exchange.credentials import ExchangeCredentials
from relaybot.execution.models import ExecutionContext
from relaybot.policy.eligibility import EligibilityGate
from relaybot.symbols.leverage import resolve_leverage


@pytest.mark.parametrize(
    "account,strategy,default,expected",
    [
        (20, 5, 10, (20, "account")),
        (None, 5, 10, (5, "strategy")),
        (None, None, 10, (10, "default")),
        (0, 0, 10, (10, "default")),
        ("15", None, 10, (15, "account")),
        ("bad", 3, 10, (3, "strategy")),
        (None, None, 0, (1, "default")),
    ],
)
def test_resolve_leverage_precedence(account, strategy, default, expected):
    assert resolve_leverage(account, strategy, default) == expected


@pytest.fixture
def gate():
    return EligibilityGate(privileged_roles=["admin", "owner"])


@pytest.fixture
def base_ctx():
    return ExecutionContext(
        user_id=1,
        strategy_id=7,
        credentials=ExchangeCredentials("key", "secret", "pass"),
        has_active_payment=True,
    )


def test_active_account_may_open(gate, base_ctx):
    decision = gate.can_open(base_ctx, "BTCUSDT")
    assert decision.allowed is True
    assert decision.reason == "ok"


@pytest.mark.parametrize(
    "changes,reason",
    [
        ({"credentials": None}, "missing_credentials"),
        ({"credentials": ExchangeCredentials("", "")}, "missing_credentials"),
        ({"has_active_payment": False}, "payment_subscription_inactive"),
        ({"strategy_subscription_enabled": False}, "strategy_subscription_disabled"),
        ({"allowed_symbols": ("ETHUSDT",)}, "symbol_not_allowed"),
        ({"excluded_symbols": ("BTCUSDT.P",)}, "symbol_excluded"),
    ],
)
def test_blocked_accounts(gate, base_ctx, changes, reason):
    decision = gate.can_open(replace(base_ctx, **changes), "BTCUSDT")
    assert decision.allowed is False
    assert decision.reason == reason


@pytest.mark.parametrize("role", ["admin", "Owner", " ADMIN "])
def test_privileged_roles_bypass_payment(gate, base_ctx, role):
    ctx = replace(base_ctx, has_active_payment=False, role=role)
    assert gate.can_open(ctx, "BTCUSDT").allowed is True


def test_privileged_roles_still_need_credentials(gate, base_ctx):
    ctx = replace(base_ctx, role="admin", credentials=None)
    assert gate.can_open(ctx, "BTCUSDT").reason == "missing_credentials"


def test_allowed_symbols_are_normalized(gate, base_ctx):
    ctx = replace(base_ctx, allowed_symbols=("btcusdt.p",))
    assert gate.can_open(ctx, "BTCUSDT.P").allowed is True
