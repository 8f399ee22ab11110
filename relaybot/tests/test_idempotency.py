import re
from decimal import Decimal

import pytest

from relaybot.execution.idempotency import (
    ClientOidFactory,
    build_client_oid,
    correlated_base_id,
    find_matching_position,
    new_base_id,
    sanitize,
)
from relaybot.execution.models import Position, Side

ALLOWED = re.compile(r"^[A-Za-z0-9_]+$")


def test_sanitize_strips_disallowed_characters():
    assert sanitize("BTC-USDT.P/x y") == "BTCUSDTPxy"


def test_base_id_is_timestamp_plus_random():
    a = new_base_id(now_ms=1700000000000)
    b = new_base_id(now_ms=1700000000000)
    assert a.startswith("1700000000000")
    assert len(a) == 13 + 8
    assert a != b


@pytest.mark.parametrize("max_len", [64, 36])
@pytest.mark.parametrize("suffix", ["sl", "tp", "tp1", "tp2", "long", "half"])
def test_client_oid_charset_and_length(max_len, suffix):
    oid = build_client_oid("tpsl", "1000PEPEUSDT.P", new_base_id(), suffix, max_len)
    assert ALLOWED.match(oid)
    assert len(oid) <= max_len
    assert oid.startswith("tpsl_")
    assert oid.endswith("_" + suffix)


def test_client_oid_untrimmed_when_it_fits():
    oid = build_client_oid("open", "BTCUSDT", "abc123", "long", 64)
    assert oid == "open_BTCUSDT_abc123_long"


def test_client_oid_trims_base_from_the_left():
    base = "1700000000000deadbeef"
    oid = build_client_oid("open", "BTCUSDT", base, "long", 30)
    assert len(oid) <= 30
    # random tail survives
    assert "deadbeef" in oid
    assert oid.startswith("open_BTCUSDT_")


def test_very_tight_limit_shrinks_symbol():
    oid = build_client_oid("tpsl", "VERYLONGSYMBOLUSDT", "1700000000000deadbeef", "tp2", 24)
    assert len(oid) <= 24
    assert oid.startswith("tpsl_")
    assert oid.endswith("_tp2")


def test_correlated_base_is_deterministic_per_trade_and_category():
    a = correlated_base_id(1, 7, "42", "ENTRY")
    assert a == correlated_base_id(1, 7, "42", "ENTRY")
    assert a != correlated_base_id(1, 7, "42", "BREAKEVEN")
    assert a != correlated_base_id(2, 7, "42", "ENTRY")
    assert len(a) == 24


def test_factory_correlated_mode_repeats_ids():
    kw = dict(symbol="BTCUSDT", user_id=1, strategy_id=7, trade_id="42", category="ENTRY", max_len=36)
    a = ClientOidFactory.for_alert(mode="correlated", **kw).make("open", "long")
    b = ClientOidFactory.for_alert(mode="correlated", **kw).make("open", "long")
    assert a == b
    assert len(a) <= 36


def test_factory_random_mode_differs_per_alert():
    kw = dict(symbol="BTCUSDT", user_id=1, strategy_id=7, trade_id="42", category="ENTRY", max_len=64)
    a = ClientOidFactory.for_alert(mode="random", **kw).make("open", "long")
    b = ClientOidFactory.for_alert(mode="random", **kw).make("open", "long")
    assert a != b


def test_factory_correlated_without_trade_id_falls_back_to_random():
    kw = dict(symbol="BTCUSDT", user_id=1, strategy_id=7, trade_id=None, category="ENTRY", max_len=64)
    a = ClientOidFactory.for_alert(mode="correlated", **kw).make("open", "long")
    b = ClientOidFactory.for_alert(mode="correlated", **kw).make("open", "long")
    assert a != b


def test_legs_of_one_alert_share_base_and_differ_by_suffix():
    f = ClientOidFactory("BTCUSDT", "abc123", 64)
    assert f.make("tpsl", "sl") == "tpsl_BTCUSDT_abc123_sl"
    assert f.make("tpsl", "tp") == "tpsl_BTCUSDT_abc123_tp"


def test_find_matching_position_by_symbol_and_side():
    positions = [
        Position("BTCUSDT", Side.SHORT, Decimal("1")),
        Position("ETHUSDT", Side.LONG, Decimal("2")),
        Position("BTCUSDT", Side.LONG, Decimal("0")),
        Position("btcusdt", Side.LONG, Decimal("0.5")),
        Position("BTCUSDT", Side.LONG, Decimal("0.7")),
    ]
    match = find_matching_position(positions, "BTCUSDT", Side.LONG)
    assert match.size == Decimal("0.7")
    assert find_matching_position(positions, "SOLUSDT", Side.LONG) is None
