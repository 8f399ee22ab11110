# relaybot/persistence/trade_ledger.py
from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional, Protocol

from relaybot.execution.models import to_decimal
from relaybot.persistence.db import DB, utc_now_iso


@dataclass
class TradeRecord:
    user_id: int
    strategy_id: int
    alert_type: str
    symbol: str
    side: str
    success: bool
    state: str
    trade_id: Optional[str] = None
    order_id: Optional[str] = None
    size: Optional[Decimal] = None
    entry_price: Optional[Decimal] = None
    stop_loss: Optional[Decimal] = None
    take_profit: Optional[Decimal] = None
    breakeven: Optional[Decimal] = None
    error: Optional[str] = None
    executed_at: Optional[str] = None
    id: Optional[int] = None


class TradeLedger(Protocol):
    def record(self, rec: TradeRecord) -> Optional[int]: ...

    def find_entry(
        self,
        user_id: int,
        strategy_id: int,
        trade_id: Optional[str],
        symbol: str,
    ) -> Optional[TradeRecord]: ...

    def update_stop_loss(self, record_id: int, stop_loss: Decimal) -> None: ...

    def find_breakeven(
        self,
        user_id: int,
        strategy_id: int,
        trade_id: Optional[str],
        symbol: str,
        after_id: int,
    ) -> Optional[TradeRecord]: ...


def _s(x: Any) -> Optional[str]:
    return None if x is None else str(x)


def _row_to_record(row: sqlite3.Row) -> TradeRecord:
    return TradeRecord(
        id=int(row["id"]),
        user_id=int(row["user_id"]),
        strategy_id=int(row["strategy_id"]),
        trade_id=row["trade_id"],
        alert_type=row["alert_type"],
        symbol=row["symbol"],
        side=row["side"],
        success=bool(row["success"]),
        state=row["state"],
        order_id=row["order_id"],
        size=to_decimal(row["size"]),
        entry_price=to_decimal(row["entry_price"]),
        stop_loss=to_decimal(row["stop_loss"]),
        take_profit=to_decimal(row["take_profit"]),
        breakeven=to_decimal(row["breakeven"]),
        error=row["error"],
        executed_at=row["executed_at"],
    )


class SqliteTradeLedger:
    """
    One row per processed alert. Failed entries are kept as well (order error
    log); only successful ENTRY rows count as a prior entry for correlation.
    """

    def __init__(self, db: DB):
        self.db = db

    def record(self, rec: TradeRecord) -> Optional[int]:
        with self.db.connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO trades(
                    user_id, strategy_id, trade_id, alert_type, symbol, side,
                    success, state, order_id, size, entry_price, stop_loss,
                    take_profit, breakeven, error, executed_at
                ) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    rec.user_id,
                    rec.strategy_id,
                    rec.trade_id,
                    rec.alert_type,
                    rec.symbol.upper(),
                    rec.side,
                    1 if rec.success else 0,
                    rec.state,
                    rec.order_id,
                    _s(rec.size),
                    _s(rec.entry_price),
                    _s(rec.stop_loss),
                    _s(rec.take_profit),
                    _s(rec.breakeven),
                    rec.error,
                    rec.executed_at or utc_now_iso(),
                ),
            )
            return int(cur.lastrowid)

    def find_entry(
        self,
        user_id: int,
        strategy_id: int,
        trade_id: Optional[str],
        symbol: str,
    ) -> Optional[TradeRecord]:
        """
        Latest successful ENTRY for the trade id. Alerts without a trade id
        fall back to the latest successful ENTRY on the symbol.
        """
        with self.db.connect() as conn:
            if trade_id:
                row = conn.execute(
                    """
                    SELECT * FROM trades
                    WHERE user_id=? AND strategy_id=? AND trade_id=?
                      AND alert_type='ENTRY' AND success=1
                    ORDER BY id DESC LIMIT 1
                    """,
                    (user_id, strategy_id, str(trade_id)),
                ).fetchone()
            else:
                row = conn.execute(
                    """
                    SELECT * FROM trades
                    WHERE user_id=? AND strategy_id=? AND symbol=?
                      AND alert_type='ENTRY' AND success=1
                    ORDER BY id DESC LIMIT 1
                    """,
                    (user_id, strategy_id, symbol.upper()),
                ).fetchone()
        return _row_to_record(row) if row else None

    def update_stop_loss(self, record_id: int, stop_loss: Decimal) -> None:
        with self.db.connect() as conn:
            conn.execute(
                "UPDATE trades SET stop_loss=? WHERE id=?",
                (str(stop_loss), int(record_id)),
            )

    def find_breakeven(
        self,
        user_id: int,
        strategy_id: int,
        trade_id: Optional[str],
        symbol: str,
        after_id: int,
    ) -> Optional[TradeRecord]:
        """Completed BREAKEVEN recorded after the entry row `after_id`."""
        key, value = ("trade_id", str(trade_id)) if trade_id else ("symbol", symbol.upper())
        with self.db.connect() as conn:
            row = conn.execute(
                f"""
                SELECT * FROM trades
                WHERE user_id=? AND strategy_id=? AND {key}=?
                  AND alert_type='BREAKEVEN' AND state='BREAKEVEN_DONE' AND id>?
                ORDER BY id DESC LIMIT 1
                """,
                (user_id, strategy_id, value, int(after_id)),
            ).fetchone()
        return _row_to_record(row) if row else None
