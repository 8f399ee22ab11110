from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator


# =========================
# Time helpers
# =========================
def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# =========================
# Database class
# =========================
class DB:
    """
    Single source of truth for SQLite access.
    Default path: data/relay.db
    """

    def __init__(self, path: str = "data/relay.db"):
        self.path = path

        folder = os.path.dirname(self.path)
        if folder:
            os.makedirs(folder, exist_ok=True)

        self._init()

    # -------------------------
    # Connection manager
    # -------------------------
    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.path, timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    # -------------------------
    # Init / migrations
    # -------------------------
    def _init(self) -> None:
        conn = sqlite3.connect(self.path, timeout=30)
        try:
            # =========================
            # Events (orchestration audit)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp_utc TEXT NOT NULL,
                    dispatch_id TEXT,
                    user_id INTEGER,
                    strategy_id INTEGER,
                    symbol TEXT,
                    event_type TEXT NOT NULL,
                    action TEXT,
                    details_json TEXT
                )
                """
            )

            # =========================
            # Exchange operations (every request/response)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS exchange_operations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp_utc TEXT NOT NULL,
                    dispatch_id TEXT,
                    exchange TEXT NOT NULL,
                    user_id INTEGER,
                    strategy_id INTEGER,
                    symbol TEXT,
                    operation_type TEXT NOT NULL,
                    http_method TEXT NOT NULL,
                    endpoint TEXT NOT NULL,
                    request_payload TEXT,
                    request_headers TEXT,
                    response_data TEXT,
                    response_status INTEGER,
                    success INTEGER NOT NULL,
                    error_message TEXT,
                    order_id TEXT,
                    client_oid TEXT
                )
                """
            )

            # =========================
            # Trades (ledger)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS trades (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    strategy_id INTEGER NOT NULL,
                    trade_id TEXT,
                    alert_type TEXT NOT NULL,
                    symbol TEXT NOT NULL,
                    side TEXT NOT NULL,                 -- LONG/SHORT
                    success INTEGER NOT NULL,
                    state TEXT NOT NULL,
                    order_id TEXT,
                    size TEXT,
                    entry_price TEXT,
                    stop_loss TEXT,
                    take_profit TEXT,
                    breakeven TEXT,
                    error TEXT,
                    executed_at TEXT NOT NULL
                )
                """
            )

            # =========================
            # Notifications (outbox for the delivery service)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS notifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    type TEXT NOT NULL,
                    severity TEXT NOT NULL,
                    title TEXT NOT NULL,
                    message TEXT NOT NULL,
                    metadata_json TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )

            # =========================
            # Indexes
            # =========================
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_events_time ON events(timestamp_utc)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_ops_symbol ON exchange_operations(symbol)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_trades_lookup ON trades(user_id, strategy_id, trade_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_trades_symbol ON trades(user_id, strategy_id, symbol)"
            )

            conn.commit()

        finally:
            conn.close()
