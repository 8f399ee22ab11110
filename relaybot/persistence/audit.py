# relaybot/persistence/audit.py
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

from relaybot.ops.context import get_dispatch_id
from relaybot.persistence.db import DB, utc_now_iso

log = logging.getLogger("relaybot.audit")


@dataclass
class ExchangeCall:
    """One exchange request/response, already redacted by the connector."""

    exchange: str
    operation: str
    method: str
    path: str
    payload: Any = None
    headers: Dict[str, str] = field(default_factory=dict)
    response: Any = None
    status: Optional[int] = None
    success: bool = False
    error: Optional[str] = None
    symbol: Optional[str] = None
    user_id: Optional[int] = None
    strategy_id: Optional[int] = None
    order_id: Optional[str] = None
    client_oid: Optional[str] = None


class AuditSink(Protocol):
    def exchange_call(self, call: ExchangeCall) -> None: ...

    def event(
        self,
        event_type: str,
        *,
        user_id: Optional[int] = None,
        strategy_id: Optional[int] = None,
        symbol: Optional[str] = None,
        action: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None: ...


def _dumps(obj: Any) -> Optional[str]:
    if obj is None:
        return None
    try:
        return json.dumps(obj, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return json.dumps(str(obj))


class Audit:
    """
    DB audit is the source of truth.
    Additionally mirrors everything to a JSONL file for tailing.

    Nothing in here may raise into the trading path.
    """

    def __init__(self, db: DB, jsonl_path: str = "logs/exchange_audit.jsonl"):
        self.db = db
        self.jsonl_path = Path(jsonl_path)

        # ensure logs folder + file exist
        try:
            self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
            self.jsonl_path.touch(exist_ok=True)
        except Exception:
            log.warning("audit jsonl path not writable: %s", self.jsonl_path)

    def exchange_call(self, call: ExchangeCall) -> None:
        dispatch_id = get_dispatch_id()
        try:
            with self.db.connect() as conn:
                conn.execute(
                    """
                    INSERT INTO exchange_operations(
                        timestamp_utc, dispatch_id, exchange, user_id, strategy_id,
                        symbol, operation_type, http_method, endpoint,
                        request_payload, request_headers, response_data,
                        response_status, success, error_message, order_id, client_oid
                    ) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
                    """,
                    (
                        utc_now_iso(),
                        dispatch_id,
                        call.exchange,
                        call.user_id,
                        call.strategy_id,
                        call.symbol,
                        call.operation,
                        call.method,
                        call.path,
                        _dumps(call.payload),
                        _dumps(call.headers),
                        _dumps(call.response),
                        call.status,
                        1 if call.success else 0,
                        call.error,
                        call.order_id,
                        call.client_oid,
                    ),
                )
        except Exception:
            log.exception("audit write failed for %s %s", call.method, call.path)

        self._write_jsonl(
            {
                "timestamp_utc": utc_now_iso(),
                "event_type": "EXCHANGE_CALL",
                "dispatch_id": dispatch_id,
                "exchange": call.exchange,
                "operation": call.operation,
                "method": call.method,
                "path": call.path,
                "symbol": call.symbol,
                "user_id": call.user_id,
                "strategy_id": call.strategy_id,
                "status": call.status,
                "success": call.success,
                "error": call.error,
                "order_id": call.order_id,
                "client_oid": call.client_oid,
            }
        )

    def event(
        self,
        event_type: str,
        *,
        user_id: Optional[int] = None,
        strategy_id: Optional[int] = None,
        symbol: Optional[str] = None,
        action: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        dispatch_id = get_dispatch_id()
        try:
            with self.db.connect() as conn:
                conn.execute(
                    """
                    INSERT INTO events(timestamp_utc, dispatch_id, user_id, strategy_id,
                                       symbol, event_type, action, details_json)
                    VALUES (?,?,?,?,?,?,?,?)
                    """,
                    (
                        utc_now_iso(),
                        dispatch_id,
                        user_id,
                        strategy_id,
                        symbol,
                        event_type,
                        action,
                        _dumps(details or {}),
                    ),
                )
        except Exception:
            log.exception("audit event write failed: %s", event_type)

        self._write_jsonl(
            {
                "timestamp_utc": utc_now_iso(),
                "event_type": event_type,
                "dispatch_id": dispatch_id,
                "user_id": user_id,
                "strategy_id": strategy_id,
                "symbol": symbol,
                "action": action,
                "details": details or {},
            }
        )

    def _write_jsonl(self, obj: Dict[str, Any]) -> None:
        try:
            self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
            with self.jsonl_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(obj, ensure_ascii=False, default=str) + "\n")
        except Exception:
            # never crash the trading path because the mirror file failed
            pass


class NullAudit:
    """Audit sink that drops everything (tools, dry runs)."""

    def exchange_call(self, call: ExchangeCall) -> None:
        return None

    def event(self, event_type: str, **kwargs: Any) -> None:
        return None
