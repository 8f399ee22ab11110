from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

from relaybot.persistence.db import DB, utc_now_iso

log = logging.getLogger("relaybot.notifications")

INFO = "info"
WARNING = "warning"
CRITICAL = "critical"

# notification type -> severity
SEVERITY = {
    "trade_executed": INFO,
    "tp_failed": WARNING,
    "sl_failed": CRITICAL,
    "tp_sl_failed": CRITICAL,
    "breakeven_applied": INFO,
    "breakeven_failed": CRITICAL,
    "trade_failed": WARNING,
}


@dataclass
class Notification:
    user_id: int
    type: str
    title: str
    message: str
    severity: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.severity:
            self.severity = SEVERITY.get(self.type, INFO)


class NotificationSink(Protocol):
    def emit(self, notification: Notification) -> None: ...


class SqliteNotificationSink:
    """Writes to the notifications outbox; delivery is someone else's job."""

    def __init__(self, db: DB):
        self.db = db

    def emit(self, notification: Notification) -> None:
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO notifications(user_id, type, severity, title, message,
                                          metadata_json, created_at)
                VALUES (?,?,?,?,?,?,?)
                """,
                (
                    notification.user_id,
                    notification.type,
                    notification.severity,
                    notification.title,
                    notification.message,
                    json.dumps(notification.metadata, default=str),
                    utc_now_iso(),
                ),
            )


class LogNotificationSink:
    def emit(self, notification: Notification) -> None:
        level = logging.WARNING if notification.severity != INFO else logging.INFO
        log.log(
            level,
            "[%s] user=%s %s: %s",
            notification.severity,
            notification.user_id,
            notification.title,
            notification.message,
        )


def safe_emit(sink: Optional[NotificationSink], notification: Notification) -> bool:
    """Fire-and-forget. Never raises."""
    if sink is None:
        return False
    try:
        sink.emit(notification)
        return True
    except Exception:
        log.exception("notification emit failed: %s", notification.type)
        return False
