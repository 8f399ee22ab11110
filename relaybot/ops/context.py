from __future__ import annotations
from contextvars import ContextVar
from typing import Optional

# Context-local (safe for async & threads)
_current_dispatch_id: ContextVar[Optional[str]] = ContextVar(
    "current_dispatch_id", default=None
)
_current_account: ContextVar[Optional[str]] = ContextVar(
    "current_account", default=None
)


def set_dispatch_id(dispatch_id: str) -> None:
    _current_dispatch_id.set(dispatch_id)


def get_dispatch_id() -> Optional[str]:
    return _current_dispatch_id.get()


def clear_dispatch_id() -> None:
    _current_dispatch_id.set(None)


def set_account(user_id: int, strategy_id: int) -> None:
    _current_account.set(f"{user_id}:{strategy_id}")


def get_account() -> Optional[str]:
    return _current_account.get()


def clear_account() -> None:
    _current_account.set(None)
