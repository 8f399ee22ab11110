# relaybot/execution/state.py
from __future__ import annotations

from typing import List, Optional, Tuple

from relaybot.execution.models import PositionState, StepOutcome, StepStatus

# Position state is derived from the collected step outcomes only, never
# tracked incrementally.

_FATAL_ENTRY_STEPS = ("eligibility", "connector", "leverage", "reconcile", "open")
_TP_STEPS = ("take_profit", "take_profit_partial", "take_profit_final")


def _find(steps: List[StepOutcome], name: str) -> Optional[StepOutcome]:
    for s in steps:
        if s.name == name:
            return s
    return None


def first_failure(steps: List[StepOutcome]) -> Optional[StepOutcome]:
    for s in steps:
        if s.status is StepStatus.FAILED:
            return s
    return None


def protection_legs(steps: List[StepOutcome]) -> Tuple[bool, bool]:
    """(stop_loss_ok, take_profit_ok). Every TP leg present must be ok."""
    sl = _find(steps, "stop_loss")
    sl_ok = sl is not None and sl.ok
    tps = [s for s in steps if s.name in _TP_STEPS]
    tp_ok = bool(tps) and all(s.ok for s in tps)
    return sl_ok, tp_ok


def derive_entry_state(steps: List[StepOutcome]) -> PositionState:
    for name in _FATAL_ENTRY_STEPS:
        s = _find(steps, name)
        if s is not None and s.status is StepStatus.FAILED:
            return PositionState.ABORTED

    opened = _find(steps, "open")
    if opened is None:
        # never reached the exchange
        lev = _find(steps, "leverage")
        return PositionState.LEVERAGE_SET if lev is not None and lev.ok else PositionState.NO_POSITION

    sl_ok, tp_ok = protection_legs(steps)
    if sl_ok and tp_ok:
        return PositionState.OPEN_PROTECTED
    return PositionState.OPEN_UNPROTECTED


def protection_notice(steps: List[StepOutcome]) -> Tuple[str, str]:
    """(notification type, severity) for the protection outcome of an entry."""
    sl_ok, tp_ok = protection_legs(steps)
    if sl_ok and tp_ok:
        return "trade_executed", "info"
    if not sl_ok and not tp_ok:
        return "tp_sl_failed", "critical"
    if not sl_ok:
        return "sl_failed", "critical"
    return "tp_failed", "warning"


def derive_breakeven_state(steps: List[StepOutcome]) -> PositionState:
    found = _find(steps, "find_position")
    if found is None or found.status is StepStatus.FAILED:
        return PositionState.ABORTED
    if found.status is StepStatus.SKIPPED:
        return PositionState.CLOSED

    if _find(steps, "position_closed") is not None:
        return PositionState.CLOSED

    new_sl = _find(steps, "new_stop_loss")
    if new_sl is not None and new_sl.ok:
        return PositionState.BREAKEVEN_DONE
    return PositionState.BREAKEVEN_MIGRATING
