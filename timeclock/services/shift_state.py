"""
Shift status transition graph shared by clock-in, clock-out, sweeps and approval.
"""
from typing import Dict, FrozenSet

from ..errors import InvalidTransition


SHIFT_STATUSES = ("draft", "published", "assigned", "in-progress", "completed", "approved", "cancelled")
TERMINAL_STATUSES = frozenset({"approved", "cancelled"})

_FORWARD: Dict[str, str] = {
    "draft": "published",
    "published": "assigned",
    "assigned": "in-progress",
    "in-progress": "completed",
    "completed": "approved",
}


def _build_transitions() -> Dict[str, FrozenSet[str]]:
    transitions = {}
    for status in SHIFT_STATUSES:
        allowed = set()
        if status in _FORWARD:
            allowed.add(_FORWARD[status])
        if status not in TERMINAL_STATUSES:
            allowed.add("cancelled")
        transitions[status] = frozenset(allowed)
    return transitions


VALID_TRANSITIONS: Dict[str, FrozenSet[str]] = _build_transitions()


def can_transition(current_status: str, next_status: str) -> bool:
    return next_status in VALID_TRANSITIONS.get(current_status, frozenset())


def validate_shift_transition(current_status: str, next_status: str) -> None:
    if not can_transition(current_status, next_status):
        raise InvalidTransition(
            f"Invalid shift status transition: {current_status} -> {next_status}",
            details={"from": current_status, "to": next_status},
        )
