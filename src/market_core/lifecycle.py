"""
Order and fill state machines.

Transitions not listed here are rejected with INVALID_STATE. Terminal
states have no outgoing edges, so a record never moves backward.
"""

from __future__ import annotations

from enum import Enum
from typing import TypeVar

from market_core.contracts import FillStatus, OrderStatus
from market_core.outcome import ErrorKind, Outcome

E = TypeVar("E", bound=Enum)

ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.ACTIVE, OrderStatus.CANCELLED}),
    OrderStatus.ACTIVE: frozenset({OrderStatus.FILLED, OrderStatus.CANCELLED, OrderStatus.EXPIRED}),
    OrderStatus.FILLED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.EXPIRED: frozenset(),
}

FILL_TRANSITIONS: dict[FillStatus, frozenset[FillStatus]] = {
    FillStatus.PENDING: frozenset(
        {FillStatus.PROCESSING, FillStatus.EXPIRED, FillStatus.CANCELLED, FillStatus.FAILED}
    ),
    FillStatus.PROCESSING: frozenset(
        {FillStatus.COMPLETED, FillStatus.EXPIRED, FillStatus.CANCELLED, FillStatus.FAILED}
    ),
    FillStatus.COMPLETED: frozenset(),
    FillStatus.FAILED: frozenset(),
    FillStatus.EXPIRED: frozenset(),
    FillStatus.CANCELLED: frozenset(),
}

ORDER_TERMINAL = frozenset(s for s, nxt in ORDER_TRANSITIONS.items() if not nxt)
FILL_TERMINAL = frozenset(s for s, nxt in FILL_TRANSITIONS.items() if not nxt)

# Statuses from which lazy expiration applies.
ORDER_EXPIRABLE = frozenset({OrderStatus.ACTIVE})
FILL_EXPIRABLE = frozenset({FillStatus.PENDING, FillStatus.PROCESSING})
FILL_OPEN = FILL_EXPIRABLE


def can_transition_order(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ORDER_TRANSITIONS[current]


def can_transition_fill(current: FillStatus, target: FillStatus) -> bool:
    return target in FILL_TRANSITIONS[current]


def parse_filter(enum_type: type[E], value: E | str | None, field: str) -> Outcome[E | None]:
    """Parse a list filter case-insensitively. None, "" and "ALL" mean no filter."""
    if value is None or isinstance(value, enum_type):
        return Outcome.success(value)
    text = str(value).strip().lower()
    if text in ("", "all"):
        return Outcome.success(None)
    try:
        return Outcome.success(enum_type(text))
    except ValueError:
        allowed = ", ".join(member.value for member in enum_type)
        return Outcome.failure(
            ErrorKind.VALIDATION,
            f"Unknown {field} {value!r}; expected one of {allowed} or ALL",
            field=field,
            value=str(value),
        )
