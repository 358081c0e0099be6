"""Room status state machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    INITIALIZING ──> READY <──> BUSY
          │            │         │
          │            │         └──> ERROR ──> BUSY | READY
          │            │
          └────────────┴──> ERROR

    Any state ──> STOPPED  (room destroyed, terminal)
"""
from __future__ import annotations

from .models import RoomStatus

VALID_TRANSITIONS: dict[RoomStatus, set[RoomStatus]] = {
    RoomStatus.INITIALIZING: {
        RoomStatus.READY,
        RoomStatus.ERROR,
        RoomStatus.STOPPED,
    },
    RoomStatus.READY: {
        RoomStatus.BUSY,
        RoomStatus.ERROR,
        RoomStatus.STOPPED,
    },
    RoomStatus.BUSY: {
        RoomStatus.READY,
        RoomStatus.ERROR,
        RoomStatus.STOPPED,
    },
    RoomStatus.ERROR: {
        RoomStatus.BUSY,  # retry
        RoomStatus.READY,  # reset
        RoomStatus.STOPPED,
    },
    RoomStatus.STOPPED: set(),
}


def validate_transition(current: RoomStatus, target: RoomStatus) -> None:
    """Validate a status transition. Raises ValueError if invalid."""
    if current == target:
        return
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(s.value for s in allowed) or "none (terminal)"
        raise ValueError(
            f"Invalid status transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )
