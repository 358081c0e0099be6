"""Adapters package - canonical agent events shared by the engine and the gateway."""
from __future__ import annotations

__all__ = [
    "AgentEvent",
    "event_to_dict",
]

from bob_control.adapters.events import AgentEvent, event_to_dict
