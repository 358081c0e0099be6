"""Canonical events emitted by agent sessions.

Every agent kind's output is translated into these dataclasses before
it reaches a Room. Delivery contract per event kind, for one send:

- StreamChunk, ActivityStarted, ActivityEnded, DebugEvent: at most
  once each, best effort, in output order.
- AgentReply: exactly once for a successful send, emitted before the
  send returns.
- AgentErrorEvent: at most once per failure, emitted before the send
  fails. May also be emitted with no send in flight when the agent
  process crashes while idle.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class AgentEvent:
    """Base canonical event."""
    event_type: str = ""


@dataclass
class StreamChunk(AgentEvent):
    event_type: str = "stream"
    text: str = ""


@dataclass
class ActivityStarted(AgentEvent):
    event_type: str = "activity-start"
    tool: str = ""
    description: str = ""


@dataclass
class ActivityEnded(AgentEvent):
    event_type: str = "activity-end"
    tool: str = ""
    is_error: bool = False


@dataclass
class AgentReply(AgentEvent):
    event_type: str = "message"
    text: str = ""


@dataclass
class AgentErrorEvent(AgentEvent):
    event_type: str = "error"
    message: str = ""


@dataclass
class DebugEvent(AgentEvent):
    event_type: str = "debug"
    payload: dict[str, Any] = field(default_factory=dict)


def event_to_dict(event: AgentEvent) -> dict[str, Any]:
    """Convert a typed event dataclass to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is not None:
            d[f] = val
    if "event_type" in d:
        d["event"] = d.pop("event_type")
    return d
