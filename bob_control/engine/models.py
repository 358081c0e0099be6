"""Core data models for rooms and agent sessions.

All dataclasses and enums. Single source of truth to avoid
circular imports.
"""
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class RoomStatus(str, Enum):
    """Room request lifecycle states. See lifecycle.py for transition rules."""
    INITIALIZING = "initializing"
    READY = "ready"
    BUSY = "busy"
    ERROR = "error"
    STOPPED = "stopped"


class AgentStatus(str, Enum):
    """Agent session lifecycle states."""
    IDLE = "idle"
    READY = "ready"
    BUSY = "busy"
    ERROR = "error"
    STOPPED = "stopped"


class MessageRole(str, Enum):
    USER = "user"
    AGENT = "agent"
    SYSTEM = "system"


def _make_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_ms() -> int:
    """Wall-clock milliseconds, the timestamp unit used on the wire."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Message:
    """One entry of a room's history. Immutable once appended."""
    role: MessageRole
    content: str
    id: str = field(default_factory=_make_id)
    timestamp: int = field(default_factory=now_ms)
    client_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.client_id is not None:
            d["clientId"] = self.client_id
        return d


@dataclass
class WorktreeRecord:
    """A git worktree allocated for one room (workspace id == room id)."""
    workspace_id: str
    path: str
    repo_path: str
    branch: str
    created_at: datetime = field(default_factory=_utcnow)
    is_new_branch: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "workspaceId": self.workspace_id,
            "path": self.path,
            "repoPath": self.repo_path,
            "branch": self.branch,
            "createdAt": self.created_at.isoformat(),
            "isNewBranch": self.is_new_branch,
        }


@dataclass
class ObserverEntry:
    """A connection observing a room, with the name it joined under."""
    connection: Any
    name: str | None = None
    joined_at: datetime = field(default_factory=_utcnow)
