"""Exception hierarchy for rooms, agent sessions and worktrees.

Specific exceptions for each failure mode. The gateway turns any
BobControlError into a sanitized ``error`` message for the client.
"""
from __future__ import annotations


class BobControlError(Exception):
    """Base exception for all bob-control errors."""


# ── Agent sessions ──


class UnavailableExecutableError(BobControlError):
    """The agent CLI is not installed or not on PATH."""
    def __init__(self, command: str, install_hint: str = ""):
        self.command = command
        self.install_hint = install_hint
        message = f"Command '{command}' not found in PATH."
        if install_hint:
            message += f" {install_hint}"
        super().__init__(message)


class AgentFailureError(BobControlError):
    """The agent failed to produce a reply."""


class SubprocessFailureError(AgentFailureError):
    """Agent process exited without usable output."""
    def __init__(self, command: str, exit_code: int | None, detail: str = ""):
        self.command = command
        self.exit_code = exit_code
        self.detail = detail
        super().__init__(
            detail or f"{command} exited with code {exit_code}"
        )


class AgentReportedError(AgentFailureError):
    """The agent emitted an error event of its own."""
    def __init__(self, message: str):
        self.detail = message
        super().__init__(message)


class AgentBusyError(BobControlError):
    """A send is already in flight on this agent session."""
    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(f"{kind} agent is already processing a request")


# ── Rooms ──


class RoomBusyError(BobControlError):
    """Second send while a request is pending."""
    def __init__(self, room_id: str):
        self.room_id = room_id
        super().__init__("Agent is busy processing. Use /cancel to abort.")


class RequestTimeoutError(BobControlError):
    """Pending request exceeded the room timeout."""
    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Request timed out after {timeout_seconds:g}s")


class RequestCancelledError(BobControlError):
    """Pending request was cancelled by a client."""
    def __init__(self) -> None:
        super().__init__("Request cancelled")


class RoomClosedError(BobControlError):
    """Operation on a room that was already destroyed."""
    def __init__(self, room_id: str):
        self.room_id = room_id
        super().__init__(f"Room {room_id[:8]} is closed")


class NoAgentError(BobControlError):
    """Room has no running agent session (agent failed to start)."""
    def __init__(self, room_id: str):
        self.room_id = room_id
        super().__init__("No agent is running in this room")


# ── Worktrees ──


class WorktreeError(BobControlError):
    """A git worktree operation failed."""
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class SafetyViolationError(WorktreeError):
    """Refused to delete a path that failed a safety check."""
    def __init__(self, path: str, reason: str):
        self.path = path
        super().__init__(f"Refusing to delete {path}: {reason}")


# ── Lookups ──


class NotFoundError(BobControlError):
    """Unknown room, workspace or agent kind."""


class RoomNotFoundError(NotFoundError):
    def __init__(self, room_ref: str):
        self.room_ref = room_ref
        super().__init__("Room not found")


class DirectoryNotFoundError(NotFoundError):
    """Requested room directory does not exist."""
    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Directory not found: {path}")


class UnknownAgentKindError(NotFoundError):
    def __init__(self, kind: str, available: list[str]):
        self.kind = kind
        self.available = available
        super().__init__(
            f"Unknown agent type '{kind}'. "
            f"Available: {', '.join(available) or 'none'}"
        )
