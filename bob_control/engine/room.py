"""Room — one agent session shared by any number of observers.

A room owns the agent session, a bounded message history and the
request lifecycle (see lifecycle.py). Observers are connection-like
objects exposing ``client_id``, ``name``, ``is_open`` and a
non-blocking ``deliver(payload)``; every broadcast is handed to each
open observer synchronously, so all observers see one room's events
in the same order.
"""
from __future__ import annotations

import logging
from collections import deque
from typing import Any

from ..adapters.events import (
    ActivityEnded,
    ActivityStarted,
    AgentErrorEvent,
    AgentEvent,
    AgentReply,
    DebugEvent,
    StreamChunk,
    event_to_dict,
)
from ..shared.sanitize import sanitize_error
from ..shared.services.room_naming import infer_name_from_message, placeholder_name
from .config import RoomCallback, fire_event
from .errors import (
    NoAgentError,
    RequestCancelledError,
    RequestTimeoutError,
    RoomBusyError,
    RoomClosedError,
)
from .lifecycle import validate_transition
from .models import (
    Message,
    MessageRole,
    ObserverEntry,
    RoomStatus,
    _make_id,
    _utcnow,
    now_ms,
)
from .pending import PendingRequest, race_request
from .providers.base import AgentSession

logger = logging.getLogger(__name__)

DEFAULT_MAX_MESSAGES = 1000
DEFAULT_HISTORY_REPLAY = 100
DEFAULT_REQUEST_TIMEOUT = 600.0


class Room:
    """A managed agent session with history and observers."""

    def __init__(
        self,
        *,
        room_id: str | None = None,
        name: str | None = None,
        agent_type: str = "claude",
        directory: str = ".",
        branch: str | None = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        max_messages: int = DEFAULT_MAX_MESSAGES,
        history_replay: int = DEFAULT_HISTORY_REPLAY,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.id = room_id or _make_id()
        self._custom_name = bool(name)
        self.name = name or placeholder_name(self.id)
        self.agent_type = agent_type
        self.directory = directory
        self.branch = branch
        self.status = RoomStatus.INITIALIZING
        self.history: deque[Message] = deque(maxlen=max_messages)
        self.history_replay = history_replay
        self.observers: dict[str, ObserverEntry] = {}
        self.pending_request: PendingRequest | None = None
        self.request_timeout = request_timeout
        self.metadata: dict[str, Any] = dict(metadata or {})
        self.created_at = _utcnow()
        self.agent: AgentSession | None = None
        self._destroy_callbacks: list[RoomCallback] = []

    @property
    def is_worktree(self) -> bool:
        return bool(self.metadata.get("worktree"))

    @property
    def original_directory(self) -> str | None:
        return self.metadata.get("original_directory")

    @property
    def has_custom_name(self) -> bool:
        return self._custom_name

    # ── Status ──

    def _set_status(self, target: RoomStatus) -> None:
        validate_transition(self.status, target)
        if target is not self.status:
            logger.debug("Room %s status %s -> %s", self.id[:8], self.status.value, target.value)
        self.status = target
        self.broadcast(self._event("status", status=target.value))

    def attach_agent(self, agent: AgentSession) -> None:
        """Bind a started agent session; the room becomes ready."""
        agent.set_event_callback(self._on_agent_event)
        self.agent = agent
        self._set_status(RoomStatus.READY)

    def mark_failed(self, error: BaseException | str) -> None:
        """Agent could not be started; the room stays up in error."""
        self._set_status(RoomStatus.ERROR)
        self.add_message(MessageRole.SYSTEM, f"Failed to start agent: {sanitize_error(error)}")

    # ── Fan-out ──

    def _event(self, event_type: str, **fields: Any) -> dict[str, Any]:
        return {"type": event_type, "roomId": self.id, **fields, "timestamp": now_ms()}

    def broadcast(self, payload: dict[str, Any]) -> None:
        """Hand *payload* to every open observer; one failure never blocks the rest."""
        for client_id, entry in list(self.observers.items()):
            conn = entry.connection
            if not getattr(conn, "is_open", False):
                continue
            try:
                conn.deliver(payload)
            except Exception as exc:
                logger.warning(
                    "Room %s: delivery to client %s failed: %s",
                    self.id[:8], client_id[:8], exc,
                )

    def add_message(
        self,
        role: MessageRole,
        content: str,
        client_id: str | None = None,
    ) -> Message:
        """Append to history (evicting the oldest past capacity) and broadcast."""
        message = Message(role=role, content=content, client_id=client_id)
        self.history.append(message)
        self.broadcast(self._event("message", message=message.to_dict()))
        return message

    def recent_history(self) -> list[dict[str, Any]]:
        if self.history_replay <= 0:
            return []
        return [m.to_dict() for m in list(self.history)[-self.history_replay:]]

    def join_payload(self) -> dict[str, Any]:
        return self._event(
            "room_joined",
            roomName=self.name,
            agentType=self.agent_type,
            directory=self.directory,
            branch=self.branch,
            status=self.status.value,
            isWorktree=self.is_worktree,
            metadata=self.metadata,
            history=self.recent_history(),
        )

    # ── Observers ──

    def add_observer(self, connection: Any) -> None:
        """Start delivering room events to *connection*.

        The connection first receives one ``room_joined`` event carrying
        the recent history slice and current status.
        """
        if self.status is RoomStatus.STOPPED:
            raise RoomClosedError(self.id)
        rejoin = connection.client_id in self.observers
        self.observers[connection.client_id] = ObserverEntry(
            connection=connection, name=getattr(connection, "name", None),
        )
        connection.deliver(self.join_payload())
        if not rejoin:
            logger.info(
                "Room %s: client %s joined (%d observers)",
                self.id[:8], connection.client_id[:8], len(self.observers),
            )
            self._broadcast_presence(connection.client_id, "joined", getattr(connection, "name", None))

    def remove_observer(self, client_id: str) -> bool:
        entry = self.observers.pop(client_id, None)
        if entry is None:
            return False
        logger.info(
            "Room %s: client %s left (%d observers)",
            self.id[:8], client_id[:8], len(self.observers),
        )
        self._broadcast_presence(client_id, "left", entry.name)
        return True

    def _broadcast_presence(self, client_id: str, action: str, name: str | None) -> None:
        self.broadcast(self._event(
            "presence",
            clientId=client_id,
            name=name,
            action=action,
            clientCount=len(self.observers),
        ))

    # ── Naming ──

    def rename(self, new_name: str, *, custom: bool = True) -> bool:
        """Rename the room. A custom rename disables auto-naming for good."""
        new_name = (new_name or "").strip()
        if not new_name:
            raise ValueError("Room name cannot be empty")
        if custom:
            self._custom_name = True
        old_name = self.name
        if new_name == old_name:
            return False
        self.name = new_name
        logger.info("Room %s renamed %r -> %r", self.id[:8], old_name, new_name)
        self.broadcast(self._event("room_renamed", oldName=old_name, newName=new_name))
        return True

    def auto_name_from_message(self, content: str) -> bool:
        if self._custom_name:
            return False
        name = infer_name_from_message(content)
        if not name or name == self.name:
            return False
        return self.rename(name, custom=False)

    def set_timeout(self, seconds: float) -> None:
        """Request timeout in seconds; 0 or less disables it."""
        self.request_timeout = float(seconds)

    # ── Request lifecycle ──

    def _owns(self, pending: PendingRequest) -> bool:
        return self.pending_request is pending and not pending.superseded

    async def _abort_agent(self) -> None:
        if self.agent is None:
            return
        try:
            await self.agent.abort()
        except Exception as exc:
            logger.warning("Room %s: agent abort failed: %s", self.id[:8], exc)

    async def send_to_agent(self, content: str, origin_id: str | None = None) -> str:
        """Send *content* to the agent and return its reply.

        Raises RoomBusyError if a request is already pending,
        RequestTimeoutError / RequestCancelledError when those win the
        race, or the agent's own failure.
        """
        if self.status is RoomStatus.STOPPED:
            raise RoomClosedError(self.id)
        if self.status is RoomStatus.BUSY or self.pending_request is not None:
            raise RoomBusyError(self.id)
        if self.agent is None:
            raise NoAgentError(self.id)

        pending = PendingRequest()
        self.pending_request = pending
        self._set_status(RoomStatus.BUSY)
        self.add_message(MessageRole.USER, content, client_id=origin_id)
        self.auto_name_from_message(content)

        final_status = RoomStatus.READY
        try:
            return await race_request(
                self.agent.send(content), pending, timeout=self.request_timeout,
            )
        except RequestCancelledError:
            if self._owns(pending):
                await self._abort_agent()
            raise
        except RequestTimeoutError as exc:
            if self._owns(pending):
                await self._abort_agent()
                self.add_message(MessageRole.SYSTEM, f"Error: {exc}")
            raise
        except Exception as exc:
            if self._owns(pending):
                final_status = RoomStatus.ERROR
                await self._abort_agent()
                if not pending.error_reported:
                    self.add_message(MessageRole.SYSTEM, f"Error: {sanitize_error(exc)}")
            raise
        finally:
            if self._owns(pending):
                self.pending_request = None
                if self.status is not RoomStatus.STOPPED:
                    self._set_status(final_status)

    def cancel(self) -> bool:
        """Cancel the pending request. False if there is none."""
        pending = self.pending_request
        if pending is None or pending.superseded or not pending.cancel():
            return False
        logger.info("Room %s: request %s cancelled", self.id[:8], pending.id[:8])
        self.add_message(MessageRole.SYSTEM, "Request cancelled")
        return True

    async def reset_status(self) -> RoomStatus:
        """Emergency recovery: kill the agent process and force ``ready``.

        Safe to call when nothing is stuck.
        """
        if self.status is RoomStatus.STOPPED:
            raise RoomClosedError(self.id)
        pending = self.pending_request
        if pending is not None:
            pending.superseded = True
            pending.cancel()
        await self._abort_agent()
        if self.pending_request is pending:
            self.pending_request = None
        if self.status is not RoomStatus.STOPPED:
            self._set_status(RoomStatus.READY)
            self.add_message(MessageRole.SYSTEM, "Room status reset to ready")
        return self.status

    # ── Agent events ──

    async def _on_agent_event(self, event: AgentEvent) -> None:
        if isinstance(event, StreamChunk):
            self.broadcast(self._event("stream", chunk=event.text))
        elif isinstance(event, (ActivityStarted, ActivityEnded)):
            self.broadcast(self._event("activity", activity=event_to_dict(event)))
        elif isinstance(event, AgentReply):
            pending = self.pending_request
            if pending is None or pending.superseded:
                logger.debug("Room %s: discarding late agent reply", self.id[:8])
                return
            self.add_message(MessageRole.AGENT, event.text)
        elif isinstance(event, AgentErrorEvent):
            pending = self.pending_request
            self.add_message(
                MessageRole.SYSTEM, f"Agent error: {sanitize_error(event.message)}",
            )
            if pending is not None:
                pending.error_reported = True
            elif self.status is RoomStatus.READY:
                self._set_status(RoomStatus.ERROR)
        elif isinstance(event, DebugEvent):
            logger.debug(
                "Room %s agent event: %s", self.id[:8], event.payload.get("type", "?"),
            )

    # ── Teardown ──

    def on_destroyed(self, callback: RoomCallback) -> None:
        self._destroy_callbacks.append(callback)

    async def destroy(self) -> None:
        """Stop the agent, tell observers, detach them. Idempotent."""
        if self.status is RoomStatus.STOPPED:
            return
        pending = self.pending_request
        if pending is not None:
            pending.superseded = True
            pending.cancel()
            self.pending_request = None
        if self.agent is not None:
            await self.agent.stop()
        self._set_status(RoomStatus.STOPPED)
        self.broadcast(self._event("room_closed"))
        self.observers.clear()
        logger.info("Room %s (%s) destroyed", self.id[:8], self.name)
        for callback in list(self._destroy_callbacks):
            await fire_event(callback, self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "agentType": self.agent_type,
            "directory": self.directory,
            "branch": self.branch,
            "status": self.status.value,
            "agentStatus": self.agent.status.value if self.agent else None,
            "clientCount": len(self.observers),
            "messageCount": len(self.history),
            "createdAt": self.created_at.isoformat(),
            "metadata": self.metadata,
            "isWorktree": self.is_worktree,
            "originalDirectory": self.original_directory,
            "requestTimeout": self.request_timeout,
        }
