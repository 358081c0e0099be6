"""Connection gateway: maps protocol messages to room operations.

Transport-neutral. Each client is a ``ClientConnection`` whose
outbound events are queued by ``deliver`` (never blocks) and drained
by the transport, the websocket pump in server.py or an in-process
consumer calling ``receive``/``drain``.

Inbound messages are dicts tagged by ``type``. ``send_message`` runs
as a background task so the same client can still ``cancel`` or
``reset`` while the agent is working.
"""
from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

from .. import __version__
from ..engine.errors import BobControlError, RequestCancelledError
from ..engine.models import _make_id, _utcnow, now_ms
from ..engine.room import Room
from ..engine.room_manager import RoomManager
from ..shared.sanitize import sanitize_error

logger = logging.getLogger(__name__)

INVALID_MESSAGE = "Invalid message format"
OUTBOUND_QUEUE_SIZE = 5000


class ClientConnection:
    """One connected client and its outbound event queue."""

    def __init__(
        self,
        client_id: str | None = None,
        *,
        name: str | None = None,
        maxsize: int = OUTBOUND_QUEUE_SIZE,
    ) -> None:
        self.client_id = client_id or _make_id()
        self.name = name
        self.rooms: set[str] = set()
        self.connected_at: datetime = _utcnow()
        self._queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue(maxsize=maxsize)
        self._open = True

    @property
    def is_open(self) -> bool:
        return self._open

    def deliver(self, payload: dict[str, Any]) -> None:
        if not self._open:
            return
        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull:
            logger.warning("Client %s queue full, dropping %s event",
                           self.client_id[:8], payload.get("type"))

    async def receive(self) -> dict[str, Any] | None:
        """Next outbound event, or None once the connection is closed and drained."""
        if not self._open and self._queue.empty():
            return None
        return await self._queue.get()

    def drain(self) -> list[dict[str, Any]]:
        """All queued events, without waiting."""
        events: list[dict[str, Any]] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return events
            if item is not None:
                events.append(item)

    def close(self) -> None:
        if not self._open:
            return
        self._open = False
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            pass


Handler = Callable[[ClientConnection, dict[str, Any]], Awaitable[None]]


class Gateway:
    """Dispatches inbound messages from any number of clients."""

    def __init__(
        self,
        room_manager: RoomManager,
        *,
        server_version: str = __version__,
        default_directory: str = ".",
        default_agent: str = "claude",
    ) -> None:
        self.room_manager = room_manager
        self.server_version = server_version
        self.default_directory = default_directory
        self.default_agent = default_agent
        self.clients: dict[str, ClientConnection] = {}
        self._tasks: set[asyncio.Task] = set()
        self._handlers: dict[str, Handler] = {
            "set_name": self._on_set_name,
            "create_room": self._on_create_room,
            "join_room": self._on_join_room,
            "leave_room": self._on_leave_room,
            "send_message": self._on_send_message,
            "list_rooms": self._on_list_rooms,
            "close_room": self._on_close_room,
            "cancel": self._on_cancel,
            "reset": self._on_reset,
            "ping": self._on_ping,
            "rename_room": self._on_rename_room,
            "room_info": self._on_room_info,
            "set_timeout": self._on_set_timeout,
            "get_stats": self._on_get_stats,
            "worktree_info": self._on_worktree_info,
        }

    # ── Connections ──

    def connect(self, name: str | None = None) -> ClientConnection:
        """Register a new client and queue its ``welcome`` event."""
        client = ClientConnection(name=name)
        self.clients[client.client_id] = client
        self._reply(
            client,
            "welcome",
            clientId=client.client_id,
            serverVersion=self.server_version,
            rooms=self._room_list(),
        )
        logger.info("Client %s connected (%d clients)", client.client_id[:8], len(self.clients))
        return client

    def disconnect(self, client_id: str) -> None:
        """Remove the client from every room it observes, then close it."""
        client = self.clients.pop(client_id, None)
        if client is None:
            return
        for room_id in list(client.rooms):
            room = self.room_manager.get_room(room_id)
            if room is not None:
                room.remove_observer(client_id)
        client.rooms.clear()
        client.close()
        logger.info(
            "Client %s disconnected (%d clients)",
            client.name or client_id[:8], len(self.clients),
        )

    async def close(self) -> None:
        """Wait for in-flight sends, then close every client."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        for client_id in list(self.clients):
            self.disconnect(client_id)

    async def wait_idle(self) -> None:
        """Wait until no ``send_message`` task is running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ── Dispatch ──

    async def handle_raw(self, client: ClientConnection, data: str | bytes) -> None:
        try:
            message = json.loads(data)
        except (TypeError, ValueError):
            self._send_error(client, INVALID_MESSAGE)
            return
        if not isinstance(message, dict):
            self._send_error(client, INVALID_MESSAGE)
            return
        await self.handle_message(client, message)

    async def handle_message(self, client: ClientConnection, message: dict[str, Any]) -> None:
        """Run the handler for one inbound message; failures become ``error`` events."""
        msg_type = message.get("type")
        handler = self._handlers.get(msg_type) if isinstance(msg_type, str) else None
        if handler is None:
            self._send_error(client, f"Unknown message type: {msg_type}")
            return
        try:
            await handler(client, message)
        except (BobControlError, ValueError) as exc:
            logger.info("Client %s %s failed: %s", client.client_id[:8], msg_type, exc)
            self._send_error(client, exc)
        except Exception as exc:
            logger.exception("Client %s %s crashed", client.client_id[:8], msg_type)
            self._send_error(client, exc)

    # ── Helpers ──

    def _reply(self, client: ClientConnection, event_type: str, **fields: Any) -> None:
        client.deliver({"type": event_type, **fields, "timestamp": now_ms()})

    def _send_error(self, client: ClientConnection, error: BaseException | str) -> None:
        self._reply(client, "error", error=sanitize_error(error))

    def _room_list(self) -> list[dict[str, Any]]:
        return [room.to_dict() for room in self.room_manager.list_rooms()]

    def _room(self, message: dict[str, Any]) -> Room:
        return self.room_manager.find_room(str(message.get("roomId") or ""))

    def _join(self, client: ClientConnection, room: Room) -> None:
        room.add_observer(client)
        client.rooms.add(room.id)

    def _track(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ── Handlers ──

    async def _on_set_name(self, client: ClientConnection, message: dict[str, Any]) -> None:
        name = str(message.get("name") or "").strip()
        if not name:
            raise ValueError("Name is required")
        client.name = name
        for room_id in client.rooms:
            room = self.room_manager.get_room(room_id)
            entry = room.observers.get(client.client_id) if room else None
            if entry is not None:
                entry.name = name
        self._reply(client, "name_set", name=name)

    async def _on_create_room(self, client: ClientConnection, message: dict[str, Any]) -> None:
        options = message.get("agentOptions") or {}
        if not isinstance(options, dict):
            raise ValueError("agentOptions must be an object")
        room = await self.room_manager.create_room(
            agent_type=message.get("agentType") or self.default_agent,
            directory=message.get("directory") or self.default_directory,
            branch=message.get("branch") or None,
            name=message.get("name") or None,
            agent_options=options,
        )
        self._join(client, room)
        logger.info("Room %s created by %s", room.name, client.name or client.client_id[:8])

    async def _on_join_room(self, client: ClientConnection, message: dict[str, Any]) -> None:
        ref = message.get("roomId") or message.get("roomName")
        if not ref:
            raise ValueError("roomId or roomName is required")
        self._join(client, self.room_manager.find_room(str(ref)))

    async def _on_leave_room(self, client: ClientConnection, message: dict[str, Any]) -> None:
        room = self._room(message)
        room.remove_observer(client.client_id)
        client.rooms.discard(room.id)
        self._reply(client, "room_left", roomId=room.id)

    async def _on_send_message(self, client: ClientConnection, message: dict[str, Any]) -> None:
        room = self._room(message)
        content = message.get("content")
        if not isinstance(content, str) or not content.strip():
            raise ValueError("Message content is required")
        self._track(self._run_send(client, room, content))

    async def _run_send(self, client: ClientConnection, room: Room, content: str) -> None:
        try:
            await room.send_to_agent(content, client.client_id)
        except RequestCancelledError:
            logger.debug("Room %s: send from %s cancelled", room.id[:8], client.client_id[:8])
        except BobControlError as exc:
            self._send_error(client, exc)
        except Exception as exc:
            logger.exception("Room %s: send failed", room.id[:8])
            self._send_error(client, exc)

    async def _on_list_rooms(self, client: ClientConnection, message: dict[str, Any]) -> None:
        self._reply(client, "room_list", rooms=self._room_list())

    async def _on_close_room(self, client: ClientConnection, message: dict[str, Any]) -> None:
        room = self._room(message)
        observing = client.client_id in room.observers
        await self.room_manager.destroy_room(room.id)
        for other in self.clients.values():
            other.rooms.discard(room.id)
        if not observing:
            self._reply(client, "room_closed", roomId=room.id)
        logger.info("Room %s closed by %s", room.name, client.name or client.client_id[:8])

    async def _on_cancel(self, client: ClientConnection, message: dict[str, Any]) -> None:
        room = self._room(message)
        self._reply(client, "cancel_result", roomId=room.id, cancelled=room.cancel())

    async def _on_reset(self, client: ClientConnection, message: dict[str, Any]) -> None:
        room = self._room(message)
        status = await room.reset_status()
        self._reply(client, "reset_result", roomId=room.id, status=status.value)

    async def _on_ping(self, client: ClientConnection, message: dict[str, Any]) -> None:
        self._reply(client, "pong")

    async def _on_rename_room(self, client: ClientConnection, message: dict[str, Any]) -> None:
        room = self._room(message)
        old_name = room.name
        room.rename(str(message.get("name") or ""))
        if client.client_id not in room.observers:
            self._reply(client, "room_renamed", roomId=room.id, oldName=old_name, newName=room.name)

    async def _on_room_info(self, client: ClientConnection, message: dict[str, Any]) -> None:
        room = self._room(message)
        self._reply(client, "room_info", room=room.to_dict())

    async def _on_set_timeout(self, client: ClientConnection, message: dict[str, Any]) -> None:
        room = self._room(message)
        try:
            seconds = float(message.get("seconds"))
        except (TypeError, ValueError):
            raise ValueError("Invalid timeout") from None
        room.set_timeout(seconds)
        self._reply(client, "timeout_set", roomId=room.id, seconds=room.request_timeout)

    async def _on_get_stats(self, client: ClientConnection, message: dict[str, Any]) -> None:
        self._reply(client, "stats", stats=self.get_stats())

    async def _on_worktree_info(self, client: ClientConnection, message: dict[str, Any]) -> None:
        room = self._room(message)
        info = await self.room_manager.get_worktree_info(room.id)
        self._reply(client, "worktree_info", roomId=room.id, worktree=info)

    def get_stats(self) -> dict[str, int]:
        return {"clientCount": len(self.clients), **self.room_manager.get_stats()}
