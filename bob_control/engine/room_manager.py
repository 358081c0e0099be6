"""Room manager: creates, tracks, and destroys rooms.

Decides per room whether to allocate a git worktree, binds the agent
session to the final working directory, and routes lookups by id or
name. Agent kinds come from an injected AgentRegistry.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .errors import DirectoryNotFoundError, RoomNotFoundError
from .models import RoomStatus, _make_id
from .room import (
    DEFAULT_HISTORY_REPLAY,
    DEFAULT_MAX_MESSAGES,
    DEFAULT_REQUEST_TIMEOUT,
    Room,
)

if TYPE_CHECKING:
    from ..shared.services.worktree import WorktreeManager
    from .providers.registry import AgentRegistry

logger = logging.getLogger(__name__)


def default_branch_name(room_id: str) -> str:
    return f"bob-agent-{room_id[:8]}"


class RoomManager:
    """Registry of live rooms.

    Worktree failures and in-place branch failures are logged and
    degrade to the original directory; agent start failures leave the
    room registered in ``error`` status. Neither aborts room creation.
    """

    def __init__(
        self,
        agent_registry: AgentRegistry,
        *,
        worktree_manager: WorktreeManager | None = None,
        use_worktrees: bool = True,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        max_messages: int = DEFAULT_MAX_MESSAGES,
        history_replay: int = DEFAULT_HISTORY_REPLAY,
    ) -> None:
        if worktree_manager is None:
            from ..shared.services.worktree import WorktreeManager
            worktree_manager = WorktreeManager()
        self.agent_registry = agent_registry
        self.worktree_manager = worktree_manager
        self.use_worktrees = use_worktrees
        self.request_timeout = request_timeout
        self.max_messages = max_messages
        self.history_replay = history_replay
        self._rooms: dict[str, Room] = {}

    async def create_room(
        self,
        *,
        agent_type: str,
        directory: str,
        branch: str | None = None,
        name: str | None = None,
        use_worktree: bool | None = None,
        agent_options: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Room:
        """Create, register and start a room.

        Raises UnknownAgentKindError or DirectoryNotFoundError before
        anything is allocated.
        """
        kind = self.agent_registry.resolve(agent_type)
        directory = str(Path(directory or ".").expanduser().resolve())
        if not Path(directory).is_dir():
            raise DirectoryNotFoundError(directory)
        room_id = _make_id()
        isolate = self.use_worktrees if use_worktree is None else use_worktree
        metadata: dict[str, Any] = {}
        wm = self.worktree_manager

        if await wm.is_git_repo(directory):
            if isolate:
                target_branch = branch or default_branch_name(room_id)
                try:
                    record = await wm.create_worktree(directory, target_branch, room_id)
                except Exception as exc:
                    logger.warning(
                        "Worktree creation failed: %s. Using original directory.", exc,
                    )
                    branch = branch or await wm.get_current_branch(directory)
                else:
                    metadata.update(
                        worktree=True,
                        original_directory=directory,
                        is_new_branch=record.is_new_branch,
                    )
                    directory = record.path
                    branch = record.branch
            elif branch:
                try:
                    await wm.create_branch(directory, branch)
                except Exception as exc:
                    logger.warning(
                        "Failed to check out branch %s in %s: %s", branch, directory, exc,
                    )
            else:
                branch = await wm.get_current_branch(directory)
        else:
            logger.debug("Room %s: %s is not a git repository", room_id[:8], directory)

        room = Room(
            room_id=room_id,
            name=name,
            agent_type=kind,
            directory=directory,
            branch=branch,
            request_timeout=self.request_timeout if timeout is None else timeout,
            max_messages=self.max_messages,
            history_replay=self.history_replay,
            metadata=metadata,
        )
        self._rooms[room.id] = room
        room.on_destroyed(self._on_room_destroyed)

        try:
            agent = self.agent_registry.create(kind, directory, agent_options)
            await agent.start()
        except Exception as exc:
            logger.error("Room %s: agent %s failed to start: %s", room.id[:8], kind, exc)
            room.mark_failed(exc)
        else:
            room.attach_agent(agent)

        logger.info(
            "Room %s (%s) created agent=%s dir=%s branch=%s worktree=%s",
            room.id[:8], room.name, kind, directory, branch, room.is_worktree,
        )
        return room

    async def _on_room_destroyed(self, room: Room) -> None:
        self._rooms.pop(room.id, None)

    # ── Lookup ──

    def get_room(self, room_id: str) -> Room | None:
        return self._rooms.get(room_id)

    def get_room_by_name(self, name: str) -> Room | None:
        for room in self._rooms.values():
            if room.name == name:
                return room
        return None

    def find_room(self, ref: str) -> Room:
        """Look a room up by id, then by name."""
        room = self.get_room(ref) or self.get_room_by_name(ref)
        if room is None:
            raise RoomNotFoundError(ref)
        return room

    def list_rooms(self) -> list[Room]:
        return list(self._rooms.values())

    @property
    def count(self) -> int:
        return len(self._rooms)

    # ── Teardown ──

    async def destroy_room(self, room_id: str, *, cleanup_worktree: bool = True) -> bool:
        """Remove the room's worktree (forced), then destroy the room.

        Returns False for an unknown id. Worktree failures are logged.
        """
        room = self._rooms.get(room_id)
        if room is None:
            return False
        if cleanup_worktree and room.is_worktree:
            try:
                await self.worktree_manager.remove_worktree(room.id, force=True)
            except Exception as exc:
                logger.warning("Room %s: worktree cleanup failed: %s", room.id[:8], exc)
        await room.destroy()
        self._rooms.pop(room.id, None)
        return True

    async def destroy_all(self) -> dict[str, str]:
        """Destroy every room concurrently, then sweep leftover worktrees.

        Returns the per-workspace errors of the final sweep.
        """
        room_ids = list(self._rooms)
        if room_ids:
            logger.info("Destroying %d rooms", len(room_ids))
        results = await asyncio.gather(
            *(self.destroy_room(room_id) for room_id in room_ids),
            return_exceptions=True,
        )
        for room_id, result in zip(room_ids, results):
            if isinstance(result, BaseException):
                logger.error("Room %s: destroy failed: %s", room_id[:8], result)
        return await self.worktree_manager.cleanup_all_worktrees()

    # ── Introspection ──

    def get_stats(self) -> dict[str, int]:
        rooms = self.list_rooms()
        return {
            "roomCount": len(rooms),
            "worktreeRooms": sum(1 for r in rooms if r.is_worktree),
            "busyRooms": sum(1 for r in rooms if r.status is RoomStatus.BUSY),
            "totalClients": sum(len(r.observers) for r in rooms),
            "totalMessages": sum(len(r.history) for r in rooms),
        }

    async def get_worktree_info(self, room_id: str) -> dict[str, Any] | None:
        """The room's worktree record plus whether git still lists it."""
        record = self.worktree_manager.get_worktree_info(room_id)
        if record is None:
            return None
        info = record.to_dict()
        listed = await self.worktree_manager.list_worktrees(record.repo_path)
        target = Path(record.path).resolve()
        info["registered"] = any(Path(w.path).resolve() == target for w in listed)
        return info
