"""Tests for RoomManager: room creation, worktree isolation and teardown."""
from __future__ import annotations

import asyncio
import subprocess
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from fake_agents import RecordingConnection, make_registry

from bob_control.engine.errors import (
    DirectoryNotFoundError,
    RoomBusyError,
    RoomNotFoundError,
    UnknownAgentKindError,
    WorktreeError,
)
from bob_control.engine.models import MessageRole, RoomStatus
from bob_control.engine.room_manager import RoomManager
from bob_control.shared.services.worktree import WorktreeManager


def _git_init(path: Path) -> None:
    """Initialize a git repo in *path* with an initial commit."""
    subprocess.run(["git", "init"], cwd=str(path), capture_output=True, check=True)
    subprocess.run(["git", "config", "user.email", "test@test.com"], cwd=str(path), capture_output=True, check=True)
    subprocess.run(["git", "config", "user.name", "Test"], cwd=str(path), capture_output=True, check=True)
    (path / ".gitkeep").write_text("")
    subprocess.run(["git", "add", "."], cwd=str(path), capture_output=True, check=True)
    subprocess.run(["git", "commit", "-m", "init"], cwd=str(path), capture_output=True, check=True)


def _current_branch(path: Path | str) -> str:
    return subprocess.run(
        ["git", "rev-parse", "--abbrev-ref", "HEAD"],
        cwd=str(path), capture_output=True, text=True, check=True,
    ).stdout.strip()


def _manager(tmp_path: Path, **kwargs) -> RoomManager:
    return RoomManager(
        make_registry(),
        worktree_manager=WorktreeManager(tmp_path / "worktrees"),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_non_git_directory_skips_worktree(tmp_path: Path):
    workdir = tmp_path / "plain"
    workdir.mkdir()
    manager = _manager(tmp_path)

    room = await manager.create_room(agent_type="echo", directory=str(workdir))

    assert room.directory == str(workdir.resolve())
    assert room.is_worktree is False
    assert room.branch is None
    assert room.status is RoomStatus.READY
    assert manager.get_room(room.id) is room
    assert not (tmp_path / "worktrees").exists()


@pytest.mark.asyncio
async def test_end_to_end_echo(tmp_path: Path):
    manager = _manager(tmp_path)
    room = await manager.create_room(
        agent_type="echo", directory=str(tmp_path), agent_options={"delay": 0.1},
    )
    conn = RecordingConnection("client-1")
    room.add_observer(conn)
    conn.events.clear()

    first = asyncio.create_task(room.send_to_agent("ping me back", "client-1"))
    await asyncio.sleep(0.02)
    with pytest.raises(RoomBusyError):
        await room.send_to_agent("too soon", "client-1")
    assert await first == "ping me back"

    relevant = [
        e for e in conn.events
        if e["type"] == "status" or (e["type"] == "message" and e["message"]["role"] == "agent")
    ]
    assert [e["type"] for e in relevant] == ["status", "message", "status"]
    assert relevant[0]["status"] == "busy"
    assert relevant[1]["message"]["content"] == "ping me back"
    assert relevant[2]["status"] == "ready"
    users = [m.content for m in room.history if m.role is MessageRole.USER]
    assert users == ["ping me back"]


@pytest.mark.asyncio
async def test_unknown_agent_kind_creates_nothing(tmp_path: Path):
    manager = _manager(tmp_path)
    with pytest.raises(UnknownAgentKindError) as exc_info:
        await manager.create_room(agent_type="nope", directory=str(tmp_path))
    assert "echo" in str(exc_info.value)
    assert manager.count == 0


@pytest.mark.asyncio
async def test_missing_directory_creates_nothing(tmp_path: Path):
    manager = _manager(tmp_path)
    missing = tmp_path / "missing"
    with pytest.raises(DirectoryNotFoundError) as exc_info:
        await manager.create_room(agent_type="echo", directory=str(missing))
    assert str(missing.resolve()) in str(exc_info.value)
    assert manager.count == 0
    assert not (tmp_path / "worktrees").exists()


@pytest.mark.asyncio
async def test_alias_resolves_to_registered_kind(tmp_path: Path):
    manager = _manager(tmp_path)
    room = await manager.create_room(agent_type="parrot", directory=str(tmp_path))
    assert room.agent_type == "echo"


@pytest.mark.asyncio
async def test_agent_start_failure_leaves_room_in_error(tmp_path: Path):
    manager = _manager(tmp_path)
    room = await manager.create_room(agent_type="missing", directory=str(tmp_path))

    assert room.status is RoomStatus.ERROR
    assert room.agent is None
    assert manager.get_room(room.id) is room
    system = [m.content for m in room.history if m.role is MessageRole.SYSTEM]
    assert system == [
        "Failed to start agent: Command 'definitely-not-installed-agent' not found in PATH. Install it first"
    ]


@pytest.mark.asyncio
async def test_git_repo_gets_worktree(tmp_path: Path):
    repo = tmp_path / "repo"
    repo.mkdir()
    _git_init(repo)
    manager = _manager(tmp_path)

    room = await manager.create_room(agent_type="echo", directory=str(repo))

    assert room.is_worktree
    assert room.original_directory == str(repo.resolve())
    assert room.branch == f"bob-agent-{room.id[:8]}"
    worktree = Path(room.directory)
    assert worktree.parent == (tmp_path / "worktrees")
    assert worktree.name == f"repo-{room.id}"
    assert _current_branch(worktree) == room.branch

    info = await manager.get_worktree_info(room.id)
    assert info["registered"] is True
    assert info["branch"] == room.branch
    assert manager.get_stats()["worktreeRooms"] == 1

    assert await manager.destroy_room(room.id) is True
    assert not worktree.exists()
    assert manager.get_room(room.id) is None
    assert await manager.get_worktree_info(room.id) is None
    assert room.status is RoomStatus.STOPPED


@pytest.mark.asyncio
async def test_requested_branch_is_used_for_worktree(tmp_path: Path):
    repo = tmp_path / "repo"
    repo.mkdir()
    _git_init(repo)
    manager = _manager(tmp_path)

    room = await manager.create_room(agent_type="echo", directory=str(repo), branch="feature/login")

    assert room.branch == "feature/login"
    assert _current_branch(room.directory) == "feature/login"
    await manager.destroy_all()


@pytest.mark.asyncio
async def test_worktree_failure_falls_back_to_original_directory(tmp_path: Path):
    repo = tmp_path / "repo"
    repo.mkdir()
    _git_init(repo)
    manager = _manager(tmp_path)

    with patch.object(
        manager.worktree_manager, "create_worktree",
        AsyncMock(side_effect=WorktreeError("disk full")),
    ):
        room = await manager.create_room(agent_type="echo", directory=str(repo))

    assert room.is_worktree is False
    assert room.directory == str(repo.resolve())
    assert room.branch == _current_branch(repo)
    assert room.status is RoomStatus.READY


@pytest.mark.asyncio
async def test_branch_in_place_without_worktrees(tmp_path: Path):
    repo = tmp_path / "repo"
    repo.mkdir()
    _git_init(repo)
    manager = _manager(tmp_path, use_worktrees=False)

    room = await manager.create_room(agent_type="echo", directory=str(repo), branch="feature-x")

    assert room.is_worktree is False
    assert room.directory == str(repo.resolve())
    assert room.branch == "feature-x"
    assert _current_branch(repo) == "feature-x"


@pytest.mark.asyncio
async def test_current_branch_recorded_without_worktree(tmp_path: Path):
    repo = tmp_path / "repo"
    repo.mkdir()
    _git_init(repo)
    manager = _manager(tmp_path)

    room = await manager.create_room(agent_type="echo", directory=str(repo), use_worktree=False)

    assert room.branch == _current_branch(repo)


@pytest.mark.asyncio
async def test_lookup_by_id_or_name(tmp_path: Path):
    manager = _manager(tmp_path)
    room = await manager.create_room(agent_type="echo", directory=str(tmp_path), name="api-work")

    assert manager.find_room(room.id) is room
    assert manager.find_room("api-work") is room
    assert manager.get_room_by_name("api-work") is room
    with pytest.raises(RoomNotFoundError):
        manager.find_room("missing")


@pytest.mark.asyncio
async def test_destroying_room_directly_deregisters_it(tmp_path: Path):
    manager = _manager(tmp_path)
    room = await manager.create_room(agent_type="echo", directory=str(tmp_path))
    await room.destroy()
    assert manager.get_room(room.id) is None
    assert await manager.destroy_room(room.id) is False


@pytest.mark.asyncio
async def test_destroy_all_and_stats(tmp_path: Path):
    repo = tmp_path / "repo"
    repo.mkdir()
    _git_init(repo)
    manager = _manager(tmp_path)
    rooms = [
        await manager.create_room(agent_type="echo", directory=str(repo)),
        await manager.create_room(agent_type="echo", directory=str(tmp_path)),
    ]
    rooms[1].add_observer(RecordingConnection("client-1"))
    rooms[1].add_message(MessageRole.SYSTEM, "note")

    stats = manager.get_stats()
    assert stats == {
        "roomCount": 2,
        "worktreeRooms": 1,
        "busyRooms": 0,
        "totalClients": 1,
        "totalMessages": 1,
    }

    errors = await manager.destroy_all()

    assert errors == {}
    assert manager.count == 0
    assert all(r.status is RoomStatus.STOPPED for r in rooms)
    assert manager.worktree_manager.records == []
    assert not Path(rooms[0].directory).exists()
