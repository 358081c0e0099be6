"""Tests for the Room request lifecycle, history and fan-out."""
from __future__ import annotations

import asyncio

import pytest

from fake_agents import EchoAgent, ExplodingConnection, RecordingConnection

from bob_control.adapters.events import AgentErrorEvent, AgentReply
from bob_control.engine.errors import (
    AgentReportedError,
    NoAgentError,
    RequestCancelledError,
    RequestTimeoutError,
    RoomBusyError,
    RoomClosedError,
    SubprocessFailureError,
    UnavailableExecutableError,
)
from bob_control.engine.models import AgentStatus, MessageRole, ObserverEntry, RoomStatus
from bob_control.engine.room import Room


def _make_room(options: dict | None = None, **kwargs) -> tuple[Room, EchoAgent, RecordingConnection]:
    room = Room(room_id="test-123", **kwargs)
    agent = EchoAgent("/tmp", options)
    agent.status = AgentStatus.READY
    room.attach_agent(agent)
    conn = RecordingConnection("client-1", "alice")
    room.add_observer(conn)
    conn.events.clear()
    return room, agent, conn


def _system_messages(room: Room) -> list[str]:
    return [m.content for m in room.history if m.role is MessageRole.SYSTEM]


# ── History ──


def test_history_evicts_oldest_beyond_capacity():
    room, _, _ = _make_room(max_messages=5)
    for i in range(8):
        room.add_message(MessageRole.SYSTEM, f"m{i}")
    assert [m.content for m in room.history] == ["m3", "m4", "m5", "m6", "m7"]


def test_join_replays_recent_slice_only():
    room, _, _ = _make_room(history_replay=3)
    for i in range(6):
        room.add_message(MessageRole.USER, f"m{i}")
    late = RecordingConnection("client-2")
    room.add_observer(late)
    joined = late.events[0]
    assert joined["type"] == "room_joined"
    assert [m["content"] for m in joined["history"]] == ["m3", "m4", "m5"]
    assert joined["status"] == "ready"
    assert joined["roomName"] == "room-test-123"


def test_presence_is_broadcast_to_existing_observers():
    room, _, conn = _make_room()
    room.add_observer(RecordingConnection("client-2", "bob"))
    presence = conn.of_type("presence")
    assert presence[-1]["action"] == "joined"
    assert presence[-1]["name"] == "bob"
    assert presence[-1]["clientCount"] == 2

    room.remove_observer("client-2")
    assert conn.of_type("presence")[-1]["action"] == "left"
    assert not room.remove_observer("client-2")


def test_broadcast_survives_closed_and_failing_observers():
    room, _, conn = _make_room()
    closed = RecordingConnection("closed")
    room.add_observer(closed)
    closed.is_open = False
    closed.events.clear()
    room.observers["boom"] = ObserverEntry(connection=ExplodingConnection("boom"))

    room.add_message(MessageRole.SYSTEM, "hello")

    assert conn.of_type("message")[-1]["message"]["content"] == "hello"
    assert closed.events == []
    assert len(room.history) == 1


# ── Send lifecycle ──


@pytest.mark.asyncio
async def test_send_broadcasts_busy_message_then_ready():
    room, agent, conn = _make_room()

    reply = await room.send_to_agent("hello there", "client-1")

    assert reply == "hello there"
    assert agent.prompts == ["hello there"]
    sequence = [
        (e["type"], e.get("status") or e.get("message", {}).get("role"))
        for e in conn.events
        if e["type"] in ("status", "message")
    ]
    assert sequence == [
        ("status", "busy"),
        ("message", "user"),
        ("message", "agent"),
        ("status", "ready"),
    ]
    agent_msg = conn.of_type("message")[-1]["message"]
    assert agent_msg["content"] == "hello there"
    assert conn.of_type("message")[0]["message"]["clientId"] == "client-1"
    assert conn.of_type("stream")[0]["chunk"] == "hello there"
    assert room.status is RoomStatus.READY
    assert room.pending_request is None


@pytest.mark.asyncio
async def test_second_send_while_busy_is_rejected():
    room, agent, _ = _make_room({"delay": 0.2})

    first = asyncio.create_task(room.send_to_agent("one"))
    await asyncio.sleep(0.02)
    assert room.status is RoomStatus.BUSY
    assert room.pending_request is not None

    with pytest.raises(RoomBusyError):
        await room.send_to_agent("two")

    await first
    user_messages = [m for m in room.history if m.role is MessageRole.USER]
    assert [m.content for m in user_messages] == ["one"]
    assert agent.prompts == ["one"]


@pytest.mark.asyncio
async def test_cancel_without_pending_is_noop():
    room, _, conn = _make_room()
    assert room.cancel() is False
    assert len(room.history) == 0
    assert conn.events == []


@pytest.mark.asyncio
async def test_cancel_pending_request():
    room, agent, _ = _make_room({"delay": 5})

    task = asyncio.create_task(room.send_to_agent("long job"))
    await asyncio.sleep(0.02)
    assert room.cancel() is True
    assert room.cancel() is False

    with pytest.raises(RequestCancelledError):
        await task

    assert _system_messages(room) == ["Request cancelled"]
    assert room.status is RoomStatus.READY
    assert room.pending_request is None
    assert agent.aborts == 1


@pytest.mark.asyncio
async def test_timeout_returns_room_to_ready_and_aborts_agent():
    room, agent, _ = _make_room({"delay": 5}, request_timeout=0.05)

    with pytest.raises(RequestTimeoutError):
        await room.send_to_agent("slow")

    assert room.status is RoomStatus.READY
    assert room.pending_request is None
    assert agent.aborts == 1
    assert _system_messages(room) == ["Error: Request timed out after 0.05s"]


@pytest.mark.asyncio
async def test_subprocess_failure_leaves_room_in_error():
    room, agent, _ = _make_room({"fail_with": "exit code 3"})

    with pytest.raises(SubprocessFailureError):
        await room.send_to_agent("do it")

    assert room.status is RoomStatus.ERROR
    assert _system_messages(room) == ["Error: exit code 3"]

    # error accepts new sends
    agent.fail_with = None
    assert await room.send_to_agent("again") == "again"
    assert room.status is RoomStatus.READY


@pytest.mark.asyncio
async def test_agent_error_event_reported_once():
    room, _, _ = _make_room({"report_error": "rate limited"})

    with pytest.raises(AgentReportedError):
        await room.send_to_agent("hello")

    assert _system_messages(room) == ["Agent error: rate limited"]
    assert room.status is RoomStatus.ERROR


@pytest.mark.asyncio
async def test_reset_while_busy_forces_ready():
    room, agent, conn = _make_room({"delay": 5})

    task = asyncio.create_task(room.send_to_agent("stuck"))
    await asyncio.sleep(0.02)

    status = await room.reset_status()
    assert status is RoomStatus.READY
    assert room.pending_request is None
    assert agent.aborts == 1

    with pytest.raises(RequestCancelledError):
        await task

    assert room.status is RoomStatus.READY
    assert _system_messages(room) == ["Room status reset to ready"]
    assert conn.of_type("status")[-1]["status"] == "ready"


@pytest.mark.asyncio
async def test_reset_when_idle_is_safe():
    room, _, _ = _make_room()
    assert await room.reset_status() is RoomStatus.READY
    assert _system_messages(room) == ["Room status reset to ready"]


@pytest.mark.asyncio
async def test_late_reply_is_discarded():
    room, _, _ = _make_room()
    await room._on_agent_event(AgentReply(text="nobody asked"))
    assert len(room.history) == 0


@pytest.mark.asyncio
async def test_agent_error_while_idle_marks_room_error():
    room, _, _ = _make_room()
    await room._on_agent_event(AgentErrorEvent(message="process exited with code 1"))
    assert room.status is RoomStatus.ERROR
    assert _system_messages(room) == ["Agent error: process exited with code 1"]


@pytest.mark.asyncio
async def test_room_without_agent():
    room = Room(room_id="test-456")
    room.mark_failed(UnavailableExecutableError("claude", "Install Claude Code CLI"))
    assert room.status is RoomStatus.ERROR
    assert _system_messages(room)[0].startswith("Failed to start agent: Command 'claude' not found")
    with pytest.raises(NoAgentError):
        await room.send_to_agent("hi")


# ── Naming ──


def test_auto_name_from_first_message():
    room, _, conn = _make_room()
    assert room.auto_name_from_message("fix the login bug") is True
    assert room.name == "login"
    renamed = conn.of_type("room_renamed")[-1]
    assert renamed["oldName"] == "room-test-123"
    assert renamed["newName"] == "login"

    assert room.auto_name_from_message("fix the login issue") is False
    assert room.auto_name_from_message("add new feature") is True
    assert room.name == "new feature"


def test_auto_name_skips_short_messages():
    room, _, _ = _make_room()
    assert room.auto_name_from_message("hi") is False
    assert room.name == "room-test-123"


def test_custom_name_disables_auto_naming():
    room, _, _ = _make_room()
    room.rename("my-custom-room")
    assert room.has_custom_name
    assert room.auto_name_from_message("fix the login bug") is False
    assert room.name == "my-custom-room"

    named = Room(room_id="test-789", name="given")
    assert named.auto_name_from_message("fix the login bug") is False


def test_rename_rejects_empty_name():
    room, _, _ = _make_room()
    with pytest.raises(ValueError):
        room.rename("   ")


@pytest.mark.asyncio
async def test_send_auto_names_room():
    room, _, _ = _make_room()
    await room.send_to_agent("add dark mode toggle")
    assert room.name == "dark mode toggle"


# ── Teardown ──


@pytest.mark.asyncio
async def test_destroy_is_idempotent_and_closes_room():
    room, agent, conn = _make_room()
    destroyed: list[str] = []

    async def on_destroyed(r: Room) -> None:
        destroyed.append(r.id)

    room.on_destroyed(on_destroyed)
    await room.destroy()
    await room.destroy()

    assert room.status is RoomStatus.STOPPED
    assert agent.stopped
    assert destroyed == ["test-123"]
    assert conn.of_type("room_closed")
    assert room.observers == {}
    with pytest.raises(RoomClosedError):
        room.add_observer(RecordingConnection("client-9"))
    with pytest.raises(RoomClosedError):
        await room.send_to_agent("hi")


@pytest.mark.asyncio
async def test_destroy_during_send_settles_request():
    room, _, _ = _make_room({"delay": 5})
    task = asyncio.create_task(room.send_to_agent("hang"))
    await asyncio.sleep(0.02)

    await room.destroy()

    with pytest.raises(RequestCancelledError):
        await task
    assert room.status is RoomStatus.STOPPED
    assert room.pending_request is None


def test_to_dict_snapshot():
    room, _, _ = _make_room()
    snapshot = room.to_dict()
    assert snapshot["id"] == "test-123"
    assert snapshot["status"] == "ready"
    assert snapshot["agentStatus"] == "ready"
    assert snapshot["clientCount"] == 1
    assert snapshot["isWorktree"] is False
