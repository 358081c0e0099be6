"""Per-agent-kind translation of streamed JSON records.

Each CLI emits differently shaped JSON lines. A translator maps one
parsed record onto zero or more canonical events (adapters/events.py).
``active_tools`` is owned by the calling session and carries tool
names between start and end records.

Unknown record shapes are never fatal: they produce a DebugEvent and,
when they carry a recognizable text field, a StreamChunk too.
"""
from __future__ import annotations

from collections.abc import Callable
from typing import Any

from ...adapters.events import (
    ActivityEnded,
    ActivityStarted,
    AgentErrorEvent,
    AgentEvent,
    AgentReply,
    DebugEvent,
    StreamChunk,
)

Translator = Callable[[dict[str, Any], dict[str, str]], list[AgentEvent]]

TOOL_DESCRIPTIONS: dict[str, dict[str, str]] = {
    "claude": {
        "Read": "Reading file",
        "Write": "Writing file",
        "Edit": "Editing file",
        "MultiEdit": "Editing file",
        "Bash": "Running command",
        "Grep": "Searching code",
        "Glob": "Finding files",
        "LS": "Listing directory",
        "Task": "Running sub-agent",
        "WebFetch": "Fetching URL",
        "WebSearch": "Searching web",
        "TodoWrite": "Updating tasks",
        "NotebookEdit": "Editing notebook",
    },
    "codex": {
        "command_execution": "Running command",
        "file_change": "Editing files",
        "file_edit": "Editing file",
        "file_write": "Writing file",
        "file_read": "Reading file",
        "mcp_tool_call": "Calling tool",
        "web_search": "Searching web",
        "todo_list": "Updating tasks",
    },
    "gemini": {
        "run_shell_command": "Running command",
        "read_file": "Reading file",
        "read_many_files": "Reading files",
        "write_file": "Writing file",
        "replace": "Editing file",
        "edit_file": "Editing file",
        "list_directory": "Listing directory",
        "glob": "Finding files",
        "search_file_content": "Searching code",
        "web_fetch": "Fetching URL",
        "google_web_search": "Searching web",
        "save_memory": "Saving memory",
    },
}

_TEXT_KEYS = ("text", "content", "message", "result", "response", "delta")


def describe_tool(kind: str, tool: str) -> str:
    """Human description of a tool, falling back to ``Using <tool>``."""
    return TOOL_DESCRIPTIONS.get(kind, {}).get(tool, f"Using {tool}")


def extract_text(record: Any, _depth: int = 0) -> str | None:
    """Find a recognizable text field in an arbitrary record."""
    if isinstance(record, str):
        return record or None
    if _depth > 2:
        return None
    if isinstance(record, list):
        parts = [
            t for t in (
                extract_text(item, _depth + 1) for item in record
                if isinstance(item, dict) and item.get("type", "text") == "text"
            ) if t
        ]
        return "".join(parts) or None
    if isinstance(record, dict):
        for key in _TEXT_KEYS:
            if key in record:
                text = extract_text(record[key], _depth + 1)
                if text:
                    return text
    return None


def _unknown(record: dict[str, Any]) -> list[AgentEvent]:
    events: list[AgentEvent] = [DebugEvent(payload=record)]
    text = extract_text(record)
    if text:
        events.append(StreamChunk(text=text))
    return events


def _error_message(record: dict[str, Any]) -> str:
    error = record.get("error")
    if isinstance(error, dict):
        return str(error.get("message") or "Unknown error")
    if isinstance(error, str) and error:
        return error
    return str(record.get("message") or "Unknown error")


# ── Claude Code (stream-json) ──


def translate_claude(
    record: dict[str, Any],
    active_tools: dict[str, str],
) -> list[AgentEvent]:
    etype = record.get("type", "")

    if etype == "stream_event" and isinstance(record.get("event"), dict):
        return translate_claude(record["event"], active_tools)

    if etype == "system":
        return [DebugEvent(payload=record)]

    if etype == "assistant":
        events: list[AgentEvent] = []
        message = record.get("message") or {}
        for block in message.get("content") or []:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and block.get("text"):
                events.append(StreamChunk(text=block["text"]))
            elif block.get("type") == "tool_use":
                name = block.get("name", "")
                active_tools[block.get("id", name)] = name
                events.append(ActivityStarted(
                    tool=name, description=describe_tool("claude", name),
                ))
        return events

    if etype == "user":
        # Tool results come back as user-role content blocks.
        events = []
        message = record.get("message") or {}
        content = message.get("content")
        if isinstance(content, list):
            for block in content:
                if isinstance(block, dict) and block.get("type") == "tool_result":
                    name = active_tools.pop(block.get("tool_use_id", ""), "")
                    if name:
                        events.append(ActivityEnded(
                            tool=name, is_error=bool(block.get("is_error")),
                        ))
        return events or [DebugEvent(payload=record)]

    if etype == "content_block_start":
        block = record.get("content_block") or {}
        if block.get("type") == "tool_use":
            name = block.get("name", "")
            active_tools[str(record.get("index", name))] = name
            return [ActivityStarted(
                tool=name, description=describe_tool("claude", name),
            )]
        return []

    if etype == "content_block_delta":
        delta = record.get("delta") or {}
        if delta.get("text"):
            return [StreamChunk(text=delta["text"])]
        return []  # partial tool input json is too noisy to stream

    if etype == "content_block_stop":
        name = active_tools.pop(str(record.get("index", "")), "")
        return [ActivityEnded(tool=name)] if name else []

    if etype == "result":
        text = record.get("result") or ""
        if record.get("is_error"):
            return [AgentErrorEvent(message=text or "Agent reported an error")]
        return [AgentReply(text=text)]

    if etype == "error":
        return [AgentErrorEvent(message=_error_message(record))]

    return _unknown(record)


# ── OpenAI Codex (codex exec --json) ──


def translate_codex(
    record: dict[str, Any],
    active_tools: dict[str, str],
) -> list[AgentEvent]:
    etype = record.get("type", "")
    item = record.get("item") or {}
    item_id = item.get("id", "")
    item_type = item.get("type", "")

    if etype in ("thread.started", "turn.started", "turn.completed"):
        return [DebugEvent(payload=record)]

    if etype == "item.started":
        if item_type in ("agent_message", "reasoning"):
            return [DebugEvent(payload=record)]
        tool = item_type
        if item_type == "mcp_tool_call":
            tool = item.get("tool") or item.get("tool_name") or item_type
        active_tools[item_id] = tool
        return [ActivityStarted(
            tool=tool, description=describe_tool("codex", item_type),
        )]

    if etype == "item.completed":
        if item_type == "agent_message":
            text = item.get("text", "")
            if not text:
                return []
            return [StreamChunk(text=text + "\n"), AgentReply(text=text)]
        if item_type == "reasoning":
            return [DebugEvent(payload=record)]
        tool = active_tools.pop(item_id, "") or item_type
        return [ActivityEnded(tool=tool, is_error=item.get("status") == "failed")]

    if etype in ("turn.failed", "error"):
        return [AgentErrorEvent(message=_error_message(record))]

    return _unknown(record)


# ── Gemini CLI (--output-format=stream-json) ──


def translate_gemini(
    record: dict[str, Any],
    active_tools: dict[str, str],
) -> list[AgentEvent]:
    etype = record.get("type", "")

    if etype == "init":
        return [DebugEvent(payload=record)]

    if etype == "message":
        if record.get("role") == "assistant" and record.get("content"):
            return [StreamChunk(text=str(record["content"]))]
        return [DebugEvent(payload=record)]

    if etype == "tool_use":
        name = record.get("tool_name", "")
        active_tools[record.get("tool_id", name)] = name
        return [ActivityStarted(
            tool=name, description=describe_tool("gemini", name),
        )]

    if etype == "tool_result":
        name = active_tools.pop(record.get("tool_id", ""), "")
        return [ActivityEnded(
            tool=name or "tool", is_error=record.get("status") == "error",
        )]

    if etype == "result":
        if record.get("status") == "error":
            return [AgentErrorEvent(message=_error_message(record))]
        return [DebugEvent(payload=record)]

    if etype == "error":
        return [AgentErrorEvent(message=_error_message(record))]

    return _unknown(record)


TRANSLATORS: dict[str, Translator] = {
    "claude": translate_claude,
    "codex": translate_codex,
    "gemini": translate_gemini,
}
