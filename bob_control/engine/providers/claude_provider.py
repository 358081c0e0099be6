"""Claude Code CLI session.

Interactive by default: one ``claude --print`` process per room with
stream-json on both stdin and stdout, keyed by a session id so a
respawned process resumes the same conversation. Set the
``interactive`` option to false to spawn ``claude -p`` per message.
"""
from __future__ import annotations

import logging
import uuid
from typing import Any

from .base import AgentSession, option

logger = logging.getLogger(__name__)


class ClaudeSession(AgentSession):
    """Session backed by the Claude Code CLI."""

    kind = "claude"
    default_command = "claude"
    install_hints = {
        "claude": "Install Claude Code CLI from https://claude.ai/download",
    }

    def __init__(self, directory: str, options: dict[str, Any] | None = None, **kwargs: Any) -> None:
        super().__init__(directory, options, **kwargs)
        self.interactive = bool(self.options.get("interactive", True))
        self.session_id: str = option(self.options, "session_id", "sessionId") or str(uuid.uuid4())

    def _common_args(self) -> list[str]:
        args: list[str] = []
        if self.auto_accept:
            args.append("--dangerously-skip-permissions")
        if self.model:
            args.extend(["--model", self.model])
        return args

    def build_interactive_command(self) -> list[str]:
        cmd = [
            self.command,
            "--print",
            "--output-format", "stream-json",
            "--input-format", "stream-json",
            "--verbose",
        ]
        if self._spawn_count:
            # A respawned process continues the conversation it replaces.
            cmd.extend(["--resume", self.session_id])
        else:
            cmd.extend(["--session-id", self.session_id])
        cmd.extend(self._common_args())
        return cmd

    def build_one_shot_command(self, text: str) -> list[str]:
        return [
            self.command,
            "-p",
            "--output-format", "stream-json",
            "--verbose",
            *self._common_args(),
            "--",
            text,
        ]
