"""OpenAI Codex CLI session (plus the aider and sgpt variants).

Always one-shot. ``codex exec --json`` emits JSONL items that the
codex translator understands; aider and sgpt print plain text, which
is streamed raw and becomes the reply on exit.
"""
from __future__ import annotations

import logging

from .base import AgentSession

logger = logging.getLogger(__name__)


class CodexSession(AgentSession):
    """Session backed by an OpenAI-family CLI, selected by ``command``."""

    kind = "codex"
    default_command = "codex"
    install_hints = {
        "codex": "Install OpenAI Codex CLI from https://github.com/openai/codex",
        "aider": "pip install aider-chat",
        "sgpt": "pip install shell-gpt",
    }

    def build_one_shot_command(self, text: str) -> list[str]:
        name = self.command.rsplit("/", 1)[-1]
        cmd = [self.command]

        if name == "aider":
            cmd.extend(["--message", text, "--no-git"])
            if self.auto_accept:
                cmd.append("--yes-always")
            if self.model:
                cmd.extend(["--model", self.model])
            return cmd

        if name == "sgpt":
            if self.model:
                cmd.extend(["--model", self.model])
            cmd.append(text)
            return cmd

        cmd.extend(["exec", "--json", "--skip-git-repo-check"])
        if self.auto_accept:
            cmd.append("--full-auto")
        if self.model:
            cmd.extend(["--model", self.model])
        cmd.extend(["--", text])
        return cmd
