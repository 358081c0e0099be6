"""Google Gemini CLI session.

One-shot ``gemini --prompt=...`` with stream-json output. Gemini
streams assistant text as ``message`` records and has no final
result text, so the reply is the concatenated stream.
"""
from __future__ import annotations

import logging

from .base import AgentSession

logger = logging.getLogger(__name__)


class GeminiSession(AgentSession):
    """Session backed by the Gemini CLI."""

    kind = "gemini"
    default_command = "gemini"
    install_hints = {
        "gemini": "Install Gemini CLI: npm install -g @google/gemini-cli",
    }

    def build_one_shot_command(self, text: str) -> list[str]:
        cmd = [self.command]
        if self.model:
            cmd.extend(["--model", self.model])
        if self.auto_accept:
            cmd.append("--yolo")
        # --flag=value keeps yargs from reading the prompt as a positional
        cmd.append(f"--prompt={text}")
        cmd.append("--output-format=stream-json")
        return cmd
