"""Agent session implementations, one per coding-agent CLI."""
from .base import AgentSession
from .registry import AgentRegistry, build_agent_registry
from .claude_provider import ClaudeSession
from .codex_provider import CodexSession
from .gemini_provider import GeminiSession

__all__ = [
    "AgentSession",
    "AgentRegistry",
    "build_agent_registry",
    "ClaudeSession",
    "CodexSession",
    "GeminiSession",
]
