"""Agent registry — maps agent-kind names to session factories.

The registry is built once at startup and handed to the RoomManager;
there is no module-level mutable table of agent kinds.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from ..errors import UnknownAgentKindError
from .base import AgentSession

logger = logging.getLogger(__name__)

# Signature: factory(directory, options) -> AgentSession
AgentFactory = Callable[[str, dict[str, Any]], AgentSession]


class AgentRegistry:
    """Registry of agent kinds available to rooms.

    Maps short names (e.g. 'claude', 'codex') to session factories,
    plus aliases that resolve to a registered name.
    """

    def __init__(self) -> None:
        self._factories: dict[str, AgentFactory] = {}
        self._aliases: dict[str, str] = {}
        self._defaults: dict[str, dict[str, Any]] = {}

    def register(
        self,
        name: str,
        factory: AgentFactory,
        *,
        aliases: list[str] | None = None,
        defaults: dict[str, Any] | None = None,
    ) -> None:
        """Register a factory by name, with optional aliases and default options."""
        self._factories[name] = factory
        self._defaults[name] = dict(defaults or {})
        for alias in aliases or []:
            self._aliases[alias] = name
        logger.debug("Agent kind registered: %s (aliases=%s)", name, aliases or [])

    def resolve(self, kind: str) -> str:
        """Canonical name for *kind*, raising UnknownAgentKindError."""
        key = (kind or "").strip().lower()
        key = self._aliases.get(key, key)
        if key not in self._factories:
            raise UnknownAgentKindError(kind, self.list_names())
        return key

    def create(
        self,
        kind: str,
        directory: str,
        options: dict[str, Any] | None = None,
    ) -> AgentSession:
        """Construct (but do not start) a session for *kind*."""
        name = self.resolve(kind)
        merged = dict(self._defaults.get(name, {}))
        merged.update(options or {})
        return self._factories[name](directory, merged)

    def list_names(self) -> list[str]:
        """Return all registered agent kind names."""
        return list(self._factories.keys())

    def aliases_for(self, name: str) -> list[str]:
        return sorted(a for a, target in self._aliases.items() if target == name)

    def get_availability_report(self) -> dict[str, bool]:
        """Return a mapping of kind → whether its default command is on PATH."""
        return {
            name: self.create(name, ".").is_available()
            for name in self._factories
        }

    def validate(self) -> dict[str, bool]:
        """Log which agent CLIs are installed. Returns the availability report."""
        report = self.get_availability_report()
        available = [n for n, ok in report.items() if ok]
        unavailable = [n for n, ok in report.items() if not ok]
        if available:
            logger.info("Available agents: %s", ", ".join(available))
        if unavailable:
            logger.warning(
                "Unavailable agents (CLI not installed): %s",
                ", ".join(unavailable),
            )
        if not available:
            logger.error("No agent CLIs are available! Rooms cannot start agents.")
        return report

    @property
    def count(self) -> int:
        return len(self._factories)


def build_agent_registry(
    agent_defaults: dict[str, dict[str, Any]] | None = None,
) -> AgentRegistry:
    """Build the registry of built-in agent kinds.

    *agent_defaults* carries per-kind options from the config file
    (command, model, auto_accept, interactive).
    """
    from .claude_provider import ClaudeSession
    from .codex_provider import CodexSession
    from .gemini_provider import GeminiSession

    agent_defaults = agent_defaults or {}
    registry = AgentRegistry()
    registry.register(
        "claude", ClaudeSession, defaults=agent_defaults.get("claude"),
    )
    registry.register(
        "codex", CodexSession,
        aliases=["openai", "gpt"], defaults=agent_defaults.get("codex"),
    )
    registry.register(
        "gemini", GeminiSession,
        aliases=["google"], defaults=agent_defaults.get("gemini"),
    )
    for kind in agent_defaults:
        if kind not in registry.list_names():
            logger.warning("Config for unknown agent kind '%s'; skipping", kind)
    return registry
