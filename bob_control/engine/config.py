"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via BOB_* env vars,
then a YAML file (see yaml_config.py), then CLI flags.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ..adapters.events import AgentEvent

logger = logging.getLogger(__name__)


# Async callback an agent session uses to report canonical events
# to the room that owns it.
# Signature: async def callback(event: AgentEvent) -> None
AgentEventCallback = Callable[["AgentEvent"], Awaitable[None]]

# Registry notification when a room is destroyed or created.
# Signature: async def callback(room) -> None
RoomCallback = Callable[[Any], Awaitable[None]]

_TRUE_VALUES = {"1", "true", "yes", "on"}


def env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUE_VALUES


async def fire_event(
    callback: Callable[[Any], Awaitable[None]] | None,
    event: Any,
) -> None:
    """Fire a callback if set; a failing callback is logged, never raised."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        logger.exception("Event callback failed for %s", type(event).__name__)


@dataclass
class ServerConfig:
    """Server, room and agent defaults."""

    # Network listener
    host: str = "127.0.0.1"
    port: int = 8420

    # Worktree isolation. When worktree_base is None the manager uses
    # <tempdir>/bob-control-worktrees.
    use_worktrees: bool = True
    worktree_base: str | None = None

    # Rooms
    # Set to 0 (or a negative value) to disable the request timeout.
    request_timeout_seconds: float = 600.0
    max_messages: int = 1000
    history_replay: int = 100
    default_agent: str = "claude"

    log_level: str = "INFO"

    # Per-agent-kind default options, e.g.
    # {"claude": {"model": "sonnet", "auto_accept": True}}
    agent_defaults: dict[str, dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Build config from environment variables."""
        config = cls()
        config.host = os.getenv("BOB_HOST", config.host)
        port = os.getenv("BOB_PORT")
        if port:
            try:
                config.port = int(port)
            except ValueError:
                logger.warning("Ignoring invalid BOB_PORT=%r", port)
        config.use_worktrees = env_flag("BOB_WORKTREES", config.use_worktrees)
        config.worktree_base = os.getenv("BOB_WORKTREE_BASE") or None
        timeout = os.getenv("BOB_TIMEOUT")
        if timeout:
            try:
                config.request_timeout_seconds = float(timeout)
            except ValueError:
                logger.warning("Ignoring invalid BOB_TIMEOUT=%r", timeout)
        max_messages = os.getenv("BOB_MAX_MESSAGES")
        if max_messages:
            try:
                config.max_messages = max(1, int(max_messages))
            except ValueError:
                logger.warning(
                    "Ignoring invalid BOB_MAX_MESSAGES=%r", max_messages,
                )
        config.default_agent = os.getenv(
            "BOB_DEFAULT_AGENT", config.default_agent,
        )
        config.log_level = os.getenv("BOB_LOG_LEVEL", config.log_level).upper()
        return config
