"""YAML configuration loader.

Overlays a YAML file onto a ServerConfig built from env vars. JSON
config files load through the same path since YAML is a superset.

Example YAML:
    server:
      host: 127.0.0.1
      port: 8420

    rooms:
      request_timeout: 600     # seconds, 0 disables
      max_messages: 1000
      history_replay: 100
      default_agent: claude

    worktrees:
      enabled: true
      base_dir: /tmp/bob-control-worktrees

    agents:
      claude:
        model: sonnet
        auto_accept: true
        interactive: true
      codex:
        command: aider

    logging:
      level: INFO
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

import yaml

from .config import ServerConfig

logger = logging.getLogger(__name__)

CONFIG_CANDIDATES = (
    "bob.yaml",
    "bob.yml",
    ".bob/config.yaml",
    "config.json",
)


@dataclass
class AgentConfig:
    """Default options for one agent kind."""
    command: str | None = None
    model: str | None = None
    auto_accept: bool | None = None
    interactive: bool | None = None

    def to_options(self) -> dict[str, Any]:
        """Only the keys that were actually set."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }


def _parse_agent_config(kind: str, raw: Any) -> AgentConfig:
    if not isinstance(raw, dict):
        logger.warning("Ignoring non-mapping config for agent '%s'", kind)
        return AgentConfig()
    # camelCase keys are accepted for config.json compatibility.
    auto_accept = raw.get("auto_accept", raw.get("autoAccept"))
    return AgentConfig(
        command=raw.get("command"),
        model=raw.get("model"),
        auto_accept=bool(auto_accept) if auto_accept is not None else None,
        interactive=(
            bool(raw["interactive"]) if "interactive" in raw else None
        ),
    )


def find_config_file(cwd: str | Path | None = None) -> Path | None:
    """Return the first existing config candidate under *cwd*."""
    root = Path(cwd) if cwd else Path.cwd()
    for name in CONFIG_CANDIDATES:
        candidate = root / name
        if candidate.is_file():
            return candidate
    return None


def load_yaml_config(
    path: str | Path,
    base: ServerConfig | None = None,
) -> ServerConfig:
    """Load a config file and overlay it onto *base* (or env defaults)."""
    path = Path(path)
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path)
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"Config file {path} must contain a mapping")

    logger.info(
        "Parsed config %s, sections: %s",
        path.name, ", ".join(sorted(raw)) or "(empty)",
    )

    config = replace(base) if base is not None else ServerConfig.from_env()
    config.agent_defaults = dict(config.agent_defaults)

    server = raw.get("server") or {}
    if "host" in server:
        config.host = str(server["host"])
    if "port" in server:
        config.port = int(server["port"])

    rooms = raw.get("rooms") or {}
    if "request_timeout" in rooms:
        config.request_timeout_seconds = float(rooms["request_timeout"])
    if "max_messages" in rooms:
        config.max_messages = max(1, int(rooms["max_messages"]))
    if "history_replay" in rooms:
        config.history_replay = max(0, int(rooms["history_replay"]))
    if "default_agent" in rooms:
        config.default_agent = str(rooms["default_agent"])

    worktrees = raw.get("worktrees") or {}
    if "enabled" in worktrees:
        config.use_worktrees = bool(worktrees["enabled"])
    if worktrees.get("base_dir"):
        config.worktree_base = str(worktrees["base_dir"])

    for kind, agent_raw in (raw.get("agents") or {}).items():
        options = _parse_agent_config(kind, agent_raw).to_options()
        merged = dict(config.agent_defaults.get(kind, {}))
        merged.update(options)
        config.agent_defaults[kind] = merged

    log_section = raw.get("logging") or {}
    if log_section.get("level"):
        config.log_level = str(log_section["level"]).upper()

    return config
