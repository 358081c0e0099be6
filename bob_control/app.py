"""Bob Control: main application entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from logging.handlers import RotatingFileHandler

import yaml

from bob_control import __version__
from bob_control.engine.config import ServerConfig

LOG_DIR = Path.home() / ".bob-control" / "logs"


def _configure_logging(level: str) -> Path:
    """Root logger: rotating file under ~/.bob-control/logs plus stderr."""
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    log_file = LOG_DIR / "bob-server.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def resolve_config(args: argparse.Namespace, cwd: Path | None = None) -> ServerConfig:
    """Defaults < environment < config file < CLI flags."""
    from bob_control.engine.yaml_config import find_config_file, load_yaml_config

    log = logging.getLogger(__name__)
    config = ServerConfig.from_env()

    config_path: Path | None = None
    if args.config:
        config_path = Path(args.config)
        log.info("Using explicit config path: %s (exists=%s)", config_path, config_path.exists())
    else:
        config_path = find_config_file(cwd)
        if config_path:
            log.info("Auto-discovered config: %s", config_path)
        else:
            log.info("No config file found in %s; using defaults", cwd or Path.cwd())
    if config_path is not None:
        config = load_yaml_config(config_path, base=config)

    if args.host:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.no_worktree:
        config.use_worktrees = False
    if args.timeout is not None:
        config.request_timeout_seconds = args.timeout
    if args.verbose:
        config.log_level = "DEBUG"
    elif args.log_level:
        config.log_level = args.log_level.upper()
    return config


def _list_agents(config: ServerConfig) -> None:
    from bob_control.engine.providers import build_agent_registry

    registry = build_agent_registry(config.agent_defaults)
    report = registry.get_availability_report()
    print("Agents:")
    for name in registry.list_names():
        session = registry.create(name, ".")
        aliases = registry.aliases_for(name)
        alias_text = f" (aliases: {', '.join(aliases)})" if aliases else ""
        state = "available" if report[name] else f"not found. {session.install_hint}"
        print(f"  {name}{alias_text}: {session.command} [{state}]")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bob-control",
        description="Bob Control: shared rooms for AI coding agent CLIs",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--host", metavar="HOST",
        help="Interface to listen on (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port", type=int, default=None,
        help="Server port (default: 8420)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML (or JSON) config file; default: auto-discover bob.yaml",
    )
    parser.add_argument(
        "--no-worktree", action="store_true",
        help="Run agents in the requested directory instead of a git worktree",
    )
    parser.add_argument(
        "--timeout", type=float, metavar="SECONDS",
        help="Per-request agent timeout (0 disables)",
    )
    parser.add_argument(
        "--log-level", metavar="LEVEL",
        help="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Shorthand for --log-level DEBUG",
    )
    parser.add_argument(
        "--list-agents", action="store_true",
        help="List agent kinds and whether their CLIs are installed, then exit",
    )
    parser.add_argument(
        "--no-cleanup", action="store_true",
        help="Skip reaping agent processes left behind by a crashed server",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    log_file = _configure_logging(
        "DEBUG" if args.verbose else (args.log_level or os.getenv("BOB_LOG_LEVEL", "INFO"))
    )
    log = logging.getLogger(__name__)

    try:
        config = resolve_config(args, Path.cwd())
    except (OSError, ValueError, yaml.YAMLError) as exc:
        log.error("Invalid configuration: %s", exc)
        sys.exit(2)
    logging.getLogger().setLevel(getattr(logging, config.log_level, logging.INFO))

    if args.list_agents:
        _list_agents(config)
        sys.exit(0)

    log.info(
        "Starting Bob Control %s cwd=%s host=%s port=%s log=%s",
        __version__, Path.cwd(), config.host, config.port, log_file,
    )

    if not args.no_cleanup:
        from bob_control.shared.services.process_cleanup import (
            cleanup_stale_runtime_processes,
        )

        try:
            reaped = cleanup_stale_runtime_processes(log=log.info)
            if reaped:
                log.warning("Reaped %d stale agent process(es) at startup", reaped)
        except Exception:
            log.exception("Startup stale-process cleanup failed")

    from bob_control.engine.providers import build_agent_registry
    from bob_control.server.server import BobServer

    registry = build_agent_registry(config.agent_defaults)
    registry.validate()
    server = BobServer(config, agent_registry=registry, cwd=str(Path.cwd()))
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        log.info("Interrupted")
    sys.exit(0)


if __name__ == "__main__":
    main()
