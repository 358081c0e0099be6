"""Tests for config precedence: defaults < env < config file < CLI flags."""
from __future__ import annotations

import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from bob_control.app import build_parser, resolve_config
from bob_control.engine.config import ServerConfig
from bob_control.engine.yaml_config import find_config_file, load_yaml_config


def test_defaults():
    with patch.dict(os.environ, {}, clear=True):
        config = ServerConfig.from_env()
    assert config.host == "127.0.0.1"
    assert config.port == 8420
    assert config.use_worktrees is True
    assert config.request_timeout_seconds == 600.0
    assert config.max_messages == 1000
    assert config.default_agent == "claude"


def test_env_overrides():
    env = {
        "BOB_HOST": "0.0.0.0",
        "BOB_PORT": "9000",
        "BOB_WORKTREES": "false",
        "BOB_TIMEOUT": "30",
        "BOB_LOG_LEVEL": "debug",
    }
    with patch.dict(os.environ, env):
        config = ServerConfig.from_env()
    assert config.host == "0.0.0.0"
    assert config.port == 9000
    assert config.use_worktrees is False
    assert config.request_timeout_seconds == 30.0
    assert config.log_level == "DEBUG"


def test_invalid_env_values_are_ignored():
    with patch.dict(os.environ, {"BOB_PORT": "not-a-port", "BOB_TIMEOUT": "soon"}):
        config = ServerConfig.from_env()
    assert config.port == 8420
    assert config.request_timeout_seconds == 600.0


def test_yaml_overlays_base(tmp_path: Path):
    path = tmp_path / "bob.yaml"
    path.write_text(yaml.safe_dump({
        "server": {"port": 9100},
        "rooms": {"request_timeout": 0, "history_replay": 20},
        "worktrees": {"enabled": False, "base_dir": str(tmp_path / "wt")},
        "agents": {
            "claude": {"model": "opus", "interactive": False},
            "codex": {"command": "aider", "autoAccept": False},
        },
        "logging": {"level": "warning"},
    }))
    base = ServerConfig(host="10.0.0.1")

    config = load_yaml_config(path, base=base)

    assert config.host == "10.0.0.1"
    assert config.port == 9100
    assert config.request_timeout_seconds == 0.0
    assert config.history_replay == 20
    assert config.use_worktrees is False
    assert config.worktree_base == str(tmp_path / "wt")
    assert config.agent_defaults == {
        "claude": {"model": "opus", "interactive": False},
        "codex": {"command": "aider", "auto_accept": False},
    }
    assert config.log_level == "WARNING"
    # the base is not mutated
    assert base.port == 8420
    assert base.agent_defaults == {}


def test_json_config_loads(tmp_path: Path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"server": {"host": "::1"}}))
    assert find_config_file(tmp_path) == path
    assert load_yaml_config(path, base=ServerConfig()).host == "::1"


def test_non_mapping_config_is_rejected(tmp_path: Path):
    path = tmp_path / "bob.yaml"
    path.write_text("- just\n- a list\n")
    with pytest.raises(ValueError, match="mapping"):
        load_yaml_config(path, base=ServerConfig())


def test_missing_config_raises(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        load_yaml_config(tmp_path / "absent.yaml")


def test_find_config_prefers_bob_yaml(tmp_path: Path):
    assert find_config_file(tmp_path) is None
    (tmp_path / "config.json").write_text("{}")
    (tmp_path / "bob.yaml").write_text("{}")
    assert find_config_file(tmp_path) == tmp_path / "bob.yaml"


def test_cli_flags_win_over_file_and_env(tmp_path: Path):
    (tmp_path / "bob.yaml").write_text(yaml.safe_dump({
        "server": {"port": 9100, "host": "10.0.0.2"},
        "rooms": {"request_timeout": 120},
    }))
    args = build_parser().parse_args(["--port", "9200", "--no-worktree", "-v"])

    with patch.dict(os.environ, {"BOB_PORT": "9000", "BOB_HOST": "10.0.0.1"}):
        config = resolve_config(args, tmp_path)

    assert config.port == 9200
    assert config.host == "10.0.0.2"
    assert config.request_timeout_seconds == 120.0
    assert config.use_worktrees is False
    assert config.log_level == "DEBUG"


def test_explicit_config_path(tmp_path: Path):
    custom = tmp_path / "elsewhere.yml"
    custom.write_text(yaml.safe_dump({"rooms": {"default_agent": "gemini"}}))
    args = build_parser().parse_args(["--config", str(custom), "--timeout", "5"])

    config = resolve_config(args, tmp_path)

    assert config.default_agent == "gemini"
    assert config.request_timeout_seconds == 5.0
