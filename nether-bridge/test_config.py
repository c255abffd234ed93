"""Tests for BridgeConfig and its loaders."""

import argparse
from pathlib import Path

import pytest

from config import BridgeConfig, ConfigError, add_arguments, build_config


def parse(*argv: str) -> argparse.Namespace:
    parser = argparse.ArgumentParser()
    add_arguments(parser)
    return parser.parse_args(list(argv))


def test_defaults(tmp_path: Path) -> None:
    config = build_config(parse("--repo-path", str(tmp_path)), environ={})
    assert config.port == 3939
    assert config.host == "localhost"
    assert config.api_base_url == "https://api.cursor.com"
    assert config.model == "claude-4.5-sonnet"
    assert config.trunk_branch == "main"
    assert config.staging_branch == "nether-grasp-staging"
    assert config.max_retries == 3
    assert (config.agent_poll_interval, config.agent_max_polls) == (10, 180)
    assert (config.deploy_poll_interval, config.deploy_max_polls) == (5, 120)
    assert config.app_url is None
    assert config.app_ports == (3000, 3001, 3002, 3003)
    assert config.prompts_dir == tmp_path.resolve() / "nether-grasp" / "prompts"
    assert config.history_path.name == "prompt-history.json"
    assert config.api_key == ""


def test_environment(tmp_path: Path) -> None:
    env = {
        "CURSOR_API_KEY": "key_abc",
        "NEXT_PUBLIC_APP_URL": "http://localhost:3002",
        "CURSOR_CLI": "/usr/local/bin/cursor",
    }
    config = build_config(parse("--repo-path", str(tmp_path)), environ=env)
    assert config.api_key == "key_abc"
    assert config.app_url == "http://localhost:3002"
    assert config.editor_cli == "/usr/local/bin/cursor"


def test_flags_override_file_and_env(tmp_path: Path) -> None:
    settings = tmp_path / "bridge.yaml"
    settings.write_text("port: 4000\nstaging_branch: from-file\nmax_retries: 1\n")
    args = parse("--config", str(settings), "--repo-path", str(tmp_path), "--port", "4100", "--trunk", "develop")

    config = build_config(args, environ={})

    assert config.port == 4100
    assert config.staging_branch == "from-file"
    assert config.max_retries == 1
    assert config.trunk_branch == "develop"


def test_unknown_file_keys(tmp_path: Path) -> None:
    settings = tmp_path / "bridge.yaml"
    settings.write_text("prot: 4000\n")
    with pytest.raises(ConfigError, match="prot"):
        build_config(parse("--config", str(settings)), environ={})


def test_unreadable_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="Could not read"):
        build_config(parse("--config", str(tmp_path / "missing.yaml")), environ={})


@pytest.mark.parametrize(
    "overrides",
    [
        {"port": 0},
        {"max_retries": -1},
        {"agent_max_polls": 0},
        {"deploy_poll_interval": -5},
        {"trunk_branch": ""},
    ],
)
def test_invalid_values(tmp_path: Path, overrides: dict) -> None:
    with pytest.raises(ConfigError):
        BridgeConfig(repo_path=tmp_path, **overrides)
