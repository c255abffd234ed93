"""Bridge settings: YAML file, then environment, then command-line flags."""

from __future__ import annotations

import argparse
import os
from dataclasses import dataclass, fields
from pathlib import Path

import yaml

from agent_client import DEFAULT_API_BASE_URL, DEFAULT_MODEL
from deployment import DEPLOY_MAX_POLLS, DEPLOY_POLL_INTERVAL
from fixer import MAX_RETRIES
from task_store import DEFAULT_APP_PORTS

AGENT_POLL_INTERVAL = 10  # seconds
AGENT_MAX_POLLS = 180  # ~30 minutes


class ConfigError(Exception):
    """Raised for unreadable or invalid settings."""


@dataclass
class BridgeConfig:
    repo_path: Path = Path(".")
    host: str = "localhost"
    port: int = 3939
    app_url: str | None = None
    app_ports: tuple[int, ...] = DEFAULT_APP_PORTS
    api_base_url: str = DEFAULT_API_BASE_URL
    api_key: str = ""
    model: str = DEFAULT_MODEL
    trunk_branch: str = "main"
    staging_branch: str = "nether-grasp-staging"
    component_root: str = "nether-grasp"
    prompts_dir: Path | None = None
    max_retries: int = MAX_RETRIES
    agent_poll_interval: float = AGENT_POLL_INTERVAL
    agent_max_polls: int = AGENT_MAX_POLLS
    deploy_poll_interval: float = DEPLOY_POLL_INTERVAL
    deploy_max_polls: int = DEPLOY_MAX_POLLS
    extension_url: str = "ws://localhost:3940"
    editor_cli: str | None = "cursor"
    status_path: Path = Path("status.json")
    history_limit: int = 50

    def __post_init__(self) -> None:
        self.repo_path = Path(self.repo_path).resolve()
        if self.prompts_dir is None:
            self.prompts_dir = self.repo_path / self.component_root / "prompts"
        self.prompts_dir = Path(self.prompts_dir)
        self.status_path = Path(self.status_path)
        self.app_ports = tuple(int(p) for p in self.app_ports)
        self.validate()

    def validate(self) -> None:
        if not 0 < self.port < 65536:
            raise ConfigError(f"port out of range: {self.port}")
        if self.max_retries < 0:
            raise ConfigError("max_retries must be >= 0")
        for name in ("agent_max_polls", "deploy_max_polls"):
            if getattr(self, name) < 1:
                raise ConfigError(f"{name} must be >= 1")
        for name in ("agent_poll_interval", "deploy_poll_interval"):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must be >= 0")
        if not self.trunk_branch or not self.staging_branch:
            raise ConfigError("trunk and staging branch names cannot be empty")

    @property
    def history_path(self) -> Path:
        return self.prompts_dir / "prompt-history.json"


def load_config_file(path: str | Path) -> dict:
    path = Path(path)
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Could not read config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    known = {f.name for f in fields(BridgeConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown keys in {path}: {', '.join(unknown)}")
    return data


# Flags whose value overrides the file when given (dest -> BridgeConfig field)
_FLAG_FIELDS = {
    "repo_path": "repo_path",
    "host": "host",
    "port": "port",
    "app_url": "app_url",
    "api_base_url": "api_base_url",
    "model": "model",
    "trunk": "trunk_branch",
    "staging_branch": "staging_branch",
    "component_root": "component_root",
    "prompts_dir": "prompts_dir",
    "max_retries": "max_retries",
    "extension_url": "extension_url",
    "editor_cli": "editor_cli",
    "status_file": "status_path",
}


def build_config(args: argparse.Namespace, environ: dict | None = None) -> BridgeConfig:
    env = os.environ if environ is None else environ
    values: dict = {}
    if getattr(args, "config", None):
        values.update(load_config_file(args.config))

    if env.get("NEXT_PUBLIC_APP_URL"):
        values["app_url"] = env["NEXT_PUBLIC_APP_URL"]
    if env.get("CURSOR_API_BASE_URL"):
        values["api_base_url"] = env["CURSOR_API_BASE_URL"]
    if env.get("CURSOR_API_KEY"):
        values["api_key"] = env["CURSOR_API_KEY"]
    if env.get("CURSOR_CLI"):
        values["editor_cli"] = env["CURSOR_CLI"]

    for dest, name in _FLAG_FIELDS.items():
        value = getattr(args, dest, None)
        if value is not None:
            values[name] = value

    try:
        return BridgeConfig(**values)
    except (TypeError, ValueError) as exc:
        raise ConfigError(str(exc)) from exc


def add_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", default=None, help="YAML settings file")
    parser.add_argument("--repo-path", default=None, help="Path to the git repo (default: cwd)")
    parser.add_argument("--host", default=None, help="WebSocket bind host (default: localhost)")
    parser.add_argument("--port", type=int, default=None, help="WebSocket port (default: 3939)")
    parser.add_argument(
        "--app-url",
        default=None,
        help="Web app base URL (default: $NEXT_PUBLIC_APP_URL or auto-detect on ports 3000-3003)",
    )
    parser.add_argument("--api-base-url", default=None, help="Agent service base URL")
    parser.add_argument("--model", default=None, help=f"Agent model (default: {DEFAULT_MODEL})")
    parser.add_argument("--trunk", default=None, help="Trunk branch (default: main)")
    parser.add_argument(
        "--staging-branch", default=None, help="Staging branch (default: nether-grasp-staging)"
    )
    parser.add_argument(
        "--component-root", default=None, help="Directory holding component files (default: nether-grasp)"
    )
    parser.add_argument("--prompts-dir", default=None, help="Where prompt files are written")
    parser.add_argument(
        "--max-retries",
        type=int,
        default=None,
        help=f"Fix agents per failed deployment lineage (default: {MAX_RETRIES})",
    )
    parser.add_argument("--extension-url", default=None, help="Editor extension WebSocket URL")
    parser.add_argument("--editor-cli", default=None, help="Editor CLI used as dispatch fallback")
    parser.add_argument("--status-file", default=None, help="Where status.json is written")
