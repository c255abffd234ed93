"""Active prompt artifact and the fallbacks used when the agent API is unavailable."""

from __future__ import annotations

import asyncio
import json
import logging
import subprocess
from datetime import datetime, timezone
from pathlib import Path

import websockets

from task_queue import Task

logger = logging.getLogger(__name__)

ACTIVE_PROMPT_NAME = "active-prompt.txt"
_RULE = "-" * 62

# Methods reported by FallbackDispatcher.run
METHOD_CLI = "cli"
METHOD_EXTENSION = "extension"
METHOD_MANUAL = "manual"


def render_active_prompt(task: Task) -> str:
    return "\n".join([
        "NEW PROMPT FROM NETHER-GRASP",
        "",
        f"Timestamp: {task.created_at.isoformat()}",
        f"Prompt ID: {task.id}",
        "",
        _RULE,
        "",
        task.prompt,
        "",
        _RULE,
        "",
        "Metadata:",
        json.dumps(task.metadata or {}, indent=2),
        "",
        _RULE,
        "",
        "INSTRUCTIONS FOR AI:",
        "1. Read the prompt above carefully",
        "2. Execute the requested changes to the webapp",
        "3. Follow all project conventions (see conventions_rules.md)",
        "4. After completing the task, delete this file",
        "5. Mark the task as complete in your response",
    ])


def write_active_prompt(prompts_dir: Path, task: Task) -> Path:
    prompts_dir.mkdir(parents=True, exist_ok=True)
    path = prompts_dir / ACTIVE_PROMPT_NAME
    path.write_text(render_active_prompt(task) + "\n", encoding="utf-8")
    logger.info("Active prompt file: %s", path)
    return path


class ExtensionRelay:
    """Sends ``open_composer`` messages to the editor extension's WebSocket.

    Each send opens its own short-lived connection. No persistent socket is
    kept and the extension's ``composer_opened`` acknowledgement is not
    awaited; a completed send counts as delivered.

    Gives up after *max_attempts* consecutive connection failures; a
    successful send resets the count.
    """

    def __init__(self, url: str, max_attempts: int = 5, open_timeout: float = 5.0):
        self.url = url
        self.max_attempts = max_attempts
        self.open_timeout = open_timeout
        self.failed_attempts = 0

    @property
    def available(self) -> bool:
        return self.failed_attempts < self.max_attempts

    async def send_prompt(self, prompt: str, prompt_file: Path, relative_path: str) -> bool:
        if not self.available:
            logger.info("Editor extension unreachable after %d attempts, skipping", self.failed_attempts)
            return False
        message = {
            "type": "open_composer",
            "prompt": prompt,
            "metadata": {
                "source": "nether-bridge",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "promptFile": str(prompt_file),
                "relativePath": relative_path,
            },
        }
        try:
            async with websockets.connect(self.url, open_timeout=self.open_timeout) as ws:
                await ws.send(json.dumps(message))
        except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as exc:
            self.failed_attempts += 1
            logger.warning(
                "Editor extension not available at %s (%d/%d): %s",
                self.url,
                self.failed_attempts,
                self.max_attempts,
                exc,
            )
            return False
        self.failed_attempts = 0
        logger.info("Sent prompt to editor extension")
        return True


class FallbackDispatcher:
    """CLI first, then the extension relay, then a manual-action notice."""

    def __init__(
        self,
        repo_path: Path,
        editor_cli: str | None,
        relay: ExtensionRelay | None,
        cli_timeout: int = 10,
    ):
        self.repo_path = repo_path
        self.editor_cli = editor_cli
        self.relay = relay
        self.cli_timeout = cli_timeout

    def _open_with_cli(self, prompt_file: Path) -> bool:
        if not self.editor_cli:
            return False
        try:
            proc = subprocess.run(
                [self.editor_cli, str(prompt_file)],
                cwd=self.repo_path,
                capture_output=True,
                text=True,
                timeout=self.cli_timeout,
            )
        except (subprocess.TimeoutExpired, OSError) as exc:
            logger.info("Editor CLI not available: %s", exc)
            return False
        if proc.returncode != 0:
            logger.info("Editor CLI exited with code %d: %s", proc.returncode, proc.stderr[:300])
            return False
        return True

    async def run(self, prompt_file: Path) -> str:
        loop = asyncio.get_running_loop()
        if await loop.run_in_executor(None, self._open_with_cli, prompt_file):
            logger.info("Opened %s with the editor CLI", prompt_file)
            return METHOD_CLI

        try:
            relative = str(prompt_file.relative_to(self.repo_path))
        except ValueError:
            relative = str(prompt_file)
        if self.relay is not None and await self.relay.send_prompt(
            f"Read and execute the prompt in {relative}", prompt_file, relative
        ):
            return METHOD_EXTENSION

        logger.warning("All dispatch methods failed; prompt saved to %s", prompt_file)
        return METHOD_MANUAL
