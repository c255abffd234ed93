"""WebSocket front end: accepts prompts from the web UI and feeds the orchestrator."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import traceback
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

import websockets
import yaml
from rich.console import Console
from rich.live import Live

from agent_client import AgentClient
from config import BridgeConfig, ConfigError, add_arguments, build_config
from fallback import ExtensionRelay, FallbackDispatcher
from fixer import build_manual_fix_prompt
from git_ops import GitOperator
from orchestrator import Orchestrator, _format_duration, build_table
from task_queue import Task, load_prompts
from task_store import TaskStore

log = logging.getLogger("server")
console = Console()

# Orchestrator events that change a prompt's status in the history file
_HISTORY_STATUS = {
    "agent_created": "running",
    "task_completed": "completed",
    "agent_error": "error",
    "agent_timeout": "error",
    "agent_failed": "error",
    "manual_action_required": "error",
    "deployment_error": "error",
    "deployment_timeout": "error",
    "error": "error",
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Prompt history
# ---------------------------------------------------------------------------

class PromptHistory:
    """Most recent prompts first, capped at *limit*, mirrored to a JSON file."""

    def __init__(self, path: Path, limit: int = 50):
        self.path = path
        self.limit = limit
        self.entries: list[dict] = []

    def load(self) -> None:
        if not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            log.warning("Prompt history %s is unreadable, starting fresh: %s", self.path, exc)
            return
        if not isinstance(data, list):
            log.warning("Prompt history %s is not a list, starting fresh", self.path)
            return
        self.entries = [e for e in data if isinstance(e, dict)][: self.limit]
        log.info("Loaded %d prompts from history", len(self.entries))

    def add(self, task: Task) -> dict:
        entry = {
            "id": task.id,
            "prompt": task.prompt,
            "metadata": task.metadata,
            "timestamp": task.created_at.isoformat(),
            "status": "pending",
        }
        self.entries.insert(0, entry)
        del self.entries[self.limit:]
        self.save()
        return entry

    def set_status(self, task_id: int, status: str) -> None:
        for entry in self.entries:
            if entry.get("id") == task_id:
                if entry.get("status") != status:
                    entry["status"] = status
                    self.save()
                return

    def save(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(self.entries, indent=2, default=str) + "\n", encoding="utf-8")
        except OSError as exc:
            log.warning("Could not write prompt history %s: %s", self.path, exc)


# ---------------------------------------------------------------------------
# WebSocket server
# ---------------------------------------------------------------------------

class BridgeServer:
    def __init__(self, orchestrator: Orchestrator, history: PromptHistory):
        self.orchestrator = orchestrator
        self.history = history
        self._pending_sends: set[asyncio.Task] = set()
        orchestrator.on_event = self._on_orchestrator_event

    def _on_orchestrator_event(self, event_type: str, payload: dict) -> None:
        status = _HISTORY_STATUS.get(event_type)
        if status and "task_id" in payload:
            self.history.set_status(payload["task_id"], status)

    async def _send(self, ws, message: dict) -> None:
        try:
            await ws.send(json.dumps(message, default=str))
        except websockets.ConnectionClosed:
            log.debug("Client gone, dropping %r message", message.get("type"))

    def _event_sender(self, ws) -> Callable[[str, dict], None]:
        """Fire-and-forget event callback bound to one connection."""

        def on_event(event_type: str, payload: dict) -> None:
            message = {"type": event_type, **payload, "timestamp": _now()}
            bg = asyncio.get_running_loop().create_task(self._send(ws, message))
            self._pending_sends.add(bg)
            bg.add_done_callback(self._pending_sends.discard)

        return on_event

    async def handler(self, ws) -> None:
        log.info("Client connected from %s", getattr(ws, "remote_address", "?"))
        await self._send(ws, {
            "type": "connection",
            "status": "success",
            "message": "Connected to Nether Bridge Server",
            "timestamp": _now(),
        })
        try:
            async for raw in ws:
                await self.handle_message(ws, raw)
        except websockets.ConnectionClosed as exc:
            log.info("Connection closed: %s", exc)
        finally:
            log.info("Client disconnected")

    async def handle_message(self, ws, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except (json.JSONDecodeError, TypeError, ValueError) as exc:
            await self._send(ws, {"type": "error", "message": "Failed to process message", "error": str(exc)})
            return
        if not isinstance(message, dict):
            await self._send(ws, {"type": "error", "message": "Failed to process message"})
            return

        kind = message.get("type")
        log.info("Received message: %s", kind)
        try:
            if kind == "ping":
                await self._send(ws, {"type": "pong", "timestamp": _now()})
            elif kind == "send_prompt":
                await self._handle_prompt(ws, message)
            elif kind == "get_history":
                await self._send(ws, {"type": "history", "data": self.history.entries, "timestamp": _now()})
            elif kind == "deployment_error":
                await self._handle_deployment_error(ws, message)
            elif kind == "trigger_fix_agent":
                await self._handle_trigger_fix(ws, message)
            elif kind == "check_agent_status":
                await self._handle_status_check(ws, message)
            else:
                log.warning("Unknown message type: %r", kind)
                await self._send(ws, {"type": "error", "message": f"Unknown message type: {kind}"})
        except Exception as exc:
            log.error("Error processing %r message:\n%s", kind, traceback.format_exc())
            await self._send(ws, {"type": "error", "message": "Failed to process message", "error": str(exc)})

    async def _enqueue(self, ws, prompt: str, metadata: dict) -> Task:
        task = Task(prompt=prompt, metadata=metadata, on_event=self._event_sender(ws))
        self.history.add(task)
        log.info("Prompt received (ID: %s): %s", task.id, task.prompt[:100])
        await self.orchestrator.enqueue(task)
        return task

    async def _handle_prompt(self, ws, message: dict) -> None:
        prompt = message.get("prompt")
        if not isinstance(prompt, str) or not prompt.strip():
            await self._send(ws, {"type": "error", "message": "Prompt cannot be empty"})
            return
        metadata = message.get("metadata") or {}
        if not isinstance(metadata, dict):
            await self._send(ws, {"type": "error", "message": "Prompt metadata must be an object"})
            return
        await self._enqueue(ws, prompt, dict(metadata))

    async def _handle_trigger_fix(self, ws, message: dict) -> None:
        error_info = message.get("error_info")
        if not isinstance(error_info, dict):
            await self._send(ws, {"type": "error", "message": "trigger_fix_agent needs error_info"})
            return
        analysis = error_info.get("analysis") or {}
        log.info("Manual fix agent triggered for %s", analysis.get("componentPath") or "unknown file")
        await self._enqueue(ws, build_manual_fix_prompt(error_info), {
            "taskType": "manual-fix",
            "originalError": error_info.get("logs"),
            "componentPath": analysis.get("componentPath"),
        })

    async def _handle_deployment_error(self, ws, message: dict) -> None:
        deployment = message.get("deployment") or {}
        error = message.get("error") or {}
        analysis = error.get("analysis") or {}
        log.info("Deployment error reported for %s", deployment.get("url") or deployment.get("id"))
        if analysis.get("isAutoFixable"):
            await self._enqueue(ws, build_manual_fix_prompt(error), {
                "taskType": "auto-fix",
                "originalError": error.get("logs"),
                "deploymentUrl": deployment.get("url"),
                "componentPath": analysis.get("componentPath"),
            })
            return
        await self._send(ws, {
            "type": "deployment_error_manual",
            "deployment": deployment,
            "error": error,
            "message": "Deployment error requires manual review",
        })

    async def _handle_status_check(self, ws, message: dict) -> None:
        agent_id = message.get("agent_id")
        if not agent_id:
            await self._send(ws, {"type": "error", "message": "check_agent_status needs agent_id"})
            return
        await self.orchestrator.sync_agent_status(str(agent_id), self._event_sender(ws))


# ---------------------------------------------------------------------------
# Startup and shutdown
# ---------------------------------------------------------------------------

def build_orchestrator(config: BridgeConfig) -> Orchestrator:
    git = GitOperator(config.repo_path, trunk=config.trunk_branch)
    agent_client = AgentClient(
        config.api_key, git, base_url=config.api_base_url, model=config.model
    )
    store = TaskStore(config.app_url, ports=config.app_ports)
    fallback = FallbackDispatcher(
        config.repo_path, config.editor_cli, ExtensionRelay(config.extension_url)
    )
    return Orchestrator(
        config, agent_client, store, git, fallback=fallback, status_path=config.status_path
    )


def print_banner(config: BridgeConfig, app_url: str) -> None:
    console.rule("[bold cyan]Nether Bridge")
    console.print(f"  WebSocket:  ws://{config.host}:{config.port}")
    console.print(f"  Web app:    {app_url}")
    console.print(f"  Repository: {config.repo_path}")
    console.print(f"  Staging:    {config.staging_branch} -> {config.trunk_branch}")
    console.print(f"  Prompts:    {config.prompts_dir}")
    if config.api_key:
        console.print(f"  Agent API:  {config.api_base_url} (model {config.model})")
    else:
        console.print("  Agent API:  [yellow]no CURSOR_API_KEY, prompts go to the editor fallbacks[/yellow]")
    console.print()


def print_summary(orchestrator: Orchestrator) -> None:
    console.print()
    console.rule("[bold green]Nether Bridge stopped")
    console.print(f"  Completed:    {len(orchestrator.completed_ids)}")
    console.print(f"  Failed:       {len(orchestrator.failed_ids)}")
    console.print(f"  Still queued: {len(orchestrator.queue)}")
    if orchestrator.current_task is not None:
        console.print(f"  In flight:    {orchestrator.current_task.id} ({orchestrator.current_task.status})")
    total = sum(orchestrator.task_durations.values())
    console.print(f"  Elapsed:      {_format_duration(total)}")


async def run_bridge(
    config: BridgeConfig,
    batch: list[Task] | None = None,
    live: bool = False,
    exit_when_done: bool = False,
) -> None:
    orchestrator = build_orchestrator(config)
    history = PromptHistory(config.history_path, limit=config.history_limit)
    history.load()
    bridge = BridgeServer(orchestrator, history)

    app_url = await orchestrator.store.discover()
    print_banner(config, app_url)

    try:
        async with websockets.serve(bridge.handler, config.host, config.port):
            log.info("Listening on ws://%s:%d", config.host, config.port)
            for task in batch or []:
                history.add(task)
                await orchestrator.enqueue(task)

            if exit_when_done:
                await orchestrator.wait_idle()
            elif live:
                with Live(build_table(orchestrator), console=console, refresh_per_second=2) as view:
                    while True:
                        view.update(build_table(orchestrator))
                        await asyncio.sleep(1)
            else:
                await asyncio.get_running_loop().create_future()
    finally:
        await orchestrator.close()
        print_summary(orchestrator)


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

def main() -> None:
    parser = argparse.ArgumentParser(description="Nether Bridge: queue prompts for background coding agents")
    add_arguments(parser)
    parser.add_argument(
        "--prompts",
        default=None,
        help="YAML file with a 'prompts' list to enqueue at startup",
    )
    parser.add_argument(
        "--exit-when-done",
        action="store_true",
        default=False,
        help="Stop once the --prompts batch has been processed (default: keep serving)",
    )
    parser.add_argument(
        "--live",
        action="store_true",
        default=False,
        help="Show a live queue table in the terminal",
    )
    parser.add_argument("--verbose", action="store_true", default=False, help="Debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        config = build_config(args)
    except ConfigError as exc:
        console.print(f"[bold red]Invalid configuration:[/bold red] {exc}")
        sys.exit(2)

    batch = None
    if args.prompts:
        try:
            batch = load_prompts(args.prompts)
        except (OSError, ValueError, yaml.YAMLError) as exc:
            console.print(f"[bold red]Could not load prompts:[/bold red] {exc}")
            sys.exit(2)
        log.info("Loaded %d prompts from %s", len(batch), args.prompts)

    try:
        asyncio.run(run_bridge(config, batch=batch, live=args.live, exit_when_done=args.exit_when_done))
    except KeyboardInterrupt:
        console.print("\n[bold red]Interrupted![/bold red] Shutting down…")
        log.warning("KeyboardInterrupt, shutting down")
        sys.exit(130)


if __name__ == "__main__":
    main()
