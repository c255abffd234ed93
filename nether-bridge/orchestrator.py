"""Orchestrator: run queued prompts through the agent pipeline, one task at a time."""

from __future__ import annotations

import asyncio
import json
import logging
import traceback
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from pathlib import Path

from rich.table import Table

from agent_client import AgentClient, AgentClientError, AgentStatus
from config import BridgeConfig
from deployment import (
    OUTCOME_COMPLETED,
    OUTCOME_FAILED,
    OUTCOME_MERGE_FAILED,
    OUTCOME_SUPERSEDED,
    OUTCOME_TIMEOUT,
    DeploymentOutcome,
    DeploymentTracker,
)
from fallback import METHOD_MANUAL, FallbackDispatcher, write_active_prompt
from fixer import FixController
from git_ops import GitError, GitOperator, MergeResult
from task_queue import (
    AGENT_FAILED_STATES,
    AGENT_FINISHED,
    COMPLETED,
    DEPLOYING,
    ERROR,
    PENDING,
    QUEUED,
    RUNNING,
    Task,
    TaskQueue,
)
from task_store import TaskRecord, TaskStore, TaskStoreError

log = logging.getLogger("orchestrator")

# Type alias for the optional event callback
EventCallback = Callable[[str, dict], None] | None
SleepFn = Callable[[float], Awaitable[None]]


def _fire_event(on_event: EventCallback, event_type: str, payload: dict) -> None:
    """Invoke the event callback if set, silently swallowing any exceptions."""
    if on_event is None:
        return
    try:
        on_event(event_type, payload)
    except Exception as exc:  # pragma: no cover
        log.warning("on_event callback raised for %r: %s", event_type, exc)


class Orchestrator:
    """Owns the task queue and the single processing slot.

    A task takes the slot in :meth:`drain_next` and gives it back through
    :meth:`_release`, which starts the next queued task. Everything that
    runs while a task holds the slot is a background asyncio task wrapped
    by :meth:`_guarded`, so an unexpected exception releases the slot
    instead of stalling the queue.
    """

    def __init__(
        self,
        config: BridgeConfig,
        agent_client: AgentClient,
        store: TaskStore,
        git: GitOperator,
        fallback: FallbackDispatcher | None = None,
        sleep: SleepFn = asyncio.sleep,
        status_path: Path | None = None,
        on_event: EventCallback = None,
    ):
        self.config = config
        self.agent_client = agent_client
        self.store = store
        self.git = git
        self.fallback = fallback
        self.status_path = status_path
        self.on_event = on_event
        self._sleep = sleep

        self.queue = TaskQueue()
        self.processing = False
        self.current_task: Task | None = None

        self.tracker = DeploymentTracker(
            store,
            interval=config.deploy_poll_interval,
            max_polls=config.deploy_max_polls,
            sleep=sleep,
        )
        self.fixer = FixController(
            agent_client,
            store,
            start_agent_poll=self._start_agent_poll,
            notify=self._notify,
            default_branch=config.staging_branch,
            max_retries=config.max_retries,
        )

        self.tasks: dict[int, Task] = {}  # every task seen, in arrival order
        self.completed_ids: set[int] = set()
        self.failed_ids: set[int] = set()
        self.task_start_times: dict[int, datetime] = {}  # task_id -> when it took the slot
        self.task_durations: dict[int, float] = {}  # task_id -> seconds held
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    async def enqueue(self, task: Task) -> int:
        """Append *task* and start it if the slot is free. Returns its queue position.

        The position counts the in-flight task, so the first task submitted
        while another is processing gets 2.
        """
        self.tasks[task.id] = task
        waiting = self.queue.push(task)
        position = waiting + (1 if self.processing else 0)
        log.info("Task %s queued at position %d", task.id, position)
        self._notify(task, "task_queued", {
            "queue_position": position,
            "total_in_queue": waiting,
            "prompt": task.prompt,
            "message": f"Task queued (position {position})",
        })

        try:
            record = await self.store.create_task(task, QUEUED)
        except TaskStoreError as exc:
            log.warning("Could not record task %s in the task store: %s", task.id, exc)
        else:
            if record is not None and record.id is not None and task.record_id is None:
                task.record_id = record.id

        self.drain_next()
        return position

    def drain_next(self) -> Task | None:
        """Start the head of the queue unless the slot is held or the queue is empty."""
        if self.processing or not self.queue:
            return None
        task = self.queue.pop()
        self.processing = True
        self.current_task = task
        self.task_start_times[task.id] = datetime.now(timezone.utc)
        log.info("Task %s took the processing slot (%d still queued)", task.id, len(self.queue))
        self._spawn(task, self._run_pipeline(task))
        return task

    def _release(self, task: Task, reason: str) -> None:
        if self.current_task is not task:
            log.warning("Task %s does not hold the processing slot; ignoring release (%s)", task.id, reason)
            return
        self.processing = False
        self.current_task = None
        start = self.task_start_times.get(task.id)
        if start is not None:
            self.task_durations[task.id] = (datetime.now(timezone.utc) - start).total_seconds()
        log.info("Task %s released the processing slot: %s", task.id, reason)
        self._write_status()
        self.drain_next()

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    def _spawn(self, task: Task, coro: Awaitable[None]) -> asyncio.Task:
        bg = asyncio.get_running_loop().create_task(self._guarded(task, task.generation, coro))
        self._background.add(bg)
        bg.add_done_callback(self._background.discard)
        return bg

    async def _guarded(self, task: Task, generation: int, coro: Awaitable[None]) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception:
            log.error("Unhandled error while processing task %s:\n%s", task.id, traceback.format_exc())
            if self.current_task is task and task.generation == generation:
                self._mark_failed(task, "Internal error, see bridge logs")
                self._notify(task, "error", {"message": task.error})
                self._release(task, "unhandled exception")

    async def wait_idle(self) -> None:
        """Wait until no background work is left. Used by batch runs and tests."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Notifications and store updates
    # ------------------------------------------------------------------

    def _notify(self, task: Task, event_type: str, payload: dict) -> None:
        payload = {"task_id": task.id, **payload}
        _fire_event(task.on_event, event_type, payload)
        _fire_event(self.on_event, event_type, payload)
        self._write_status()

    def _record_key(self, task: Task, updating_agent: bool = False) -> dict | None:
        if task.record_id is not None:
            return {"id": task.record_id}
        if task.component_name:
            return {"ComponentName": task.component_name}
        if task.agent_id and not updating_agent:
            return {"agent_id": task.agent_id}
        return None

    async def _update_record(self, task: Task, **fields) -> TaskRecord | None:
        key = self._record_key(task, updating_agent="agent_id" in fields)
        if key is None:
            log.debug("Task %s has no store key yet; skipping update %s", task.id, sorted(fields))
            return None
        try:
            return await self.store.update_task(**key, **fields)
        except TaskStoreError as exc:
            log.warning("Failed to update task %s in the task store: %s", task.id, exc)
            return None

    def _mark_failed(self, task: Task, message: str) -> None:
        task.status = ERROR
        task.error = message
        self.failed_ids.add(task.id)
        self.completed_ids.discard(task.id)

    async def _fail(self, task: Task, message: str, **fields) -> None:
        self._mark_failed(task, message)
        await self._update_record(task, status=ERROR, **fields)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _run_pipeline(self, task: Task) -> None:
        log.info("Processing task %s: %s", task.id, task.prompt[:80])
        staging = task.staging_branch(self.config.staging_branch)

        pull = await self.git.pull_trunk()
        if not pull.ok:
            log.warning("Pull of %s failed (continuing): %s", self.config.trunk_branch, pull.error[:300])

        stage = await self.git.stage_component(staging, task.component_name, self.config.component_root)
        for warning in stage.warnings:
            log.debug("Staging warning for task %s: %s", task.id, warning)

        task.status = PENDING
        await self._update_record(task, status=PENDING)
        self._write_status()

        prompt_file = None
        try:
            prompt_file = write_active_prompt(self.config.prompts_dir, task)
        except OSError as exc:
            log.warning("Could not write active prompt file for task %s: %s", task.id, exc)

        try:
            launch = await self.agent_client.create_agent(task.prompt, staging)
        except (AgentClientError, GitError) as exc:
            await self._dispatch_failed(task, prompt_file, exc)
            return

        task.agent_id = launch.agent_id
        task.agent_status = launch.status
        task.agent_url = launch.url
        task.agent_branch = launch.branch_name
        task.status = RUNNING
        log.info("Task %s dispatched to agent %s", task.id, launch.agent_id)
        self._notify(task, "agent_created", {
            "agent_id": launch.agent_id,
            "status": launch.status,
            "url": launch.url,
            "branch": staging,
            "metadata": task.metadata,
            "message": "Agent created, working on your request",
        })
        await self._update_record(
            task,
            agent_id=launch.agent_id,
            agent_status=launch.status,
            agent_url=launch.url,
            status=RUNNING,
        )
        self._start_agent_poll(task, launch.agent_id)

    async def _dispatch_failed(self, task: Task, prompt_file: Path | None, exc: Exception) -> None:
        log.error("Agent dispatch failed for task %s: %s", task.id, exc)
        method = METHOD_MANUAL
        if self.fallback is not None and prompt_file is not None:
            method = await self.fallback.run(prompt_file)

        if method == METHOD_MANUAL:
            self._notify(task, "manual_action_required", {
                "error": str(exc),
                "prompt_file": str(prompt_file) if prompt_file else None,
                "message": "Agent dispatch failed. Open the prompt file in your editor manually.",
            })
        else:
            self._notify(task, "agent_failed", {
                "error": str(exc),
                "fallback": method,
                "prompt_file": str(prompt_file) if prompt_file else None,
                "message": f"Agent dispatch failed, prompt handed off via {method}",
            })
        await self._fail(task, f"Dispatch failed: {exc}")
        self._release(task, "dispatch failed")

    # ------------------------------------------------------------------
    # Agent-completion poll
    # ------------------------------------------------------------------

    def _start_agent_poll(self, task: Task, agent_id: str) -> None:
        self._spawn(task, self._poll_agent(task, agent_id))

    def _is_current(self, task: Task, generation: int) -> bool:
        return self.current_task is task and task.generation == generation

    async def _poll_agent(self, task: Task, agent_id: str) -> None:
        generation = task.generation
        interval = self.config.agent_poll_interval
        max_polls = self.config.agent_max_polls
        log.info("Polling agent %s for task %s", agent_id, task.id)

        for poll in range(1, max_polls + 1):
            await self._sleep(interval)
            if not self._is_current(task, generation):
                log.info("Agent poll for %s superseded", agent_id)
                return

            try:
                status = await self.agent_client.get_agent_status(agent_id)
            except AgentClientError as exc:
                log.warning("Agent status check failed (poll %d/%d): %s", poll, max_polls, exc)
                continue

            if not self._is_current(task, generation):
                log.info("Agent poll for %s superseded", agent_id)
                return

            task.agent_status = status.status
            if status.branch_name:
                task.agent_branch = status.branch_name
            log.info("Agent %s status: %s (poll %d/%d)", agent_id, status.status, poll, max_polls)
            self._notify(task, "agent_status_update", {
                "agent_id": agent_id,
                "status": status.status,
                "branch": task.agent_branch,
                "poll": poll,
            })

            if status.status == AGENT_FINISHED:
                await self._agent_finished(task, agent_id, generation)
                return
            if status.status in AGENT_FAILED_STATES:
                await self._fail(task, f"Agent {agent_id} ended with {status.status}", agent_status=status.status)
                self._notify(task, "agent_error", {
                    "agent_id": agent_id,
                    "status": status.status,
                    "message": f"Agent ended with status {status.status}",
                })
                self._release(task, f"agent {status.status}")
                return

        log.warning("Agent %s did not finish after %d polls", agent_id, max_polls)
        self._notify(task, "agent_timeout", {
            "agent_id": agent_id,
            "polls": max_polls,
            "message": "Agent polling timed out",
        })
        await self._fail(task, f"Agent {agent_id} timed out")
        self._release(task, "agent poll timed out")

    async def _agent_finished(self, task: Task, agent_id: str, generation: int) -> None:
        log.info("Agent %s finished; waiting for the preview deployment", agent_id)
        # Still Running: the slot is held until the deployment settles
        await self._update_record(
            task,
            agent_status=AGENT_FINISHED,
            branch_name=task.agent_branch,
            status=RUNNING,
        )
        self._notify(task, "agent_completed", {
            "agent_id": agent_id,
            "branch": task.agent_branch,
            "url": task.agent_url,
            "message": "Agent finished, waiting for deployment",
        })

        async def on_preview_ready(record: TaskRecord) -> MergeResult:
            return await self._merge(task, record)

        outcome = await self.tracker.wait(
            task,
            agent_id,
            on_preview_ready=on_preview_ready,
            is_current=lambda: self._is_current(task, generation),
        )
        await self._handle_deployment(task, agent_id, outcome)

    # ------------------------------------------------------------------
    # Deployment
    # ------------------------------------------------------------------

    async def _merge(self, task: Task, record: TaskRecord) -> MergeResult:
        task.status = DEPLOYING
        self._write_status()
        branch = task.agent_branch or record.branch_name or task.staging_branch(self.config.staging_branch)
        result = await self.git.merge_to_trunk(branch)
        if result.success:
            self._notify(task, "deployment_success", {
                "branch": branch,
                "message": f"Preview succeeded, merged {branch} into {self.config.trunk_branch}",
            })
        return result

    async def _handle_deployment(self, task: Task, agent_id: str, outcome: DeploymentOutcome) -> None:
        if outcome.kind == OUTCOME_SUPERSEDED:
            log.info("Deployment watch for agent %s superseded", agent_id)
            return

        if outcome.kind == OUTCOME_COMPLETED:
            task.status = COMPLETED
            task.error = None
            self.completed_ids.add(task.id)
            self._notify(task, "task_completed", {
                "agent_id": agent_id,
                "deployment_url": outcome.record.deployment_url if outcome.record else None,
                "message": "Task completed and deployed",
            })
            self._release(task, "completed")
            return

        if outcome.kind == OUTCOME_MERGE_FAILED:
            merge = outcome.merge
            reason = "merge_conflict" if merge and merge.conflict else "merge_failed"
            error = merge.error if merge else "Merge failed"
            await self._fail(task, error)
            self._notify(task, "deployment_error", {
                "agent_id": agent_id,
                "reason": reason,
                "error": error,
                "message": error,
            })
            self._release(task, reason)
            return

        if outcome.kind == OUTCOME_FAILED:
            if await self.fixer.attempt_retry(agent_id, task, outcome.record):
                return
            retry = self.fixer.record_for(agent_id)
            record = outcome.record
            logs = (record.deployment_logs or record.error_logs) if record else None
            await self._fail(task, "Deployment failed")
            self._notify(task, "deployment_error", {
                "agent_id": agent_id,
                "reason": "deployment_failed",
                "retry_count": retry.count,
                "max_retries": self.fixer.max_retries,
                "error": logs,
                "message": f"Deployment failed after {retry.count} fix attempt(s)",
            })
            self._release(task, "deployment failed")
            return

        if outcome.kind == OUTCOME_TIMEOUT:
            self._notify(task, "deployment_timeout", {
                "agent_id": agent_id,
                "polls": outcome.polls,
                "message": "Deployment verification timed out",
            })
            await self._fail(task, "Deployment verification timed out")
            self._release(task, "deployment poll timed out")
            return

        raise ValueError(f"Unknown deployment outcome {outcome.kind!r}")

    # ------------------------------------------------------------------
    # Out-of-band status sync
    # ------------------------------------------------------------------

    async def sync_agent_status(self, agent_id: str, on_event: EventCallback = None) -> AgentStatus | None:
        """Fetch *agent_id*'s status for a client and reconcile its record.

        Covers agents that finished or failed while the client was away: a
        finished agent is recorded as FINISHED with its branch and reported
        through ``agent_completed``, a failed one through ``agent_error``.
        The queue is left alone.
        """
        try:
            status = await self.agent_client.get_agent_status(agent_id)
        except AgentClientError as exc:
            log.warning("Status check for agent %s failed: %s", agent_id, exc)
            _fire_event(on_event, "error", {"agent_id": agent_id, "message": str(exc)})
            return None

        finished = status.status == AGENT_FINISHED
        _fire_event(on_event, "agent_status_update", {
            "agent_id": agent_id,
            "status": status.status,
            "branch": status.branch_name,
        })
        try:
            await self.store.update_task(
                agent_id=agent_id,
                agent_status=status.status,
                branch_name=status.branch_name,
                status=RUNNING if finished else None,
            )
        except TaskStoreError as exc:
            log.warning("Could not record status of agent %s: %s", agent_id, exc)

        if finished:
            log.info("Agent %s finished (branch %s)", agent_id, status.branch_name)
            _fire_event(on_event, "agent_completed", {
                "agent_id": agent_id,
                "branch": status.branch_name,
                "message": "Agent finished, waiting for deployment",
            })
        elif status.status in AGENT_FAILED_STATES:
            log.info("Agent %s ended with %s", agent_id, status.status)
            _fire_event(on_event, "agent_error", {
                "agent_id": agent_id,
                "status": status.status,
                "message": f"Agent ended with status {status.status}",
            })
        return status

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status_dict(self) -> dict:
        now = datetime.now(timezone.utc)
        current = self.current_task

        def _elapsed(tid: int) -> float | None:
            if tid in self.task_durations:
                return self.task_durations[tid]
            if tid in self.task_start_times:
                return (now - self.task_start_times[tid]).total_seconds()
            return None

        return {
            "tasks": {
                "total": len(self.tasks),
                "queued": len(self.queue),
                "processing": 1 if self.processing else 0,
                "completed": len(self.completed_ids),
                "failed": len(self.failed_ids),
            },
            "current": (
                {
                    "task_id": current.id,
                    "status": current.status,
                    "agent_id": current.agent_id,
                    "agent_status": current.agent_status,
                    "generation": current.generation,
                    "elapsed_seconds": _elapsed(current.id),
                }
                if current is not None
                else None
            ),
            "queue": [t.id for t in self.queue.snapshot()],
            "task_timing": {
                str(tid): {"status": t.status, "elapsed_seconds": _elapsed(tid), "error": t.error}
                for tid, t in self.tasks.items()
            },
            "retries": {
                agent_id: {"count": r.count, "original_agent_id": r.original_agent_id}
                for agent_id, r in self.fixer.retries.items()
            },
        }

    def _write_status(self) -> None:
        if self.status_path is None:
            return
        try:
            write_status(self, self.status_path)
        except OSError as exc:
            log.warning("Could not write %s: %s", self.status_path, exc)

    async def close(self) -> None:
        for bg in list(self._background):
            bg.cancel()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        await self.agent_client.aclose()
        await self.store.aclose()


def write_status(orchestrator: Orchestrator, status_path: Path) -> None:
    status_path.write_text(json.dumps(orchestrator.status_dict(), indent=2) + "\n")


# ---------------------------------------------------------------------------
# Rich display
# ---------------------------------------------------------------------------

_STATUS_STYLE = {
    QUEUED: "[dim]Queued[/dim]",
    PENDING: "[cyan]Pending[/cyan]",
    RUNNING: "[yellow]Running[/yellow]",
    DEPLOYING: "[blue]Deploying[/blue]",
    COMPLETED: "[green]Completed[/green]",
    ERROR: "[red]Error[/red]",
}


def _format_duration(seconds: float) -> str:
    """Format elapsed seconds as 'Xm YYs' or 'Xs'."""
    if seconds < 60:
        return f"{seconds:.0f}s"
    mins = int(seconds // 60)
    secs = int(seconds % 60)
    return f"{mins}m {secs:02d}s"


def build_table(orchestrator: Orchestrator) -> Table:
    now = datetime.now(timezone.utc)

    table = Table(title="Nether Bridge Queue", expand=True)
    table.add_column("Task ID", style="cyan", no_wrap=True)
    table.add_column("Prompt", style="white")
    table.add_column("Component", justify="center")
    table.add_column("Status", justify="center")
    table.add_column("Agent", no_wrap=True)
    table.add_column("Duration", justify="right")

    for task in orchestrator.tasks.values():
        status = _STATUS_STYLE.get(task.status, task.status)
        if task.status == RUNNING and task.agent_status:
            status += f" [dim]({task.agent_status})[/dim]"

        if task.id in orchestrator.task_durations:
            duration_str = _format_duration(orchestrator.task_durations[task.id])
        elif task.id in orchestrator.task_start_times:
            elapsed = (now - orchestrator.task_start_times[task.id]).total_seconds()
            duration_str = f"[yellow]{_format_duration(elapsed)}[/yellow]"
        else:
            duration_str = ""

        prompt = task.prompt if len(task.prompt) <= 60 else task.prompt[:57] + "..."
        table.add_row(
            str(task.id),
            prompt,
            task.component_name or "",
            status,
            task.agent_id or "",
            duration_str,
        )

    table.caption = (
        f"Queued: {len(orchestrator.queue)}  "
        f"Processing: {orchestrator.current_task.id if orchestrator.current_task else '-'}  "
        f"Completed: {len(orchestrator.completed_ids)}  "
        f"Failed: {len(orchestrator.failed_ids)}"
    )
    return table
