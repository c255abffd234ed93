"""Deployment status tracking.

The bridge never sees deployment webhooks itself. The web app receives them
and moves the task record's ``status`` field:

- ``Deploying``: the preview build of the agent branch succeeded, so the
  branch may be merged into trunk;
- ``Completed``: the production build after the merge succeeded;
- ``Error``: the preview build failed, error logs are on the record.

:class:`DeploymentTracker` polls the record until one of the terminal
states shows up or the poll budget runs out.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import httpx

from git_ops import MergeResult
from task_queue import COMPLETED, DEPLOYING, ERROR, Task
from task_store import TaskRecord, TaskStore, TaskStoreError

logger = logging.getLogger(__name__)

DEPLOY_POLL_INTERVAL = 5  # seconds
DEPLOY_MAX_POLLS = 120  # ~10 minutes

# Outcome kinds
OUTCOME_COMPLETED = "completed"
OUTCOME_FAILED = "failed"
OUTCOME_MERGE_FAILED = "merge_failed"
OUTCOME_TIMEOUT = "timeout"
OUTCOME_SUPERSEDED = "superseded"

SleepFn = Callable[[float], Awaitable[None]]
PreviewReadyFn = Callable[[TaskRecord], Awaitable[MergeResult]]


@dataclass
class DeploymentOutcome:
    kind: str
    polls: int
    record: TaskRecord | None = None
    merge: MergeResult | None = None


class DeploymentTracker:
    def __init__(
        self,
        store: TaskStore,
        interval: float = DEPLOY_POLL_INTERVAL,
        max_polls: int = DEPLOY_MAX_POLLS,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.store = store
        self.interval = interval
        self.max_polls = max_polls
        self._sleep = sleep

    async def fetch(self, task: Task, agent_id: str) -> TaskRecord | None:
        """Look up the store record for *task*.

        Matches on the record id once known, otherwise on the exact agent
        id; the id of the first match is remembered on the task.
        """
        record = await self.store.find_task(record_id=task.record_id, agent_id=agent_id)
        if record is not None and task.record_id is None and record.id is not None:
            task.record_id = record.id
        return record

    async def wait(
        self,
        task: Task,
        agent_id: str,
        on_preview_ready: PreviewReadyFn,
        is_current: Callable[[], bool],
    ) -> DeploymentOutcome:
        """Poll until the deployment of *agent_id*'s work settles.

        *on_preview_ready* runs once, the first time the record reaches
        ``Deploying``; a failed merge ends the wait. *is_current* is checked
        around every fetch so a superseded loop stops without acting.
        """
        logger.info("Watching deployment for task %s (agent %s)", task.id, agent_id)
        merged = False

        for poll in range(1, self.max_polls + 1):
            if not is_current():
                return DeploymentOutcome(OUTCOME_SUPERSEDED, polls=poll - 1)

            try:
                record = await self.fetch(task, agent_id)
            except (TaskStoreError, httpx.HTTPError) as exc:
                logger.warning("Error polling deployment status: %s", exc)
                record = None
            else:
                if record is None:
                    logger.warning("No task record found for agent %s", agent_id)

            if not is_current():
                return DeploymentOutcome(OUTCOME_SUPERSEDED, polls=poll)

            if record is not None:
                logger.info(
                    "Task %s status: %s, agent status: %s (poll %d/%d)",
                    task.id,
                    record.status,
                    record.agent_status,
                    poll,
                    self.max_polls,
                )
                if record.status == DEPLOYING and not merged:
                    logger.info("Preview deployment succeeded for task %s", task.id)
                    merge = await on_preview_ready(record)
                    if not merge.success:
                        return DeploymentOutcome(
                            OUTCOME_MERGE_FAILED, polls=poll, record=record, merge=merge
                        )
                    merged = True
                elif record.status == COMPLETED:
                    return DeploymentOutcome(OUTCOME_COMPLETED, polls=poll, record=record)
                elif record.status == ERROR:
                    return DeploymentOutcome(OUTCOME_FAILED, polls=poll, record=record)

            if poll < self.max_polls:
                await self._sleep(self.interval)

        logger.warning("Deployment verification for task %s timed out", task.id)
        return DeploymentOutcome(OUTCOME_TIMEOUT, polls=self.max_polls)
