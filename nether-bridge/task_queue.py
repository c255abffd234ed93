"""Tasks, their lifecycle states, and the FIFO queue they wait in."""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

import yaml

# Task.status values (mirrored in the external task store)
QUEUED = "Queued"
PENDING = "Pending"
RUNNING = "Running"
DEPLOYING = "Deploying"
COMPLETED = "Completed"
ERROR = "Error"

# Agent job states reported by the agent service
AGENT_CREATING = "CREATING"
AGENT_FINISHED = "FINISHED"
AGENT_ERROR = "ERROR"
AGENT_EXPIRED = "EXPIRED"

AGENT_FAILED_STATES = (AGENT_ERROR, AGENT_EXPIRED)

_last_id = 0


def next_task_id() -> int:
    """Return a millisecond timestamp, bumped so ids never repeat or go backwards."""
    global _last_id
    candidate = int(time.time() * 1000)
    if candidate <= _last_id:
        candidate = _last_id + 1
    _last_id = candidate
    return candidate


@dataclass
class Task:
    prompt: str
    metadata: dict = field(default_factory=dict)
    id: int = field(default_factory=next_task_id)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    status: str = QUEUED
    # Callback for the originating client, see orchestrator._fire_event
    on_event: Callable[[str, dict], None] | None = field(default=None, repr=False, compare=False)

    agent_id: str | None = None
    agent_status: str | None = None
    agent_url: str | None = None
    agent_branch: str | None = None
    record_id: int | None = None
    generation: int = 0
    error: str | None = None

    def __post_init__(self) -> None:
        if not self.prompt or not self.prompt.strip():
            raise ValueError("Task prompt cannot be empty")
        self.prompt = self.prompt.strip()
        if self.metadata is None:
            self.metadata = {}

    @property
    def component_name(self) -> str | None:
        return self.metadata.get("componentName") or None

    def staging_branch(self, default: str) -> str:
        return self.metadata.get("stagingBranch") or default


class TaskQueue:
    """FIFO of tasks that have not started yet.

    The task currently being processed is never in the queue; the
    orchestrator holds it in its processing slot.
    """

    def __init__(self) -> None:
        self._items: deque[Task] = deque()

    def push(self, task: Task) -> int:
        self._items.append(task)
        return len(self._items)

    def pop(self) -> Task | None:
        if not self._items:
            return None
        return self._items.popleft()

    def snapshot(self) -> list[Task]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)


def load_prompts(path: str | Path) -> list[Task]:
    """Read a YAML prompt file and return one Task per entry.

    The YAML must have a top-level 'prompts' key containing a list. Each
    entry is either a plain string or a dict with 'prompt' and an optional
    'metadata' mapping.

    Raises ValueError if the key is missing or a prompt is empty.
    """
    path = Path(path)
    with open(path) as f:
        data = yaml.safe_load(f) or {}

    raw_prompts = data.get("prompts") if isinstance(data, dict) else None
    if not raw_prompts or not isinstance(raw_prompts, list):
        raise ValueError(f"No 'prompts' list found in {path}")

    tasks = []
    for idx, entry in enumerate(raw_prompts, 1):
        if isinstance(entry, str):
            prompt, metadata = entry, {}
        elif isinstance(entry, dict):
            prompt = entry.get("prompt") or ""
            metadata = entry.get("metadata") or {}
        else:
            raise ValueError(f"Prompt #{idx} in {path} must be a string or a mapping")
        if not isinstance(prompt, str) or not prompt.strip():
            raise ValueError(f"Prompt #{idx} in {path} is empty")
        if not isinstance(metadata, dict):
            raise ValueError(f"Prompt #{idx} in {path} has non-mapping metadata")
        tasks.append(Task(prompt=prompt, metadata=dict(metadata)))

    return tasks
