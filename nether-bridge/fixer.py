"""Fix agents: relaunch an agent with the deployment error logs when a preview build fails."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass

from agent_client import AgentClient, AgentClientError
from git_ops import GitError
from task_queue import AGENT_CREATING, RUNNING, Task
from task_store import TaskRecord, TaskStore, TaskStoreError

logger = logging.getLogger(__name__)

MAX_RETRIES = 3

# ESC[...m, covering both the raw escape byte and a literal "\u001b" left by JSON round trips
_ANSI_COLOR = re.compile(r"(?:\x1b|\\u001b)\[[0-9;]*m")

_COMPONENT_PATH = re.compile(r"\./([^\s:]+\.tsx?)")
_LINE_NUMBER = re.compile(r":(\d+):\d+")

FIX_PROMPT_TEMPLATE = """\
DEPLOYMENT ERROR - FIX REQUIRED

A recent preview deployment failed. Analyze and fix the error.

## Deployment Error Logs

```
{error_logs}
```

**Branch:** {branch}
**Failed Agent ID:** {failed_agent_id}
{analysis}
## Your Task

1. Carefully read the error logs above.
2. Identify the root cause of the deployment failure.
3. Locate the problematic file(s) and line(s).
4. Fix the error with the appropriate solution:
   - For TypeScript errors: fix type definitions and type mismatches
   - For build errors: fix syntax or compilation issues
   - For import errors: correct import paths or missing dependencies
   - For runtime errors: add proper error handling and null checks
5. Make sure the fix doesn't break existing functionality.
6. Check that the code compiles without errors.
7. Follow all project conventions (see conventions_rules.md).
8. Commit with the message: `fix: Resolve deployment error (retry)`

Only fix the specific deployment error. Do NOT make unrelated changes.
"""

MANUAL_FIX_INSTRUCTIONS = """\
## Instructions

1. Find and open the file: {component_path}
2. Navigate to line {line_number}
3. Analyze the error carefully
4. Fix the error with the appropriate solution:
   - For undefined/null errors: add null checks (optional chaining ?. or nullish coalescing ??)
   - For type mismatches: correct the type definitions
   - For syntax errors: fix the syntax
5. Make sure the code compiles without errors
6. Check that the fix doesn't break existing functionality
7. Commit the changes with the message: `fix: {error_message}`

Only fix this specific error. Do NOT make unrelated changes.
"""


def strip_ansi(text: str) -> str:
    """Remove ANSI colour codes. Non-string input is returned unchanged."""
    if not text or not isinstance(text, str):
        return text
    # Deleting one sequence can splice a new one together, so repeat to a fixed point
    while True:
        stripped = _ANSI_COLOR.sub("", text)
        if stripped == text:
            return stripped
        text = stripped


@dataclass
class ErrorAnalysis:
    is_auto_fixable: bool = False
    error_type: str = "unknown"
    component_path: str | None = None
    line_number: int | None = None
    error_message: str = ""

    def summary(self) -> str:
        lines = []
        if self.component_path:
            lines.append(f"**File:** {self.component_path}")
        if self.line_number is not None:
            lines.append(f"**Line:** {self.line_number}")
        lines.append(f"**Error:** {self.error_message or 'Unknown error'}")
        lines.append(f"**Type:** {self.error_type}")
        return "\n".join(lines)


def analyze_error_logs(logs: str) -> ErrorAnalysis:
    """Classify build logs by the first recognised error pattern."""
    logs = strip_ansi(logs or "")
    analysis = ErrorAnalysis()

    component = _COMPONENT_PATH.search(logs)
    if component:
        analysis.component_path = component.group(1)
    line = _LINE_NUMBER.search(logs)
    if line:
        analysis.line_number = int(line.group(1))

    if "is possibly 'undefined'" in logs:
        analysis.error_type = "typescript-undefined"
        analysis.is_auto_fixable = True
        analysis.error_message = "Variable possibly undefined - needs null check"
    elif "is possibly 'null'" in logs:
        analysis.error_type = "typescript-null"
        analysis.is_auto_fixable = True
        analysis.error_message = "Variable possibly null - needs null check"
    elif "Type" in logs and "is not assignable to type" in logs:
        analysis.error_type = "typescript-type-mismatch"
        analysis.is_auto_fixable = True
        analysis.error_message = "Type mismatch - needs type correction"
    elif "Cannot find module" in logs:
        # May need a package install, which an agent can't do safely
        analysis.error_type = "missing-import"
        analysis.error_message = "Missing module or import"
    elif "SyntaxError" in logs:
        analysis.error_type = "syntax-error"
        analysis.is_auto_fixable = True
        analysis.error_message = "Syntax error in code"
    else:
        analysis.error_message = logs.split("\n")[0].strip() or "Unknown error"

    return analysis


def build_fix_prompt(error_logs: str, branch: str | None, failed_agent_id: str) -> str:
    logs = strip_ansi(error_logs) or "Unknown deployment error"
    analysis = analyze_error_logs(logs)
    return FIX_PROMPT_TEMPLATE.format(
        error_logs=logs,
        branch=branch or "unknown",
        failed_agent_id=failed_agent_id,
        analysis=analysis.summary() + "\n",
    )


def build_manual_fix_prompt(error_info: dict) -> str:
    """Prompt for a fix requested from the UI with a stored ``error_info`` blob."""
    logs = strip_ansi(error_info.get("logs") or "")
    raw = error_info.get("analysis")
    if isinstance(raw, dict):
        analysis = ErrorAnalysis(
            is_auto_fixable=bool(raw.get("isAutoFixable")),
            error_type=raw.get("errorType") or "unknown",
            component_path=raw.get("componentPath"),
            line_number=raw.get("lineNumber"),
            error_message=raw.get("errorMessage") or "",
        )
    else:
        analysis = analyze_error_logs(logs)

    return (
        "DEPLOYMENT ERROR - FIX REQUIRED\n\n"
        "A recent deployment failed with the following error:\n\n"
        f"```\n{logs}\n```\n\n"
        + analysis.summary()
        + "\n\n"
        + MANUAL_FIX_INSTRUCTIONS.format(
            component_path=analysis.component_path or "the affected file",
            line_number=analysis.line_number if analysis.line_number is not None else "the error location",
            error_message=analysis.error_message or "Fix deployment error",
        )
    )


@dataclass
class RetryRecord:
    count: int
    original_agent_id: str


class FixController:
    """Decides whether a failed deployment gets a fix agent, and launches it.

    Retry records are keyed by the *current* agent id of a lineage; each
    fix agent gets a copy with ``count + 1``.
    """

    def __init__(
        self,
        agent_client: AgentClient,
        store: TaskStore,
        start_agent_poll: Callable[[Task, str], None],
        notify: Callable[[Task, str, dict], None],
        default_branch: str,
        max_retries: int = MAX_RETRIES,
    ):
        self.agent_client = agent_client
        self.store = store
        self.start_agent_poll = start_agent_poll
        self.notify = notify
        self.default_branch = default_branch
        self.max_retries = max_retries
        self.retries: dict[str, RetryRecord] = {}

    def record_for(self, agent_id: str) -> RetryRecord:
        return self.retries.get(agent_id) or RetryRecord(count=0, original_agent_id=agent_id)

    async def attempt_retry(self, failed_agent_id: str, task: Task, record: TaskRecord | None) -> bool:
        """Launch a fix agent for *task*. Returns True if one was started."""
        retry = self.record_for(failed_agent_id)
        if retry.count >= self.max_retries:
            logger.info(
                "Task %s: retries exhausted (%d/%d) for lineage %s",
                task.id,
                retry.count,
                self.max_retries,
                retry.original_agent_id,
            )
            return False

        attempt = retry.count + 1
        logger.info("Task %s: creating fix agent (%d/%d)", task.id, attempt, self.max_retries)

        raw_logs = None
        branch = task.agent_branch
        if record is not None:
            raw_logs = record.deployment_logs or record.error_logs
            branch = record.branch_name or branch
        branch = branch or task.staging_branch(self.default_branch)
        prompt = build_fix_prompt(raw_logs or "", branch, failed_agent_id)
        logger.info("Fix prompt created (%d chars)", len(prompt))

        identity = _record_identity(task, record)
        if identity is None:
            logger.error("Task %s has no stable record key; not starting a fix agent", task.id)
            return False

        try:
            launch = await self.agent_client.create_agent(prompt, branch)
        except (AgentClientError, GitError) as exc:
            logger.error("Failed to create fix agent for task %s: %s", task.id, exc)
            return False

        new_agent_id = launch.agent_id
        logger.info("Fix agent created: %s", new_agent_id)
        try:
            await self.store.update_task(
                **identity,
                agent_id=new_agent_id,
                status=RUNNING,
                agent_status=AGENT_CREATING,
                agent_url=launch.url,
                retry_count=attempt,
                previous_agent_id=failed_agent_id,
            )
        except TaskStoreError as exc:
            logger.error("Failed to update task %s with fix agent %s: %s", task.id, new_agent_id, exc)
            return False

        self.retries[new_agent_id] = RetryRecord(
            count=attempt, original_agent_id=retry.original_agent_id
        )
        task.generation += 1
        task.agent_id = new_agent_id
        task.agent_status = AGENT_CREATING
        task.agent_url = launch.url
        task.agent_branch = None
        task.status = RUNNING
        task.error = None

        self.notify(task, "deployment_retry", {
            "original_agent_id": failed_agent_id,
            "new_agent_id": new_agent_id,
            "retry_count": attempt,
            "max_retries": self.max_retries,
            "message": f"Retry {attempt}/{self.max_retries}: Fix agent created",
        })
        self.start_agent_poll(task, new_agent_id)
        return True


def _record_identity(task: Task, record: TaskRecord | None) -> dict | None:
    record_id = task.record_id if task.record_id is not None else (record.id if record else None)
    if record_id is not None:
        return {"id": record_id}
    if task.component_name:
        return {"ComponentName": task.component_name}
    return None
