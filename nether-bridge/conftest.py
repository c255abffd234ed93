"""Shared fakes for the orchestrator tests."""

import asyncio

import pytest

from agent_client import AgentLaunch, AgentStatus
from config import BridgeConfig
from git_ops import GitResult, MergeResult, StageResult
from orchestrator import Orchestrator
from task_store import TaskRecord, TaskStoreError


class FakeAgentClient:
    """Agents are numbered agent-1, agent-2, ... in creation order.

    ``scripts`` maps an agent id to the statuses its polls return, one per
    call; after that ``default_status`` is returned. An exception in a
    script is raised instead.
    """

    def __init__(self):
        self.api_key = "test-key"
        self.created: list[tuple[str, str, str]] = []  # (prompt, branch, agent_id)
        self.create_errors: list[Exception | None] = []
        self.scripts: dict[str, list] = {}
        self.default_status = "FINISHED"
        self.status_calls: list[str] = []
        self.closed = False

    async def create_agent(self, prompt_text, branch_ref):
        if self.create_errors:
            error = self.create_errors.pop(0)
            if error is not None:
                raise error
        agent_id = f"agent-{len(self.created) + 1}"
        self.created.append((prompt_text, branch_ref, agent_id))
        return AgentLaunch(
            success=True,
            agent_id=agent_id,
            url=f"https://agents.test/{agent_id}",
            branch_name=f"cursor/{agent_id}",
        )

    async def get_agent_status(self, agent_id):
        self.status_calls.append(agent_id)
        script = self.scripts.get(agent_id)
        status = script.pop(0) if script else self.default_status
        if isinstance(status, Exception):
            raise status
        return AgentStatus(status=status, branch_name=f"cursor/{agent_id}")

    async def aclose(self):
        self.closed = True


class FakeStore:
    """In-memory task API.

    Every ``find_task`` applies the next status from ``deploy_statuses``
    (or ``default_deploy_status``) to the record first, standing in for
    the deployment webhooks the web app receives.
    """

    def __init__(self):
        self.records: dict[int, dict] = {}
        self.updates: list[dict] = []
        self.deploy_statuses: list[str] = []
        self.default_deploy_status: str | None = None
        self.find_calls = 0
        self.fail_updates = False
        self.closed = False

    async def create_task(self, task, status):
        record_id = len(self.records) + 1
        self.records[record_id] = {
            "id": record_id,
            "ComponentName": task.metadata.get("componentName"),
            "status": status,
            "agent_id": None,
        }
        return TaskRecord.from_json(dict(self.records[record_id]))

    def _locate(self, fields):
        if "id" in fields:
            return self.records.get(fields["id"])
        for record in self.records.values():
            if "ComponentName" in fields and record.get("ComponentName") == fields["ComponentName"]:
                return record
            if "agent_id" in fields and record.get("agent_id") == fields["agent_id"]:
                return record
        return None

    async def update_task(self, **fields):
        if self.fail_updates:
            raise TaskStoreError("store down")
        fields = {k: v for k, v in fields.items() if v is not None}
        self.updates.append(fields)
        record = self._locate(fields)
        if record is None:
            return None
        record.update({k: v for k, v in fields.items() if k not in ("id", "ComponentName")})
        return TaskRecord.from_json(dict(record))

    async def find_task(self, record_id=None, agent_id=None):
        self.find_calls += 1
        if record_id is not None:
            record = self.records.get(record_id)
        else:
            record = next((r for r in self.records.values() if r.get("agent_id") == agent_id), None)
        if record is None:
            return None
        if self.deploy_statuses:
            record["status"] = self.deploy_statuses.pop(0)
        elif self.default_deploy_status:
            record["status"] = self.default_deploy_status
        return TaskRecord.from_json(dict(record))

    async def aclose(self):
        self.closed = True


class FakeGit:
    def __init__(self):
        self.staged: list[tuple[str, str | None]] = []
        self.merged: list[str] = []
        self.merge_results: list[MergeResult] = []

    async def pull_trunk(self):
        return GitResult(ok=True, output="Already up to date.")

    async def stage_component(self, staging_branch, component_name, component_root="nether-grasp"):
        self.staged.append((staging_branch, component_name))
        return StageResult(branch=staging_branch, original_branch="main", committed=bool(component_name))

    async def merge_to_trunk(self, branch):
        self.merged.append(branch)
        if self.merge_results:
            return self.merge_results.pop(0)
        return MergeResult(success=True, branch=branch)


class SleepRecorder:
    """Instant stand-in for asyncio.sleep that still yields to the loop."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds):
        self.calls.append(seconds)
        await asyncio.sleep(0)


@pytest.fixture
def fake_agent():
    return FakeAgentClient()


@pytest.fixture
def fake_store():
    return FakeStore()


@pytest.fixture
def fake_git():
    return FakeGit()


@pytest.fixture
def fake_sleep():
    return SleepRecorder()


@pytest.fixture
def make_orchestrator(tmp_path, fake_agent, fake_store, fake_git, fake_sleep):
    def _make(fallback=None, sleep=None, **overrides):
        config = BridgeConfig(repo_path=tmp_path, prompts_dir=tmp_path / "prompts", **overrides)
        return Orchestrator(
            config,
            fake_agent,
            fake_store,
            fake_git,
            fallback=fallback,
            sleep=sleep or fake_sleep,
        )

    return _make
