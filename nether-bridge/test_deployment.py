"""Tests for DeploymentTracker."""

import asyncio
from unittest.mock import AsyncMock

import httpx

from deployment import (
    OUTCOME_COMPLETED,
    OUTCOME_FAILED,
    OUTCOME_MERGE_FAILED,
    OUTCOME_SUPERSEDED,
    OUTCOME_TIMEOUT,
    DeploymentTracker,
)
from git_ops import MergeResult
from task_queue import Task
from task_store import TaskRecord, TaskStoreError


def record(status: str, record_id: int = 5, agent_id: str = "bc_1") -> TaskRecord:
    return TaskRecord(id=record_id, status=status, agent_id=agent_id, branch_name="cursor/a")


def make_tracker(results, max_polls: int = 120):
    store = AsyncMock()
    store.find_task = AsyncMock(side_effect=results)
    sleep = AsyncMock()
    return DeploymentTracker(store, interval=5, max_polls=max_polls, sleep=sleep), store, sleep


def merged_ok():
    return AsyncMock(return_value=MergeResult(success=True, branch="cursor/a"))


def test_deploying_then_completed_merges_once() -> None:
    tracker, store, sleep = make_tracker([record("Running"), record("Deploying"), record("Deploying"), record("Completed")])
    on_ready = merged_ok()
    task = Task(prompt="x")

    outcome = asyncio.run(tracker.wait(task, "bc_1", on_ready, lambda: True))

    assert outcome.kind == OUTCOME_COMPLETED
    assert outcome.polls == 4
    on_ready.assert_awaited_once()
    assert sleep.await_count == 3
    assert task.record_id == 5


def test_record_id_used_after_first_match() -> None:
    tracker, store, _ = make_tracker([record("Running"), record("Completed")])
    task = Task(prompt="x")

    asyncio.run(tracker.wait(task, "bc_1", merged_ok(), lambda: True))

    first, second = store.find_task.await_args_list
    assert first.kwargs == {"record_id": None, "agent_id": "bc_1"}
    assert second.kwargs == {"record_id": 5, "agent_id": "bc_1"}


def test_error_status_returns_failed_with_record() -> None:
    tracker, _, _ = make_tracker([record("Error")])
    outcome = asyncio.run(tracker.wait(Task(prompt="x"), "bc_1", merged_ok(), lambda: True))
    assert outcome.kind == OUTCOME_FAILED
    assert outcome.record.status == "Error"


def test_merge_failure_ends_wait() -> None:
    tracker, _, _ = make_tracker([record("Deploying")])
    conflict = MergeResult(success=False, branch="cursor/a", conflict=True, error="conflict")
    outcome = asyncio.run(
        tracker.wait(Task(prompt="x"), "bc_1", AsyncMock(return_value=conflict), lambda: True)
    )
    assert outcome.kind == OUTCOME_MERGE_FAILED
    assert outcome.merge is conflict


def test_timeout_after_exact_poll_count() -> None:
    tracker, store, sleep = make_tracker(lambda **kw: record("Running"), max_polls=120)
    outcome = asyncio.run(tracker.wait(Task(prompt="x"), "bc_1", merged_ok(), lambda: True))
    assert outcome.kind == OUTCOME_TIMEOUT
    assert store.find_task.await_count == 120
    assert sleep.await_count == 119


def test_fetch_failures_count_toward_cap() -> None:
    failures = [TaskStoreError("down"), httpx.ConnectError("refused"), None, record("Completed")]
    tracker, store, _ = make_tracker(failures, max_polls=3)
    outcome = asyncio.run(tracker.wait(Task(prompt="x"), "bc_1", merged_ok(), lambda: True))
    assert outcome.kind == OUTCOME_TIMEOUT
    assert store.find_task.await_count == 3


def test_superseded_loop_stops_without_acting() -> None:
    current = {"value": True}

    async def find_task(**kwargs):
        current["value"] = False
        return record("Deploying")

    tracker, store, _ = make_tracker(None)
    store.find_task = AsyncMock(side_effect=find_task)
    on_ready = merged_ok()

    outcome = asyncio.run(tracker.wait(Task(prompt="x"), "bc_1", on_ready, lambda: current["value"]))

    assert outcome.kind == OUTCOME_SUPERSEDED
    on_ready.assert_not_awaited()
