"""Tests for ANSI stripping, error analysis and the fix-agent controller."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from agent_client import AgentLaunch, AgentRequestError
from fixer import (
    FixController,
    analyze_error_logs,
    build_fix_prompt,
    build_manual_fix_prompt,
    strip_ansi,
)
from task_queue import AGENT_CREATING, RUNNING, Task
from task_store import TaskRecord, TaskStoreError

# ---------------------------------------------------------------------------
# strip_ansi
# ---------------------------------------------------------------------------

SAMPLES = [
    "",
    "plain text",
    "\x1b[31mred\x1b[0m",
    "\\u001b[1;33mwarn\\u001b[0m",
    "\x1b[\x1b[0m31mnested",
    "half \x1b[ escape",
    "Type error: \x1b[1m'x'\x1b[22m is possibly 'undefined'",
]


@pytest.mark.parametrize("text", SAMPLES)
def test_strip_ansi_idempotent(text: str) -> None:
    once = strip_ansi(text)
    assert strip_ansi(once) == once


def test_strip_ansi_removes_both_forms() -> None:
    assert strip_ansi("\x1b[31mred\x1b[0m and \\u001b[32mgreen\\u001b[0m") == "red and green"


def test_strip_ansi_spliced_sequence() -> None:
    assert strip_ansi("\x1b[\x1b[0m31mnested") == "nested"


def test_strip_ansi_identity_without_escapes() -> None:
    text = "Error: ./app/page.tsx:12:5\n  [brackets] stay"
    assert strip_ansi(text) == text


def test_strip_ansi_non_string_passthrough() -> None:
    assert strip_ansi(None) is None


# ---------------------------------------------------------------------------
# analyze_error_logs
# ---------------------------------------------------------------------------


def test_analyze_undefined() -> None:
    analysis = analyze_error_logs("./app/components/Btn.tsx:14:7\nType error: 'user' is possibly 'undefined'.")
    assert analysis.error_type == "typescript-undefined"
    assert analysis.is_auto_fixable
    assert analysis.component_path == "app/components/Btn.tsx"
    assert analysis.line_number == 14


@pytest.mark.parametrize(
    "logs, error_type, fixable",
    [
        ("'x' is possibly 'null'", "typescript-null", True),
        ("Type 'string' is not assignable to type 'number'", "typescript-type-mismatch", True),
        ("Module not found: Cannot find module 'lodash'", "missing-import", False),
        ("SyntaxError: Unexpected token", "syntax-error", True),
        ("Build exited with 1\nmore", "unknown", False),
    ],
)
def test_analyze_classification(logs: str, error_type: str, fixable: bool) -> None:
    analysis = analyze_error_logs(logs)
    assert analysis.error_type == error_type
    assert analysis.is_auto_fixable is fixable


def test_analyze_unknown_uses_first_line() -> None:
    assert analyze_error_logs("Build exited with 1\nmore").error_message == "Build exited with 1"


def test_build_fix_prompt_embeds_clean_logs() -> None:
    prompt = build_fix_prompt("\x1b[31m./a.tsx:3:1 SyntaxError\x1b[0m", "cursor/a", "bc_1")
    assert "./a.tsx:3:1 SyntaxError" in prompt
    assert "\x1b" not in prompt
    assert "**Branch:** cursor/a" in prompt
    assert "**Failed Agent ID:** bc_1" in prompt
    assert "**Type:** syntax-error" in prompt


def test_build_fix_prompt_without_logs() -> None:
    assert "Unknown deployment error" in build_fix_prompt("", None, "bc_1")


def test_build_manual_fix_prompt_uses_given_analysis() -> None:
    prompt = build_manual_fix_prompt({
        "logs": "\x1b[1mboom\x1b[0m",
        "analysis": {"componentPath": "app/Hero.tsx", "lineNumber": 9, "errorType": "typescript-null",
                     "errorMessage": "Variable possibly null"},
    })
    assert "boom" in prompt and "\x1b" not in prompt
    assert "Find and open the file: app/Hero.tsx" in prompt
    assert "Navigate to line 9" in prompt
    assert "fix: Variable possibly null" in prompt


# ---------------------------------------------------------------------------
# FixController
# ---------------------------------------------------------------------------


def make_controller(max_retries: int = 3):
    agent = MagicMock()
    launches = iter(range(2, 100))
    agent.create_agent = AsyncMock(
        side_effect=lambda prompt, branch: AgentLaunch(success=True, agent_id=f"bc_{next(launches)}", url="u")
    )
    store = MagicMock()
    store.update_task = AsyncMock(return_value=None)
    start_poll = MagicMock()
    notify = MagicMock()
    controller = FixController(agent, store, start_poll, notify, "nether-grasp-staging", max_retries=max_retries)
    return controller, agent, store, start_poll, notify


def failed_record(**overrides) -> TaskRecord:
    fields = {"id": 3, "status": "Error", "agent_id": "bc_1", "branch_name": "cursor/a",
              "deployment_logs": "SyntaxError"}
    fields.update(overrides)
    return TaskRecord(**fields)


def test_attempt_retry_spawns_fix_agent() -> None:
    controller, agent, store, start_poll, notify = make_controller()
    task = Task(prompt="x", record_id=3, agent_id="bc_1")

    assert asyncio.run(controller.attempt_retry("bc_1", task, failed_record()))

    prompt, branch = agent.create_agent.await_args.args
    assert branch == "cursor/a"
    assert "SyntaxError" in prompt
    store.update_task.assert_awaited_once_with(
        id=3,
        agent_id="bc_2",
        status=RUNNING,
        agent_status=AGENT_CREATING,
        agent_url="u",
        retry_count=1,
        previous_agent_id="bc_1",
    )
    assert controller.retries["bc_2"].count == 1
    assert controller.retries["bc_2"].original_agent_id == "bc_1"
    assert task.agent_id == "bc_2"
    assert task.generation == 1
    start_poll.assert_called_once_with(task, "bc_2")
    assert notify.call_args.args[1] == "deployment_retry"


def test_retry_lineage_exhausts_after_max() -> None:
    controller, agent, _, start_poll, _ = make_controller(max_retries=3)
    task = Task(prompt="x", record_id=3)

    async def go():
        failed = "bc_1"
        results = []
        for _ in range(4):
            results.append(await controller.attempt_retry(failed, task, failed_record(agent_id=failed)))
            failed = task.agent_id
        return results

    assert asyncio.run(go()) == [True, True, True, False]
    assert agent.create_agent.await_count == 3
    assert start_poll.call_count == 3
    assert controller.record_for("bc_4").count == 3
    assert controller.record_for("bc_4").original_agent_id == "bc_1"


def test_retry_falls_back_to_staging_branch() -> None:
    controller, agent, _, _, _ = make_controller()
    task = Task(prompt="x", record_id=3)
    asyncio.run(controller.attempt_retry("bc_1", task, None))
    prompt, branch = agent.create_agent.await_args.args
    assert branch == "nether-grasp-staging"
    assert "Unknown deployment error" in prompt


def test_retry_create_failure_returns_false() -> None:
    controller, agent, store, start_poll, _ = make_controller()
    agent.create_agent = AsyncMock(side_effect=AgentRequestError("Bad request (400)"))
    task = Task(prompt="x", record_id=3)

    assert not asyncio.run(controller.attempt_retry("bc_1", task, failed_record()))
    store.update_task.assert_not_awaited()
    start_poll.assert_not_called()
    assert controller.retries == {}


def test_retry_store_failure_returns_false() -> None:
    controller, _, store, start_poll, _ = make_controller()
    store.update_task = AsyncMock(side_effect=TaskStoreError("down"))
    task = Task(prompt="x", record_id=3)

    assert not asyncio.run(controller.attempt_retry("bc_1", task, failed_record()))
    start_poll.assert_not_called()
    assert task.generation == 0
    assert controller.retries == {}
    assert controller.record_for("bc_2").count == 0


def test_retry_without_record_key_starts_no_agent() -> None:
    controller, agent, store, start_poll, _ = make_controller()
    task = Task(prompt="x")

    assert not asyncio.run(controller.attempt_retry("bc_1", task, failed_record(id=None)))
    agent.create_agent.assert_not_awaited()
    store.update_task.assert_not_awaited()
    start_poll.assert_not_called()
    assert controller.retries == {}


def test_retry_uses_component_name_without_record_id() -> None:
    controller, _, store, _, _ = make_controller()
    task = Task(prompt="x", metadata={"componentName": "Btn"})

    asyncio.run(controller.attempt_retry("bc_1", task, failed_record(id=None)))

    assert store.update_task.await_args.kwargs["ComponentName"] == "Btn"
