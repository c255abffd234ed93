"""HTTP client for the web app's task list API (the external task store)."""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import httpx

from task_queue import Task

logger = logging.getLogger(__name__)

TASKS_PATH = "/api/nether-grasp/tasks"
DEFAULT_APP_PORTS = (3000, 3001, 3002, 3003)
_DISCOVERY_TIMEOUT = 1.0


class TaskStoreError(Exception):
    """Raised when the task API rejects a request or returns garbage."""


@dataclass
class TaskRecord:
    id: int | None
    component_name: str | None = None
    component_directory: str | None = None
    page_name: str | None = None
    status: str | None = None
    agent_id: str | None = None
    agent_status: str | None = None
    agent_url: str | None = None
    branch_name: str | None = None
    deployment_logs: str | None = None
    deployment_url: str | None = None
    error_logs: str | None = None
    raw: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_json(cls, data: dict) -> "TaskRecord":
        error_info = data.get("error_info") or {}
        return cls(
            id=data.get("id"),
            component_name=data.get("ComponentName"),
            component_directory=data.get("component_directory"),
            page_name=data.get("PageName"),
            status=data.get("status"),
            agent_id=data.get("agent_id"),
            agent_status=data.get("agent_status"),
            agent_url=data.get("agent_url"),
            branch_name=data.get("branch_name"),
            deployment_logs=data.get("deployment_logs"),
            deployment_url=data.get("deployment_url"),
            error_logs=error_info.get("logs") if isinstance(error_info, dict) else None,
            raw=data,
        )


class TaskStore:
    """Talks to ``{app_url}/api/nether-grasp/tasks``.

    When no app URL is configured the first request probes *ports* on
    localhost. A 404 or a refused connection triggers one rediscovery and
    one retry, since the dev server can move ports between restarts.
    """

    def __init__(
        self,
        app_url: str | None = None,
        ports: Sequence[int] = DEFAULT_APP_PORTS,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.configured_url = app_url.rstrip("/") if app_url else None
        self.ports = tuple(ports)
        self.base_url: str | None = self.configured_url
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def discover(self) -> str:
        if self.configured_url:
            self.base_url = self.configured_url
            return self.base_url

        logger.info("Auto-detecting web app port among %s", list(self.ports))
        for port in self.ports:
            candidate = f"http://localhost:{port}"
            try:
                await self._client.get(candidate + TASKS_PATH, timeout=_DISCOVERY_TIMEOUT)
            except httpx.HTTPError:
                continue
            # Any HTTP answer, even an error, means the server is up
            logger.info("Found web app on port %d", port)
            self.base_url = candidate
            return candidate

        self.base_url = f"http://localhost:{self.ports[0] if self.ports else 3000}"
        logger.warning("Could not detect web app, using default %s", self.base_url)
        return self.base_url

    async def _request(self, method: str, body: dict | None = None) -> httpx.Response:
        if self.base_url is None:
            await self.discover()
        try:
            resp = await self._client.request(method, self.base_url + TASKS_PATH, json=body)
            if resp.status_code != 404:
                return resp
            logger.warning("Task API returned 404, rediscovering web app port")
        except httpx.ConnectError:
            logger.warning("Task API connection refused, rediscovering web app port")

        self.base_url = None
        await self.discover()
        try:
            return await self._client.request(method, self.base_url + TASKS_PATH, json=body)
        except httpx.HTTPError as exc:
            raise TaskStoreError(f"{method} {TASKS_PATH} failed: {exc}") from exc

    @staticmethod
    def _json(resp: httpx.Response, what: str) -> Any:
        if resp.status_code >= 400:
            raise TaskStoreError(f"{what} failed ({resp.status_code}): {resp.text[:300]}")
        try:
            return resp.json()
        except (json.JSONDecodeError, ValueError) as exc:
            raise TaskStoreError(f"{what} returned a non-JSON body") from exc

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def list_tasks(self) -> list[TaskRecord]:
        try:
            resp = await self._request("GET")
        except httpx.HTTPError as exc:
            raise TaskStoreError(f"Listing tasks failed: {exc}") from exc
        data = self._json(resp, "Listing tasks")
        raw_tasks = data.get("tasks") if isinstance(data, dict) else None
        if not isinstance(raw_tasks, list):
            raise TaskStoreError("Listing tasks returned no 'tasks' list")
        return [TaskRecord.from_json(t) for t in raw_tasks if isinstance(t, dict)]

    async def create_task(self, task: Task, status: str) -> TaskRecord | None:
        meta = task.metadata
        body = {
            "ComponentName": meta.get("componentName"),
            "component_directory": meta.get("componentDirectory"),
            "PageName": meta.get("pageName"),
            "agent_id": None,
            "agent_status": None,
            "agent_url": None,
            "branch_name": meta.get("stagingBranch"),
            "status": status,
        }
        if meta.get("taskType"):
            body["task_type"] = meta["taskType"]
        try:
            resp = await self._request("POST", body)
        except httpx.HTTPError as exc:
            raise TaskStoreError(f"Creating task failed: {exc}") from exc
        data = self._json(resp, "Creating task")
        record = data.get("task") if isinstance(data, dict) else None
        return TaskRecord.from_json(record) if isinstance(record, dict) else None

    async def update_task(self, **fields: Any) -> TaskRecord | None:
        """PATCH the record identified by ``id``, ``ComponentName`` or ``agent_id``.

        Fields passed as None are left out of the request.
        """
        body = {k: v for k, v in fields.items() if v is not None}
        if not any(k in body for k in ("id", "ComponentName", "agent_id")):
            raise TaskStoreError("update_task needs id, ComponentName or agent_id")
        try:
            resp = await self._request("PATCH", body)
        except httpx.HTTPError as exc:
            raise TaskStoreError(f"Updating task failed: {exc}") from exc
        data = self._json(resp, "Updating task")
        record = data.get("task") if isinstance(data, dict) else None
        return TaskRecord.from_json(record) if isinstance(record, dict) else None

    async def find_task(
        self, record_id: int | None = None, agent_id: str | None = None
    ) -> TaskRecord | None:
        """Exact lookup: by record id when known, otherwise by agent id."""
        if record_id is None and not agent_id:
            return None
        for record in await self.list_tasks():
            if record_id is not None and record.id == record_id:
                return record
            if record_id is None and record.agent_id == agent_id:
                return record
        return None

    async def aclose(self) -> None:
        await self._client.aclose()
