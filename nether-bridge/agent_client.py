"""Client for the remote background coding-agent service."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field

import httpx

from git_ops import GitOperator, normalize_remote_url

logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = "https://api.cursor.com"
DEFAULT_MODEL = "claude-4.5-sonnet"
USER_AGENT = "Nether-Bridge/1.0"


class AgentClientError(Exception):
    """Base class for agent service failures."""


class AgentAuthError(AgentClientError):
    """The service rejected the API key (401)."""


class AgentPermissionError(AgentClientError):
    """The plan or repository does not allow background agents (403)."""


class AgentRequestError(AgentClientError):
    """The service rejected the payload (400)."""


class AgentAPIError(AgentClientError):
    """Any other non-success HTTP status."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AgentResponseError(AgentClientError):
    """A success response whose body could not be parsed."""


class AgentConnectionError(AgentClientError):
    """The request never got an HTTP response."""


@dataclass
class AgentLaunch:
    success: bool
    agent_id: str
    url: str | None = None
    status: str = "CREATING"
    branch_name: str | None = None
    raw: dict | str | None = None


@dataclass
class AgentStatus:
    status: str
    branch_name: str | None = None
    raw: dict = field(default_factory=dict)


class AgentClient:
    def __init__(
        self,
        api_key: str,
        git: GitOperator,
        base_url: str = DEFAULT_API_BASE_URL,
        model: str = DEFAULT_MODEL,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.git = git
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {api_key}",
                "User-Agent": USER_AGENT,
            },
        )
        logger.info(
            "AgentClient initialised (base=%s, model=%s, key=%s...)",
            self.base_url,
            model,
            api_key[:8] if api_key else "<missing>",
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def repository_url(self) -> str:
        return normalize_remote_url(await self.git.remote_url())

    async def create_agent(self, prompt_text: str, branch_ref: str) -> AgentLaunch:
        """Launch a background agent on *branch_ref*.

        Raises an AgentClientError subclass on any failure; nothing is
        retried here.
        """
        if not self.api_key:
            raise AgentAuthError("No API key configured. Set CURSOR_API_KEY.")
        repository = await self.repository_url()
        payload = {
            "prompt": {"text": prompt_text},
            "source": {"repository": repository, "ref": branch_ref},
            "model": self.model,
        }
        logger.info(
            "Creating agent on %s@%s (model=%s, prompt=%d chars)",
            repository,
            branch_ref,
            self.model,
            len(prompt_text),
        )

        try:
            resp = await self._client.post("/v0/agents", json=payload)
        except httpx.HTTPError as exc:
            raise AgentConnectionError(f"API request failed: {exc}") from exc

        logger.info("Agent API responded %d", resp.status_code)
        if resp.status_code in (200, 201):
            return self._parse_launch(resp)
        if resp.status_code == 401:
            raise AgentAuthError("Authentication failed (401). Check your API key.")
        if resp.status_code == 403:
            raise AgentPermissionError(
                "Permission denied (403). Your plan may not support background agents, "
                "or the repository isn't accessible."
            )
        if resp.status_code == 400:
            raise AgentRequestError(f"Bad request (400): {resp.text[:500]}")
        raise AgentAPIError(
            f"API returned {resp.status_code}: {resp.text[:500]}",
            status_code=resp.status_code,
        )

    async def get_agent_status(self, agent_id: str) -> AgentStatus:
        try:
            resp = await self._client.get(f"/v0/agents/{agent_id}")
        except httpx.HTTPError as exc:
            raise AgentConnectionError(f"Status check request failed: {exc}") from exc

        if resp.status_code != 200:
            raise AgentAPIError(
                f"Status check failed: {resp.status_code}", status_code=resp.status_code
            )
        try:
            data = resp.json()
        except (json.JSONDecodeError, ValueError) as exc:
            raise AgentResponseError("Failed to parse status response") from exc
        if not isinstance(data, dict):
            raise AgentResponseError("Failed to parse status response")

        return AgentStatus(
            status=str(data.get("status") or "UNKNOWN"),
            branch_name=_branch_name(data),
            raw=data,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_launch(resp: httpx.Response) -> AgentLaunch:
        try:
            data = resp.json()
        except (json.JSONDecodeError, ValueError):
            logger.warning("Agent created but response was not JSON; id unknown")
            return AgentLaunch(success=True, agent_id="created", raw=resp.text)

        if not isinstance(data, dict):
            return AgentLaunch(success=True, agent_id="created", raw=data)

        target = data.get("target") or {}
        return AgentLaunch(
            success=True,
            agent_id=str(data.get("id") or "unknown"),
            url=target.get("url") or data.get("url") or data.get("webUrl"),
            status=data.get("status") or "CREATING",
            branch_name=_branch_name(data),
            raw=data,
        )


def _branch_name(data: dict) -> str | None:
    target = data.get("target") or {}
    return target.get("branchName") or data.get("branchName") or None
