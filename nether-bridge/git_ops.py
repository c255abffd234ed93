"""Local git operations used to stage work for an agent and fold it back into trunk."""

from __future__ import annotations

import asyncio
import logging
import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

# Per-command timeouts (seconds)
_QUICK_TIMEOUT = 5
_CHECKOUT_TIMEOUT = 10
_FETCH_TIMEOUT = 20
_NETWORK_TIMEOUT = 30

_SSH_REMOTE = re.compile(r"^(?:ssh://)?[\w.-]+@([^:/]+)[:/](.+)$")


class GitError(Exception):
    """Raised when a git command that must succeed fails."""


@dataclass
class GitResult:
    ok: bool
    output: str = ""
    error: str = ""
    returncode: int | None = None

    @property
    def text(self) -> str:
        return f"{self.output}\n{self.error}".strip()


@dataclass
class StageResult:
    branch: str
    original_branch: str
    created: bool = False
    committed: bool = False
    pushed: bool = False
    warnings: list[str] = field(default_factory=list)


@dataclass
class MergeResult:
    success: bool
    branch: str
    error: str = ""
    conflict: bool = False
    output: str = ""


def normalize_remote_url(url: str) -> str:
    """Turn a git remote into the https form the agent service expects.

    ``git@github.com:user/repo.git`` -> ``https://github.com/user/repo``
    """
    url = url.strip()
    match = _SSH_REMOTE.match(url)
    if match and not url.startswith(("http://", "https://")):
        url = f"https://{match.group(1)}/{match.group(2)}"
    url = url.rstrip("/")
    if url.endswith(".git"):
        url = url[: -len(".git")]
    return url


def _is_up_to_date(result: GitResult) -> bool:
    return "Already up to date" in result.text or "Already up-to-date" in result.text


def _nothing_to_commit(result: GitResult) -> bool:
    return "nothing to commit" in result.text or "nothing added to commit" in result.text


def _is_conflict(result: GitResult) -> bool:
    return "CONFLICT" in result.text or "conflict" in result.error.lower()


class GitOperator:
    """Runs git in *repo_path*. Every command returns a GitResult.

    Commands run through ``subprocess.run`` in the event loop's default
    executor so a slow remote never blocks the loop.
    """

    def __init__(self, repo_path: str | Path, trunk: str = "main", remote: str = "origin"):
        self.repo_path = Path(repo_path).resolve()
        self.trunk = trunk
        self.remote = remote

    # ------------------------------------------------------------------
    # Primitive commands
    # ------------------------------------------------------------------

    def _run_sync(self, args: list[str], timeout: int) -> GitResult:
        try:
            proc = subprocess.run(
                ["git"] + args,
                cwd=self.repo_path,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            return GitResult(ok=False, error=f"git {' '.join(args)} timed out after {timeout}s")
        except OSError as exc:
            return GitResult(ok=False, error=f"could not run git: {exc}")
        return GitResult(
            ok=proc.returncode == 0,
            output=proc.stdout or "",
            error=proc.stderr or "",
            returncode=proc.returncode,
        )

    async def run(self, args: list[str], timeout: int = _NETWORK_TIMEOUT) -> GitResult:
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(None, self._run_sync, args, timeout)
        logger.debug("git %s -> %s", " ".join(args), "ok" if result.ok else result.returncode)
        return result

    async def current_branch(self) -> str:
        result = await self.run(["rev-parse", "--abbrev-ref", "HEAD"], timeout=_QUICK_TIMEOUT)
        branch = result.output.strip()
        if not result.ok or not branch:
            logger.warning("Could not determine current branch, assuming %s", self.trunk)
            return self.trunk
        return branch

    async def remote_url(self) -> str:
        result = await self.run(["remote", "get-url", self.remote], timeout=_QUICK_TIMEOUT)
        if not result.ok or not result.output.strip():
            raise GitError(
                "No git remote found. The agent service needs a hosted repository: "
                f"{result.error[:200]}"
            )
        return result.output.strip()

    async def branch_exists(self, branch: str) -> bool:
        result = await self.run(["branch", "--list", branch], timeout=_QUICK_TIMEOUT)
        return result.ok and bool(result.output.strip())

    async def checkout(self, branch: str, create: bool = False) -> GitResult:
        args = ["checkout", "-b", branch] if create else ["checkout", branch]
        return await self.run(args, timeout=_CHECKOUT_TIMEOUT)

    async def pull_trunk(self) -> GitResult:
        result = await self.run(["pull", self.remote, self.trunk])
        if not result.ok and _is_up_to_date(result):
            result.ok = True
        return result

    async def sync_with_trunk(self) -> GitResult:
        """Fetch trunk and merge it into the checked-out branch."""
        fetch = await self.run(["fetch", self.remote, self.trunk])
        if not fetch.ok:
            return fetch
        merge = await self.run(["merge", f"{self.remote}/{self.trunk}", "--no-edit"])
        if not merge.ok and _is_up_to_date(merge):
            merge.ok = True
        return merge

    async def add_force(self, path: str) -> GitResult:
        return await self.run(["add", "-f", path], timeout=_CHECKOUT_TIMEOUT)

    async def commit(self, message: str) -> GitResult:
        return await self.run(["commit", "-m", message], timeout=_CHECKOUT_TIMEOUT)

    async def push(self, branch: str, set_upstream: bool = False) -> GitResult:
        args = ["push", "-u", self.remote, branch] if set_upstream else ["push", self.remote, branch]
        return await self.run(args)

    async def status_porcelain(self) -> GitResult:
        return await self.run(["status", "--porcelain"], timeout=_CHECKOUT_TIMEOUT)

    async def fetch_branch(self, branch: str) -> GitResult:
        return await self.run(["fetch", self.remote, branch], timeout=_FETCH_TIMEOUT)

    async def merge(self, ref: str) -> GitResult:
        return await self.run(["merge", ref, "--no-edit"], timeout=_FETCH_TIMEOUT)

    async def abort_merge(self) -> GitResult:
        return await self.run(["merge", "--abort"], timeout=_CHECKOUT_TIMEOUT)

    # ------------------------------------------------------------------
    # Composite operations
    # ------------------------------------------------------------------

    async def stage_component(
        self,
        staging_branch: str,
        component_name: str | None,
        component_root: str = "nether-grasp",
    ) -> StageResult:
        """Put the component's files on *staging_branch* and push it.

        Best effort: every failure is recorded as a warning. The branch that
        was checked out on entry is restored before returning.
        """
        original = await self.current_branch()
        result = StageResult(branch=staging_branch, original_branch=original)

        try:
            exists = await self.branch_exists(staging_branch)
            checkout = await self.checkout(staging_branch, create=not exists)
            if not checkout.ok:
                msg = f"Could not checkout {staging_branch}: {checkout.error[:300]}"
                logger.warning(msg)
                result.warnings.append(msg)
                return result
            result.created = not exists
            logger.info(
                "%s staging branch %s",
                "Created" if result.created else "Switched to",
                staging_branch,
            )

            sync = await self.sync_with_trunk()
            if not sync.ok:
                msg = f"Merge of {self.trunk} into {staging_branch} failed: {sync.error[:300]}"
                logger.warning("%s (continuing anyway)", msg)
                result.warnings.append(msg)
            else:
                logger.info("%s synced with %s", staging_branch, self.trunk)

            if not component_name:
                return result

            component_path = f"{component_root}/{component_name}"
            logger.info("Committing files for %s", component_name)
            add = await self.add_force(component_path)
            if not add.ok:
                msg = f"git add {component_path} failed: {add.error[:300]}"
                logger.warning(msg)
                result.warnings.append(msg)

            commit = await self.commit(
                f"feat: Add {component_name} component files for AI agent processing"
            )
            if commit.ok:
                result.committed = True
                logger.info("Files committed to %s", staging_branch)
            elif _nothing_to_commit(commit):
                logger.info("Files for %s already committed", component_name)
            else:
                msg = f"Commit failed: {commit.error[:300] or commit.output[:300]}"
                logger.warning(msg)
                result.warnings.append(msg)

            push = await self.push(staging_branch, set_upstream=result.created)
            if push.ok:
                result.pushed = True
                logger.info("Pushed %s", staging_branch)
            else:
                msg = f"Push of {staging_branch} failed: {push.error[:300]}"
                logger.warning(msg)
                result.warnings.append(msg)
            return result
        finally:
            restore = await self.checkout(original)
            if not restore.ok:
                logger.warning("Could not switch back to %s: %s", original, restore.error[:300])

    async def merge_to_trunk(self, branch: str) -> MergeResult:
        """Merge ``<remote>/<branch>`` into trunk and push trunk.

        A conflict aborts the merge and is reported with ``conflict=True``;
        it needs a human, so callers must not retry it.
        """
        current = await self.run(["rev-parse", "--abbrev-ref", "HEAD"], timeout=_QUICK_TIMEOUT)
        if not current.ok:
            return MergeResult(
                success=False, branch=branch,
                error=f"Failed to get current branch: {current.error[:300]}",
            )
        logger.info("Current branch: %s", current.output.strip())

        status = await self.status_porcelain()
        if not status.ok:
            return MergeResult(
                success=False, branch=branch,
                error=f"Failed to check git status: {status.error[:300]}",
            )
        if status.output.strip():
            logger.info("Working copy has local changes")

        pull = await self.pull_trunk()
        if not pull.ok:
            logger.warning("Pull warning: %s", pull.error[:300])

        checkout = await self.checkout(self.trunk)
        if not checkout.ok:
            return MergeResult(
                success=False, branch=branch,
                error=f"Failed to checkout {self.trunk}: {checkout.error[:300]}",
            )

        fetch = await self.fetch_branch(branch)
        if not fetch.ok:
            logger.warning("Could not fetch %s: %s", branch, fetch.error[:300])

        logger.info("Merging %s into %s", branch, self.trunk)
        merge = await self.merge(f"{self.remote}/{branch}")
        if not merge.ok and _is_conflict(merge):
            abort = await self.abort_merge()
            if not abort.ok:
                logger.warning("git merge --abort failed: %s", abort.error[:300])
            return MergeResult(
                success=False, branch=branch, conflict=True,
                error="Merge conflict detected. Manual resolution required.",
                output=merge.text[:2000],
            )
        if not merge.ok:
            # Usually means the branch is already merged
            logger.warning("Merge note: %s", merge.error[:300] or merge.output[:300])

        push = await self.push(self.trunk)
        if not push.ok:
            return MergeResult(
                success=False, branch=branch,
                error=f"Failed to push: {push.error[:300]}",
            )

        logger.info("Pushed %s to %s/%s", branch, self.remote, self.trunk)
        return MergeResult(success=True, branch=branch, output=push.text)
