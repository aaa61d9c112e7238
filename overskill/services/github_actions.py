"""
GitHub Actions - Push app sources and watch the remote build workflow

This service handles:
1. Pushing a whole file tree as one commit (git data API)
2. Waiting for the workflow run triggered by that commit
3. Fetching logs of failed jobs
4. Classifying those logs with the build error detector
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from overskill.core.config import settings
from overskill.core.exceptions import GitHubAPIError
from overskill.core.logging_config import logger
from overskill.services.build_error_detector import BuildError, BuildErrorDetector, build_error_detector
from overskill.services.retry_policy import BackoffPolicy, retry_async
from overskill.services.source_file_set import SourceFileSet


ACTIVE_STATUSES = {"queued", "in_progress", "waiting", "requested", "pending"}


@dataclass
class WorkflowRun:
    id: Optional[int]
    status: str
    conclusion: Optional[str] = None
    html_url: Optional[str] = None
    head_sha: Optional[str] = None
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == "completed" and self.conclusion == "success"


@dataclass
class WorkflowOutcome:
    """A finished (or abandoned) run plus whatever the detector found in its logs"""
    run: WorkflowRun
    failed_jobs: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[BuildError] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.run.succeeded


class GitHubActionsService:
    """Service for pushing sources and monitoring GitHub Actions builds"""

    def __init__(
        self,
        token: Optional[str] = None,
        api_base: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        detector: Optional[BuildErrorDetector] = None,
        backoff: Optional[BackoffPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.token = token or settings.GITHUB_TOKEN
        self.api_base = (api_base or settings.GITHUB_API_BASE).rstrip("/")
        self.detector = detector or build_error_detector
        self.backoff = backoff or BackoffPolicy()
        self.grace_seconds = settings.GITHUB_WORKFLOW_GRACE_SECONDS
        self.poll_interval = settings.GITHUB_POLL_INTERVAL_SECONDS
        self.max_poll_interval = settings.GITHUB_POLL_MAX_INTERVAL_SECONDS
        self.max_polls = settings.GITHUB_MAX_POLLS
        self._transport = transport
        self._sleep = sleep

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_base,
            headers={
                "Authorization": f"Bearer {self.token}",
                "Accept": "application/vnd.github.v3+json",
            },
            timeout=30.0,
            follow_redirects=True,
            transport=self._transport,
        )

    async def _request(self, method: str, path: str, as_text: bool = False, **kwargs) -> Any:
        async def send():
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
            if not response.is_success:
                try:
                    message = response.json().get("message", response.reason_phrase)
                except ValueError:
                    message = response.text[:200] or response.reason_phrase
                raise GitHubAPIError(f"{method} {path}: {message}", status_code=response.status_code)
            return response.text if as_text else response.json()

        try:
            return await retry_async(send, self.backoff, sleep=self._sleep, name=f"github {method} {path}")
        except httpx.HTTPError as e:
            logger.error(f"[GitHubActions] {method} {path} failed: {e}")
            raise GitHubAPIError(f"{method} {path}: {e}") from e

    # ------------------------------------------------------------------ push

    async def push_files(self, repo: str, files: SourceFileSet, message: str,
                         branch: str = "main") -> str:
        """
        Commit the whole file set on top of branch and move the branch.

        Returns:
            SHA of the new commit
        """
        ref = await self._request("GET", f"/repos/{repo}/git/ref/heads/{branch}")
        parent_sha = ref["object"]["sha"]
        parent = await self._request("GET", f"/repos/{repo}/git/commits/{parent_sha}")

        tree = await self._request("POST", f"/repos/{repo}/git/trees", json={
            "base_tree": parent["tree"]["sha"],
            "tree": [
                {"path": f.path, "mode": "100644", "type": "blob", "content": f.content}
                for f in files
            ],
        })
        commit = await self._request("POST", f"/repos/{repo}/git/commits", json={
            "message": message,
            "tree": tree["sha"],
            "parents": [parent_sha],
        })
        await self._request("PATCH", f"/repos/{repo}/git/refs/heads/{branch}", json={"sha": commit["sha"]})

        logger.info(f"[GitHubActions] Pushed {len(files)} files to {repo}@{branch} ({commit['sha'][:7]})")
        return commit["sha"]

    # ------------------------------------------------------------------ runs

    def _next_interval(self, poll: int) -> float:
        return min(self.poll_interval * (1.5 ** poll), self.max_poll_interval)

    async def find_run(self, repo: str, head_sha: Optional[str] = None) -> Optional[Dict[str, Any]]:
        params: Dict[str, Any] = {"per_page": 5}
        if head_sha:
            params["head_sha"] = head_sha
        payload = await self._request("GET", f"/repos/{repo}/actions/runs", params=params)
        runs = payload.get("workflow_runs") or []
        return runs[0] if runs else None

    async def wait_for_run(self, repo: str, head_sha: Optional[str] = None) -> WorkflowRun:
        """
        Wait for the workflow run of head_sha to complete.

        The run usually appears a few seconds after the push, so the first
        lookup happens after a grace delay. Polling is bounded by max_polls;
        an unfinished run comes back with timed_out=True.
        """
        await self._sleep(self.grace_seconds)

        run: Optional[Dict[str, Any]] = None
        for poll in range(self.max_polls):
            if run is None:
                run = await self.find_run(repo, head_sha)
            else:
                run = await self._request("GET", f"/repos/{repo}/actions/runs/{run['id']}")

            if run is not None:
                status = run.get("status", "unknown")
                if status == "completed":
                    logger.info(f"[GitHubActions] Run {run['id']} completed: {run.get('conclusion')}")
                    return self._to_run(run)
                if status not in ACTIVE_STATUSES:
                    logger.error(f"[GitHubActions] Unknown workflow status: {status}")
                    return self._to_run(run)

            await self._sleep(self._next_interval(poll))

        logger.warning(f"[GitHubActions] Gave up waiting for workflow run on {repo} after {self.max_polls} polls")
        if run is None:
            return WorkflowRun(id=None, status="not_found", head_sha=head_sha, timed_out=True)
        timed_out = self._to_run(run)
        timed_out.timed_out = True
        return timed_out

    @staticmethod
    def _to_run(run: Dict[str, Any]) -> WorkflowRun:
        return WorkflowRun(
            id=run.get("id"),
            status=run.get("status", "unknown"),
            conclusion=run.get("conclusion"),
            html_url=run.get("html_url"),
            head_sha=run.get("head_sha"),
        )

    # ------------------------------------------------------------------ logs

    async def fetch_failed_logs(self, repo: str, run_id: int) -> List[Dict[str, Any]]:
        """Logs of every failed job as [{job_name, job_id, logs, steps}]"""
        payload = await self._request("GET", f"/repos/{repo}/actions/runs/{run_id}/jobs")
        failed = []
        for job in payload.get("jobs") or []:
            if job.get("conclusion") != "failure":
                continue
            logs = await self._request("GET", f"/repos/{repo}/actions/jobs/{job['id']}/logs", as_text=True)
            failed.append({
                "job_name": job.get("name"),
                "job_id": job["id"],
                "logs": logs,
                "steps": [
                    {"name": step.get("name"), "number": step.get("number"), "conclusion": step.get("conclusion")}
                    for step in job.get("steps") or []
                    if step.get("conclusion") == "failure"
                ],
            })
        return failed

    async def monitor_and_classify(self, repo: str, head_sha: Optional[str] = None) -> WorkflowOutcome:
        """Wait for the run, and when it failed, run the detector over its job logs"""
        run = await self.wait_for_run(repo, head_sha)
        if run.succeeded or run.id is None or run.status != "completed":
            return WorkflowOutcome(run=run)

        failed_jobs = await self.fetch_failed_logs(repo, run.id)
        errors = self.detector.analyze([job["logs"] for job in failed_jobs])
        logger.info(f"[GitHubActions] Run {run.id} failed: {len(failed_jobs)} failed jobs, "
                    f"{len(errors)} classified errors")
        return WorkflowOutcome(run=run, failed_jobs=failed_jobs, errors=errors)


# Singleton instance
github_actions_service = GitHubActionsService()
