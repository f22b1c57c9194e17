"""
GitHub Actions Gateway

Thin async wrapper around the GitHub Actions REST API. The only module that
talks to the remote automation platform.

Every failure (transport error, timeout, non-2xx) is raised as GatewayError
with a transient / rate_limited hint so callers can decide whether to
degrade, abandon or surface it.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from .config import GATEWAY_TIMEOUT, GITHUB_API_BASE
from .errors import GatewayError

logger = logging.getLogger("github_gateway")

JOBS_PER_PAGE = 100


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
        if isinstance(body, dict) and body.get("message"):
            return str(body["message"])
    except ValueError:
        pass
    return response.text[:200] or response.reason_phrase


def _is_rate_limited(response: httpx.Response, message: str) -> bool:
    if response.status_code not in (403, 429):
        return False
    if response.headers.get("x-ratelimit-remaining") == "0":
        return True
    if "retry-after" in response.headers:
        return True
    return "rate limit" in message.lower()


def error_from_response(response: httpx.Response, context: str) -> GatewayError:
    """Classify a non-2xx GitHub response."""
    message = _error_message(response)
    rate_limited = _is_rate_limited(response, message)
    transient = rate_limited or response.status_code >= 500
    return GatewayError(
        f"{context} failed ({response.status_code}): {message}",
        status_code=response.status_code,
        transient=transient,
        rate_limited=rate_limited,
    )


class GitHubGateway:
    """
    GitHub Actions operations used by the controller.

    A custom httpx transport can be injected (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        token: Optional[str],
        api_base: str = GITHUB_API_BASE,
        timeout: float = GATEWAY_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            self.headers["Authorization"] = f"Bearer {token}"
        else:
            logger.warning("No GitHub token configured; requests are unauthenticated")
        self._transport = transport

    def _client(self, follow_redirects: bool = False) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_base,
            headers=self.headers,
            timeout=self.timeout,
            transport=self._transport,
            follow_redirects=follow_redirects,
        )

    async def _request(
        self,
        method: str,
        path: str,
        context: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        follow_redirects: bool = False,
    ) -> httpx.Response:
        async with self._client(follow_redirects=follow_redirects) as client:
            try:
                response = await client.request(method, path, params=params, json=json)
            except httpx.TimeoutException as e:
                raise GatewayError(f"{context} timed out", transient=True) from e
            except httpx.HTTPError as e:
                raise GatewayError(f"{context} failed: {e}", transient=True) from e

        if response.status_code >= 400:
            error = error_from_response(response, context)
            if error.rate_limited:
                logger.warning(f"GitHub rate limit hit during {context}")
            raise error
        return response

    # -------------------------------------------------------------------------
    # Read operations
    # -------------------------------------------------------------------------
    async def list_runs(
        self,
        owner: str,
        repo: str,
        workflow_id: str,
        max_count: int,
    ) -> List[Dict[str, Any]]:
        """Most recent runs of a workflow, newest first as GitHub reports them."""
        response = await self._request(
            "GET",
            f"/repos/{owner}/{repo}/actions/workflows/{workflow_id}/runs",
            context=f"list runs {owner}/{repo}/{workflow_id}",
            params={"per_page": max_count, "page": 1},
        )
        return response.json().get("workflow_runs", [])[:max_count]

    async def list_jobs(self, owner: str, repo: str, run_id: int) -> List[Dict[str, Any]]:
        """Jobs of a run in GitHub's reporting order."""
        response = await self._request(
            "GET",
            f"/repos/{owner}/{repo}/actions/runs/{run_id}/jobs",
            context=f"list jobs {owner}/{repo}#{run_id}",
            params={"per_page": JOBS_PER_PAGE},
        )
        return response.json().get("jobs", [])

    async def fetch_log(self, owner: str, repo: str, job_id: int) -> bytes:
        """Plain-text log of one job. GitHub answers with a redirect to storage."""
        response = await self._request(
            "GET",
            f"/repos/{owner}/{repo}/actions/jobs/{job_id}/logs",
            context=f"fetch log {owner}/{repo} job {job_id}",
            follow_redirects=True,
        )
        return response.content

    # -------------------------------------------------------------------------
    # Mutating operations
    # -------------------------------------------------------------------------
    async def dispatch(
        self,
        owner: str,
        repo: str,
        workflow_id: str,
        ref: str,
        inputs: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Start a workflow_dispatch run on the given ref."""
        await self._request(
            "POST",
            f"/repos/{owner}/{repo}/actions/workflows/{workflow_id}/dispatches",
            context=f"dispatch {owner}/{repo}/{workflow_id}@{ref}",
            json={"ref": ref, "inputs": inputs or {}},
        )
        logger.info(f"Dispatched {owner}/{repo}/{workflow_id} on {ref}")

    async def cancel(self, owner: str, repo: str, run_id: int) -> None:
        await self._request(
            "POST",
            f"/repos/{owner}/{repo}/actions/runs/{run_id}/cancel",
            context=f"cancel {owner}/{repo}#{run_id}",
        )
        logger.info(f"Cancelled run {owner}/{repo}#{run_id}")
