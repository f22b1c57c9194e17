"""
Pytest configuration for Pipeline Controller tests.

This module provides:
1. A synchronous runner for async code (async_test)
2. An in-memory GitHub gateway double
3. A sample fleet configuration and raw GitHub run payloads
"""

import asyncio
import functools
from typing import Any, Dict, List, Optional

import pytest

from pipeline_controller.config import parse_config
from pipeline_controller.errors import GatewayError


# -----------------------------------------------------------------------------
# Async Test Support
# -----------------------------------------------------------------------------
def async_test(func):
    """
    Decorator to run an async test body to completion on a fresh loop.

    Usage:
        @async_test
        async def test_something(self):
            result = await some_async_function()
            assert result is not None
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        return asyncio.run(func(*args, **kwargs))
    return wrapper


# -----------------------------------------------------------------------------
# Gateway Double
# -----------------------------------------------------------------------------
class FakeGateway:
    """
    In-memory stand-in for GitHubGateway.

    runs:   (repo, workflow_id) -> list of raw runs, or an exception to raise
    jobs:   run_id -> list of raw jobs, or an exception to raise
    logs:   job_id -> bytes, or an exception to raise
    """

    def __init__(self, delay: float = 0.0):
        self.runs: Dict[tuple, Any] = {}
        self.jobs: Dict[int, Any] = {}
        self.logs: Dict[int, Any] = {}
        self.dispatch_errors: Dict[str, Exception] = {}
        self.cancel_error: Optional[Exception] = None
        self.dispatched: List[Dict[str, Any]] = []
        self.cancelled: List[Dict[str, Any]] = []
        self.delay = delay
        self.in_flight = 0
        self.max_in_flight = 0
        self.list_runs_calls = 0

    async def _enter(self):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        await asyncio.sleep(self.delay)

    def _exit(self):
        self.in_flight -= 1

    @staticmethod
    def _resolve(value):
        if isinstance(value, Exception):
            raise value
        return value

    async def list_runs(self, owner, repo, workflow_id, max_count):
        self.list_runs_calls += 1
        await self._enter()
        try:
            return self._resolve(self.runs.get((repo, workflow_id), []))[:max_count]
        finally:
            self._exit()

    async def list_jobs(self, owner, repo, run_id):
        await self._enter()
        try:
            return self._resolve(self.jobs.get(run_id, []))
        finally:
            self._exit()

    async def fetch_log(self, owner, repo, job_id):
        return self._resolve(self.logs.get(job_id, b""))

    async def dispatch(self, owner, repo, workflow_id, ref, inputs=None):
        if repo in self.dispatch_errors:
            raise self.dispatch_errors[repo]
        self.dispatched.append({
            "owner": owner,
            "repo": repo,
            "workflow_id": workflow_id,
            "ref": ref,
            "inputs": inputs,
        })

    async def cancel(self, owner, repo, run_id):
        if self.cancel_error is not None:
            raise self.cancel_error
        self.cancelled.append({"owner": owner, "repo": repo, "run_id": run_id})


class FakeSocket:
    """Transport handle double recording what was sent."""

    def __init__(self, fail: bool = False, delay: float = 0.0):
        self.sent: List[str] = []
        self.fail = fail
        self.delay = delay

    async def send_text(self, message: str):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ConnectionError("socket closed")
        self.sent.append(message)


def rate_limit_error() -> GatewayError:
    return GatewayError("API rate limit exceeded", status_code=403, rate_limited=True)


# -----------------------------------------------------------------------------
# Sample Data
# -----------------------------------------------------------------------------
SAMPLE_CONFIG = {
    "owner": "acme",
    "token": "test-token",
    "teams": {
        "frontend": {
            "name": "Frontend Team",
            "branches": ["main", "develop"],
            "apps": ["app1", "app2"],
            "permissions": {
                "trigger_build": ["admin", "lead", "developer"],
                "trigger_release": ["admin", "lead"],
                "approve_release": ["admin", "lead"],
                "view_logs": ["admin", "lead", "developer", "viewer"],
                "restart_services": ["admin", "lead"],
            },
        },
        "backend": {
            "name": "Backend Team",
            "branches": ["main"],
            "apps": ["app3"],
            "permissions": {
                "trigger_build": ["admin", "lead", "developer"],
                "trigger_release": ["admin", "lead"],
                "view_logs": ["admin", "lead", "developer", "viewer"],
            },
        },
    },
    "users": {
        "john.doe": {"role": "admin", "teams": ["frontend", "backend"], "password": "admin-pass"},
        "alice.frontend": {"role": "lead", "teams": ["frontend"], "password": "lead-pass"},
        "dev1": {"role": "developer", "teams": ["frontend"], "password": "dev-pass"},
        "viewer.user": {"role": "viewer", "teams": ["frontend"], "password": "view-pass"},
    },
    "app_repos": [
        {"name": "app1", "repo": "app1-service", "build_workflow": "build.yml"},
        {"name": "app2", "repo": "app2-service", "build_workflow": "build.yml"},
        {"name": "app3", "repo": "app3-service", "build_workflow": "build.yml"},
    ],
    "release_repos": [
        {"app_name": "app1", "repo": "release-pipelines", "release_workflow": "app1-release.yml"},
        {"app_name": "app3", "repo": "release-pipelines", "release_workflow": "app3-release.yml"},
    ],
}


def make_run(
    run_id: int,
    name: str = "main-app1-build-1.0.0",
    created_at: str = "2024-05-01T10:00:00Z",
    status: str = "completed",
    conclusion: Optional[str] = "success",
    **extra,
) -> Dict[str, Any]:
    run = {
        "id": run_id,
        "name": name,
        "status": status,
        "conclusion": conclusion,
        "created_at": created_at,
        "updated_at": created_at,
        "head_branch": "main",
        "head_sha": "abcdef1234567890",
        "run_number": run_id,
        "run_attempt": 1,
        "event": "workflow_dispatch",
        "display_title": f"Run {run_id}",
        "triggering_actor": {"login": "octocat"},
        "html_url": f"https://github.com/acme/repo/actions/runs/{run_id}",
    }
    run.update(extra)
    return run


def make_job(job_id: int, name: str = "build", conclusion: str = "success") -> Dict[str, Any]:
    return {
        "id": job_id,
        "name": name,
        "status": "completed",
        "conclusion": conclusion,
        "started_at": "2024-05-01T10:00:00Z",
        "completed_at": "2024-05-01T10:03:12Z",
        "html_url": f"https://github.com/acme/repo/actions/runs/1/job/{job_id}",
        "steps": [
            {"number": 1, "name": "Checkout", "status": "completed", "conclusion": "success"},
        ],
    }


# -----------------------------------------------------------------------------
# Common Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def sample_config():
    """Validated fleet configuration with two teams."""
    return parse_config(SAMPLE_CONFIG)


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def cache_path(tmp_path):
    return tmp_path / "workflow-cache.json"
