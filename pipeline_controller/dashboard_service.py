"""
Dashboard Service

The long-lived service instance behind the HTTP layer. It owns the
connection registry, the broadcaster loop and the scheduled-dispatch table,
and exposes the operations the presentation layer calls:

    get_dashboard, trigger_workflow, trigger_bulk, cancel_workflow,
    get_logs, restart_service, schedule_trigger, cancel_scheduled,
    list_scheduled, switch_user

Read operations never raise for partial remote failures. Mutating
operations raise the specific failure (GatewayError, AuthorizationFailure,
InvalidInput), except bulk triggers, which report one result per app.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .access_gate import AccessGate, User
from .aggregator import WorkflowAggregator
from .broadcaster import ConnectionRegistry, EventType, RealtimeBroadcaster
from .config import REALTIME_POLL_INTERVAL, Action, PipelineConfig
from .dispatch_scheduler import CancelOutcome, DispatchScheduler
from .github_gateway import GitHubGateway
from .metrics import DashboardMetrics, compute_metrics
from .models import RunRecord, ScheduledDispatch, WorkflowKind, WorkflowRef
from .snapshot_cache import SnapshotCache

logger = logging.getLogger("dashboard_service")

DEFAULT_RELEASE_VERSION = "latest"


# -----------------------------------------------------------------------------
# Result views
# -----------------------------------------------------------------------------
@dataclass
class DashboardView:
    builds: List[RunRecord]
    releases: List[RunRecord]
    metrics: DashboardMetrics
    from_cache: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "builds": [r.to_dict() for r in self.builds],
            "releases": [r.to_dict() for r in self.releases],
            "metrics": self.metrics.to_dict(),
            "from_cache": self.from_cache,
        }


@dataclass
class BulkTriggerResult:
    app: str
    success: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"app": self.app, "success": self.success}
        if self.error is not None:
            result["error"] = self.error
        return result


@dataclass
class JobLogResult:
    job_id: int
    job_name: str
    logs: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"job_id": self.job_id, "job_name": self.job_name}
        if self.error is not None:
            result["error"] = self.error
        else:
            result["logs"] = self.logs
        return result


# -----------------------------------------------------------------------------
# Service
# -----------------------------------------------------------------------------
class DashboardService:
    def __init__(
        self,
        config: PipelineConfig,
        gateway=None,
        cache: Optional[SnapshotCache] = None,
        poll_interval: float = REALTIME_POLL_INTERVAL,
        aggregator: Optional[WorkflowAggregator] = None,
    ):
        self.config = config
        self.gateway = gateway or GitHubGateway(config.token)
        self.aggregator = aggregator or WorkflowAggregator(self.gateway, config)
        self.cache = cache or SnapshotCache()
        self.registry = ConnectionRegistry()
        self.broadcaster = RealtimeBroadcaster(self.registry, self.aggregator, interval=poll_interval)
        self.access_gate = AccessGate(config)
        self.scheduler = DispatchScheduler(self.gateway, notify=self.broadcaster.broadcast)

    async def start(self) -> None:
        await self.broadcaster.start()
        logger.info("Dashboard service started")

    async def stop(self) -> None:
        await self.broadcaster.stop()
        await self.scheduler.shutdown()
        logger.info("Dashboard service stopped")

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------
    async def _load_runs(self, refresh: bool = False) -> Tuple[List[RunRecord], List[RunRecord], bool]:
        if not refresh:
            snapshot = await self.cache.get()
            if snapshot is not None:
                return snapshot.builds, snapshot.releases, True

        builds = await self.aggregator.fetch_builds()
        releases = await self.aggregator.fetch_releases()
        await self.cache.put(builds, releases)
        return builds, releases, False

    async def get_dashboard(
        self,
        team_filter: Optional[str] = None,
        branch_filter: Optional[str] = None,
        refresh: bool = False,
    ) -> DashboardView:
        """
        Builds, releases and metrics, optionally narrowed to a team's apps
        and/or a branch. An unknown team filter is ignored.
        """
        builds, releases, from_cache = await self._load_runs(refresh)

        team = self.config.teams.get(team_filter) if team_filter else None
        if team is not None:
            apps = set(team.apps)
            builds = [r for r in builds if r.app_name in apps]
            releases = [r for r in releases if r.app_name in apps]

        if branch_filter:
            builds = [r for r in builds if r.branch == branch_filter]
            releases = [r for r in releases if r.branch == branch_filter]

        return DashboardView(
            builds=builds,
            releases=releases,
            metrics=compute_metrics(builds, releases),
            from_cache=from_cache,
        )

    # -------------------------------------------------------------------------
    # Mutating actions
    # -------------------------------------------------------------------------
    async def trigger_workflow(
        self,
        identity: str,
        team: Optional[str],
        repo: str,
        workflow_id: str,
        ref: str,
        inputs: Optional[Dict[str, Any]] = None,
    ) -> None:
        decision = self.access_gate.authorize(identity, Action.TRIGGER_BUILD, team)

        await self.gateway.dispatch(self.config.owner, repo, workflow_id, ref, inputs or {})

        await self.broadcaster.broadcast(EventType.WORKFLOW_TRIGGERED, {
            "repo": repo,
            "workflow_id": workflow_id,
            "ref": ref,
            "user": decision.user.identity,
        })

    async def trigger_bulk(
        self,
        identity: str,
        team: Optional[str],
        apps: List[str],
        branch: str,
        kind: WorkflowKind = WorkflowKind.BUILD,
        version: Optional[str] = None,
    ) -> List[BulkTriggerResult]:
        """Dispatch the build or release workflow of each app; one result per app."""
        action = Action.TRIGGER_RELEASE if kind == WorkflowKind.RELEASE else Action.TRIGGER_BUILD
        decision = self.access_gate.authorize(identity, action, team)
        team_config = self.access_gate.get_team(team)

        if kind == WorkflowKind.RELEASE:
            inputs = {"version": version or DEFAULT_RELEASE_VERSION}
            missing = "Release config not found or not in team"
        else:
            inputs = {}
            missing = "App not found or not in team"

        results: List[BulkTriggerResult] = []
        for app_name in apps:
            workflow = self.config.find_workflow(app_name, kind)
            if workflow is None or app_name not in team_config.apps:
                results.append(BulkTriggerResult(app=app_name, success=False, error=missing))
                continue
            try:
                await self.gateway.dispatch(
                    workflow.owner, workflow.repo, workflow.workflow_id, branch, inputs
                )
                results.append(BulkTriggerResult(app=app_name, success=True))
            except Exception as e:
                logger.warning(f"Bulk {kind.value.lower()} trigger failed for {app_name}: {e}")
                results.append(BulkTriggerResult(app=app_name, success=False, error=str(e)))

        event_type = (
            EventType.BULK_RELEASES_TRIGGERED if kind == WorkflowKind.RELEASE
            else EventType.BULK_BUILDS_TRIGGERED
        )
        await self.broadcaster.broadcast(event_type, {
            "apps": apps,
            "branch": branch,
            "team": team,
            "user": decision.user.identity,
        })
        return results

    async def cancel_workflow(self, identity: str, repo: str, run_id: int) -> None:
        user = self.access_gate.authenticate(identity)

        await self.gateway.cancel(self.config.owner, repo, run_id)

        await self.broadcaster.broadcast(EventType.WORKFLOW_CANCELLED, {
            "repo": repo,
            "run_id": run_id,
            "user": user.identity,
        })

    async def get_logs(self, identity: str, repo: str, run_id: int) -> List[JobLogResult]:
        """Logs of every job of a run; a failed log download is reported per job."""
        self.access_gate.authorize(identity, Action.VIEW_LOGS)

        jobs = await self.gateway.list_jobs(self.config.owner, repo, run_id)

        async def fetch(job: Dict[str, Any]) -> JobLogResult:
            try:
                content = await self.gateway.fetch_log(self.config.owner, repo, job["id"])
            except Exception as e:
                return JobLogResult(job_id=job["id"], job_name=job.get("name", ""), error=str(e))
            if isinstance(content, bytes):
                content = content.decode("utf-8", errors="replace")
            return JobLogResult(job_id=job["id"], job_name=job.get("name", ""), logs=content)

        return list(await asyncio.gather(*(fetch(job) for job in jobs)))

    async def restart_service(
        self,
        identity: str,
        team: Optional[str],
        service: str,
        environment: str,
    ) -> None:
        """
        Announce a service restart to every connected client.

        Only the notification is issued here; the restart itself is carried
        out by whatever deployment tooling listens for the event.
        """
        decision = self.access_gate.authorize(identity, Action.RESTART_SERVICES, team)

        logger.info(f"Service restart requested: {service} in {environment} by {decision.user.identity}")
        await self.broadcaster.broadcast(EventType.SERVICE_RESTART_INITIATED, {
            "service": service,
            "environment": environment,
            "team": team,
            "user": decision.user.identity,
        })

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------
    def _resolve_workflow(self, repo: str, workflow_id: str) -> WorkflowRef:
        for kind in (WorkflowKind.RELEASE, WorkflowKind.BUILD):
            for ref in self.config.workflows(kind):
                if ref.repo == repo and ref.workflow_id == workflow_id:
                    return ref
        return WorkflowRef(self.config.owner, repo, workflow_id, workflow_id, WorkflowKind.RELEASE)

    def schedule_trigger(
        self,
        identity: str,
        team: Optional[str],
        repo: str,
        workflow_id: str,
        ref: str,
        fire_at: datetime,
        inputs: Optional[Dict[str, Any]] = None,
    ) -> ScheduledDispatch:
        decision = self.access_gate.authorize(identity, Action.TRIGGER_RELEASE, team)
        return self.scheduler.schedule(
            workflow_ref=self._resolve_workflow(repo, workflow_id),
            ref=ref,
            fire_at=fire_at,
            owner=decision.user.identity,
            inputs=inputs,
        )

    def cancel_scheduled(self, dispatch_id: str) -> CancelOutcome:
        return self.scheduler.cancel(dispatch_id)

    def list_scheduled(self) -> List[ScheduledDispatch]:
        return self.scheduler.list()

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------
    def login(self, identity: str, password: str) -> User:
        return self.access_gate.login(identity, password)

    def current_user(self, identity: str) -> User:
        return self.access_gate.authenticate(identity)

    def switch_user(self, identity: str, target: str) -> User:
        return self.access_gate.switch_user(identity, target)
