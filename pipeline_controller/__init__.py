"""
Pipeline Controller Module

Monitoring and control plane for the CI/CD automation pipelines of an
application fleet. Pulls workflow run state from GitHub Actions, normalizes
it into uniform run records, serves it to dashboard viewers and lets
authorized operators trigger, cancel or schedule pipeline runs.

Components:
- github_gateway: GitHub Actions REST calls (list runs/jobs, dispatch, cancel, logs)
- run_parser: Decodes branch/app/version/commit from run display names
- aggregator: Bounded-concurrency fetch across all configured workflows
- snapshot_cache: Single-slot TTL cache file
- metrics: Summary statistics over aggregated runs
- broadcaster: Connection registry and real-time push of active runs
- access_gate: Team/role permission evaluation for mutating actions
- dispatch_scheduler: In-memory deferred one-shot workflow dispatch
- dashboard_service: Long-lived service owning all of the above
- main: FastAPI HTTP + WebSocket surface

CONSTRAINTS:
- Single process, in-memory fan-out only
- No cross-restart durability (cache file and schedules are ephemeral)
- Partial remote failures degrade single records, never whole responses
"""

__version__ = "1.0.0"

SERVICE_NAME = "Pipeline Controller"
