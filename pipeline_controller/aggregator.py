"""
Workflow Aggregator

Fetches recent runs for every configured workflow and normalizes them into
RunRecords.

Concurrency model:
- Work is processed in fixed chunks of K units. A chunk is started only
  after every unit of the previous chunk has settled, so at most K calls are
  ever in flight (not a continuously refilled pool).
- Two phases per kind: run listings in chunks of CONCURRENT_WORKFLOWS, then
  one job fan-out over the runs of all workflows in chunks of
  CONCURRENT_JOBS. The job bound therefore holds across workflows, not
  per workflow.
- Each unit succeeds or fails on its own. A failed job fetch degrades its
  RunRecord (status=error, jobs=[]); a failed run listing drops only that
  workflow. Neither aborts the batch.
- Every gateway call is bounded by GATEWAY_CALL_TIMEOUT.

The aggregator holds no mutable state, so the broadcaster loop and
on-demand dashboard queries may call it concurrently.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar, Union

from .config import (
    CONCURRENT_JOBS,
    CONCURRENT_WORKFLOWS,
    GATEWAY_CALL_TIMEOUT,
    MAX_RUNS_PER_WORKFLOW,
    PipelineConfig,
)
from .errors import GatewayError
from .models import (
    JobRecord,
    RunConclusion,
    RunRecord,
    RunStatus,
    StepRecord,
    WorkflowKind,
    WorkflowRef,
    utcnow,
)
from .run_parser import resolve_run_identity

logger = logging.getLogger("aggregator")

T = TypeVar("T")
R = TypeVar("R")


async def batch_process(
    items: Sequence[T],
    processor: Callable[[T], Awaitable[R]],
    concurrency: int,
) -> List[Union[R, BaseException]]:
    """
    Run processor over items in chunks of `concurrency`.

    Results are returned in item order; a failed unit yields its exception
    in place of a result.
    """
    if concurrency < 1:
        raise ValueError("concurrency must be >= 1")

    results: List[Union[R, BaseException]] = []
    for start in range(0, len(items), concurrency):
        chunk = items[start:start + concurrency]
        chunk_results = await asyncio.gather(
            *(processor(item) for item in chunk),
            return_exceptions=True,
        )
        results.extend(chunk_results)
    return results


def _first_rate_limit(results: Sequence[Any]) -> Optional[GatewayError]:
    for result in results:
        if isinstance(result, GatewayError) and result.rate_limited:
            return result
    return None


def build_job_record(job: Dict[str, Any]) -> JobRecord:
    return JobRecord(
        id=job["id"],
        name=job.get("name", "unknown"),
        status=job.get("status", "unknown"),
        conclusion=job.get("conclusion") or job.get("status"),
        started_at=job.get("started_at"),
        completed_at=job.get("completed_at"),
        html_url=job.get("html_url"),
        steps=[
            StepRecord(
                number=step.get("number", 0),
                name=step.get("name", ""),
                status=step.get("status", "unknown"),
                conclusion=step.get("conclusion"),
            )
            for step in job.get("steps") or []
        ],
    )


def build_run_record(
    run: Dict[str, Any],
    workflow: WorkflowRef,
    jobs: Optional[List[JobRecord]],
) -> RunRecord:
    """
    Normalize a raw GitHub run.

    jobs=None marks a failed job fetch: the record is degraded to
    status=error with no jobs, keeping the resolved identity fields.
    """
    identity = resolve_run_identity(run, workflow.kind, workflow.app_name)
    actor = run.get("triggering_actor") or run.get("actor") or {}
    head_commit = run.get("head_commit") or {}

    if jobs is None:
        status = RunStatus.ERROR.value
        conclusion = RunConclusion.NONE.value
        jobs = []
    else:
        status = run.get("status") or "unknown"
        conclusion = run.get("conclusion") or RunConclusion.NONE.value

    created_at = run.get("created_at") or utcnow().isoformat()
    return RunRecord(
        id=run["id"],
        app_name=identity.app_name,
        kind=workflow.kind,
        version=identity.version,
        branch=identity.branch,
        commit_sha=identity.commit or "N/A",
        commit_message=run.get("display_title") or head_commit.get("message") or "N/A",
        status=status,
        conclusion=conclusion,
        created_at=created_at,
        updated_at=run.get("updated_at") or created_at,
        triggered_by=actor.get("login") or "System",
        run_number=run.get("run_number") or 0,
        attempt=run.get("run_attempt") or 1,
        jobs=jobs,
        repo=workflow.repo,
        event=run.get("event") or "unknown",
        html_url=run.get("html_url"),
        run_name=run.get("name") or "N/A",
    )


def sort_newest_first(records: List[RunRecord]) -> List[RunRecord]:
    """Stable sort by created_at descending; ties keep their input order."""
    return sorted(records, key=lambda r: r.created_datetime, reverse=True)


class WorkflowAggregator:
    """Aggregates runs for all configured workflows through a gateway."""

    def __init__(
        self,
        gateway,
        config: PipelineConfig,
        max_runs: int = MAX_RUNS_PER_WORKFLOW,
        workflow_concurrency: int = CONCURRENT_WORKFLOWS,
        job_concurrency: int = CONCURRENT_JOBS,
        call_timeout: float = GATEWAY_CALL_TIMEOUT,
    ):
        self.gateway = gateway
        self.config = config
        self.max_runs = max_runs
        self.workflow_concurrency = workflow_concurrency
        self.job_concurrency = job_concurrency
        self.call_timeout = call_timeout

    async def _bounded(self, awaitable: Awaitable[T], context: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.call_timeout)
        except asyncio.TimeoutError as e:
            raise GatewayError(
                f"{context} exceeded {self.call_timeout}s", transient=True
            ) from e

    async def _fetch_run(self, run: Dict[str, Any], workflow: WorkflowRef) -> RunRecord:
        try:
            raw_jobs = await self._bounded(
                self.gateway.list_jobs(workflow.owner, workflow.repo, run["id"]),
                context=f"jobs for run {run['id']}",
            )
        except GatewayError as e:
            if e.rate_limited:
                raise
            logger.warning(f"Jobs fetch failed for run {run['id']}: {e}")
            return build_run_record(run, workflow, jobs=None)
        except Exception as e:
            logger.warning(f"Jobs fetch failed for run {run['id']}: {e}")
            return build_run_record(run, workflow, jobs=None)
        return build_run_record(run, workflow, [build_job_record(j) for j in raw_jobs])

    async def _list_runs(
        self,
        workflow: WorkflowRef,
        raise_on_rate_limit: bool,
    ) -> List[Dict[str, Any]]:
        try:
            runs = await self._bounded(
                self.gateway.list_runs(
                    workflow.owner, workflow.repo, workflow.workflow_id, self.max_runs
                ),
                context=f"runs for {workflow.repo}/{workflow.workflow_id}",
            )
        except GatewayError as e:
            if e.rate_limited and raise_on_rate_limit:
                raise
            logger.error(f"Workflow fetch error for {workflow.workflow_id}: {e}")
            return []
        except Exception as e:
            logger.error(f"Workflow fetch error for {workflow.workflow_id}: {e}")
            return []
        return runs[:self.max_runs]

    async def _build_records(
        self,
        pairs: List[Tuple[WorkflowRef, Dict[str, Any]]],
        raise_on_rate_limit: bool,
    ) -> List[RunRecord]:
        """Job fan-out over (workflow, run) pairs from any number of workflows."""
        results = await batch_process(
            pairs,
            lambda pair: self._fetch_run(pair[1], pair[0]),
            self.job_concurrency,
        )

        rate_limit = _first_rate_limit(results)
        if rate_limit and raise_on_rate_limit:
            raise rate_limit

        records = []
        for (workflow, run), result in zip(pairs, results):
            if isinstance(result, BaseException):
                records.append(build_run_record(run, workflow, jobs=None))
            else:
                records.append(result)
        return records

    async def fetch_workflow_runs(
        self,
        workflow: WorkflowRef,
        raise_on_rate_limit: bool = False,
    ) -> List[RunRecord]:
        """
        RunRecords for one workflow, in GitHub's order.

        Never raises for remote failures unless raise_on_rate_limit is set
        and the platform reports an exhausted rate limit.
        """
        runs = await self._list_runs(workflow, raise_on_rate_limit)
        return await self._build_records([(workflow, run) for run in runs], raise_on_rate_limit)

    async def fetch_kind(
        self,
        kind: WorkflowKind,
        raise_on_rate_limit: bool = False,
    ) -> List[RunRecord]:
        """All runs of one kind across workflows, newest first."""
        workflows = self.config.workflows(kind)
        if not workflows:
            return []

        listings = await batch_process(
            workflows,
            lambda wf: self._list_runs(wf, raise_on_rate_limit),
            self.workflow_concurrency,
        )

        rate_limit = _first_rate_limit(listings)
        if rate_limit and raise_on_rate_limit:
            raise rate_limit

        pairs: List[Tuple[WorkflowRef, Dict[str, Any]]] = []
        for workflow, runs in zip(workflows, listings):
            if isinstance(runs, BaseException):
                logger.error(f"Workflow fetch error for {workflow.workflow_id}: {runs}")
                continue
            pairs.extend((workflow, run) for run in runs)

        records = sort_newest_first(await self._build_records(pairs, raise_on_rate_limit))
        logger.info(f"Aggregated {len(records)} {kind.value.lower()} runs from {len(workflows)} workflows")
        return records

    async def fetch_builds(self, raise_on_rate_limit: bool = False) -> List[RunRecord]:
        return await self.fetch_kind(WorkflowKind.BUILD, raise_on_rate_limit)

    async def fetch_releases(self, raise_on_rate_limit: bool = False) -> List[RunRecord]:
        return await self.fetch_kind(WorkflowKind.RELEASE, raise_on_rate_limit)
