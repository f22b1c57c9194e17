"""
Data model for aggregated pipeline state.

All records are plain dataclasses with to_dict()/from_dict() so that a
CacheSnapshot can be written to and read back from the cache file without
losing any RunRecord field.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class WorkflowKind(str, Enum):
    """Which pipeline family a workflow belongs to."""
    BUILD = "Build"
    RELEASE = "Release"


class RunStatus(str, Enum):
    """Lifecycle phase of a run."""
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ERROR = "error"

    @classmethod
    def active_states(cls) -> frozenset:
        return frozenset({cls.QUEUED.value, cls.IN_PROGRESS.value})


class RunConclusion(str, Enum):
    """
    Terminal outcome of a run.

    GitHub reports more conclusions than these (skipped, timed_out, neutral,
    action_required); records keep those verbatim as strings.
    """
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"
    NONE = "none"


# -----------------------------------------------------------------------------
# Time helpers
# -----------------------------------------------------------------------------
def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a GitHub ISO-8601 timestamp ("2024-05-01T10:00:00Z")."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_duration(started: Optional[str], finished: Optional[str]) -> str:
    """Render the elapsed time between two timestamps as "3m 12s" or "45s"."""
    start = parse_timestamp(started)
    end = parse_timestamp(finished)
    if start is None or end is None:
        return "N/A"
    total = int((end - start).total_seconds())
    minutes, seconds = divmod(max(total, 0), 60)
    if minutes > 0:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


# -----------------------------------------------------------------------------
# Static configuration records
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class WorkflowRef:
    """A configured workflow to aggregate."""
    owner: str
    repo: str
    workflow_id: str
    app_name: str
    kind: WorkflowKind

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner": self.owner,
            "repo": self.repo,
            "workflow_id": self.workflow_id,
            "app_name": self.app_name,
            "kind": self.kind.value,
        }


# -----------------------------------------------------------------------------
# Aggregated records
# -----------------------------------------------------------------------------
@dataclass
class StepRecord:
    number: int
    name: str
    status: str
    conclusion: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "number": self.number,
            "name": self.name,
            "status": self.status,
            "conclusion": self.conclusion,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepRecord":
        return cls(
            number=data["number"],
            name=data["name"],
            status=data["status"],
            conclusion=data.get("conclusion"),
        )


@dataclass
class JobRecord:
    id: int
    name: str
    status: str
    conclusion: Optional[str]
    started_at: Optional[str]
    completed_at: Optional[str]
    steps: List[StepRecord] = field(default_factory=list)
    html_url: Optional[str] = None

    @property
    def duration(self) -> str:
        return format_duration(self.started_at, self.completed_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "conclusion": self.conclusion,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration": self.duration,
            "html_url": self.html_url,
            "steps": [s.to_dict() for s in self.steps],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobRecord":
        return cls(
            id=data["id"],
            name=data["name"],
            status=data["status"],
            conclusion=data.get("conclusion"),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            steps=[StepRecord.from_dict(s) for s in data.get("steps", [])],
            html_url=data.get("html_url"),
        )


@dataclass
class RunRecord:
    """Uniform view of one workflow run, recomputed every aggregation pass."""
    id: int
    app_name: str
    kind: WorkflowKind
    version: str
    branch: str
    commit_sha: str
    commit_message: str
    status: str
    conclusion: str
    created_at: str
    updated_at: Optional[str]
    triggered_by: str
    run_number: int
    attempt: int
    jobs: List[JobRecord] = field(default_factory=list)
    repo: str = ""
    event: str = "unknown"
    html_url: Optional[str] = None
    run_name: str = "N/A"

    @property
    def duration(self) -> str:
        return format_duration(self.created_at, self.updated_at)

    @property
    def created_datetime(self) -> datetime:
        return parse_timestamp(self.created_at) or datetime.min.replace(tzinfo=timezone.utc)

    def is_active(self) -> bool:
        return self.status in RunStatus.active_states()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "app_name": self.app_name,
            "kind": self.kind.value,
            "version": self.version,
            "branch": self.branch,
            "commit_sha": self.commit_sha,
            "commit_message": self.commit_message,
            "status": self.status,
            "conclusion": self.conclusion,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "duration": self.duration,
            "triggered_by": self.triggered_by,
            "run_number": self.run_number,
            "attempt": self.attempt,
            "repo": self.repo,
            "event": self.event,
            "html_url": self.html_url,
            "run_name": self.run_name,
            "jobs": [j.to_dict() for j in self.jobs],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunRecord":
        return cls(
            id=data["id"],
            app_name=data["app_name"],
            kind=WorkflowKind(data["kind"]),
            version=data["version"],
            branch=data["branch"],
            commit_sha=data["commit_sha"],
            commit_message=data["commit_message"],
            status=data["status"],
            conclusion=data["conclusion"],
            created_at=data["created_at"],
            updated_at=data.get("updated_at"),
            triggered_by=data["triggered_by"],
            run_number=data["run_number"],
            attempt=data["attempt"],
            jobs=[JobRecord.from_dict(j) for j in data.get("jobs", [])],
            repo=data.get("repo", ""),
            event=data.get("event", "unknown"),
            html_url=data.get("html_url"),
            run_name=data.get("run_name", "N/A"),
        )


@dataclass
class CacheSnapshot:
    """The single cached aggregation result."""
    timestamp: float
    builds: List[RunRecord] = field(default_factory=list)
    releases: List[RunRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "data": {
                "builds": [r.to_dict() for r in self.builds],
                "releases": [r.to_dict() for r in self.releases],
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheSnapshot":
        payload = data.get("data", {})
        return cls(
            timestamp=float(data["timestamp"]),
            builds=[RunRecord.from_dict(r) for r in payload.get("builds", [])],
            releases=[RunRecord.from_dict(r) for r in payload.get("releases", [])],
        )


@dataclass
class ScheduledDispatch:
    """A deferred workflow dispatch waiting for its fire time."""
    id: str
    workflow_ref: WorkflowRef
    ref: str
    inputs: Dict[str, Any]
    fire_at: datetime
    owner: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "repo": self.workflow_ref.repo,
            "workflow_id": self.workflow_ref.workflow_id,
            "workflow_ref": self.workflow_ref.to_dict(),
            "ref": self.ref,
            "inputs": self.inputs,
            "fire_at": self.fire_at.isoformat(),
            "owner": self.owner,
        }
