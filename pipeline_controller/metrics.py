"""Summary statistics over aggregated runs."""

from dataclasses import dataclass
from typing import Any, Dict, Sequence

from .models import RunConclusion, RunRecord


@dataclass(frozen=True)
class DashboardMetrics:
    total_runs: int
    success_rate: float
    active_runs: int
    failed_runs: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_runs": self.total_runs,
            "success_rate": self.success_rate,
            "active_runs": self.active_runs,
            "failed_runs": self.failed_runs,
        }


def compute_metrics(
    builds: Sequence[RunRecord],
    releases: Sequence[RunRecord],
) -> DashboardMetrics:
    """Deterministic counts over builds + releases; success rate is 0 for no runs."""
    runs = list(builds) + list(releases)
    total = len(runs)
    successes = sum(1 for r in runs if r.conclusion == RunConclusion.SUCCESS.value)

    return DashboardMetrics(
        total_runs=total,
        success_rate=round(100 * successes / total, 1) if total else 0.0,
        active_runs=sum(1 for r in runs if r.is_active()),
        failed_runs=sum(1 for r in runs if r.conclusion == RunConclusion.FAILURE.value),
    )
