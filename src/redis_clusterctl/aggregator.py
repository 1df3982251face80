"""
Result aggregation for redis-clusterctl

Folds per-step outcomes into the single ConvergenceResult reported to callers.
"""

from typing import Any

from .errors import ClusterBusy, ReconcileError
from .log import get_logger
from .models import (
    ChangeSet,
    ConvergenceResult,
    ConvergenceStatus,
    Outcome,
    StepOutcome,
)

logger = get_logger(__name__)

_STATUS_BY_OUTCOME = {
    Outcome.FAILED: ConvergenceStatus.FAILED,
    # The remote operation may still be progressing: retry later
    Outcome.TIMEOUT: ConvergenceStatus.IN_PROGRESS,
    Outcome.POLL_FAILED: ConvergenceStatus.IN_PROGRESS,
    Outcome.CANCELLED: ConvergenceStatus.CANCELLED,
}


class ResultAggregator:
    """Collects step outcomes, preserving order and the first failure"""

    def aggregate(
        self,
        cluster_id: str | None,
        outcomes: list[StepOutcome],
        steps_total: int,
        divergence: ChangeSet | None = None,
        error: ReconcileError | None = None,
    ) -> ConvergenceResult:
        """
        Build the composite result of a convergence call

        Args:
            cluster_id: Cluster the steps ran against
            outcomes: Outcomes of the steps that were attempted, in order
            steps_total: Number of steps in the approved change-set
            divergence: Residual change-set found by the verification pass
            error: Failure that happened outside any step (guard veto, auth,
                busy cluster)

        Returns:
            ConvergenceResult
        """
        ordered = sorted(outcomes, key=lambda o: o.index)
        first_failure = next((o for o in ordered if not o.succeeded), None)

        if first_failure is not None:
            status = _STATUS_BY_OUTCOME[first_failure.outcome]
            error = first_failure.error or error
        elif isinstance(error, ClusterBusy):
            status = ConvergenceStatus.IN_PROGRESS
        elif error is not None:
            status = ConvergenceStatus.FAILED
        elif divergence is not None and not divergence.is_empty:
            status = ConvergenceStatus.DIVERGED
        else:
            status = ConvergenceStatus.SUCCEEDED

        result = ConvergenceResult(
            cluster_id=cluster_id,
            status=status,
            steps_total=steps_total,
            outcomes=ordered,
            error=error,
            divergence=divergence if divergence and not divergence.is_empty else None,
        )

        logger.info(
            "Convergence result aggregated",
            extra={"cluster_id": cluster_id, "summary": summarize(result)},
        )
        return result


def summarize(result: ConvergenceResult) -> dict[str, Any]:
    """Plain-dict summary of a result, suitable for logging or printing"""
    failed = result.failed_step
    summary: dict[str, Any] = {
        "status": result.status.value,
        "total": result.steps_total,
        "executed": result.steps_completed,
        "errors": [],
    }
    if failed is not None:
        summary["errors"].append(
            {
                "step_index": failed.index,
                "step": str(failed.step),
                "outcome": failed.outcome.value,
                "error": str(failed.error) if failed.error else None,
            }
        )
    elif result.error is not None:
        summary["errors"].append(
            {"reason": result.error.reason, "error": str(result.error)}
        )
    if result.divergence is not None:
        summary["divergence"] = [str(step) for step in result.divergence]
    return summary


_default_aggregator = ResultAggregator()


def aggregate(
    cluster_id: str | None,
    outcomes: list[StepOutcome],
    steps_total: int,
    divergence: ChangeSet | None = None,
    error: ReconcileError | None = None,
) -> ConvergenceResult:
    return _default_aggregator.aggregate(
        cluster_id, outcomes, steps_total, divergence=divergence, error=error
    )
