"""
Convergence driver for redis-clusterctl

Orchestrates one convergence cycle for a single cluster: fetch the observed
state, diff, validate, execute steps one by one through the poller and
aggregate the outcomes.
"""

import threading
import time
from typing import Any, Protocol

from .aggregator import ResultAggregator
from .client import ControlPlaneClient, fetch_cluster_state, find_cluster_id
from .constants import BUSY_STATUSES, DEFAULT_STEP_TIMEOUT_S
from .differ import TopologyDiffer
from .errors import (
    AuthFailure,
    ClusterBusy,
    OperationTimeout,
    ReconcileError,
    RemoteRejected,
    TransportError,
    ValidationRejected,
)
from .guard import SafetyGuard
from .log import get_logger
from .models import (
    ChangeSet,
    ChangeStep,
    ClusterSpec,
    ClusterState,
    ConvergenceResult,
    OperationHandle,
    OperationResult,
    Outcome,
    StepKind,
    StepOutcome,
)
from .poller import OperationPoller, deadline_after

logger = get_logger(__name__)


class AuditSink(Protocol):
    def record(self, cluster_id: str | None, outcome: StepOutcome) -> Any: ...


class ConvergenceDriver:
    """
    Converges one cluster at a time to its desired specification

    Responsible for:
    1. Fetching fresh observed state
    2. Computing and validating the change-set (a veto issues no remote call)
    3. Executing steps strictly sequentially, stopping at the first step that
       does not succeed
    4. Verifying the result with a second diff once every step has landed

    The driver keeps no state between calls, so distinct clusters may be
    converged concurrently through the same instance.
    """

    def __init__(
        self,
        client: ControlPlaneClient,
        poller: OperationPoller | None = None,
        differ: TopologyDiffer | None = None,
        guard: SafetyGuard | None = None,
        aggregator: ResultAggregator | None = None,
        audit: AuditSink | None = None,
        step_timeout_s: float | None = DEFAULT_STEP_TIMEOUT_S,
    ):
        self.client = client
        self.poller = poller or OperationPoller(client)
        self.differ = differ or TopologyDiffer()
        self.guard = guard or SafetyGuard()
        self.aggregator = aggregator or ResultAggregator()
        self.audit = audit
        self.step_timeout_s = step_timeout_s

    def converge(
        self,
        spec: ClusterSpec,
        timeout_s: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ConvergenceResult:
        """
        Bring the cluster described by spec to its desired state

        Args:
            spec: Fully validated desired state
            timeout_s: Budget for the whole call, None for unbounded
            cancel_event: Set by the caller to stop waiting on the current step

        Returns:
            ConvergenceResult. Safe to call again after IN_PROGRESS or FAILED.
        """
        deadline = deadline_after(timeout_s)
        cluster_id = spec.cluster_id

        try:
            if cluster_id is None:
                cluster_id = find_cluster_id(self.client, spec.folder_id, spec.name)
            observed = (
                fetch_cluster_state(self.client, cluster_id) if cluster_id else None
            )
        except ReconcileError as e:
            logger.error(
                "Failed to fetch cluster state",
                extra={"cluster_name": spec.name, "error": str(e)},
            )
            return self.aggregator.aggregate(cluster_id, [], 0, error=e)

        logger.info(
            "Starting convergence",
            extra={
                "cluster_id": cluster_id,
                "cluster_name": spec.name,
                "exists": observed is not None,
            },
        )
        return self._run(spec, observed, deadline, cancel_event)

    def destroy(
        self,
        cluster_id: str,
        timeout_s: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ConvergenceResult:
        """
        Converge a cluster to "absent". Deletion protection still applies.

        A cluster the control plane no longer knows is already converged.
        """
        deadline = deadline_after(timeout_s)
        try:
            observed = fetch_cluster_state(self.client, cluster_id)
        except RemoteRejected as e:
            if not e.not_found:
                logger.error(
                    "Failed to fetch cluster state",
                    extra={"cluster_id": cluster_id, "error": str(e)},
                )
                return self.aggregator.aggregate(cluster_id, [], 0, error=e)
            logger.info("Cluster already absent", extra={"cluster_id": cluster_id})
            return self.aggregator.aggregate(cluster_id, [], 0)
        except ReconcileError as e:
            logger.error(
                "Failed to fetch cluster state",
                extra={"cluster_id": cluster_id, "error": str(e)},
            )
            return self.aggregator.aggregate(cluster_id, [], 0, error=e)

        logger.info("Starting cluster deletion", extra={"cluster_id": cluster_id})
        return self._run(None, observed, deadline, cancel_event)

    def plan(
        self, spec: ClusterSpec | None, observed: ClusterState | None
    ) -> ChangeSet:
        """Diff and validate without executing anything"""
        return self.guard.validate(observed, self.differ.diff(spec, observed))

    def wait_for_operation(
        self,
        operation_id: str,
        timeout_s: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> OperationResult:
        """
        Wait for an operation submitted by an earlier call to finish

        Used after an IN_PROGRESS result so the step is not submitted a second
        time while the first operation is still running remotely.
        """
        deadline = deadline_after(self.step_timeout_s)
        overall = deadline_after(timeout_s)
        if overall is not None:
            deadline = min(overall, deadline or overall)
        logger.info(
            "Waiting for outstanding operation", extra={"operation_id": operation_id}
        )
        return self.poller.await_operation(
            OperationHandle(operation_id=operation_id), deadline, cancel_event
        )

    def _run(
        self,
        desired: ClusterSpec | None,
        observed: ClusterState | None,
        deadline: float | None,
        cancel_event: threading.Event | None,
    ) -> ConvergenceResult:
        cluster_id = observed.cluster_id if observed else None
        change_set = self.differ.diff(desired, observed)

        try:
            self.guard.validate(observed, change_set)
        except ValidationRejected as e:
            logger.warning(
                "Change-set rejected by safety guard",
                extra={"cluster_id": cluster_id, "reason": e.reason, "error": str(e)},
            )
            return self.aggregator.aggregate(cluster_id, [], len(change_set), error=e)

        if change_set.is_empty:
            logger.info("Cluster already converged", extra={"cluster_id": cluster_id})
            return self.aggregator.aggregate(cluster_id, [], 0)

        if observed is not None and observed.status in BUSY_STATUSES:
            # Another operation is already running against this cluster
            logger.warning(
                "Cluster busy, deferring convergence",
                extra={"cluster_id": cluster_id, "status": observed.status},
            )
            busy = ClusterBusy(
                f"Cluster {cluster_id} is {observed.status}", cluster_id=cluster_id
            )
            return self.aggregator.aggregate(
                cluster_id, [], len(change_set), error=busy
            )

        logger.info(
            "Executing change-set",
            extra={
                "cluster_id": cluster_id,
                "total_steps": len(change_set),
                "steps": [str(step) for step in change_set],
            },
        )

        outcomes: list[StepOutcome] = []
        added = False
        revalidated = False

        for index, step in enumerate(change_set):
            if cancel_event is not None and cancel_event.is_set():
                outcomes.append(StepOutcome(index, step, Outcome.CANCELLED))
                break
            if deadline is not None and time.monotonic() >= deadline:
                outcomes.append(
                    StepOutcome(
                        index,
                        step,
                        Outcome.TIMEOUT,
                        error=OperationTimeout("Convergence budget exhausted"),
                    )
                )
                break

            # New hosts must be visible before removals are considered safe
            if step.kind.is_removal and added and not revalidated:
                try:
                    fresh = fetch_cluster_state(self.client, cluster_id)
                    self.guard.validate(fresh, change_set.remaining(index))
                except ReconcileError as e:
                    logger.warning(
                        "Removals rejected after refresh",
                        extra={"cluster_id": cluster_id, "error": str(e)},
                    )
                    return self.aggregator.aggregate(
                        cluster_id, outcomes, len(change_set), error=e
                    )
                revalidated = True

            outcome, cluster_id = self._execute_step(
                cluster_id, index, len(change_set), step, deadline, cancel_event
            )
            outcomes.append(outcome)
            self._record(cluster_id, outcome)

            if not outcome.succeeded:
                logger.warning(
                    "Stopping execution",
                    extra={
                        "cluster_id": cluster_id,
                        "failed_step_index": index,
                        "outcome": outcome.outcome.value,
                        "remaining_steps": len(change_set) - index - 1,
                    },
                )
                return self.aggregator.aggregate(cluster_id, outcomes, len(change_set))

            if step.kind.is_addition:
                added = True

        if len(outcomes) < len(change_set) or not outcomes[-1].succeeded:
            return self.aggregator.aggregate(cluster_id, outcomes, len(change_set))

        divergence = self._verify(desired, cluster_id)
        return self.aggregator.aggregate(
            cluster_id, outcomes, len(change_set), divergence=divergence
        )

    def _execute_step(
        self,
        cluster_id: str | None,
        index: int,
        total: int,
        step: ChangeStep,
        deadline: float | None,
        cancel_event: threading.Event | None,
    ) -> tuple[StepOutcome, str | None]:
        """Submit one step and wait for its operation"""
        logger.info(
            f"Executing step {index + 1}/{total}",
            extra={"cluster_id": cluster_id, "step": str(step), "origin": step.origin},
        )

        try:
            operation = self._submit(cluster_id, step)
        except (RemoteRejected, AuthFailure, TransportError) as e:
            logger.error(
                "Step submission failed",
                extra={
                    "cluster_id": cluster_id,
                    "step": str(step),
                    "reason": e.reason,
                    "error": str(e),
                },
            )
            return StepOutcome(index, step, Outcome.FAILED, error=e), cluster_id

        handle = OperationHandle.from_api(operation)
        step_deadline = deadline_after(self.step_timeout_s)
        if deadline is not None:
            step_deadline = min(deadline, step_deadline or deadline)

        result = self.poller.await_operation(handle, step_deadline, cancel_event)

        if step.kind is StepKind.CREATE_CLUSTER and result.succeeded:
            cluster_id = (
                result.metadata.get("clusterId")
                or (result.response or {}).get("id")
                or cluster_id
            )

        if result.succeeded:
            logger.info(
                "Step completed",
                extra={
                    "cluster_id": cluster_id,
                    "step": str(step),
                    "operation_id": handle.operation_id,
                    "elapsed_s": round(result.elapsed_s, 3),
                },
            )
        else:
            logger.error(
                "Step did not complete",
                extra={
                    "cluster_id": cluster_id,
                    "step": str(step),
                    "operation_id": handle.operation_id,
                    "outcome": result.outcome.value,
                    "error": str(result.error) if result.error else None,
                },
            )

        outcome = StepOutcome(
            index=index,
            step=step,
            outcome=result.outcome,
            operation_id=handle.operation_id,
            error=result.error,
        )
        return outcome, cluster_id

    def _submit(self, cluster_id: str | None, step: ChangeStep) -> dict[str, Any]:
        """Issue the remote call realizing a step"""
        request = step.request
        kind = step.kind
        if kind is StepKind.CREATE_CLUSTER:
            return self.client.create_cluster(request)
        if kind is StepKind.DELETE_CLUSTER:
            return self.client.delete_cluster(cluster_id)
        if kind is StepKind.ADD_SHARD:
            return self.client.add_shard(
                cluster_id, request["shardName"], request["hostSpecs"]
            )
        if kind is StepKind.ADD_HOST:
            return self.client.add_hosts(cluster_id, request["hostSpecs"])
        if kind is StepKind.REMOVE_HOST:
            return self.client.delete_hosts(cluster_id, request["hostNames"])
        if kind is StepKind.REMOVE_SHARD:
            return self.client.delete_shard(cluster_id, request["shardName"])
        return self.client.update_cluster(cluster_id, request)

    def _verify(
        self, desired: ClusterSpec | None, cluster_id: str | None
    ) -> ChangeSet:
        """Re-fetch and re-diff; a non-empty result is drift, not failure"""
        if desired is None or cluster_id is None:
            return ChangeSet()
        try:
            observed = fetch_cluster_state(self.client, cluster_id)
        except ReconcileError as e:
            logger.warning(
                "Verification pass could not fetch cluster state",
                extra={"cluster_id": cluster_id, "error": str(e)},
            )
            return ChangeSet()

        residual = self.differ.diff(desired, observed)
        if not residual.is_empty:
            logger.warning(
                "Cluster diverged from requested state",
                extra={
                    "cluster_id": cluster_id,
                    "residual_steps": [str(step) for step in residual],
                },
            )
        return residual

    def _record(self, cluster_id: str | None, outcome: StepOutcome) -> None:
        if self.audit is None:
            return
        try:
            self.audit.record(cluster_id, outcome)
        except Exception as audit_error:
            # Don't fail the convergence if audit logging fails
            logger.error(
                "Failed to record step in audit trail",
                extra={
                    "cluster_id": cluster_id,
                    "step": str(outcome.step),
                    "audit_error": str(audit_error),
                },
                exc_info=True,
            )
