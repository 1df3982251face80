"""
Orchestration engine for redis-clusterctl

Wires settings into a convergence driver and exposes the operations callers
use: plan, apply, destroy and apply_many.
"""

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed

from .audit import StepAuditLog
from .client import ControlPlaneClient, fetch_cluster_state, find_cluster_id
from .config import EngineSettings
from .driver import ConvergenceDriver
from .log import get_logger, setup_logging
from .models import ChangeSet, ClusterSpec, ConvergenceResult
from .poller import OperationPoller

logger = get_logger(__name__)


class Engine:
    """
    Main entry point of redis-clusterctl

    Owns the driver and the optional audit trail. Use as a context manager so
    the audit connection pool is closed on exit.
    """

    def __init__(
        self,
        client: ControlPlaneClient,
        settings: EngineSettings | None = None,
        audit: StepAuditLog | None = None,
        configure_logging: bool = False,
    ):
        self.client = client
        self.settings = settings or EngineSettings()
        self.settings.validate()

        if configure_logging:
            setup_logging(self.settings.verbose)

        self.audit = audit
        if self.audit is None and self.settings.audit_database_url:
            self.audit = StepAuditLog(self.settings.audit_database_url)
            self.audit.ensure_table()

        poller = OperationPoller(
            client,
            interval_s=self.settings.poll_interval_s,
            jitter_s=self.settings.poll_jitter_s,
            max_retries=self.settings.poll_max_retries,
            backoff_s=self.settings.poll_backoff_s,
            backoff_max_s=self.settings.poll_backoff_max_s,
        )
        self.driver = ConvergenceDriver(
            client,
            poller=poller,
            audit=self.audit,
            step_timeout_s=self.settings.step_timeout_s,
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self):
        if self.audit is not None:
            self.audit.close()

    def plan(self, spec: ClusterSpec) -> ChangeSet:
        """
        Compute and validate the change-set for spec without executing it

        Raises:
            ValidationRejected: If the safety guard vetoes the change-set
        """
        cluster_id = spec.cluster_id or find_cluster_id(
            self.client, spec.folder_id, spec.name
        )
        observed = fetch_cluster_state(self.client, cluster_id) if cluster_id else None
        change_set = self.driver.plan(spec, observed)
        logger.info(
            "Planned change-set",
            extra={
                "cluster_id": cluster_id,
                "cluster_name": spec.name,
                "steps": [str(step) for step in change_set],
            },
        )
        return change_set

    def apply(
        self, spec: ClusterSpec, cancel_event: threading.Event | None = None
    ) -> ConvergenceResult:
        """Converge one cluster within the configured convergence budget"""
        return self.driver.converge(
            spec,
            timeout_s=self.settings.convergence_timeout_s,
            cancel_event=cancel_event,
        )

    def destroy(
        self, cluster_id: str, cancel_event: threading.Event | None = None
    ) -> ConvergenceResult:
        """Delete one cluster, subject to deletion protection"""
        return self.driver.destroy(
            cluster_id,
            timeout_s=self.settings.convergence_timeout_s,
            cancel_event=cancel_event,
        )

    def apply_many(
        self,
        specs: list[ClusterSpec],
        cancel_event: threading.Event | None = None,
    ) -> dict[str, ConvergenceResult]:
        """
        Converge several distinct clusters concurrently

        Args:
            specs: Desired states; each cluster name may appear only once
            cancel_event: Shared cancellation for every convergence in the batch

        Returns:
            Dictionary mapping cluster name to its ConvergenceResult

        Raises:
            ValueError: If the same cluster name appears more than once
        """
        seen: set[str] = set()
        for spec in specs:
            if spec.name in seen:
                raise ValueError(f"Cluster '{spec.name}' appears more than once")
            seen.add(spec.name)

        if not specs:
            return {}

        results: dict[str, ConvergenceResult] = {}
        max_workers = min(self.settings.max_parallel_clusters, len(specs))

        logger.info(
            "Converging clusters",
            extra={"clusters_count": len(specs), "max_workers": max_workers},
        )

        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            future_to_name = {
                pool.submit(self.apply, spec, cancel_event): spec.name
                for spec in specs
            }
            for future in as_completed(future_to_name):
                name = future_to_name[future]
                results[name] = future.result()
                logger.info(
                    "Cluster convergence finished",
                    extra={
                        "cluster_name": name,
                        "status": results[name].status.value,
                    },
                )

        return {spec.name: results[spec.name] for spec in specs}
