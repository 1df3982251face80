"""
Bulk cleanup for redis-clusterctl

Deletes every cluster in a folder, optionally limited to a name prefix. Each
cluster is destroyed through the regular driver, so deletion protection is
honored and protected clusters are reported rather than forced.
"""

from dataclasses import dataclass, field

from .client import ControlPlaneClient
from .driver import ConvergenceDriver
from .log import get_logger
from .models import ConvergenceResult, ConvergenceStatus, Outcome

logger = get_logger(__name__)


@dataclass
class SweepReport:
    """Outcome of a sweep over one folder"""

    swept: list[str] = field(default_factory=list)
    # cluster id -> failed or unfinished result
    failures: dict[str, ConvergenceResult] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures


def sweep_cluster(
    driver: ConvergenceDriver, cluster_id: str, timeout_s: float | None = None
) -> ConvergenceResult:
    """
    Destroy one cluster, retrying once if it is still in progress

    When the first attempt left a delete operation running, that operation is
    awaited instead of submitting another one. The retry only happens once it
    has finished.
    """
    result = driver.destroy(cluster_id, timeout_s=timeout_s)
    if result.status is not ConvergenceStatus.IN_PROGRESS:
        return result

    pending = result.failed_step
    if pending is not None and pending.operation_id is not None:
        waited = driver.wait_for_operation(pending.operation_id, timeout_s=timeout_s)
        if waited.outcome not in (Outcome.SUCCEEDED, Outcome.FAILED):
            logger.warning(
                "Cluster deletion still running, not retrying",
                extra={
                    "cluster_id": cluster_id,
                    "operation_id": pending.operation_id,
                    "outcome": waited.outcome.value,
                },
            )
            return result

    logger.info("Retrying cluster deletion", extra={"cluster_id": cluster_id})
    return driver.destroy(cluster_id, timeout_s=timeout_s)


def sweep_clusters(
    driver: ConvergenceDriver,
    client: ControlPlaneClient,
    folder_id: str,
    name_prefix: str | None = None,
    timeout_s: float | None = None,
) -> SweepReport:
    """
    Destroy every cluster in a folder

    Args:
        driver: Driver used for each deletion
        client: Control plane client used to list the folder
        folder_id: Folder to sweep
        name_prefix: Only clusters whose name starts with this prefix
        timeout_s: Budget per cluster, None for unbounded

    Returns:
        SweepReport with swept cluster ids and per-cluster failures
    """
    report = SweepReport()
    clusters = [
        cluster
        for cluster in client.list_clusters(folder_id)
        if name_prefix is None or cluster.get("name", "").startswith(name_prefix)
    ]

    logger.info(
        "Sweeping clusters",
        extra={
            "folder_id": folder_id,
            "name_prefix": name_prefix,
            "clusters_count": len(clusters),
        },
    )

    for cluster in clusters:
        cluster_id = cluster["id"]
        result = sweep_cluster(driver, cluster_id, timeout_s=timeout_s)
        if result.status is ConvergenceStatus.SUCCEEDED:
            report.swept.append(cluster_id)
            continue

        report.failures[cluster_id] = result
        logger.warning(
            "Failed to sweep cluster",
            extra={
                "cluster_id": cluster_id,
                "cluster_name": cluster.get("name"),
                "status": result.status.value,
                "error": str(result.error) if result.error else None,
            },
        )

    logger.info(
        "Sweep finished",
        extra={"swept_count": len(report.swept), "failed_count": len(report.failures)},
    )
    return report
