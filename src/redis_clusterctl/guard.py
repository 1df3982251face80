"""
Safety guard for redis-clusterctl

Vetoes change-sets that would violate cluster safety invariants before any
remote call is issued. The guard never rewrites steps.
"""

from .constants import ENVIRONMENT_PRODUCTION, MASK_ENVIRONMENT, UNSHARDED
from .errors import ProtectedResource, WouldEmptyCluster, WouldEmptyShard
from .log import get_logger
from .models import ChangeSet, ClusterState, StepKind

logger = get_logger(__name__)


class SafetyGuard:
    """
    Validates a proposed change-set against the current cluster

    Checks, in order:
    1. Deletion protection: no cluster delete, and no environment transition
       involving PRODUCTION, while protection stays on
    2. No shard drops to zero hosts unless the same change-set removes it
    3. The cluster keeps at least one host
    """

    def validate(
        self, current: ClusterState | None, proposed: ChangeSet
    ) -> ChangeSet:
        """
        Validate a change-set

        Args:
            current: Last observed cluster state, None if the cluster does not exist
            proposed: Change-set produced by the differ

        Returns:
            The change-set, unchanged

        Raises:
            ProtectedResource, WouldEmptyShard, WouldEmptyCluster
        """
        if current is None:
            self._check_create(proposed)
            return proposed

        self._check_deletion_protection(current, proposed)
        removals = proposed.of_kind(StepKind.REMOVE_HOST, StepKind.REMOVE_SHARD)
        if removals and not proposed.of_kind(StepKind.DELETE_CLUSTER):
            self._check_host_counts(current, proposed)

        logger.debug(
            "Change-set approved",
            extra={"cluster_id": current.cluster_id, "steps_count": len(proposed)},
        )
        return proposed

    def _check_create(self, proposed: ChangeSet) -> None:
        for step in proposed.of_kind(StepKind.CREATE_CLUSTER):
            if not step.request.get("hostSpecs"):
                raise WouldEmptyCluster("Cannot create a cluster without hosts")

    def _check_deletion_protection(
        self, current: ClusterState, proposed: ChangeSet
    ) -> None:
        protected = current.deletion_protection

        for step in proposed:
            if step.kind is StepKind.UPDATE_DELETION_PROTECTION:
                protected = bool(step.request.get("deletionProtection"))
                continue
            if not protected:
                continue

            if step.kind is StepKind.DELETE_CLUSTER:
                raise ProtectedResource(
                    "The operation was rejected because cluster has "
                    "'deletion_protection' = ON",
                    cluster_id=current.cluster_id,
                )

            if step.kind is StepKind.UPDATE_ENVIRONMENT:
                target = step.request.get(MASK_ENVIRONMENT)
                if ENVIRONMENT_PRODUCTION in (current.environment, target):
                    raise ProtectedResource(
                        f"Cannot move environment {current.environment} -> {target} "
                        "while cluster has 'deletion_protection' = ON",
                        cluster_id=current.cluster_id,
                    )

    def _check_host_counts(self, current: ClusterState, proposed: ChangeSet) -> None:
        counts = current.shard_host_counts()
        removed_shards = {
            step.shard_name for step in proposed.of_kind(StepKind.REMOVE_SHARD)
        }

        for step in proposed:
            shard = step.shard_name or UNSHARDED
            if step.kind is StepKind.ADD_SHARD or step.kind is StepKind.ADD_HOST:
                counts[shard] = counts.get(shard, 0) + len(
                    step.request.get("hostSpecs", [])
                )
            elif step.kind is StepKind.REMOVE_HOST:
                counts[shard] = counts.get(shard, 0) - len(
                    step.request.get("hostNames", [])
                )
                if counts[shard] <= 0 and shard == UNSHARDED:
                    raise WouldEmptyCluster(
                        f"Removing {step.host_id} would leave the cluster "
                        "without hosts",
                        cluster_id=current.cluster_id,
                    )
                if counts[shard] <= 0 and shard not in removed_shards:
                    raise WouldEmptyShard(
                        f"Removing {step.host_id} would leave shard "
                        f"'{shard or 'default'}' without hosts",
                        shard_name=shard,
                        cluster_id=current.cluster_id,
                    )
            elif step.kind is StepKind.REMOVE_SHARD:
                counts.pop(shard, None)

        total = sum(counts.values())
        if total <= 0:
            raise WouldEmptyCluster(
                "Change-set would leave the cluster without hosts",
                cluster_id=current.cluster_id,
            )


_default_guard = SafetyGuard()


def validate(current: ClusterState | None, proposed: ChangeSet) -> ChangeSet:
    return _default_guard.validate(current, proposed)
