"""
Topology differ for redis-clusterctl

Converts a desired ClusterSpec into an ordered ChangeSet by comparing it
with the observed ClusterState.
"""

from typing import Any, Callable

from .constants import (
    MASK_DELETION_PROTECTION,
    MASK_DESCRIPTION,
    MASK_DISK_SIZE,
    MASK_ENVIRONMENT,
    MASK_LABELS,
    MASK_MAINTENANCE_WINDOW,
    MASK_REDIS_PREFIX,
    MASK_RESOURCE_PRESET,
    MASK_SECURITY_GROUPS,
    MASK_VERSION,
    UNSHARDED,
)
from .log import get_logger
from .models import (
    ChangeSet,
    ChangeStep,
    ClusterConfig,
    ClusterSpec,
    ClusterState,
    HostSpec,
    HostState,
    Resources,
    StepKind,
)

logger = get_logger(__name__)


class TopologyDiffer:
    """
    Computes the change-set that converges observed state to desired state

    Ordering of the produced steps:
    1. Disabling deletion protection
    2. Host and shard additions
    3. Host and shard removals (a dropped shard loses its hosts first)
    4. Environment, metadata, config, resources and maintenance updates
    5. Enabling deletion protection

    The output is deterministic for the same two inputs, and applying any
    prefix of it then diffing again yields exactly the remaining suffix.
    """

    def diff(
        self, desired: ClusterSpec | None, observed: ClusterState | None
    ) -> ChangeSet:
        """Compute the ordered change-set from observed to desired"""
        if desired is None and observed is None:
            return ChangeSet()

        if desired is None:
            logger.debug(
                "Generating DELETE_CLUSTER step",
                extra={"cluster_id": observed.cluster_id},
            )
            return ChangeSet(
                (
                    ChangeStep(
                        kind=StepKind.DELETE_CLUSTER,
                        request={"clusterId": observed.cluster_id},
                        origin="cluster",
                    ),
                )
            )

        if observed is None:
            logger.debug(
                "Generating CREATE_CLUSTER step",
                extra={"cluster_name": desired.name, "hosts_count": len(desired.hosts)},
            )
            return ChangeSet(
                (
                    ChangeStep(
                        kind=StepKind.CREATE_CLUSTER,
                        request=desired.to_create_request(),
                        origin="cluster",
                    ),
                )
            )

        steps: list[ChangeStep] = []
        protection_step = self._diff_deletion_protection(desired, observed)
        disabling = protection_step is not None and not desired.deletion_protection

        if disabling:
            steps.append(protection_step)

        additions, removals = self._diff_topology(desired, observed)
        steps.extend(additions)
        steps.extend(removals)

        for step in (
            self._diff_environment(desired, observed),
            self._diff_metadata(desired, observed),
            self._diff_config(desired.config, observed.config),
            self._diff_resources(desired, observed),
            self._diff_maintenance_window(desired, observed),
        ):
            if step is not None:
                steps.append(step)

        if protection_step is not None and not disabling:
            steps.append(protection_step)

        change_set = ChangeSet(tuple(steps))
        logger.debug(
            "Diff computed",
            extra={
                "cluster_id": observed.cluster_id,
                "steps": [str(step) for step in change_set],
            },
        )
        return change_set

    def _diff_topology(
        self, desired: ClusterSpec, observed: ClusterState
    ) -> tuple[list[ChangeStep], list[ChangeStep]]:
        """Host and shard additions and removals, grouped by shard"""
        desired_by_shard: dict[str, list[tuple[int, HostSpec]]] = {}
        for index, host in enumerate(desired.hosts):
            desired_by_shard.setdefault(desired.shard_key(host), []).append(
                (index, host)
            )

        observed_counts = observed.shard_host_counts()
        observed_by_shard: dict[str, list[HostState]] = {
            key: [] for key in observed_counts
        }
        for host in observed.hosts:
            observed_by_shard[observed.shard_key(host)].append(host)
        for hosts in observed_by_shard.values():
            hosts.sort(key=lambda h: h.fqdn)

        # Desired shards in spec order, then shards only the remote side knows
        shard_order = list(desired_by_shard)
        shard_order += sorted(
            key for key in observed_by_shard if key not in desired_by_shard
        )

        additions: list[ChangeStep] = []
        removals: list[ChangeStep] = []

        for shard in shard_order:
            wanted = desired_by_shard.get(shard, [])
            live = observed_by_shard.get(shard, [])
            missing, extra = self._match_hosts(wanted, live)
            shard_exists = shard == UNSHARDED or shard in observed_counts

            for position, (index, host) in enumerate(missing):
                creates_shard = not shard_exists and position == 0
                if creates_shard:
                    step = ChangeStep(
                        kind=StepKind.ADD_SHARD,
                        request={"shardName": shard, "hostSpecs": [host.to_api()]},
                        origin=f"host[{index}]",
                        shard_name=shard,
                    )
                else:
                    step = ChangeStep(
                        kind=StepKind.ADD_HOST,
                        request={"hostSpecs": [host.to_api()]},
                        origin=f"host[{index}]",
                        shard_name=shard or None,
                    )
                additions.append(step)
                logger.debug(
                    f"Generating {step.kind.name} step",
                    extra={
                        "cluster_id": observed.cluster_id,
                        "shard_name": shard,
                        "zone": host.zone,
                        "origin": step.origin,
                    },
                )

            for host in extra:
                removals.append(
                    ChangeStep(
                        kind=StepKind.REMOVE_HOST,
                        request={"hostNames": [host.fqdn]},
                        origin=f"shard:{shard}" if shard else "hosts",
                        shard_name=shard or None,
                        host_id=host.fqdn,
                    )
                )
                logger.debug(
                    "Generating REMOVE_HOST step",
                    extra={
                        "cluster_id": observed.cluster_id,
                        "shard_name": shard,
                        "host": host.fqdn,
                    },
                )

            if shard != UNSHARDED and shard not in desired_by_shard:
                removals.append(
                    ChangeStep(
                        kind=StepKind.REMOVE_SHARD,
                        request={"shardName": shard},
                        origin=f"shard:{shard}",
                        shard_name=shard,
                    )
                )
                logger.debug(
                    "Generating REMOVE_SHARD step",
                    extra={"cluster_id": observed.cluster_id, "shard_name": shard},
                )

        return additions, removals

    def _match_hosts(
        self, wanted: list[tuple[int, HostSpec]], live: list[HostState]
    ) -> tuple[list[tuple[int, HostSpec]], list[HostState]]:
        """
        Pair desired hosts with live hosts of the same shard

        Hosts with an explicit identity are matched first. The rest are matched
        in order against the first unclaimed live host with the same placement,
        exact (zone, subnet) pairs before pairs where either side omits the
        subnet, so the number of matched hosts is maximal.

        Returns:
            Tuple of (desired hosts with no live match in desired order, live
            hosts with no desired match)
        """
        remaining = list(live)
        positional: list[tuple[int, HostSpec]] = []

        for index, spec in wanted:
            if spec.host_id:
                host = next(
                    (h for h in remaining if spec.host_id in (h.host_id, h.fqdn)),
                    None,
                )
                if host is not None:
                    remaining.remove(host)
                    continue
            positional.append((index, spec))

        with_subnet = [(i, spec) for i, spec in positional if spec.subnet_id]
        without_subnet = [(i, spec) for i, spec in positional if not spec.subnet_id]

        with_subnet = _claim(with_subnet, remaining, _exact_placement)
        # Only live hosts that report no subnet are left for these
        with_subnet = _claim(with_subnet, remaining, _same_placement)
        without_subnet = _claim(without_subnet, remaining, _same_placement)

        unmatched = sorted(with_subnet + without_subnet, key=lambda item: item[0])
        return unmatched, remaining

    def _diff_deletion_protection(
        self, desired: ClusterSpec, observed: ClusterState
    ) -> ChangeStep | None:
        if desired.deletion_protection == observed.deletion_protection:
            return None
        return _update_step(
            StepKind.UPDATE_DELETION_PROTECTION,
            {MASK_DELETION_PROTECTION: desired.deletion_protection},
            origin="deletion_protection",
        )

    def _diff_environment(
        self, desired: ClusterSpec, observed: ClusterState
    ) -> ChangeStep | None:
        if desired.environment == observed.environment:
            return None
        return _update_step(
            StepKind.UPDATE_ENVIRONMENT,
            {MASK_ENVIRONMENT: desired.environment},
            origin="environment",
        )

    def _diff_metadata(
        self, desired: ClusterSpec, observed: ClusterState
    ) -> ChangeStep | None:
        fields: dict[str, Any] = {}
        if desired.description != observed.description:
            fields[MASK_DESCRIPTION] = desired.description
        if dict(desired.labels) != observed.labels:
            fields[MASK_LABELS] = dict(desired.labels)
        if set(desired.security_group_ids) != set(observed.security_group_ids):
            fields[MASK_SECURITY_GROUPS] = sorted(desired.security_group_ids)
        if not fields:
            return None
        return _update_step(StepKind.UPDATE_METADATA, fields, origin="metadata")

    def _diff_config(
        self, desired: ClusterConfig, observed: ClusterConfig
    ) -> ChangeStep | None:
        mask: list[str] = []
        config: dict[str, Any] = {}
        redis: dict[str, Any] = {}

        if desired.version is not None and desired.version != observed.version:
            mask.append(MASK_VERSION)
            config["version"] = desired.version

        for attr, key in ClusterConfig.REDIS_FIELDS:
            wanted = getattr(desired, attr)
            if wanted is not None and wanted != getattr(observed, attr):
                mask.append(MASK_REDIS_PREFIX + key)
                redis[key] = wanted

        if not mask:
            return None
        if redis:
            config["redis"] = redis
        return ChangeStep(
            kind=StepKind.UPDATE_CONFIG,
            request={"updateMask": mask, "config": config},
            origin="config",
        )

    def _diff_resources(
        self, desired: ClusterSpec, observed: ClusterState
    ) -> ChangeStep | None:
        wanted, current = desired.resources, observed.resources
        mask: list[str] = []
        if (
            wanted.resource_preset_id is not None
            and wanted.resource_preset_id != current.resource_preset_id
        ):
            mask.append(MASK_RESOURCE_PRESET)
        if wanted.disk_size is not None and wanted.disk_size != current.disk_size:
            mask.append(MASK_DISK_SIZE)
        if not mask:
            return None

        resources = _resources_payload(wanted, mask)
        return ChangeStep(
            kind=StepKind.UPDATE_RESOURCES,
            request={"updateMask": mask, "config": {"resources": resources}},
            origin="resources",
        )

    def _diff_maintenance_window(
        self, desired: ClusterSpec, observed: ClusterState
    ) -> ChangeStep | None:
        wanted = desired.maintenance_window
        if wanted is None or wanted == observed.maintenance_window:
            return None
        return _update_step(
            StepKind.UPDATE_MAINTENANCE_WINDOW,
            {MASK_MAINTENANCE_WINDOW: wanted.to_api()},
            origin="maintenance_window",
        )


def _same_placement(spec: HostSpec, host: HostState) -> bool:
    if spec.zone != host.zone:
        return False
    # Some listings omit the subnet; fall back to zone-only matching then
    return not spec.subnet_id or not host.subnet_id or spec.subnet_id == host.subnet_id


def _exact_placement(spec: HostSpec, host: HostState) -> bool:
    return spec.zone == host.zone and spec.subnet_id == host.subnet_id


def _claim(
    wanted: list[tuple[int, HostSpec]],
    remaining: list[HostState],
    matches: Callable[[HostSpec, HostState], bool],
) -> list[tuple[int, HostSpec]]:
    """Pair each wanted host with the first matching remaining host in place"""
    unclaimed = []
    for index, spec in wanted:
        host = next((h for h in remaining if matches(spec, h)), None)
        if host is None:
            unclaimed.append((index, spec))
        else:
            remaining.remove(host)
    return unclaimed


def _update_step(kind: StepKind, fields: dict[str, Any], origin: str) -> ChangeStep:
    request: dict[str, Any] = {"updateMask": list(fields)}
    request.update(fields)
    return ChangeStep(kind=kind, request=request, origin=origin)


def _resources_payload(resources: Resources, mask: list[str]) -> dict[str, Any]:
    payload = resources.to_api()
    # disk type is create-only
    payload.pop("diskTypeId", None)
    if MASK_RESOURCE_PRESET not in mask:
        payload.pop("resourcePresetId", None)
    if MASK_DISK_SIZE not in mask:
        payload.pop("diskSize", None)
    return payload


_default_differ = TopologyDiffer()


def diff(desired: ClusterSpec | None, observed: ClusterState | None) -> ChangeSet:
    """Compute the change-set for a plan preview or a convergence cycle"""
    return _default_differ.diff(desired, observed)
