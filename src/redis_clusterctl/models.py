"""
Data models for redis-clusterctl

Contains dataclasses for the desired cluster specification, the observed
cluster state, change-sets and operation/convergence outcomes.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar

from .constants import (
    BYTES_PER_GIB,
    ENVIRONMENT_PRESTABLE,
    MAINTENANCE_ANYTIME,
    MAINTENANCE_WEEKLY,
    UNSHARDED,
)
from .errors import ReconcileError


@dataclass(frozen=True)
class HostSpec:
    """Desired placement of a single host"""

    zone: str
    subnet_id: str = ""
    shard_name: str | None = None
    # Explicit identity (the host FQDN) for update-in-place matching
    host_id: str | None = None

    def to_api(self) -> dict[str, Any]:
        """Host spec as the control plane expects it in add/create requests"""
        payload = {"zoneId": self.zone}
        if self.subnet_id:
            payload["subnetId"] = self.subnet_id
        if self.shard_name:
            payload["shardName"] = self.shard_name
        return payload


@dataclass(frozen=True)
class ClusterConfig:
    """Redis configuration parameters. None means "leave as is"."""

    # (attribute, remote key) pairs for the redis-level settings
    REDIS_FIELDS: ClassVar[tuple[tuple[str, str], ...]] = (
        ("maxmemory_policy", "maxmemoryPolicy"),
        ("timeout", "timeout"),
        ("notify_keyspace_events", "notifyKeyspaceEvents"),
        ("slowlog_log_slower_than", "slowlogLogSlowerThan"),
        ("slowlog_max_len", "slowlogMaxLen"),
        ("databases", "databases"),
    )

    version: str | None = None
    maxmemory_policy: str | None = None
    timeout: int | None = None
    notify_keyspace_events: str | None = None
    slowlog_log_slower_than: int | None = None
    slowlog_max_len: int | None = None
    databases: int | None = None
    # Create-only, the remote API never returns it
    password: str | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any] | None) -> "ClusterConfig":
        data = data or {}
        redis = data.get("redis") or {}
        values = {attr: redis.get(key) for attr, key in cls.REDIS_FIELDS}
        return cls(version=data.get("version"), **values)

    def redis_to_api(self) -> dict[str, Any]:
        """Redis-level settings that are set, keyed by remote names"""
        return {
            key: getattr(self, attr)
            for attr, key in self.REDIS_FIELDS
            if getattr(self, attr) is not None
        }


@dataclass(frozen=True)
class Resources:
    """Compute and storage shape of every host"""

    resource_preset_id: str | None = None
    disk_size: int | None = None  # GiB
    disk_type_id: str | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any] | None) -> "Resources":
        data = data or {}
        disk_size = data.get("diskSize")
        if disk_size is not None:
            disk_size = int(disk_size) // BYTES_PER_GIB
        return cls(
            resource_preset_id=data.get("resourcePresetId"),
            disk_size=disk_size,
            disk_type_id=data.get("diskTypeId"),
        )

    def to_api(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.resource_preset_id is not None:
            payload["resourcePresetId"] = self.resource_preset_id
        if self.disk_size is not None:
            payload["diskSize"] = self.disk_size * BYTES_PER_GIB
        if self.disk_type_id is not None:
            payload["diskTypeId"] = self.disk_type_id
        return payload


@dataclass(frozen=True)
class MaintenanceWindow:
    type: str = MAINTENANCE_ANYTIME
    day: str | None = None
    hour: int | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any] | None) -> "MaintenanceWindow | None":
        if not data:
            return None
        weekly = data.get("weeklyMaintenanceWindow")
        if weekly is not None:
            return cls(
                type=MAINTENANCE_WEEKLY, day=weekly.get("day"), hour=weekly.get("hour")
            )
        return cls(type=MAINTENANCE_ANYTIME)

    def to_api(self) -> dict[str, Any]:
        if self.type == MAINTENANCE_WEEKLY:
            return {"weeklyMaintenanceWindow": {"day": self.day, "hour": self.hour}}
        return {"anytime": {}}


@dataclass(frozen=True)
class ClusterSpec:
    """Desired state of a cluster, as produced by the configuration layer"""

    name: str
    folder_id: str = ""
    description: str = ""
    environment: str = ENVIRONMENT_PRESTABLE
    network_id: str = ""
    security_group_ids: tuple[str, ...] = ()
    labels: dict[str, str] = field(default_factory=dict)
    config: ClusterConfig = field(default_factory=ClusterConfig)
    resources: Resources = field(default_factory=Resources)
    maintenance_window: MaintenanceWindow | None = None
    deletion_protection: bool = False
    sharded: bool = False
    tls_enabled: bool | None = None
    hosts: tuple[HostSpec, ...] = ()
    # Known identifier of an existing cluster; looked up by name otherwise
    cluster_id: str | None = None

    def shard_key(self, host: HostSpec) -> str:
        if not self.sharded:
            return UNSHARDED
        return host.shard_name or UNSHARDED

    def to_create_request(self) -> dict[str, Any]:
        """Full create request, including every host"""
        config: dict[str, Any] = {"resources": self.resources.to_api()}
        if self.config.version is not None:
            config["version"] = self.config.version
        if self.config.password is not None:
            config["password"] = self.config.password
        redis = self.config.redis_to_api()
        if redis:
            config["redis"] = redis

        request: dict[str, Any] = {
            "folderId": self.folder_id,
            "name": self.name,
            "description": self.description,
            "environment": self.environment,
            "networkId": self.network_id,
            "labels": dict(self.labels),
            "securityGroupIds": list(self.security_group_ids),
            "sharded": self.sharded,
            "deletionProtection": self.deletion_protection,
            "config": config,
            "hostSpecs": [host.to_api() for host in self.hosts],
        }
        if self.tls_enabled is not None:
            request["tlsEnabled"] = self.tls_enabled
        if self.maintenance_window is not None:
            request["maintenanceWindow"] = self.maintenance_window.to_api()
        return request


@dataclass(frozen=True)
class HostState:
    """A live host as reported by the control plane"""

    host_id: str
    fqdn: str
    zone: str
    subnet_id: str = ""
    shard_name: str = ""
    role: str = ""
    health: str = ""

    @classmethod
    def from_api(cls, row: dict[str, Any]) -> "HostState":
        fqdn = row.get("name", "")
        return cls(
            host_id=row.get("id") or fqdn,
            fqdn=fqdn,
            zone=row.get("zoneId", ""),
            subnet_id=row.get("subnetId", ""),
            shard_name=row.get("shardName", ""),
            role=row.get("role", ""),
            health=row.get("health", ""),
        )


@dataclass(frozen=True)
class ShardState:
    name: str
    host_count: int = 0


@dataclass(frozen=True)
class ClusterState:
    """Observed state of a cluster. Read-only: the engine never mutates it."""

    cluster_id: str
    name: str
    folder_id: str = ""
    status: str = ""
    description: str = ""
    environment: str = ENVIRONMENT_PRESTABLE
    labels: dict[str, str] = field(default_factory=dict)
    security_group_ids: tuple[str, ...] = ()
    tls_enabled: bool = False
    deletion_protection: bool = False
    sharded: bool = False
    config: ClusterConfig = field(default_factory=ClusterConfig)
    resources: Resources = field(default_factory=Resources)
    maintenance_window: MaintenanceWindow | None = None
    hosts: tuple[HostState, ...] = ()
    shards: tuple[ShardState, ...] = ()

    @classmethod
    def from_api(
        cls,
        cluster: dict[str, Any],
        hosts: list[dict[str, Any]],
        shards: list[dict[str, Any]] | None = None,
    ) -> "ClusterState":
        """Create ClusterState from control plane payloads"""
        host_states = tuple(HostState.from_api(row) for row in hosts)
        counts: dict[str, int] = defaultdict(int)
        for host in host_states:
            counts[host.shard_name] += 1
        shard_states = tuple(
            ShardState(name=row["name"], host_count=counts.get(row["name"], 0))
            for row in (shards or [])
        )
        config = cluster.get("config") or {}
        return cls(
            cluster_id=cluster["id"],
            name=cluster.get("name", ""),
            folder_id=cluster.get("folderId", ""),
            status=cluster.get("status", ""),
            description=cluster.get("description", ""),
            environment=cluster.get("environment", ENVIRONMENT_PRESTABLE),
            labels=dict(cluster.get("labels") or {}),
            security_group_ids=tuple(cluster.get("securityGroupIds") or ()),
            tls_enabled=bool(cluster.get("tlsEnabled", False)),
            deletion_protection=bool(cluster.get("deletionProtection", False)),
            sharded=bool(cluster.get("sharded", False)),
            config=ClusterConfig.from_api(config),
            resources=Resources.from_api(config.get("resources")),
            maintenance_window=MaintenanceWindow.from_api(
                cluster.get("maintenanceWindow")
            ),
            hosts=host_states,
            shards=shard_states,
        )

    def shard_key(self, host: HostState) -> str:
        if not self.sharded:
            return UNSHARDED
        return host.shard_name

    def shard_host_counts(self) -> dict[str, int]:
        """Host count per shard key, including listed shards with no hosts"""
        counts: dict[str, int] = {}
        if self.sharded:
            for shard in self.shards:
                counts[shard.name] = 0
        for host in self.hosts:
            key = self.shard_key(host)
            counts[key] = counts.get(key, 0) + 1
        return counts


class StepKind(Enum):
    CREATE_CLUSTER = "create_cluster"
    DELETE_CLUSTER = "delete_cluster"
    ADD_SHARD = "add_shard"
    ADD_HOST = "add_host"
    REMOVE_HOST = "remove_host"
    REMOVE_SHARD = "remove_shard"
    UPDATE_DELETION_PROTECTION = "update_deletion_protection"
    UPDATE_ENVIRONMENT = "update_environment"
    UPDATE_METADATA = "update_metadata"
    UPDATE_CONFIG = "update_config"
    UPDATE_RESOURCES = "update_resources"
    UPDATE_MAINTENANCE_WINDOW = "update_maintenance_window"

    @property
    def is_addition(self) -> bool:
        return self in (StepKind.ADD_SHARD, StepKind.ADD_HOST)

    @property
    def is_removal(self) -> bool:
        return self in (StepKind.REMOVE_HOST, StepKind.REMOVE_SHARD)

    @property
    def is_update(self) -> bool:
        return self.value.startswith("update_")


@dataclass(frozen=True)
class ChangeStep:
    """One remote call needed to converge, with the spec element it realizes"""

    kind: StepKind
    request: dict[str, Any] = field(default_factory=dict)
    origin: str = ""
    shard_name: str | None = None
    host_id: str | None = None

    def __str__(self) -> str:
        target = self.host_id or self.shard_name or self.origin
        return f"{self.kind.value}({target})" if target else self.kind.value


@dataclass(frozen=True)
class ChangeSet:
    """Ordered sequence of change steps"""

    steps: tuple[ChangeStep, ...] = ()

    def __iter__(self):
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    def __getitem__(self, index):
        return self.steps[index]

    @property
    def is_empty(self) -> bool:
        return not self.steps

    def kinds(self) -> list[StepKind]:
        return [step.kind for step in self.steps]

    def of_kind(self, *kinds: StepKind) -> list[ChangeStep]:
        return [step for step in self.steps if step.kind in kinds]

    def remaining(self, start: int) -> "ChangeSet":
        return ChangeSet(self.steps[start:])


@dataclass(frozen=True)
class OperationHandle:
    """Opaque handle of a long-running remote operation"""

    operation_id: str
    description: str = ""

    @classmethod
    def from_api(cls, operation: dict[str, Any]) -> "OperationHandle":
        return cls(
            operation_id=operation["id"], description=operation.get("description", "")
        )


@dataclass(frozen=True)
class OperationStatus:
    operation_id: str
    done: bool = False
    error: dict[str, Any] | None = None
    response: dict[str, Any] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, operation: dict[str, Any]) -> "OperationStatus":
        return cls(
            operation_id=operation["id"],
            done=bool(operation.get("done", False)),
            error=operation.get("error"),
            response=operation.get("response"),
            metadata=operation.get("metadata") or {},
        )


class Outcome(Enum):
    """Terminal outcome of one operation or one step"""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMEOUT = "timeout"
    POLL_FAILED = "poll_failed"
    CANCELLED = "cancelled"


@dataclass
class OperationResult:
    handle: OperationHandle
    outcome: Outcome
    response: dict[str, Any] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    error: ReconcileError | None = None
    polls: int = 0
    elapsed_s: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.outcome is Outcome.SUCCEEDED


@dataclass
class StepOutcome:
    """Result of executing one change step"""

    index: int
    step: ChangeStep
    outcome: Outcome
    operation_id: str | None = None
    error: ReconcileError | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is Outcome.SUCCEEDED


class ConvergenceStatus(Enum):
    SUCCEEDED = "succeeded"
    # Every step landed but the verification pass still found a gap
    DIVERGED = "diverged"
    FAILED = "failed"
    IN_PROGRESS = "in_progress"
    CANCELLED = "cancelled"


@dataclass
class ConvergenceResult:
    """Composite outcome of one convergence call"""

    cluster_id: str | None
    status: ConvergenceStatus
    steps_total: int = 0
    outcomes: list[StepOutcome] = field(default_factory=list)
    error: ReconcileError | None = None
    divergence: ChangeSet | None = None

    @property
    def steps_completed(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.succeeded)

    @property
    def failed_step(self) -> StepOutcome | None:
        for outcome in self.outcomes:
            if not outcome.succeeded:
                return outcome
        return None

    @property
    def ok(self) -> bool:
        return self.status in (ConvergenceStatus.SUCCEEDED, ConvergenceStatus.DIVERGED)

    def raise_for_status(self) -> None:
        """Raise the first failure's error, if any"""
        if self.error is not None and not self.ok:
            raise self.error
