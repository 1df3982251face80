"""
redis-clusterctl: topology reconciliation engine for managed Redis clusters

Converges a cluster to a declared specification by diffing, validating and
executing change steps against the control plane.
"""

from .aggregator import ResultAggregator, aggregate
from .config import EngineSettings
from .differ import TopologyDiffer, diff
from .driver import ConvergenceDriver
from .engine import Engine
from .errors import (
    AuthFailure,
    ClusterBusy,
    OperationTimeout,
    PollFailed,
    ProtectedResource,
    ReconcileError,
    RemoteRejected,
    TransportError,
    ValidationRejected,
    WouldEmptyCluster,
    WouldEmptyShard,
)
from .guard import SafetyGuard, validate
from .models import (
    ChangeSet,
    ChangeStep,
    ClusterConfig,
    ClusterSpec,
    ClusterState,
    ConvergenceResult,
    ConvergenceStatus,
    HostSpec,
    MaintenanceWindow,
    Outcome,
    Resources,
    StepKind,
)
from .poller import OperationPoller

__all__ = [
    "AuthFailure",
    "ChangeSet",
    "ChangeStep",
    "ClusterBusy",
    "ClusterConfig",
    "ClusterSpec",
    "ClusterState",
    "ConvergenceDriver",
    "ConvergenceResult",
    "ConvergenceStatus",
    "Engine",
    "EngineSettings",
    "HostSpec",
    "MaintenanceWindow",
    "OperationPoller",
    "OperationTimeout",
    "Outcome",
    "PollFailed",
    "ProtectedResource",
    "ReconcileError",
    "RemoteRejected",
    "Resources",
    "ResultAggregator",
    "SafetyGuard",
    "StepKind",
    "TopologyDiffer",
    "TransportError",
    "ValidationRejected",
    "WouldEmptyCluster",
    "WouldEmptyShard",
    "aggregate",
    "diff",
    "validate",
]
