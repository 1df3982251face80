"""
Error taxonomy for redis-clusterctl

Guard vetoes, remote rejections and polling failures all derive from
ReconcileError so the driver can turn them into a ConvergenceResult.
"""

from .constants import NOT_FOUND_CODES


class ReconcileError(Exception):
    """Base class for every error the reconciliation engine reports"""

    reason = "reconcile_error"

    def __init__(self, message: str = "", *, cluster_id: str | None = None):
        super().__init__(message or self.reason)
        self.message = message or self.reason
        self.cluster_id = cluster_id


class ValidationRejected(ReconcileError):
    """The safety guard vetoed a change-set; no remote call was made"""

    reason = "validation_rejected"


class ProtectedResource(ValidationRejected):
    reason = "protected_resource"


class WouldEmptyShard(ValidationRejected):
    reason = "would_empty_shard"

    def __init__(self, message: str = "", *, shard_name: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.shard_name = shard_name


class WouldEmptyCluster(ValidationRejected):
    reason = "would_empty_cluster"


class RemoteRejected(ReconcileError):
    """The control plane returned an error for a submitted step"""

    reason = "remote_rejected"

    def __init__(self, message: str = "", *, code: str | int | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.code = code

    def __str__(self) -> str:
        if self.code is not None:
            return f"{self.message} (code={self.code})"
        return self.message

    @property
    def not_found(self) -> bool:
        return self.code in NOT_FOUND_CODES


class PollFailed(ReconcileError):
    """Fetching an operation's status kept failing after all retries"""

    reason = "poll_failed"


class OperationTimeout(ReconcileError):
    """The deadline elapsed while the remote operation was still running"""

    reason = "timeout"


class ClusterBusy(ReconcileError):
    """Another operation is already running against the cluster"""

    reason = "cluster_busy"


class AuthFailure(ReconcileError):
    """The credential provider could not supply a token"""

    reason = "auth_failure"


class TransportError(ReconcileError):
    """Transient network failure talking to the control plane"""

    reason = "transport_error"
