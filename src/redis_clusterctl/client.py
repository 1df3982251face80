"""
Collaborator interfaces for redis-clusterctl

The wire-level API client and the credential provider live outside this
package. The engine only relies on the narrow protocols below. All payloads
are the control plane's JSON objects as plain dicts.
"""

import threading
from typing import Any, Protocol

from .log import get_logger
from .models import ClusterState

logger = get_logger(__name__)


class CredentialProvider(Protocol):
    """
    Supplies a bearer token for each remote call

    Implementations raise AuthFailure when no token can be obtained, and
    should give up early once cancel_event is set.
    """

    def token(self, cancel_event: threading.Event | None = None) -> str: ...


class ControlPlaneClient(Protocol):
    """
    Typed access to the managed Redis control plane

    Mutating calls return the submitted long-running operation as a dict with
    at least an "id". Implementations raise RemoteRejected when the control
    plane refuses a request, AuthFailure when no token can be obtained and
    TransportError for transient network failures. They must be safe for
    concurrent use by independent convergence calls.
    """

    def list_clusters(self, folder_id: str) -> list[dict[str, Any]]: ...

    def get_cluster(self, cluster_id: str) -> dict[str, Any]: ...

    def list_hosts(self, cluster_id: str) -> list[dict[str, Any]]: ...

    def list_shards(self, cluster_id: str) -> list[dict[str, Any]]: ...

    def create_cluster(self, request: dict[str, Any]) -> dict[str, Any]: ...

    def update_cluster(
        self, cluster_id: str, request: dict[str, Any]
    ) -> dict[str, Any]: ...

    def delete_cluster(self, cluster_id: str) -> dict[str, Any]: ...

    def add_hosts(
        self, cluster_id: str, host_specs: list[dict[str, Any]]
    ) -> dict[str, Any]: ...

    def delete_hosts(
        self, cluster_id: str, host_names: list[str]
    ) -> dict[str, Any]: ...

    def add_shard(
        self, cluster_id: str, shard_name: str, host_specs: list[dict[str, Any]]
    ) -> dict[str, Any]: ...

    def delete_shard(self, cluster_id: str, shard_name: str) -> dict[str, Any]: ...

    def get_operation(self, operation_id: str) -> dict[str, Any]: ...


def fetch_cluster_state(client: ControlPlaneClient, cluster_id: str) -> ClusterState:
    """Fetch a fresh ClusterState: cluster, hosts and shards"""
    cluster = client.get_cluster(cluster_id)
    hosts = client.list_hosts(cluster_id)
    shards = client.list_shards(cluster_id) if cluster.get("sharded") else []
    state = ClusterState.from_api(cluster, hosts, shards)
    logger.debug(
        "Fetched cluster state",
        extra={
            "cluster_id": cluster_id,
            "status": state.status,
            "hosts_count": len(state.hosts),
            "shards_count": len(state.shards),
        },
    )
    return state


def find_cluster_id(
    client: ControlPlaneClient, folder_id: str, name: str
) -> str | None:
    """Look up a cluster identifier by name within a folder"""
    for cluster in client.list_clusters(folder_id):
        if cluster.get("name") == name:
            return cluster["id"]
    return None
