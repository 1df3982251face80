"""
Pytest configuration and fixtures for redis-clusterctl tests.

This module provides the in-memory control plane, canned cluster specs and
helpers for building observed state without a control plane.
"""

import random

import pytest

from redis_clusterctl.driver import ConvergenceDriver
from redis_clusterctl.models import (
    ClusterConfig,
    ClusterSpec,
    ClusterState,
    HostSpec,
    HostState,
    Resources,
    ShardState,
)
from redis_clusterctl.poller import OperationPoller
from tests.fake_control_plane import FakeControlPlane


@pytest.fixture
def control_plane() -> FakeControlPlane:
    """Create an empty in-memory control plane."""
    return FakeControlPlane()


@pytest.fixture
def fast_poller(control_plane: FakeControlPlane) -> OperationPoller:
    """Create a poller with millisecond intervals and no real backoff."""
    return OperationPoller(
        control_plane,
        interval_s=0.001,
        jitter_s=0.001,
        max_retries=3,
        backoff_s=0.001,
        backoff_max_s=0.002,
        rng=random.Random(42),
    )


@pytest.fixture
def driver(
    control_plane: FakeControlPlane, fast_poller: OperationPoller
) -> ConvergenceDriver:
    """Create a driver wired to the fake control plane."""
    return ConvergenceDriver(control_plane, poller=fast_poller, step_timeout_s=5.0)


@pytest.fixture
def unsharded_spec(control_plane: FakeControlPlane) -> ClusterSpec:
    """Create a three-host unsharded cluster spec."""
    return ClusterSpec(
        name="cache-main",
        folder_id=control_plane.folder_id,
        description="main cache",
        network_id="net-1",
        labels={"team": "core"},
        config=ClusterConfig(version="7.2", maxmemory_policy="ALLKEYS_LRU"),
        resources=Resources(
            resource_preset_id="hm3-c2-m8", disk_size=16, disk_type_id="network-ssd"
        ),
        hosts=(
            HostSpec(zone="zone-a", subnet_id="subnet-a"),
            HostSpec(zone="zone-b", subnet_id="subnet-b"),
            HostSpec(zone="zone-c", subnet_id="subnet-c"),
        ),
    )


@pytest.fixture
def sharded_spec(control_plane: FakeControlPlane) -> ClusterSpec:
    """Create a sharded cluster spec with shards first, second and third."""
    return make_sharded_spec(
        control_plane.folder_id, {"first": 2, "second": 2, "third": 2}
    )


def make_sharded_spec(
    folder_id: str, hosts_per_shard: dict[str, int], **kwargs
) -> ClusterSpec:
    """
    Build a sharded spec with hosts spread over two zones.

    Args:
        folder_id: Folder the cluster lives in
        hosts_per_shard: Shard name -> number of hosts, in shard order
        **kwargs: Extra ClusterSpec fields

    Returns:
        ClusterSpec with sharded=True
    """
    zones = ("zone-a", "zone-b")
    hosts = tuple(
        HostSpec(
            zone=zones[i % 2],
            subnet_id=f"subnet-{zones[i % 2][-1]}",
            shard_name=shard,
        )
        for shard, count in hosts_per_shard.items()
        for i in range(count)
    )
    fields = {
        "name": "cache-sharded",
        "folder_id": folder_id,
        "network_id": "net-1",
        "config": ClusterConfig(version="7.2"),
        "resources": Resources(resource_preset_id="hm3-c2-m8", disk_size=16),
        "sharded": True,
        "hosts": hosts,
    }
    fields.update(kwargs)
    return ClusterSpec(**fields)


def make_state(
    hosts_per_shard: dict[str, int] | None = None,
    sharded: bool = True,
    **kwargs,
) -> ClusterState:
    """
    Build an observed ClusterState directly, without a control plane.

    Host FQDNs are "<shard>-<n>.mdb.test" and zones alternate between
    zone-a and zone-b within a shard.
    """
    hosts_per_shard = hosts_per_shard or {}
    zones = ("zone-a", "zone-b")
    hosts = tuple(
        HostState(
            host_id=f"{shard or 'host'}-{i}.mdb.test",
            fqdn=f"{shard or 'host'}-{i}.mdb.test",
            zone=zones[i % 2],
            subnet_id=f"subnet-{zones[i % 2][-1]}",
            shard_name=shard,
        )
        for shard, count in hosts_per_shard.items()
        for i in range(count)
    )
    shards = tuple(
        ShardState(name=shard, host_count=count)
        for shard, count in hosts_per_shard.items()
        if sharded
    )
    fields = {
        "cluster_id": "cluster-0001",
        "name": "cache-sharded",
        "status": "RUNNING",
        "config": ClusterConfig(version="7.2"),
        "resources": Resources(resource_preset_id="hm3-c2-m8", disk_size=16),
        "sharded": sharded,
        "hosts": hosts,
        "shards": shards,
    }
    fields.update(kwargs)
    return ClusterState(**fields)
