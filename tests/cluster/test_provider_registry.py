from unittest.mock import MagicMock

import pytest

from kubeplane.cluster.providers.amazon import Ec2Cluster, EksCluster
from kubeplane.cluster.providers.dummy import DummyCluster
from kubeplane.cluster.provisioner import UnconfiguredProvisioner
from kubeplane.cluster.registry import ProviderRegistry, default_registry
from kubeplane.errors import UnsupportedProviderError
from kubeplane.model.cluster import ClusterRecord, CloudProvider, Distribution, Ec2Payload
from kubeplane.model.requests import ClusterCreateRequest, NodePoolRequest
from kubeplane.model.status import ClusterStatus


def test_resolve_defaults_distribution(store, secrets) -> None:
    registry = default_registry(store, secrets)

    assert registry.resolve("amazon") == (CloudProvider.AMAZON, Distribution.EKS, EksCluster)
    assert registry.resolve("amazon", "ec2")[2] is Ec2Cluster


def test_resolve_rejects_unknown_and_mismatched_tags(store, secrets) -> None:
    registry = default_registry(store, secrets)

    with pytest.raises(UnsupportedProviderError):
        registry.resolve("mainframe")
    with pytest.raises(UnsupportedProviderError):
        registry.resolve("amazon", "potato")
    with pytest.raises(UnsupportedProviderError):
        registry.resolve("azure", "eks")


def test_from_request(store, secrets) -> None:
    registry = default_registry(store, secrets)
    request = ClusterCreateRequest(
        name="c1",
        cloud="dummy",
        ttlMinutes=60,
        nodePools={
            "a": NodePoolRequest(instanceType="t3.large", minCount=1, maxCount=3),
            "b": NodePoolRequest(instanceType="t3.small", minCount=2, maxCount=2),
        },
    )

    cluster = registry.from_request(request, 4, 9)

    assert isinstance(cluster, DummyCluster)
    assert cluster.model.id is None
    assert cluster.model.status == ClusterStatus.CREATING
    assert cluster.get_organization_id() == 4
    assert cluster.get_ttl() == 60
    assert [(p.id, p.name, p.count, p.created_by) for p in cluster.get_node_pools()] == [
        (1, "a", 1, 9),
        (2, "b", 2, 9),
    ]


def test_from_request_needs_provisioner(store, secrets) -> None:
    registry = default_registry(store, secrets)
    request = ClusterCreateRequest(name="c1", cloud="amazon", distribution="ec2")

    with pytest.raises(UnsupportedProviderError, match="no provisioner"):
        registry.from_request(request, 1)

    registry.set_provisioner(Distribution.EC2, MagicMock())
    assert isinstance(registry.from_request(request, 1), Ec2Cluster)


def test_from_record_without_provisioner(store, secrets) -> None:
    registry = ProviderRegistry(store, secrets)
    registry.register(Distribution.EC2, Ec2Cluster)
    record = ClusterRecord(
        uid="u",
        organization_id=1,
        name="c1",
        cloud=CloudProvider.AMAZON,
        distribution=Distribution.EC2,
        provider=Ec2Payload(),
    )

    cluster = registry.from_record(record)

    assert isinstance(cluster._provisioner, UnconfiguredProvisioner)
    with pytest.raises(UnsupportedProviderError):
        cluster.delete_cluster()


def test_unconfigured_provisioner_rejects_every_operation() -> None:
    provisioner = UnconfiguredProvisioner(Distribution.GKE)
    record = MagicMock()

    for call in (
        lambda: provisioner.provision(record, {}),
        lambda: provisioner.update(record, [], {}),
        lambda: provisioner.destroy(record, {}),
        lambda: provisioner.kubeconfig(record, {}),
    ):
        with pytest.raises(UnsupportedProviderError, match="no provisioner configured for gke"):
            call()
