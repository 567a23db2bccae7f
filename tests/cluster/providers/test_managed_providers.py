from unittest.mock import MagicMock

import pytest

from kubeplane.cluster.providers.alibaba import AckCluster
from kubeplane.cluster.providers.azure import AksCluster
from kubeplane.cluster.providers.dummy import DummyCluster
from kubeplane.cluster.providers.google import GkeCluster
from kubeplane.cluster.providers.kubernetes import KubernetesCluster
from kubeplane.cluster.providers.managed import ManagedCluster
from kubeplane.cluster.providers.oracle import OkeCluster
from kubeplane.cluster.secrets import KUBECONFIG_KEY, KUBERNETES_SECRET_TYPE
from kubeplane.errors import (
    InvalidRequestError,
    NoChangesError,
    ProviderValidationError,
    ResourceNotFoundError,
)
from kubeplane.model.cluster import (
    ClusterRecord,
    CloudProvider,
    Distribution,
    GkePayload,
    KubernetesPayload,
)
from kubeplane.model.requests import (
    ClusterCreateRequest,
    ClusterUpdateRequest,
    NodePoolRequest,
    NodePoolSizeRequest,
    NodePoolUpdateRequest,
)
from kubeplane.model.status import ClusterStatus


def create_request(**kwargs) -> ClusterCreateRequest:
    fields = {
        "name": "c1",
        "cloud": "dummy",
        "location": "us-west-2",
        "nodePools": {"pool1": NodePoolRequest(instanceType="t3.large")},
    }
    fields.update(kwargs)
    return ClusterCreateRequest(**fields)


def managed(store, secrets, make_record, provisioner=None) -> DummyCluster:
    cluster = DummyCluster(make_record(), store, secrets, provisioner or MagicMock())
    cluster.persist()
    return cluster


def test_create_cluster_applies_outputs(store, secrets, make_record) -> None:
    cluster = DummyCluster(make_record(), store, secrets)
    cluster.persist()

    cluster.create_cluster()

    assert store.get(cluster.get_id()).provider.node_count == 1


def gke_cluster(store, secrets) -> GkeCluster:
    record = ClusterRecord(
        uid="uid-g",
        organization_id=1,
        name="c1",
        cloud=CloudProvider.GOOGLE,
        distribution=Distribution.GKE,
        provider=GkePayload(project_id="p"),
    )
    return GkeCluster(record, store, secrets, MagicMock())


def test_location_validation(store, secrets) -> None:
    cluster = gke_cluster(store, secrets)

    with pytest.raises(ProviderValidationError, match="invalid location"):
        cluster.validate_creation_fields(create_request(location="Not A Region"))
    cluster.validate_creation_fields(create_request(location="us-central1"))


def test_validation_requires_node_pools(store, secrets) -> None:
    cluster = gke_cluster(store, secrets)

    with pytest.raises(ProviderValidationError, match="node pool"):
        cluster.validate_creation_fields(create_request(location="us-central1", nodePools={}))


def test_provider_payloads() -> None:
    aks = AksCluster.build_payload(
        create_request(cloud="azure", properties={"resourceGroup": "rg"}), Distribution.AKS
    )
    assert aks.resource_group == "rg"

    gke = GkeCluster.build_payload(
        create_request(cloud="google", properties={"projectId": "p"}), Distribution.GKE
    )
    assert gke.project_id == "p"

    acsk = AckCluster.build_payload(create_request(cloud="alibaba"), Distribution.ACSK)
    assert acsk.distribution == "acsk"

    with pytest.raises(ProviderValidationError, match="compartmentId"):
        OkeCluster.build_payload(create_request(cloud="oracle"), Distribution.OKE)


def test_check_equality_to_update(store, secrets, make_record) -> None:
    cluster = managed(store, secrets, make_record)
    same = ClusterUpdateRequest(cloud="dummy")
    cluster.add_defaults_to_update(same)

    with pytest.raises(NoChangesError):
        cluster.check_equality_to_update(same)

    bigger = ClusterUpdateRequest(
        cloud="dummy", nodePools={"pool1": NodePoolRequest(minCount=1, maxCount=5)}
    )
    cluster.add_defaults_to_update(bigger)
    assert bigger.nodePools["pool1"].instanceType == "t3.large"
    cluster.check_equality_to_update(bigger)


def test_update_cluster_applies_delta(store, secrets, make_record) -> None:
    provisioner = MagicMock()
    provisioner.update.return_value = {"node_count": 4}
    cluster = managed(store, secrets, make_record, provisioner)
    request = ClusterUpdateRequest(
        cloud="dummy",
        kubernetesVersion="1.30",
        nodePools={"pool2": NodePoolRequest(instanceType="m5.large", minCount=2, maxCount=2)},
    )

    cluster.update_cluster(request, 3)

    record = store.get(cluster.get_id())
    assert [pool.name for pool in record.node_pools] == ["pool2"]
    assert record.node_pools[0].created_by == 3
    assert record.provider.kubernetes_version == "1.30"
    assert record.provider.node_count == 4

    _, delta, _ = provisioner.update.call_args.args
    assert {pool.name: pool.marked_for_deletion for pool in delta} == {
        "pool1": True,
        "pool2": False,
    }


def test_failed_update_leaves_record_untouched(store, secrets, make_record) -> None:
    provisioner = MagicMock()
    provisioner.update.side_effect = RuntimeError("api down")
    cluster = managed(store, secrets, make_record, provisioner)

    with pytest.raises(RuntimeError):
        cluster.update_cluster(
            ClusterUpdateRequest(
                cloud="dummy", nodePools={"pool2": NodePoolRequest(instanceType="m5.large")}
            ),
            None,
        )

    assert [pool.name for pool in store.get(cluster.get_id()).node_pools] == ["pool1"]


def test_update_node_pools(store, secrets, make_record) -> None:
    cluster = managed(store, secrets, make_record)

    cluster.update_node_pools(
        NodePoolUpdateRequest(nodePools={"pool1": NodePoolSizeRequest(count=3)}), None
    )

    assert store.get(cluster.get_id()).node_pools[0].count == 3


def test_delete_tolerates_missing_resources(store, secrets, make_record) -> None:
    provisioner = MagicMock()
    provisioner.destroy.side_effect = ResourceNotFoundError("gone")
    cluster = managed(store, secrets, make_record, provisioner)

    cluster.delete_cluster()

    provisioner.destroy.assert_called_once()


def kubernetes_record(secret_id: str) -> ClusterRecord:
    return ClusterRecord(
        uid="uid-k",
        organization_id=1,
        name="imported",
        cloud=CloudProvider.KUBERNETES,
        distribution=Distribution.KUBERNETES,
        secret_id=secret_id,
        status=ClusterStatus.RUNNING,
        provider=KubernetesPayload(),
    )


def test_imported_cluster_validates_kubeconfig(store, secrets) -> None:
    bad = secrets.store(1, "bad", KUBERNETES_SECRET_TYPE, {KUBECONFIG_KEY: "YTogYg=="})
    cluster = KubernetesCluster(kubernetes_record(bad), store, secrets)

    with pytest.raises(ProviderValidationError, match="invalid kubeconfig"):
        cluster.validate_creation_fields(create_request(cloud="kubernetes"))


def test_imported_cluster_cannot_resize(store, secrets) -> None:
    cluster = KubernetesCluster(kubernetes_record("none"), store, secrets)

    with pytest.raises(InvalidRequestError):
        cluster.update_node_pools(
            NodePoolUpdateRequest(nodePools={"a": NodePoolSizeRequest(count=1)}), None
        )
    assert not cluster.requires_ssh_public_key()


def test_build_payload_is_abstract() -> None:
    assert "build_payload" in ManagedCluster.__abstractmethods__
    for cls in (DummyCluster, GkeCluster, AksCluster, OkeCluster, AckCluster):
        assert "build_payload" not in cls.__abstractmethods__
