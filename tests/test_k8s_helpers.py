from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client.exceptions import ApiException

from kubeplane.k8s import (
    KubernetesClientFactory,
    delete_all_resources,
    ensure_cluster_role_binding,
    ensure_namespace,
    label_nodes,
)
from kubeplane.kubeconfig import dummy_kubeconfig


def item(namespace: str, name: str) -> MagicMock:
    obj = MagicMock()
    obj.metadata.namespace = namespace
    obj.metadata.name = name
    return obj


def listing(*items: MagicMock) -> MagicMock:
    result = MagicMock()
    result.items = list(items)
    return result


def test_ensure_namespace_ignores_conflict() -> None:
    with patch("kubernetes.client.CoreV1Api") as core_api:
        core_api.return_value.create_namespace.side_effect = ApiException(status=409)
        ensure_namespace(MagicMock(), "pipeline-system")

        core_api.return_value.create_namespace.side_effect = ApiException(status=500)
        with pytest.raises(ApiException):
            ensure_namespace(MagicMock(), "pipeline-system")


def test_ensure_cluster_role_binding_creates_missing_binding() -> None:
    with patch("kubernetes.client.RbacAuthorizationV1Api") as rbac_api:
        rbac = rbac_api.return_value
        rbac.read_cluster_role_binding.side_effect = ApiException(status=404)

        ensure_cluster_role_binding(MagicMock(), "helm", "cluster-admin", "kube-system", "helm")

    rbac.create_cluster_role_binding.assert_called_once()
    binding = rbac.create_cluster_role_binding.call_args.args[0]
    assert binding.role_ref.name == "cluster-admin"
    assert binding.subjects[0].namespace == "kube-system"
    rbac.replace_cluster_role_binding.assert_not_called()


def test_label_nodes() -> None:
    with patch("kubernetes.client.CoreV1Api") as core_api:
        core = core_api.return_value
        core.list_node.return_value = listing(item("", "node-1"), item("", "node-2"))

        patched = label_nodes(MagicMock(), {"pool1": {"gpu": "true"}, "pool2": {}})

    assert patched == 2
    core.list_node.assert_called_once_with(label_selector="nodepool=pool1")
    core.patch_node.assert_any_call("node-1", {"metadata": {"labels": {"gpu": "true"}}})


def test_delete_all_resources() -> None:
    with patch("kubernetes.client.CoreV1Api") as core_api, patch(
        "kubernetes.client.AppsV1Api"
    ) as apps_api:
        core = core_api.return_value
        apps = apps_api.return_value
        core.list_service_for_all_namespaces.return_value = listing(
            item("default", "kubernetes"), item("default", "web"), item("kube-system", "dns")
        )
        apps.list_deployment_for_all_namespaces.return_value = listing(
            item("default", "web"), item("team", "gone")
        )
        apps.delete_namespaced_deployment.side_effect = [None, ApiException(status=404)]
        apps.list_daemon_set_for_all_namespaces.return_value = listing()
        apps.list_stateful_set_for_all_namespaces.return_value = listing(item("db", "pg"))
        apps.list_replica_set_for_all_namespaces.return_value = listing()

        delete_all_resources(MagicMock())

    core.delete_namespaced_service.assert_called_once_with("web", "default")
    assert apps.delete_namespaced_deployment.call_count == 2
    apps.delete_namespaced_stateful_set.assert_called_once_with("pg", "db")


def test_client_factory_caches_per_cluster() -> None:
    factory = KubernetesClientFactory()

    first = factory.for_cluster(1, dummy_kubeconfig())
    assert factory.for_cluster(1, dummy_kubeconfig()) is first
    assert factory.for_cluster(2, dummy_kubeconfig()) is not first

    factory.evict(1)
    assert factory.for_cluster(1, dummy_kubeconfig()) is not first
    factory.evict(1)
    factory.evict(2)
