import base64
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client.exceptions import ApiException

from kubeplane.cluster import hookfunctions as fn
from kubeplane.cluster.hookfunctions import (
    ChartParams,
    HookEnvironment,
    InstallHelmParams,
    LabelNodesParams,
    NoParams,
    merge_values,
)
from kubeplane.cluster.providers.amazon import EksCluster
from kubeplane.cluster.providers.dummy import DummyCluster
from kubeplane.cluster.secrets import KUBECONFIG_KEY, TLS_SECRET_TYPE
from kubeplane.config import Config, DnsConfig
from kubeplane.kubeconfig import dummy_kubeconfig
from kubeplane.model.cluster import CloudProvider, Distribution
from kubeplane.model.nodepool import NodePool
from kubeplane.utils import read_yaml_file, to_yaml


@pytest.fixture
def env(tmp_path, store, secrets) -> HookEnvironment:
    return HookEnvironment(
        settings=Config(dataDir=str(tmp_path / "data")),
        secrets=secrets,
        store=store,
        k8s=MagicMock(),
        helm=MagicMock(),
        dns=MagicMock(),
    )


@pytest.fixture
def cluster(store, secrets, make_record) -> DummyCluster:
    cluster = DummyCluster(make_record(), store, secrets)
    cluster.persist()
    return cluster


def test_merge_values() -> None:
    merged = merge_values({"a": {"b": 1, "c": 2}, "d": [1]}, {"a": {"c": 3}, "d": [2]})

    assert merged == {"a": {"b": 1, "c": 3}, "d": [2]}


def test_store_kubeconfig(cluster, env, secrets) -> None:
    fn.store_kubeconfig(cluster, env, NoParams())

    secret_id = cluster.get_config_secret_id()
    assert secret_id is not None
    stored = secrets.get(1, secret_id)
    assert base64.b64decode(stored.values[KUBECONFIG_KEY]) == dummy_kubeconfig()
    assert "clusterID:1" in stored.tags

    fn.store_kubeconfig(cluster, env, NoParams())
    assert len(secrets.list(1)) == 1


def tls_kubeconfig() -> bytes:
    ca = base64.b64encode(b"ca-cert").decode("ascii")
    return to_yaml(
        {
            "apiVersion": "v1",
            "clusters": [
                {
                    "name": "c",
                    "cluster": {"server": "https://1.2.3.4", "certificate-authority-data": ca},
                }
            ],
            "contexts": [{"name": "ctx", "context": {"cluster": "c", "user": "u"}}],
            "users": [{"name": "u", "user": {"token": "t"}}],
            "current-context": "ctx",
        }
    ).encode("utf-8")


def test_persist_kubernetes_keys(store, secrets, make_record, env) -> None:
    provisioner = MagicMock()
    provisioner.kubeconfig.return_value = tls_kubeconfig()
    cluster = DummyCluster(make_record(), store, secrets, provisioner)
    cluster.persist()

    fn.persist_kubernetes_keys(cluster, env, NoParams())

    [secret] = secrets.list(1)
    assert secret.type == TLS_SECRET_TYPE
    assert secret.values["server"] == "https://1.2.3.4"
    assert base64.b64decode(secret.values["ca_data"]) == b"ca-cert"
    assert "client_cert_data" not in secret.values


def test_persist_kubernetes_keys_without_tls_material(cluster, env, secrets) -> None:
    fn.persist_kubernetes_keys(cluster, env, NoParams())

    assert secrets.list(1) == []


def test_write_monitoring_targets(cluster, env) -> None:
    fn.store_kubeconfig(cluster, env, NoParams())

    assert fn.write_monitoring_targets(env) == 1

    targets = read_yaml_file(fn.monitoring_targets_path(env.settings))["clusters"]
    assert targets[0]["targets"] == ["https://horse.org:4443"]
    assert targets[0]["labels"]["cluster"] == "test-cluster"


def test_install_helm_support_retries_api_errors(cluster, env) -> None:
    params = InstallHelmParams(maxAttempts=3, sleepSeconds=0)
    with patch.object(
        fn, "ensure_namespace", side_effect=[ApiException(status=503), None]
    ) as ensure_namespace, patch.object(fn, "ensure_service_account"), patch.object(
        fn, "ensure_cluster_role_binding"
    ) as binding:
        fn.install_helm_support(cluster, env, params)

    assert ensure_namespace.call_count == 2
    binding.assert_called_once()
    assert binding.call_args.args[2] == "cluster-admin"


def test_install_helm_support_gives_up(cluster, env) -> None:
    params = InstallHelmParams(maxAttempts=2, sleepSeconds=0)
    with patch.object(fn, "ensure_namespace", side_effect=ApiException(status=503)):
        with pytest.raises(ApiException):
            fn.install_helm_support(cluster, env, params)


def test_register_domain(cluster, env) -> None:
    fn.register_domain(cluster, env, NoParams())
    env.dns.register_domain.assert_not_called()

    env.settings.dns = DnsConfig(enabled=True, baseDomain="example.com")
    fn.register_domain(cluster, env, NoParams())
    env.dns.register_domain.assert_called_once_with(1, "org-1.example.com")


def test_unregister_domain_keeps_shared_domain(cluster, env, store, make_record) -> None:
    env.settings.dns = DnsConfig(enabled=True, baseDomain="example.com")
    store.create(make_record("other"))

    fn.unregister_domain(cluster, env)
    env.dns.unregister_domain.assert_not_called()


def test_deploy_cluster_autoscaler(store, secrets, make_record, env) -> None:
    record = make_record(distribution=Distribution.EKS)
    record.node_pools = [
        NodePool(id=1, name="a", min_count=1, max_count=5, autoscaling=True, provider_id="ng-a"),
        NodePool(id=2, name="b"),
    ]
    provisioner = MagicMock()
    provisioner.kubeconfig.return_value = dummy_kubeconfig()
    cluster = EksCluster(record, store, secrets, provisioner)
    cluster.persist()

    fn.deploy_cluster_autoscaler(cluster, env)

    args = env.helm.install_deployment.call_args
    values = args.args[4]
    assert values["cloudProvider"] == "aws"
    assert values["awsRegion"] == "us-west-2"
    assert values["autoscalingGroups"] == [{"name": "ng-a", "minSize": 1, "maxSize": 5}]
    assert args.args[1] == "kube-system"
    assert args.kwargs["upgrade_if_exists"] is True


def test_deploy_cluster_autoscaler_skips_unsupported_cloud(cluster, env) -> None:
    assert cluster.get_cloud() == CloudProvider.DUMMY.value

    fn.deploy_cluster_autoscaler(cluster, env)

    env.helm.install_deployment.assert_not_called()


def test_install_monitoring_sets_flag(cluster, env, store) -> None:
    fn.install_monitoring(cluster, env, ChartParams(values={"grafana": {"enabled": False}}))

    chart = env.settings.charts.monitoring
    args = env.helm.install_deployment.call_args
    assert args.args[1:4] == (
        env.settings.cluster.systemNamespace,
        chart.chart,
        chart.releaseName,
    )
    assert args.args[4] == {"grafana": {"enabled": False}}
    assert args.kwargs["repo"] == chart.repo
    assert store.get(cluster.get_id()).monitoring


def test_label_node_pools(cluster, env) -> None:
    with patch.object(fn, "label_nodes", return_value=2) as label_nodes:
        fn.label_node_pools(cluster, env, LabelNodesParams(labels={"pool1": {"gpu": "true"}}))

    assert label_nodes.call_args.args[1] == {"pool1": {"gpu": "true"}}
