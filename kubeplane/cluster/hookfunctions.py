from __future__ import annotations

import base64
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from kubernetes.client.exceptions import ApiException
from pydantic import BaseModel, ConfigDict, Field
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from kubeplane.cluster.common import CommonCluster
from kubeplane.cluster.secrets import (
    KUBECONFIG_KEY,
    KUBERNETES_SECRET_TYPE,
    TLS_SECRET_TYPE,
    SecretStore,
)
from kubeplane.cluster.store import ClusterStore
from kubeplane.config import ChartConfig, Config
from kubeplane.constants import HELM_RETRY_ATTEMPTS, HELM_RETRY_SLEEP_SECONDS, HELM_SERVICE_ACCOUNT
from kubeplane.dns import DnsRegistrar, organization_domain
from kubeplane.errors import SecretNotFoundError
from kubeplane.helm import HelmInstaller
from kubeplane.k8s import (
    KubernetesClientFactory,
    ensure_cluster_role_binding,
    ensure_namespace,
    ensure_service_account,
    label_nodes,
)
from kubeplane.kubeconfig import current_credentials, load_kubeconfig
from kubeplane.logger import logger as default_logger
from kubeplane.model.status import ClusterStatus
from kubeplane.utils import to_yaml, write_file_atomic

# Cluster autoscaler's name for each cloud it supports
AUTOSCALER_CLOUD_PROVIDERS = {
    "amazon": "aws",
    "azure": "azure",
    "google": "gce",
    "alibaba": "alicloud",
    "oracle": "oci",
}

_monitoring_lock = threading.Lock()


@dataclass
class HookEnvironment:
    """
    Everything post hooks need besides the cluster itself.
    """

    settings: Config
    secrets: SecretStore
    store: ClusterStore
    k8s: KubernetesClientFactory
    helm: HelmInstaller
    dns: Optional[DnsRegistrar] = None
    logger: logging.Logger = field(default=default_logger)


class HookParams(BaseModel):
    model_config = ConfigDict(extra="forbid")


class NoParams(HookParams):
    pass


class InstallHelmParams(HookParams):
    serviceAccount: str = HELM_SERVICE_ACCOUNT
    maxAttempts: int = Field(HELM_RETRY_ATTEMPTS, ge=1)
    sleepSeconds: float = Field(HELM_RETRY_SLEEP_SECONDS, ge=0)


class ChartParams(HookParams):
    """
    Overrides of a configured chart. Values are merged over the configured ones.
    """

    values: Dict[str, Any] = Field(default_factory=dict)
    version: Optional[str] = None


class NamespaceParams(HookParams):
    namespace: Optional[str] = None


class LabelNodesParams(HookParams):
    # Extra labels by node pool name
    labels: Dict[str, Dict[str, str]] = Field(default_factory=dict)


def merge_values(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """
    Deep merge two chart value trees. Values of ``override`` win.

    Example:
        >>> merge_values({"a": {"b": 1, "c": 2}}, {"a": {"c": 3}})
        {'a': {'b': 1, 'c': 3}}
    """
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_values(merged[key], value)
        else:
            merged[key] = value
    return merged


def _cluster_tags(cluster: CommonCluster) -> List[str]:
    return [f"cluster:{cluster.get_name()}", f"clusterID:{cluster.get_id()}"]


def install_chart(
    cluster: CommonCluster,
    env: HookEnvironment,
    chart: ChartConfig,
    params: Optional[ChartParams] = None,
    values: Optional[Dict[str, Any]] = None,
    upgrade_if_exists: bool = False,
) -> None:
    """
    Install a configured chart on a cluster.

    Values are layered: configured values, then ``values`` computed by the
    caller, then the hook parameters.
    """
    params = params or ChartParams()
    merged = merge_values(merge_values(chart.values, values or {}), params.values)
    env.helm.install_deployment(
        cluster.get_k8s_config(),
        chart.namespace or env.settings.cluster.systemNamespace,
        chart.chart,
        chart.releaseName,
        merged,
        chart_version=params.version or chart.version,
        upgrade_if_exists=upgrade_if_exists,
        repo=chart.repo,
    )


def store_kubeconfig(cluster: CommonCluster, env: HookEnvironment, params: NoParams) -> None:
    """Save the provider's kubeconfig in the secret store."""
    if cluster.get_config_secret_id():
        env.logger.debug(f"Kubeconfig of cluster {cluster.get_name()} is already stored")
        return

    kubeconfig = cluster.download_k8s_config()
    load_kubeconfig(kubeconfig)
    secret_id = env.secrets.store(
        cluster.get_organization_id(),
        f"cluster-{cluster.get_id()}-kubeconfig",
        KUBERNETES_SECRET_TYPE,
        {KUBECONFIG_KEY: base64.b64encode(kubeconfig).decode("ascii")},
        tags=_cluster_tags(cluster),
    )
    cluster.save_config_secret_id(secret_id)


def persist_kubernetes_keys(
    cluster: CommonCluster, env: HookEnvironment, params: NoParams
) -> None:
    """Keep the cluster's CA and client certificate as a tls secret."""
    credentials = current_credentials(cluster.get_k8s_config())
    if not credentials.certificate_authority_data and not credentials.client_certificate_data:
        env.logger.debug(f"Cluster {cluster.get_name()} has no TLS material to persist")
        return

    values = {"server": credentials.server}
    for key, data in (
        ("ca_data", credentials.certificate_authority_data),
        ("client_cert_data", credentials.client_certificate_data),
        ("client_key_data", credentials.client_key_data),
    ):
        if data:
            values[key] = base64.b64encode(data).decode("ascii")

    env.secrets.store(
        cluster.get_organization_id(),
        f"cluster-{cluster.get_id()}-tls",
        TLS_SECRET_TYPE,
        values,
        tags=_cluster_tags(cluster),
    )


def monitoring_targets_path(settings: Config) -> str:
    return os.path.join(settings.data_dir, "monitoring", "targets.yaml")


def write_monitoring_targets(env: HookEnvironment) -> int:
    """
    Regenerate the scrape targets of every cluster with a stored kubeconfig.

    Returns:
        int: The number of targets written.
    """
    targets = []
    for record in env.store.find_all():
        if record.status == ClusterStatus.DELETING or not record.config_secret_id:
            continue
        try:
            secret = env.secrets.get(record.organization_id, record.config_secret_id)
        except SecretNotFoundError:
            env.logger.debug(f"Kubeconfig secret of cluster {record.name} is gone")
            continue

        server = current_credentials(base64.b64decode(secret.values[KUBECONFIG_KEY])).server
        targets.append(
            {
                "targets": [server],
                "labels": {
                    "cluster": record.name,
                    "clusterId": str(record.id),
                    "organizationId": str(record.organization_id),
                },
            }
        )

    with _monitoring_lock:
        write_file_atomic(monitoring_targets_path(env.settings), to_yaml({"clusters": targets}))
    return len(targets)


def update_monitoring_config(
    cluster: CommonCluster, env: HookEnvironment, params: NoParams
) -> None:
    count = write_monitoring_targets(env)
    env.logger.debug(f"Monitoring config now has {count} cluster(s)")


def install_helm_support(
    cluster: CommonCluster, env: HookEnvironment, params: InstallHelmParams
) -> None:
    """
    Prepare a cluster for Helm: the system namespace and a cluster-admin
    service account.

    Freshly created API servers often refuse requests for a while, so API
    errors are retried a bounded number of times.
    """
    api_client = env.k8s.for_cluster(cluster.get_id(), cluster.get_k8s_config())
    retrying = Retrying(
        stop=stop_after_attempt(params.maxAttempts),
        wait=wait_fixed(params.sleepSeconds),
        retry=retry_if_exception_type(ApiException),
        reraise=True,
    )
    for attempt in retrying:
        with attempt:
            if attempt.retry_state.attempt_number > 1:
                env.logger.info(
                    f"Retrying Helm support on {cluster.get_name()} "
                    f"({attempt.retry_state.attempt_number}/{params.maxAttempts})"
                )
            ensure_namespace(api_client, env.settings.cluster.systemNamespace)
            ensure_service_account(api_client, "kube-system", params.serviceAccount)
            ensure_cluster_role_binding(
                api_client,
                params.serviceAccount,
                "cluster-admin",
                "kube-system",
                params.serviceAccount,
            )


def register_domain(cluster: CommonCluster, env: HookEnvironment, params: NoParams) -> None:
    dns = env.settings.dns
    if not dns.enabled or not dns.baseDomain or env.dns is None:
        env.logger.debug("DNS registration is disabled")
        return
    org = cluster.get_organization_id()
    env.dns.register_domain(org, organization_domain(org, dns.baseDomain))


def unregister_domain(cluster: CommonCluster, env: HookEnvironment) -> None:
    """Remove the organization domain when its last cluster is deleted."""
    dns = env.settings.dns
    if not dns.enabled or not dns.baseDomain or env.dns is None:
        return
    org = cluster.get_organization_id()
    others = [r for r in env.store.find_by_organization(org) if r.id != cluster.get_id()]
    if others:
        env.logger.debug(f"Organization {org} still has clusters, keeping its domain")
        return
    env.dns.unregister_domain(org, organization_domain(org, dns.baseDomain))


def install_ingress_controller(
    cluster: CommonCluster, env: HookEnvironment, params: ChartParams
) -> None:
    install_chart(cluster, env, env.settings.charts.ingress, params)


def deploy_cluster_autoscaler(
    cluster: CommonCluster, env: HookEnvironment, params: Optional[ChartParams] = None
) -> None:
    """
    Install or upgrade the cluster autoscaler for the pools that autoscale.

    Clouds the autoscaler does not support and clusters without an
    autoscaling pool are skipped.
    """
    cloud_provider = AUTOSCALER_CLOUD_PROVIDERS.get(cluster.get_cloud())
    if cloud_provider is None:
        env.logger.debug(f"Cluster autoscaler does not support {cluster.get_cloud()}")
        return

    pools = [pool for pool in cluster.get_node_pools() if pool.autoscaling]
    if not pools:
        env.logger.info(f"No autoscaling node pool in cluster {cluster.get_name()}")
        return

    values: Dict[str, Any] = {
        "cloudProvider": cloud_provider,
        "autoDiscovery": {"clusterName": cluster.get_name()},
        "autoscalingGroups": [
            {
                "name": pool.provider_id or pool.name,
                "minSize": pool.min_count,
                "maxSize": pool.max_count,
            }
            for pool in pools
        ],
    }
    if cloud_provider == "aws":
        values["awsRegion"] = cluster.get_location()

    install_chart(
        cluster, env, env.settings.charts.autoscaler, params, values, upgrade_if_exists=True
    )


def install_horizontal_pod_autoscaler(
    cluster: CommonCluster, env: HookEnvironment, params: ChartParams
) -> None:
    install_chart(cluster, env, env.settings.charts.metricsServer, params)


def create_pipeline_namespace(
    cluster: CommonCluster, env: HookEnvironment, params: NamespaceParams
) -> None:
    api_client = env.k8s.for_cluster(cluster.get_id(), cluster.get_k8s_config())
    ensure_namespace(api_client, params.namespace or env.settings.cluster.systemNamespace)


def label_node_pools(
    cluster: CommonCluster, env: HookEnvironment, params: LabelNodesParams
) -> None:
    labels_by_pool = {
        pool.name: {**pool.labels, **params.labels.get(pool.name, {})}
        for pool in cluster.get_node_pools()
    }
    api_client = env.k8s.for_cluster(cluster.get_id(), cluster.get_k8s_config())
    patched = label_nodes(api_client, labels_by_pool)
    env.logger.debug(f"Labelled {patched} node(s) of cluster {cluster.get_name()}")


def install_monitoring(cluster: CommonCluster, env: HookEnvironment, params: ChartParams) -> None:
    install_chart(cluster, env, env.settings.charts.monitoring, params)
    cluster.set_monitoring(True)


def install_logging(cluster: CommonCluster, env: HookEnvironment, params: ChartParams) -> None:
    install_chart(cluster, env, env.settings.charts.logging, params)
    cluster.set_logging(True)


def install_service_mesh(
    cluster: CommonCluster, env: HookEnvironment, params: ChartParams
) -> None:
    install_chart(cluster, env, env.settings.charts.serviceMesh, params)
    cluster.set_service_mesh(True)


def install_anchore_image_validator(
    cluster: CommonCluster, env: HookEnvironment, params: ChartParams
) -> None:
    install_chart(cluster, env, env.settings.charts.imageValidator, params)
    cluster.set_security_scan(True)
