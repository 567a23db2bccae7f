from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List, Optional

from kubernetes import client, config
from kubernetes.client.exceptions import ApiException
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from kubeplane.constants import DELETE_RESOURCES_ATTEMPTS
from kubeplane.kubeconfig import load_kubeconfig
from kubeplane.logger import logger as default_logger

# Namespaces whose workloads are left alone when a cluster is emptied
PROTECTED_NAMESPACES = ["kube-system"]


class KubernetesClientFactory:
    """
    Builds API clients from kubeconfig blobs and caches one per cluster.
    """

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or default_logger
        self._clients: Dict[int, client.ApiClient] = {}
        self._lock = threading.Lock()

    def new_client(self, kubeconfig: bytes) -> client.ApiClient:
        """
        Create an API client for the current context of a kubeconfig.

        Raises:
            ValueError: If the kubeconfig cannot be parsed.
        """
        configuration = client.Configuration()
        config.load_kube_config_from_dict(
            load_kubeconfig(kubeconfig), client_configuration=configuration
        )
        return client.ApiClient(configuration)

    def for_cluster(self, cluster_id: int, kubeconfig: bytes) -> client.ApiClient:
        with self._lock:
            api_client = self._clients.get(cluster_id)
            if api_client is None:
                api_client = self.new_client(kubeconfig)
                self._clients[cluster_id] = api_client
            return api_client

    def evict(self, cluster_id: int) -> None:
        with self._lock:
            api_client = self._clients.pop(cluster_id, None)
        if api_client is not None:
            self._logger.debug(f"Evicted Kubernetes client of cluster {cluster_id}")
            api_client.close()


def ensure_namespace(api_client: client.ApiClient, name: str) -> None:
    """
    Creates a namespace if it does not exist yet.

    Raises:
        ApiException: If an error other than a conflict occurs.
    """
    api = client.CoreV1Api(api_client)
    namespace = client.V1Namespace(metadata=client.V1ObjectMeta(name=name))
    try:
        api.create_namespace(body=namespace)
    except ApiException as e:
        if e.status == 409:  # Conflict, namespace already exists
            pass
        else:
            raise


def ensure_service_account(api_client: client.ApiClient, namespace: str, name: str) -> None:
    api = client.CoreV1Api(api_client)
    service_account = client.V1ServiceAccount(
        metadata=client.V1ObjectMeta(name=name, namespace=namespace),
    )
    try:
        api.create_namespaced_service_account(namespace, service_account)
    except ApiException as e:
        if e.status != 409:
            raise


def ensure_cluster_role_binding(
    api_client: client.ApiClient,
    name: str,
    role_name: str,
    subject_namespace: str,
    service_account_name: str,
) -> None:
    """
    Binds a service account to a cluster role, replacing an existing binding
    of the same name.
    """
    api = client.RbacAuthorizationV1Api(api_client)
    binding = client.V1ClusterRoleBinding(
        metadata=client.V1ObjectMeta(name=name),
        role_ref=client.V1RoleRef(
            api_group="rbac.authorization.k8s.io", kind="ClusterRole", name=role_name
        ),
        subjects=[
            client.RbacV1Subject(
                kind="ServiceAccount",
                name=service_account_name,
                namespace=subject_namespace,
            )
        ],
    )
    try:
        api.read_cluster_role_binding(name)
        api.replace_cluster_role_binding(name, binding)
    except ApiException as e:
        if e.status == 404:
            api.create_cluster_role_binding(binding)
        else:
            raise


def label_nodes(api_client: client.ApiClient, labels_by_pool: Dict[str, Dict[str, str]]) -> int:
    """
    Adds labels to the nodes of each node pool.

    Nodes are matched through their "nodepool" label.

    Args:
        api_client (client.ApiClient): The cluster's API client.
        labels_by_pool (Dict[str, Dict[str, str]]): Labels to add, by node pool name.

    Returns:
        int: The number of nodes patched.
    """
    api = client.CoreV1Api(api_client)
    patched = 0
    for pool, labels in labels_by_pool.items():
        if not labels:
            continue
        nodes = api.list_node(label_selector=f"nodepool={pool}")
        for node in nodes.items:
            api.patch_node(node.metadata.name, {"metadata": {"labels": labels}})
            patched += 1
    return patched


def _delete_each(
    kind: str,
    items: List[object],
    delete: Callable[[str, str], object],
    logger: logging.Logger,
    skip: Optional[Callable[[object], bool]] = None,
) -> None:
    for item in items:
        metadata = item.metadata  # type: ignore
        if metadata.namespace in PROTECTED_NAMESPACES:
            continue
        if skip is not None and skip(item):
            continue
        try:
            delete(metadata.name, metadata.namespace)
            logger.debug(f"{kind} '{metadata.namespace}/{metadata.name}' deleted.")
        except ApiException as e:
            if e.status != 404:
                raise


def _is_default_kubernetes_service(service: object) -> bool:
    metadata = service.metadata  # type: ignore
    return metadata.namespace == "default" and metadata.name == "kubernetes"


@retry(
    stop=stop_after_attempt(DELETE_RESOURCES_ATTEMPTS),
    wait=wait_fixed(1),
    retry=retry_if_exception_type(ApiException),
    reraise=True,
)
def delete_all_resources(
    api_client: client.ApiClient, logger: Optional[logging.Logger] = None
) -> None:
    """
    Deletes Services, Deployments, DaemonSets, StatefulSets and ReplicaSets in
    every namespace except kube-system.

    Services go first so cloud load balancers are released before the
    cluster disappears. The API server's own "kubernetes" service is kept.

    Raises:
        ApiException: If a deletion still fails after the last attempt.
    """
    logger = logger or default_logger
    core = client.CoreV1Api(api_client)
    apps = client.AppsV1Api(api_client)

    _delete_each(
        "Service",
        core.list_service_for_all_namespaces().items,
        lambda name, ns: core.delete_namespaced_service(name, ns),
        logger,
        skip=_is_default_kubernetes_service,
    )
    _delete_each(
        "Deployment",
        apps.list_deployment_for_all_namespaces().items,
        lambda name, ns: apps.delete_namespaced_deployment(name, ns),
        logger,
    )
    _delete_each(
        "DaemonSet",
        apps.list_daemon_set_for_all_namespaces().items,
        lambda name, ns: apps.delete_namespaced_daemon_set(name, ns),
        logger,
    )
    _delete_each(
        "StatefulSet",
        apps.list_stateful_set_for_all_namespaces().items,
        lambda name, ns: apps.delete_namespaced_stateful_set(name, ns),
        logger,
    )
    _delete_each(
        "ReplicaSet",
        apps.list_replica_set_for_all_namespaces().items,
        lambda name, ns: apps.delete_namespaced_replica_set(name, ns),
        logger,
    )
