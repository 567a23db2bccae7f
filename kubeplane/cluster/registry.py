from __future__ import annotations

import logging
import uuid
from typing import Dict, Optional, Tuple, Type

from kubeplane.cluster.common import CommonCluster
from kubeplane.cluster.eks import eks_program, eks_stack_config
from kubeplane.cluster.providers.alibaba import AckCluster
from kubeplane.cluster.providers.amazon import Ec2Cluster, EksCluster
from kubeplane.cluster.providers.azure import AksCluster
from kubeplane.cluster.providers.dummy import DummyCluster
from kubeplane.cluster.providers.google import GkeCluster
from kubeplane.cluster.providers.kubernetes import KubernetesCluster
from kubeplane.cluster.providers.managed import ManagedCluster
from kubeplane.cluster.providers.oracle import OkeCluster
from kubeplane.cluster.provisioner import (
    Provisioner,
    PulumiProvisioner,
    UnconfiguredProvisioner,
)
from kubeplane.cluster.secrets import SecretStore
from kubeplane.cluster.store import ClusterStore
from kubeplane.errors import UnsupportedProviderError
from kubeplane.logger import logger as default_logger
from kubeplane.model.cluster import ClusterRecord, CloudProvider, Distribution
from kubeplane.model.nodepool import apply_node_pool_delta, compute_node_pool_delta
from kubeplane.model.requests import ClusterCreateRequest

DEFAULT_DISTRIBUTIONS: Dict[CloudProvider, Distribution] = {
    CloudProvider.AMAZON: Distribution.EKS,
    CloudProvider.AZURE: Distribution.AKS,
    CloudProvider.GOOGLE: Distribution.GKE,
    CloudProvider.ALIBABA: Distribution.ACK,
    CloudProvider.ORACLE: Distribution.OKE,
    CloudProvider.KUBERNETES: Distribution.KUBERNETES,
    CloudProvider.DUMMY: Distribution.DUMMY,
}


class ProviderRegistry:
    """
    Maps distributions to cluster classes and builds cluster handles from
    stored records or creation requests.

    Managed distributions also need a provisioner. Dummy clusters bring their
    own.
    """

    def __init__(
        self,
        store: ClusterStore,
        secrets: SecretStore,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._store = store
        self._secrets = secrets
        self._logger = logger or default_logger
        self._classes: Dict[Distribution, Type[CommonCluster]] = {}
        self._provisioners: Dict[Distribution, Provisioner] = {}

    def register(
        self,
        distribution: Distribution,
        cluster_class: Type[CommonCluster],
        provisioner: Optional[Provisioner] = None,
    ) -> None:
        self._classes[distribution] = cluster_class
        if provisioner is not None:
            self._provisioners[distribution] = provisioner

    def set_provisioner(self, distribution: Distribution, provisioner: Provisioner) -> None:
        self._provisioners[distribution] = provisioner

    def resolve(
        self, cloud: str, distribution: Optional[str] = None
    ) -> Tuple[CloudProvider, Distribution, Type[CommonCluster]]:
        """
        Resolve the cloud and distribution tags of a request.

        Raises:
            UnsupportedProviderError: If the tags are unknown or do not belong together.
        """
        try:
            cloud_tag = CloudProvider(cloud)
        except ValueError:
            raise UnsupportedProviderError(f"unsupported cloud: {cloud}")

        if distribution:
            try:
                distribution_tag = Distribution(distribution)
            except ValueError:
                raise UnsupportedProviderError(f"unsupported distribution: {distribution}")
        else:
            distribution_tag = DEFAULT_DISTRIBUTIONS[cloud_tag]

        cluster_class = self._classes.get(distribution_tag)
        if cluster_class is None or getattr(cluster_class, "CLOUD", None) != cloud_tag:
            raise UnsupportedProviderError(
                f"distribution {distribution_tag.value} is not supported on {cloud_tag.value}"
            )
        return cloud_tag, distribution_tag, cluster_class

    def _build(self, cluster_class: Type[CommonCluster], record: ClusterRecord) -> CommonCluster:
        if issubclass(cluster_class, DummyCluster):
            return cluster_class(
                record,
                self._store,
                self._secrets,
                self._provisioners.get(Distribution.DUMMY),
                self._logger,
            )
        if issubclass(cluster_class, ManagedCluster):
            provisioner = self._provisioners.get(
                record.distribution, UnconfiguredProvisioner(record.distribution)
            )
            return cluster_class(record, self._store, self._secrets, provisioner, self._logger)
        return cluster_class(record, self._store, self._secrets, self._logger)  # type: ignore

    def from_record(self, record: ClusterRecord) -> CommonCluster:
        _, _, cluster_class = self.resolve(record.cloud.value, record.distribution.value)
        return self._build(cluster_class, record)

    def from_request(
        self,
        request: ClusterCreateRequest,
        organization_id: int,
        user_id: Optional[int] = None,
    ) -> CommonCluster:
        """
        Build an unpersisted cluster in CREATING from a creation request.

        Raises:
            UnsupportedProviderError: If the provider cannot be served.
            InvalidRequestError: If the request lacks provider specific fields.
        """
        cloud, distribution, cluster_class = self.resolve(request.cloud, request.distribution)
        if (
            issubclass(cluster_class, ManagedCluster)
            and not issubclass(cluster_class, DummyCluster)
            and distribution not in self._provisioners
        ):
            raise UnsupportedProviderError(
                f"no provisioner configured for {distribution.value}"
            )
        node_pools = apply_node_pool_delta(
            [], compute_node_pool_delta([], request.nodePools, user_id)
        )
        record = ClusterRecord(
            uid=str(uuid.uuid4()),
            organization_id=organization_id,
            created_by=user_id,
            name=request.name,
            cloud=cloud,
            distribution=distribution,
            location=request.location,
            ttl_minutes=request.ttlMinutes,
            secret_id=request.secretId,
            ssh_secret_id=request.sshSecretId,
            node_pools=node_pools,
            scale_options=request.scaleOptions,
            post_hooks=list(request.postHooks),
            provider=cluster_class.build_payload(request, distribution),  # type: ignore
        )
        return self._build(cluster_class, record)


def default_registry(
    store: ClusterStore,
    secrets: SecretStore,
    logger: Optional[logging.Logger] = None,
) -> ProviderRegistry:
    """
    A registry with every provider. EKS is provisioned through Pulumi; the
    other managed distributions need a provisioner set before use.
    """
    registry = ProviderRegistry(store, secrets, logger)
    registry.register(
        Distribution.EKS,
        EksCluster,
        PulumiProvisioner(eks_program, eks_stack_config, logger),
    )
    registry.register(Distribution.EC2, Ec2Cluster)
    registry.register(Distribution.AKS, AksCluster)
    registry.register(Distribution.GKE, GkeCluster)
    registry.register(Distribution.ACK, AckCluster)
    registry.register(Distribution.ACSK, AckCluster)
    registry.register(Distribution.OKE, OkeCluster)
    registry.register(Distribution.KUBERNETES, KubernetesCluster)
    registry.register(Distribution.DUMMY, DummyCluster)
    return registry
