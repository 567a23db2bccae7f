from __future__ import annotations

import logging
import re
from abc import abstractmethod
from typing import Any, ClassVar, Dict, FrozenSet, List, Optional

from kubeplane.cluster.common import CommonCluster
from kubeplane.cluster.provisioner import Provisioner
from kubeplane.cluster.secrets import SecretStore
from kubeplane.cluster.store import ClusterStore
from kubeplane.errors import NoChangesError, ProviderValidationError, ResourceNotFoundError
from kubeplane.model.cluster import ClusterRecord, CloudProvider, Distribution
from kubeplane.model.nodepool import (
    NodePool,
    apply_node_pool_delta,
    compute_node_pool_delta,
    resize_node_pools,
)
from kubeplane.model.requests import (
    ClusterCreateRequest,
    ClusterUpdateRequest,
    NodePoolRequest,
    NodePoolUpdateRequest,
)


class ManagedCluster(CommonCluster):
    """
    A cluster whose infrastructure is driven through a Provisioner.

    Subclasses declare their cloud, the distributions they serve, how a
    location looks like and build their typed provider payload.
    """

    CLOUD: ClassVar[CloudProvider]
    DISTRIBUTIONS: ClassVar[FrozenSet[Distribution]]
    LOCATION_PATTERN: ClassVar[str] = r"^[a-z0-9-]+$"
    REQUIRES_SSH_KEY: ClassVar[bool] = False

    def __init__(
        self,
        record: ClusterRecord,
        store: ClusterStore,
        secrets: SecretStore,
        provisioner: Provisioner,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        super().__init__(record, store, secrets, logger)
        self._provisioner = provisioner

    @classmethod
    @abstractmethod
    def build_payload(cls, request: ClusterCreateRequest, distribution: Distribution) -> Any:
        """Build the typed provider payload of a new cluster."""

    @staticmethod
    def require_property(request: ClusterCreateRequest, key: str) -> str:
        value = request.properties.get(key)
        if not value:
            raise ProviderValidationError(f"properties.{key} is required")
        return str(value)

    def requires_ssh_public_key(self) -> bool:
        return self.REQUIRES_SSH_KEY

    def apply_outputs(self, outputs: Dict[str, Any]) -> None:
        """Copy provisioner outputs, such as resource ids, into the payload."""
        for key, value in outputs.items():
            if key in type(self._record.provider).model_fields and key != "distribution":
                setattr(self._record.provider, key, value)

    def create_cluster(self) -> None:
        outputs = self._provisioner.provision(self._record, self.get_credentials())
        self.apply_outputs(outputs)
        self.persist()

    def validate_creation_fields(self, request: ClusterCreateRequest) -> None:
        if not request.location:
            raise ProviderValidationError("location is required")
        if not re.match(self.LOCATION_PATTERN, request.location):
            raise ProviderValidationError(
                f"invalid location {request.location} for {self.CLOUD.value}"
            )
        if not request.nodePools:
            raise ProviderValidationError("at least one node pool is required")
        for name, pool in request.nodePools.items():
            if not pool.instanceType:
                raise ProviderValidationError(f"instanceType is required for node pool {name}")
        self.validate_provider_fields(request)

    def validate_provider_fields(self, request: ClusterCreateRequest) -> None:
        """Checks that need the provider's API. No-op by default."""

    def add_defaults_to_update(self, request: ClusterUpdateRequest) -> None:
        super().add_defaults_to_update(request)
        if request.nodePools is None:
            request.nodePools = {
                pool.name: NodePoolRequest(
                    instanceType=pool.instance_type,
                    minCount=pool.min_count,
                    maxCount=pool.max_count,
                    count=pool.count,
                    autoscaling=pool.autoscaling,
                    image=pool.image,
                    diskSizeGb=pool.disk_size_gb,
                    labels=dict(pool.labels),
                )
                for pool in self._record.node_pools
            }
            return

        for name, requested in request.nodePools.items():
            stored = self._record.node_pool(name)
            if stored is None:
                continue
            if requested.instanceType is None:
                requested.instanceType = stored.instance_type
            if requested.image is None:
                requested.image = stored.image
            if requested.diskSizeGb is None:
                requested.diskSizeGb = stored.disk_size_gb

    def check_equality_to_update(self, request: ClusterUpdateRequest) -> None:
        version_changed = (
            request.kubernetesVersion is not None
            and request.kubernetesVersion != self.get_kubernetes_version()
        )
        delta: List[NodePool] = []
        if request.nodePools is not None:
            delta = compute_node_pool_delta(self._record.node_pools, request.nodePools, None)
        if not delta and not version_changed:
            raise NoChangesError()

    def update_cluster(self, request: ClusterUpdateRequest, user_id: Optional[int]) -> None:
        delta: List[NodePool] = []
        updated = self._record.model_copy(deep=True)
        if request.nodePools is not None:
            delta = compute_node_pool_delta(self._record.node_pools, request.nodePools, user_id)
            updated.node_pools = apply_node_pool_delta(self._record.node_pools, delta)
        if request.kubernetesVersion and hasattr(updated.provider, "kubernetes_version"):
            updated.provider.kubernetes_version = request.kubernetesVersion

        self._logger.info(f"Updating cluster {self.get_name()} with {len(delta)} node pool change(s)")
        outputs = self._provisioner.update(updated, delta, self.get_credentials())

        self._record.node_pools = updated.node_pools
        self._record.provider = updated.provider
        self.apply_outputs(outputs)
        self.persist()

    def update_node_pools(self, request: NodePoolUpdateRequest, user_id: Optional[int]) -> None:
        resized = resize_node_pools(self._record.node_pools, request.nodePools)
        delta = [pool for pool in resized if pool.name in request.nodePools]
        updated = self._record.model_copy(deep=True)
        updated.node_pools = resized

        self._provisioner.update(updated, delta, self.get_credentials())

        self._record.node_pools = resized
        self.persist()

    def delete_cluster(self) -> None:
        try:
            self._provisioner.destroy(self._record, self.get_credentials())
        except ResourceNotFoundError:
            self._logger.info(f"Cluster {self.get_name()} resources are already gone")

    def download_k8s_config(self) -> bytes:
        return self._provisioner.kubeconfig(self._record, self.get_credentials())
