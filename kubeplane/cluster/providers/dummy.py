from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from kubeplane.cluster.providers.managed import ManagedCluster
from kubeplane.cluster.secrets import SecretStore
from kubeplane.cluster.store import ClusterStore
from kubeplane.errors import ProviderValidationError
from kubeplane.kubeconfig import dummy_kubeconfig
from kubeplane.model.cluster import ClusterRecord, CloudProvider, Distribution, DummyPayload
from kubeplane.model.nodepool import NodePool
from kubeplane.model.requests import ClusterCreateRequest


class DummyProvisioner:
    """
    Pretends to provision. Nodes are counted so callers can observe updates.
    """

    def provision(self, record: ClusterRecord, credentials: Dict[str, str]) -> Dict[str, Any]:
        return {"node_count": sum(pool.count for pool in record.node_pools)}

    def update(
        self,
        record: ClusterRecord,
        delta: List[NodePool],
        credentials: Dict[str, str],
    ) -> Dict[str, Any]:
        return {"node_count": sum(pool.count for pool in record.node_pools)}

    def destroy(self, record: ClusterRecord, credentials: Dict[str, str]) -> None:
        pass

    def kubeconfig(self, record: ClusterRecord, credentials: Dict[str, str]) -> bytes:
        return dummy_kubeconfig()


class DummyCluster(ManagedCluster):
    """
    A cluster without any cloud behind it, used to exercise the lifecycle.
    """

    CLOUD = CloudProvider.DUMMY
    DISTRIBUTIONS = frozenset({Distribution.DUMMY})
    REQUIRES_SSH_KEY = True

    def __init__(
        self,
        record: ClusterRecord,
        store: ClusterStore,
        secrets: SecretStore,
        provisioner: Optional[DummyProvisioner] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        super().__init__(record, store, secrets, provisioner or DummyProvisioner(), logger)

    @classmethod
    def build_payload(cls, request: ClusterCreateRequest, distribution: Distribution) -> DummyPayload:
        payload = DummyPayload()
        if request.kubernetesVersion:
            payload.kubernetes_version = request.kubernetesVersion
        return payload

    def validate_creation_fields(self, request: ClusterCreateRequest) -> None:
        for name, pool in request.nodePools.items():
            if not pool.instanceType:
                raise ProviderValidationError(f"instanceType is required for node pool {name}")
