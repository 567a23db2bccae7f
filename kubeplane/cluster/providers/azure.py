from __future__ import annotations

from kubeplane.cluster.providers.managed import ManagedCluster
from kubeplane.model.cluster import AksPayload, CloudProvider, Distribution
from kubeplane.model.requests import ClusterCreateRequest


class AksCluster(ManagedCluster):
    """
    Azure Kubernetes Service. Node pools need an SSH public key.
    """

    CLOUD = CloudProvider.AZURE
    DISTRIBUTIONS = frozenset({Distribution.AKS})
    # e.g. westeurope, eastus2
    LOCATION_PATTERN = r"^[a-z]+[a-z0-9]*$"
    REQUIRES_SSH_KEY = True

    @classmethod
    def build_payload(cls, request: ClusterCreateRequest, distribution: Distribution) -> AksPayload:
        return AksPayload(
            kubernetes_version=request.kubernetesVersion,
            resource_group=cls.require_property(request, "resourceGroup"),
        )
