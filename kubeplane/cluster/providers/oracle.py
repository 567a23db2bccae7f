from __future__ import annotations

from kubeplane.cluster.providers.managed import ManagedCluster
from kubeplane.model.cluster import CloudProvider, Distribution, OkePayload
from kubeplane.model.requests import ClusterCreateRequest


class OkeCluster(ManagedCluster):
    CLOUD = CloudProvider.ORACLE
    DISTRIBUTIONS = frozenset({Distribution.OKE})
    # e.g. us-ashburn-1
    LOCATION_PATTERN = r"^[a-z]{2}-[a-z]+-\d+$"

    @classmethod
    def build_payload(cls, request: ClusterCreateRequest, distribution: Distribution) -> OkePayload:
        return OkePayload(
            kubernetes_version=request.kubernetesVersion,
            compartment_id=cls.require_property(request, "compartmentId"),
        )
