from __future__ import annotations

from kubeplane.cluster.providers.managed import ManagedCluster
from kubeplane.model.cluster import CloudProvider, Distribution, GkePayload
from kubeplane.model.requests import ClusterCreateRequest


class GkeCluster(ManagedCluster):
    CLOUD = CloudProvider.GOOGLE
    DISTRIBUTIONS = frozenset({Distribution.GKE})
    # A region (europe-west1) or a zone (europe-west1-b)
    LOCATION_PATTERN = r"^[a-z]+-[a-z]+\d+(-[a-z])?$"

    @classmethod
    def build_payload(cls, request: ClusterCreateRequest, distribution: Distribution) -> GkePayload:
        return GkePayload(
            kubernetes_version=request.kubernetesVersion,
            project_id=cls.require_property(request, "projectId"),
        )
