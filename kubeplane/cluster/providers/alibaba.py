from __future__ import annotations

from kubeplane.cluster.providers.managed import ManagedCluster
from kubeplane.model.cluster import AckPayload, CloudProvider, Distribution
from kubeplane.model.requests import ClusterCreateRequest


class AckCluster(ManagedCluster):
    """
    Alibaba Container Service for Kubernetes.

    ACSK is the older name of the same service and shares this variant; the
    record keeps the distribution it was requested with.
    """

    CLOUD = CloudProvider.ALIBABA
    DISTRIBUTIONS = frozenset({Distribution.ACK, Distribution.ACSK})
    # e.g. cn-hangzhou, ap-southeast-1
    LOCATION_PATTERN = r"^[a-z]{2}-[a-z]+(-\d+)?$"

    @classmethod
    def build_payload(cls, request: ClusterCreateRequest, distribution: Distribution) -> AckPayload:
        return AckPayload(
            distribution=distribution.value,
            kubernetes_version=request.kubernetesVersion,
            zone_id=request.properties.get("zoneId"),
        )
