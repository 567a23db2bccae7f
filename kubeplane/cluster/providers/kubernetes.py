from __future__ import annotations

import base64
import binascii
from typing import Optional

from kubeplane.cluster.common import CommonCluster
from kubeplane.cluster.secrets import KUBECONFIG_KEY
from kubeplane.errors import InvalidRequestError, ProviderValidationError
from kubeplane.kubeconfig import load_kubeconfig
from kubeplane.model.cluster import CloudProvider, Distribution, KubernetesPayload
from kubeplane.model.requests import (
    ClusterCreateRequest,
    ClusterUpdateRequest,
    NodePoolUpdateRequest,
)


class KubernetesCluster(CommonCluster):
    """
    A cluster brought by the user. Its kubeconfig is the credential secret,
    and the control plane never touches its infrastructure.
    """

    CLOUD = CloudProvider.KUBERNETES
    DISTRIBUTIONS = frozenset({Distribution.KUBERNETES})

    @classmethod
    def build_payload(
        cls, request: ClusterCreateRequest, distribution: Distribution
    ) -> KubernetesPayload:
        metadata = request.properties.get("metadata") or {}
        return KubernetesPayload(metadata={str(k): str(v) for k, v in metadata.items()})

    def requires_ssh_public_key(self) -> bool:
        return False

    def validate_creation_fields(self, request: ClusterCreateRequest) -> None:
        try:
            load_kubeconfig(self.download_k8s_config())
        except (binascii.Error, ValueError) as e:
            raise ProviderValidationError(f"invalid kubeconfig: {e}") from e

    def create_cluster(self) -> None:
        self._logger.info(f"Importing cluster {self.get_name()}")
        self.persist()

    def update_cluster(self, request: ClusterUpdateRequest, user_id: Optional[int]) -> None:
        self.persist()

    def update_node_pools(self, request: NodePoolUpdateRequest, user_id: Optional[int]) -> None:
        raise InvalidRequestError("node pools of an imported cluster cannot be resized")

    def delete_cluster(self) -> None:
        self._logger.info(f"Cluster {self.get_name()} is imported, leaving its resources alone")

    def download_k8s_config(self) -> bytes:
        values = self.get_credentials()
        if KUBECONFIG_KEY not in values:
            raise ProviderValidationError(f"secret has no {KUBECONFIG_KEY} value")
        return base64.b64decode(values[KUBECONFIG_KEY])
