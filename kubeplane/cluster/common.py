from __future__ import annotations

import base64
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from kubeplane.cluster.secrets import KUBECONFIG_KEY, SecretStore
from kubeplane.cluster.store import ClusterStore
from kubeplane.errors import ClusterNotFoundError, IllegalTransitionError, NoChangesError
from kubeplane.logger import logger as default_logger
from kubeplane.model.cluster import ClusterRecord
from kubeplane.model.nodepool import NodePool
from kubeplane.model.requests import (
    ClusterCreateRequest,
    ClusterUpdateRequest,
    NodePoolUpdateRequest,
    ScaleOptions,
)
from kubeplane.model.responses import ClusterStatusResponse, NodePoolStatus
from kubeplane.model.status import (
    ClusterStatus,
    StatusChange,
    get_cluster_start_time,
    is_valid_transition,
)


class CommonCluster(ABC):
    """
    The capability surface shared by every cluster, whatever its provider.

    The manager, the strategy objects and the post hooks only talk to this
    class. Subclasses implement provisioning against one cloud or
    distribution; state handling and persistence live here.
    """

    def __init__(
        self,
        record: ClusterRecord,
        store: ClusterStore,
        secrets: SecretStore,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._record = record
        self._store = store
        self._secrets = secrets
        self._logger = logger or default_logger

    # Provider specific capabilities

    @abstractmethod
    def create_cluster(self) -> None:
        """Provision the cluster. Calling it twice for one record is not supported."""

    @abstractmethod
    def update_cluster(self, request: ClusterUpdateRequest, user_id: Optional[int]) -> None:
        """Apply a validated update request."""

    @abstractmethod
    def update_node_pools(self, request: NodePoolUpdateRequest, user_id: Optional[int]) -> None:
        """Resize existing node pools."""

    @abstractmethod
    def delete_cluster(self) -> None:
        """Tear down provider resources. Resources that are already gone are not an error."""

    @abstractmethod
    def download_k8s_config(self) -> bytes:
        """Fetch a kubeconfig from the provider."""

    @abstractmethod
    def validate_creation_fields(self, request: ClusterCreateRequest) -> None:
        """
        Pre-flight check of a creation request.

        Raises:
            ProviderValidationError: If the provider rejects the request.
        """

    @abstractmethod
    def requires_ssh_public_key(self) -> bool:
        pass

    def check_equality_to_update(self, request: ClusterUpdateRequest) -> None:
        """
        Raise if the update request would not change anything.

        Clusters that cannot change their infrastructure always raise, which
        still lets TTL and scale option updates through.

        Raises:
            NoChangesError: If the request is a no-op.
        """
        raise NoChangesError()

    def add_defaults_to_update(self, request: ClusterUpdateRequest) -> None:
        if request.kubernetesVersion is None:
            request.kubernetesVersion = self.get_kubernetes_version()

    # Shared state handling

    @property
    def model(self) -> ClusterRecord:
        return self._record

    def get_id(self) -> int:
        if self._record.id is None:
            raise ClusterNotFoundError(f"cluster {self._record.name} is not persisted yet")
        return self._record.id

    def get_uid(self) -> str:
        return self._record.uid

    def get_name(self) -> str:
        return self._record.name

    def get_organization_id(self) -> int:
        return self._record.organization_id

    def get_location(self) -> str:
        return self._record.location

    def get_cloud(self) -> str:
        return self._record.cloud.value

    def get_distribution(self) -> str:
        return self._record.distribution.value

    def get_kubernetes_version(self) -> Optional[str]:
        return getattr(self._record.provider, "kubernetes_version", None)

    def get_node_pools(self) -> List[NodePool]:
        return list(self._record.node_pools)

    def get_secret_id(self) -> Optional[str]:
        return self._record.secret_id

    def set_secret_id(self, secret_id: Optional[str]) -> None:
        self._record.secret_id = secret_id

    def get_ssh_secret_id(self) -> Optional[str]:
        return self._record.ssh_secret_id

    def save_ssh_secret_id(self, secret_id: str) -> None:
        self._record.ssh_secret_id = secret_id
        self.persist()

    def get_config_secret_id(self) -> Optional[str]:
        return self._record.config_secret_id

    def save_config_secret_id(self, secret_id: str) -> None:
        self._record.config_secret_id = secret_id
        self.persist()

    def get_ttl(self) -> int:
        return self._record.ttl_minutes

    def set_ttl(self, ttl_minutes: int) -> None:
        self._record.ttl_minutes = ttl_minutes

    def get_scale_options(self) -> Optional[ScaleOptions]:
        return self._record.scale_options

    def set_scale_options(self, scale_options: Optional[ScaleOptions]) -> None:
        self._record.scale_options = scale_options

    def set_logging(self, enabled: bool) -> None:
        self._record.logging = enabled
        self.persist()

    def set_monitoring(self, enabled: bool) -> None:
        self._record.monitoring = enabled
        self.persist()

    def set_service_mesh(self, enabled: bool) -> None:
        self._record.service_mesh = enabled
        self.persist()

    def set_security_scan(self, enabled: bool) -> None:
        self._record.security_scan = enabled
        self.persist()

    def get_credentials(self) -> Dict[str, str]:
        """The values of the cloud credential secret, empty when none is set."""
        if not self._record.secret_id:
            return {}
        return self._secrets.get(self.get_organization_id(), self._record.secret_id).values

    def get_k8s_config(self) -> bytes:
        """
        Return the cluster's kubeconfig.

        The copy saved in the secret store by the store kubeconfig hook is
        preferred. Without one, the provider is asked for a fresh copy.
        """
        if self._record.config_secret_id:
            secret = self._secrets.get(
                self.get_organization_id(), self._record.config_secret_id
            )
            return base64.b64decode(secret.values[KUBECONFIG_KEY])
        return self.download_k8s_config()

    # Checklist of creation steps that already succeeded

    def is_step_done(self, step: str) -> bool:
        return step in self._record.completed_steps

    def mark_step_done(self, step: str) -> None:
        if step not in self._record.completed_steps:
            self._record.completed_steps.append(step)
            self.persist()

    def reset_steps(self) -> None:
        self._record.completed_steps = []
        self.persist()

    # Persistence

    def persist(self) -> None:
        """Create the record if it is new, otherwise save it."""
        if self._record.id is None:
            self._record = self._store.create(self._record)
            self._store.append_status_change(
                StatusChange(
                    cluster_id=self.get_id(),
                    to_status=self._record.status,
                    to_status_message=self._record.status_message,
                )
            )
        else:
            self._store.save(self._record)

    def set_status(self, status: ClusterStatus, message: str) -> None:
        """
        Move the cluster to a new status and record the change.

        Setting the current status and message again is a no-op.

        Raises:
            IllegalTransitionError: If the lifecycle does not allow the move.
        """
        current = self._record.status
        if self._record.id is None:
            self._record.status = status
            self._record.status_message = message
            return

        if current == status and self._record.status_message == message:
            return

        if not is_valid_transition(current, status):
            raise IllegalTransitionError(
                f"cluster {self.get_name()} cannot move from {current.value} to {status.value}"
            )

        # The history entry is written before the record changes
        self._store.append_status_change(
            StatusChange(
                cluster_id=self.get_id(),
                from_status=current,
                from_status_message=self._record.status_message,
                to_status=status,
                to_status_message=message,
            )
        )
        self._logger.debug(
            f"Cluster {self.get_name()} status {current.value} -> {status.value}: {message}"
        )
        self._record.status = status
        self._record.status_message = message
        self.persist()

    def get_status(self) -> ClusterStatusResponse:
        record = self._record
        return ClusterStatusResponse(
            id=self.get_id(),
            uid=record.uid,
            name=record.name,
            organization_id=record.organization_id,
            cloud=record.cloud.value,
            distribution=record.distribution.value,
            location=record.location,
            status=record.status,
            status_message=record.status_message,
            ttl_minutes=record.ttl_minutes,
            start_time=get_cluster_start_time(self._store.status_history(self.get_id())),
            created_at=record.created_at,
            updated_at=record.updated_at,
            created_by=record.created_by,
            logging=record.logging,
            monitoring=record.monitoring,
            service_mesh=record.service_mesh,
            security_scan=record.security_scan,
            node_pools={
                pool.name: NodePoolStatus(
                    instance_type=pool.instance_type,
                    count=pool.count,
                    min_count=pool.min_count,
                    max_count=pool.max_count,
                    autoscaling=pool.autoscaling,
                    image=pool.image,
                )
                for pool in record.node_pools
            },
        )

    def reload(self) -> None:
        self._record = self._store.get(self.get_id())

    def delete_from_database(self) -> None:
        self._store.delete(self.get_id())
