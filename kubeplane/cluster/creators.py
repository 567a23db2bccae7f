from __future__ import annotations

import logging
from typing import Optional, Protocol

from kubeplane.cluster.common import CommonCluster
from kubeplane.constants import INFRASTRUCTURE_STEP
from kubeplane.logger import logger as default_logger
from kubeplane.model.requests import ClusterCreateRequest


class ClusterCreator(Protocol):
    @property
    def cluster(self) -> CommonCluster: ...

    def validate(self) -> None: ...

    def prepare(self) -> CommonCluster: ...

    def create(self) -> CommonCluster: ...


class CommonClusterCreator:
    """
    Creates a cluster from a creation request.
    """

    def __init__(
        self,
        request: ClusterCreateRequest,
        cluster: CommonCluster,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._request = request
        self._cluster = cluster
        self._logger = logger or default_logger

    @property
    def cluster(self) -> CommonCluster:
        return self._cluster

    def validate(self) -> None:
        self._cluster.validate_creation_fields(self._request)

    def prepare(self) -> CommonCluster:
        """Persist the record in CREATING."""
        self._cluster.persist()
        return self._cluster

    def create(self) -> CommonCluster:
        self._logger.info(f"Creating cluster {self._cluster.get_name()}")
        self._cluster.create_cluster()
        self._cluster.mark_step_done(INFRASTRUCTURE_STEP)
        return self._cluster


class RecoveryClusterCreator:
    """
    Resumes the creation of a persisted cluster.

    Provisioning is skipped when the checklist says the infrastructure
    already exists.
    """

    def __init__(self, cluster: CommonCluster, logger: Optional[logging.Logger] = None) -> None:
        self._cluster = cluster
        self._logger = logger or default_logger

    @property
    def cluster(self) -> CommonCluster:
        return self._cluster

    def validate(self) -> None:
        pass

    def prepare(self) -> CommonCluster:
        return self._cluster

    def create(self) -> CommonCluster:
        if self._cluster.is_step_done(INFRASTRUCTURE_STEP):
            self._logger.info(
                f"Infrastructure of cluster {self._cluster.get_name()} exists, skipping provisioning"
            )
            return self._cluster

        self._logger.info(f"Recovering creation of cluster {self._cluster.get_name()}")
        self._cluster.create_cluster()
        self._cluster.mark_step_done(INFRASTRUCTURE_STEP)
        return self._cluster
