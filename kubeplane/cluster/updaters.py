from __future__ import annotations

import logging
from typing import Optional, Protocol

from kubeplane.cluster.common import CommonCluster
from kubeplane.cluster.hookfunctions import HookEnvironment, deploy_cluster_autoscaler
from kubeplane.errors import InvalidRequestError, NoChangesError, PreconditionFailedError
from kubeplane.logger import logger as default_logger
from kubeplane.model.requests import ClusterUpdateRequest, NodePoolUpdateRequest
from kubeplane.model.status import OPERABLE_STATUSES, UPDATING_MESSAGE, ClusterStatus


class ClusterUpdater(Protocol):
    @property
    def cluster(self) -> CommonCluster: ...

    def validate(self) -> None: ...

    def prepare(self) -> CommonCluster: ...

    def update(self) -> None: ...


def _check_operable(cluster: CommonCluster) -> None:
    status = cluster.model.status
    if status not in OPERABLE_STATUSES:
        raise PreconditionFailedError(
            f"cluster {cluster.get_name()} is {status.value}, "
            "it must be RUNNING or WARNING to be updated"
        )


class CommonUpdater:
    """
    Applies a ClusterUpdateRequest.

    TTL and scale option changes are stored without touching the
    infrastructure. Anything else goes through the provider and is followed
    by a redeploy of the cluster autoscaler.
    """

    def __init__(
        self,
        request: ClusterUpdateRequest,
        cluster: CommonCluster,
        user_id: Optional[int],
        hook_env: Optional[HookEnvironment] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._request = request
        self._cluster = cluster
        self._user_id = user_id
        self._hook_env = hook_env
        self._logger = logger or default_logger
        self._scale_options_changed = False
        self._ttl_changed = False
        self._cluster_properties_changed = True

    @property
    def cluster(self) -> CommonCluster:
        return self._cluster

    def validate(self) -> None:
        """
        Raises:
            InvalidRequestError: If the request targets another cloud.
            PreconditionFailedError: If the cluster is not RUNNING or WARNING.
        """
        if self._request.cloud != self._cluster.get_cloud():
            raise InvalidRequestError(
                f"stored cloud type is {self._cluster.get_cloud()}, "
                f"not {self._request.cloud}"
            )
        _check_operable(self._cluster)

    def prepare(self) -> CommonCluster:
        """
        Raises:
            NoChangesError: If nothing at all would change.
        """
        self._cluster.add_defaults_to_update(self._request)

        self._scale_options_changed = (
            self._request.scaleOptions is not None
            and self._request.scaleOptions != self._cluster.get_scale_options()
        )
        self._ttl_changed = (
            self._request.ttlMinutes is not None
            and self._request.ttlMinutes != self._cluster.get_ttl()
        )

        try:
            self._cluster.check_equality_to_update(self._request)
        except NoChangesError:
            if not self._scale_options_changed and not self._ttl_changed:
                raise
            self._cluster_properties_changed = False

        self._cluster.set_status(ClusterStatus.UPDATING, UPDATING_MESSAGE)
        return self._cluster

    def update(self) -> None:
        if self._scale_options_changed:
            self._cluster.set_scale_options(self._request.scaleOptions)
        ttl = self._request.ttlMinutes
        if self._ttl_changed and ttl is not None:
            self._cluster.set_ttl(ttl)
        if self._scale_options_changed or self._ttl_changed:
            self._cluster.persist()

        if not self._cluster_properties_changed:
            self._logger.info(f"Only settings of cluster {self._cluster.get_name()} changed")
            return

        self._cluster.update_cluster(self._request, self._user_id)
        if self._hook_env is not None:
            deploy_cluster_autoscaler(self._cluster, self._hook_env)


class NodePoolUpdater:
    """
    Resizes existing node pools.
    """

    def __init__(
        self,
        request: NodePoolUpdateRequest,
        cluster: CommonCluster,
        user_id: Optional[int],
        hook_env: Optional[HookEnvironment] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._request = request
        self._cluster = cluster
        self._user_id = user_id
        self._hook_env = hook_env
        self._logger = logger or default_logger

    @property
    def cluster(self) -> CommonCluster:
        return self._cluster

    def validate(self) -> None:
        """
        Raises:
            PreconditionFailedError: If the cluster is not RUNNING or WARNING.
            InvalidRequestError: If a referenced node pool does not exist.
        """
        _check_operable(self._cluster)
        existing = {pool.name for pool in self._cluster.get_node_pools()}
        missing = sorted(set(self._request.nodePools) - existing)
        if missing:
            raise InvalidRequestError(f"node pools not found: {', '.join(missing)}")

    def prepare(self) -> CommonCluster:
        self._cluster.set_status(ClusterStatus.UPDATING, UPDATING_MESSAGE)
        return self._cluster

    def update(self) -> None:
        self._cluster.update_node_pools(self._request, self._user_id)
        if self._hook_env is not None:
            deploy_cluster_autoscaler(self._cluster, self._hook_env)
