from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Set

from kubeplane.cluster.common import CommonCluster
from kubeplane.cluster.creators import ClusterCreator, RecoveryClusterCreator
from kubeplane.cluster.events import ClusterEvents
from kubeplane.cluster.hookfunctions import (
    HookEnvironment,
    unregister_domain,
    write_monitoring_targets,
)
from kubeplane.cluster.hooks import (
    PostHook,
    PostHookPipeline,
    base_post_hooks_for,
    build_post_hooks,
)
from kubeplane.cluster.metrics import ClusterMetrics
from kubeplane.cluster.registry import ProviderRegistry
from kubeplane.cluster.secrets import SecretStore, generate_ssh_key_pair, store_ssh_key_pair
from kubeplane.cluster.store import ClusterStore
from kubeplane.cluster.updaters import ClusterUpdater
from kubeplane.cluster.workers import WorkerPool
from kubeplane.errors import (
    AlreadyExistsError,
    ClusterError,
    ClusterNotFoundError,
    ErrorHandler,
    HookError,
    InvalidRequestError,
    LoggingErrorHandler,
    OperationInProgressError,
    SecretValidationError,
)
from kubeplane.k8s import delete_all_resources
from kubeplane.logger import logger as default_logger
from kubeplane.model.cluster import CloudProvider, Distribution
from kubeplane.model.requests import PostHookRequest
from kubeplane.model.status import (
    CREATING_MESSAGE,
    DELETING_MESSAGE,
    POSTHOOKS_MESSAGE,
    RUNNING_MESSAGE,
    ClusterStatus,
    StatusChange,
)
from kubeplane.utils import clean_cluster_data_dir

INTERNAL_CREATE_ERROR = "internal error while creating cluster"
INTERNAL_UPDATE_ERROR = "internal error while updating cluster"
INTERNAL_DELETE_ERROR = "internal error while deleting cluster"


@dataclass
class CreationContext:
    organization_id: int
    name: str
    provider: str
    user_id: Optional[int] = None
    distribution: Optional[str] = None
    secret_id: Optional[str] = None
    # Candidate secrets; the first one valid for the cloud is used
    secret_ids: List[str] = field(default_factory=list)
    post_hooks: List[PostHookRequest] = field(default_factory=list)


@dataclass
class UpdateContext:
    organization_id: int
    cluster_id: int
    user_id: Optional[int] = None


class StatusErrorHandler:
    def __init__(
        self,
        cluster: CommonCluster,
        status: ClusterStatus,
        message: Optional[str],
        delegate: ErrorHandler,
    ) -> None:
        self._cluster = cluster
        self._status = status
        self._message = message
        self._delegate = delegate

    def handle(self, err: BaseException) -> None:
        try:
            self._cluster.set_status(self._status, self._message or str(err))
        finally:
            self._delegate.handle(err)


class ClusterErrorHandler:
    """
    Reports the errors of one cluster's asynchronous work.
    """

    def __init__(self, cluster: CommonCluster, delegate: ErrorHandler) -> None:
        self._cluster = cluster
        self._delegate = delegate

    def handle(self, err: BaseException) -> None:
        self._delegate.handle(err)

    def with_status(
        self, status: ClusterStatus, message: Optional[str] = None
    ) -> StatusErrorHandler:
        """A handler that moves the cluster to ``status`` before reporting.

        The error text is used as status message unless one is given.
        """
        return StatusErrorHandler(self._cluster, status, message, self._delegate)


class Manager:
    """
    Orchestrates the cluster lifecycle.

    Validation and preparation happen on the caller's thread, so invalid
    requests fail immediately. Provisioning, post hooks and teardown run on
    the worker pool and report their outcome through the cluster status, the
    error handler and lifecycle events.

    Only one operation may be in flight per cluster.
    """

    def __init__(
        self,
        store: ClusterStore,
        secrets: SecretStore,
        events: ClusterEvents,
        registry: ProviderRegistry,
        workers: WorkerPool,
        hook_env: HookEnvironment,
        pipeline: Optional[PostHookPipeline] = None,
        logger: Optional[logging.Logger] = None,
        error_handler: Optional[ErrorHandler] = None,
        metrics: Optional[ClusterMetrics] = None,
    ) -> None:
        self._store = store
        self._secrets = secrets
        self._events = events
        self._registry = registry
        self._workers = workers
        self._hook_env = hook_env
        self._logger = logger or default_logger
        self._pipeline = pipeline or PostHookPipeline(hook_env, self._logger)
        self._error_handler = error_handler or LoggingErrorHandler(self._logger)
        self.metrics = metrics or ClusterMetrics()
        self._in_flight: Set[str] = set()
        self._lock = threading.Lock()

    # In-flight guard

    @staticmethod
    def _operation_key(organization_id: int, name: str) -> str:
        return f"{organization_id}/{name}"

    def _acquire(self, key: str) -> None:
        with self._lock:
            if key in self._in_flight:
                raise OperationInProgressError(
                    f"another operation is in progress on cluster {key}"
                )
            self._in_flight.add(key)

    def _release(self, key: str) -> None:
        with self._lock:
            self._in_flight.discard(key)

    def is_in_flight(self, organization_id: int, name: str) -> bool:
        with self._lock:
            return self._operation_key(organization_id, name) in self._in_flight

    def _submit(
        self,
        name: str,
        key: str,
        fn: Callable[..., None],
        *args: Any,
        on_panic: Optional[Callable[[BaseException], None]] = None,
    ) -> None:
        def unit() -> None:
            try:
                fn(*args)
            finally:
                self._release(key)

        self._workers.submit(name, unit, on_panic=on_panic)

    def _fail_with(
        self, cluster: CommonCluster, status: ClusterStatus, message: str
    ) -> Callable[[BaseException], None]:
        def on_panic(err: BaseException) -> None:
            cluster.set_status(status, message)

        return on_panic

    # Creation

    def _select_secret(self, ctx: CreationContext, cluster: CommonCluster) -> None:
        """
        Raises:
            SecretValidationError: If no usable secret is given.
        """
        cloud = cluster.get_cloud()
        if ctx.secret_ids:
            for secret_id in ctx.secret_ids:
                try:
                    self._secrets.validate_secret_type(ctx.organization_id, secret_id, cloud)
                except SecretValidationError as e:
                    self._logger.debug(f"Secret {secret_id} is not usable: {e}")
                    continue
                cluster.set_secret_id(secret_id)
                return
            raise SecretValidationError(f"none of the given secrets is valid for {cloud}")

        secret_id = ctx.secret_id or cluster.get_secret_id()
        if secret_id is None:
            if cloud == CloudProvider.DUMMY.value:
                return
            raise SecretValidationError("a secret is required")
        self._secrets.validate_secret_type(ctx.organization_id, secret_id, cloud)
        cluster.set_secret_id(secret_id)

    def _post_hooks_for(self, cluster: CommonCluster) -> List[PostHook]:
        return build_post_hooks(
            cluster.model.post_hooks,
            base_post_hooks_for(cluster.model.distribution),
            self._logger,
        )

    def create_cluster(self, ctx: CreationContext, creator: ClusterCreator) -> CommonCluster:
        """
        Validate and persist a new cluster, then create it in the background.

        Args:
            ctx (CreationContext): Who creates what.
            creator (ClusterCreator): The strategy wrapping the request.

        Returns:
            CommonCluster: The persisted cluster, in CREATING.

        Raises:
            AlreadyExistsError: If the organization has a cluster with this name.
            InvalidRequestError: If the request or its secrets are invalid.
            OperationInProgressError: If the cluster is being created already.
        """
        cluster = creator.cluster
        key = self._operation_key(ctx.organization_id, ctx.name)
        self._acquire(key)
        try:
            if self._store.exists(ctx.organization_id, ctx.name):
                raise AlreadyExistsError()

            self._select_secret(ctx, cluster)
            if ctx.post_hooks:
                cluster.model.post_hooks = list(ctx.post_hooks)

            try:
                creator.validate()
                hooks = self._post_hooks_for(cluster)
            except ClusterError:
                raise
            except Exception as e:
                raise InvalidRequestError(f"validation failed: {e}") from e

            creator.prepare()
            self.metrics.cluster_submitted(cluster)
            observe = self.metrics.start_timer(cluster, ClusterStatus.CREATING)
            cluster.set_status(ClusterStatus.CREATING, CREATING_MESSAGE)

            self._submit(
                f"create-cluster:{ctx.name}",
                key,
                self._create_cluster_async,
                creator,
                hooks,
                observe,
                on_panic=self._fail_with(cluster, ClusterStatus.ERROR, INTERNAL_CREATE_ERROR),
            )
        except BaseException:
            self._release(key)
            raise
        return cluster

    def _ensure_ssh_key(self, cluster: CommonCluster) -> None:
        if not cluster.requires_ssh_public_key() or cluster.get_ssh_secret_id():
            return
        self._logger.info(f"Generating SSH key pair for cluster {cluster.get_name()}")
        key = generate_ssh_key_pair(self._hook_env.settings.cluster.sshKeyBits)
        secret_id = store_ssh_key_pair(
            self._secrets,
            cluster.get_organization_id(),
            cluster.get_id(),
            cluster.get_name(),
            key,
        )
        cluster.save_ssh_secret_id(secret_id)

    def _create_cluster_async(
        self, creator: ClusterCreator, hooks: List[PostHook], observe: Callable[[], None]
    ) -> None:
        cluster = creator.cluster
        errors = ClusterErrorHandler(cluster, self._error_handler)
        try:
            self._ensure_ssh_key(cluster)
            creator.create()
        except Exception as e:
            self._logger.error(f"Creating cluster {cluster.get_name()} failed: {e}")
            errors.with_status(ClusterStatus.ERROR).handle(e)
            return

        cluster.set_status(ClusterStatus.CREATING, POSTHOOKS_MESSAGE)
        try:
            self._pipeline.run(cluster, hooks)
        except HookError as e:
            errors.handle(e)
            return

        observe()
        self._logger.info(f"Cluster {cluster.get_name()} created")
        self._events.cluster_created(cluster.get_id())

    # Update

    def update_cluster(self, ctx: UpdateContext, updater: ClusterUpdater) -> None:
        """
        Validate an update, then apply it in the background.

        Raises:
            InvalidRequestError: If the request is invalid or changes nothing.
            PreconditionFailedError: If the cluster cannot be updated now.
        """
        cluster = updater.cluster
        key = self._operation_key(cluster.get_organization_id(), cluster.get_name())
        self._acquire(key)
        try:
            updater.validate()
            updater.prepare()
            observe = self.metrics.start_timer(cluster, ClusterStatus.UPDATING)
            self._submit(
                f"update-cluster:{cluster.get_name()}",
                key,
                self._update_cluster_async,
                updater,
                observe,
                on_panic=self._fail_with(cluster, ClusterStatus.WARNING, INTERNAL_UPDATE_ERROR),
            )
        except BaseException:
            self._release(key)
            raise

    def _update_cluster_async(self, updater: ClusterUpdater, observe: Callable[[], None]) -> None:
        cluster = updater.cluster
        errors = ClusterErrorHandler(cluster, self._error_handler)
        try:
            updater.update()
        except Exception as e:
            self._logger.error(f"Updating cluster {cluster.get_name()} failed: {e}")
            errors.with_status(ClusterStatus.WARNING).handle(e)
        else:
            cluster.set_status(ClusterStatus.RUNNING, RUNNING_MESSAGE)
            observe()
            self._logger.info(f"Cluster {cluster.get_name()} updated")
        self._events.cluster_updated(cluster.get_id())

    # Deletion

    def delete_cluster(self, cluster: CommonCluster, force: bool = False) -> None:
        """
        Delete a cluster in the background.

        Without force the first failing step moves the cluster to ERROR and
        stops the deletion. With force every failure is logged and the record
        is removed anyway.

        Raises:
            OperationInProgressError: If another operation runs on the cluster.
        """
        key = self._operation_key(cluster.get_organization_id(), cluster.get_name())
        self._acquire(key)
        try:
            observe = self.metrics.start_timer(cluster, ClusterStatus.DELETING)
            self._submit(
                f"delete-cluster:{cluster.get_name()}",
                key,
                self._delete_cluster_async,
                cluster,
                force,
                observe,
                on_panic=self._fail_with(cluster, ClusterStatus.ERROR, INTERNAL_DELETE_ERROR),
            )
        except BaseException:
            self._release(key)
            raise

    def _delete_cluster_async(
        self, cluster: CommonCluster, force: bool, observe: Callable[[], None]
    ) -> None:
        name = cluster.get_name()
        errors = ClusterErrorHandler(cluster, self._error_handler)
        env = self._hook_env

        def step(description: str, fn: Callable[[], Any], fatal: bool = True) -> bool:
            try:
                fn()
                return True
            except Exception as e:
                if force or not fatal:
                    self._logger.warning(f"Deleting cluster {name}: {description} failed: {e}")
                    return True
                self._logger.error(f"Deleting cluster {name}: {description} failed: {e}")
                errors.with_status(ClusterStatus.ERROR, f"{description} failed: {e}").handle(e)
                return False

        if not step(
            "updating status", lambda: cluster.set_status(ClusterStatus.DELETING, DELETING_MESSAGE)
        ):
            return

        # Dummy clusters have no API server to clean up
        if cluster.get_distribution() != Distribution.DUMMY.value:
            kubeconfig: List[bytes] = []
            if not step("fetching kubeconfig", lambda: kubeconfig.append(cluster.get_k8s_config())):
                return
            if kubeconfig:
                if not step(
                    "deleting Helm deployments",
                    lambda: env.helm.delete_all_deployments(kubeconfig[0]),
                ):
                    return
                if not step(
                    "deleting Kubernetes resources",
                    lambda: delete_all_resources(
                        env.k8s.for_cluster(cluster.get_id(), kubeconfig[0]), self._logger
                    ),
                ):
                    return

        step("removing DNS domain", lambda: unregister_domain(cluster, env), fatal=False)

        if not step("deleting cluster", cluster.delete_cluster):
            return

        env.k8s.evict(cluster.get_id())

        if not step("deleting cluster from the database", cluster.delete_from_database):
            return

        step("cleaning local state", lambda: clean_cluster_data_dir(name), fatal=False)
        step("updating monitoring config", lambda: write_monitoring_targets(env), fatal=False)

        observe()
        self._logger.info(f"Cluster {name} deleted")
        self._events.cluster_deleted(cluster.get_organization_id(), name)

    # Queries

    def get_clusters(self, organization_id: int) -> List[CommonCluster]:
        return [
            self._registry.from_record(record)
            for record in self._store.find_by_organization(organization_id)
        ]

    def get_all_clusters(self) -> List[CommonCluster]:
        return [self._registry.from_record(record) for record in self._store.find_all()]

    def get_cluster_by_id(self, organization_id: int, cluster_id: int) -> CommonCluster:
        """
        Raises:
            ClusterNotFoundError: If the cluster does not exist in the organization.
        """
        record = self._store.get(cluster_id)
        if record.organization_id != organization_id:
            raise ClusterNotFoundError(
                f"cluster {cluster_id} not found in organization {organization_id}"
            )
        return self._registry.from_record(record)

    def get_cluster_by_id_only(self, cluster_id: int) -> CommonCluster:
        return self._registry.from_record(self._store.get(cluster_id))

    def get_cluster_by_name(self, organization_id: int, name: str) -> CommonCluster:
        return self._registry.from_record(self._store.get_by_name(organization_id, name))

    def get_cluster_status_history(self, cluster_id: int) -> List[StatusChange]:
        return self._store.status_history(cluster_id)

    # Recovery

    def retry_pending_operations(self) -> int:
        """
        Resume the creation of every cluster left in CREATING.

        Returns:
            int: The number of creations resumed.
        """
        resumed = 0
        for record in self._store.find_all():
            if record.status != ClusterStatus.CREATING:
                continue

            cluster = self._registry.from_record(record)
            key = self._operation_key(record.organization_id, record.name)
            try:
                self._acquire(key)
            except OperationInProgressError:
                continue

            try:
                hooks = self._post_hooks_for(cluster)
                self._submit(
                    f"recover-cluster:{record.name}",
                    key,
                    self._create_cluster_async,
                    RecoveryClusterCreator(cluster, self._logger),
                    hooks,
                    self.metrics.start_timer(cluster, ClusterStatus.CREATING),
                    on_panic=self._fail_with(cluster, ClusterStatus.ERROR, INTERNAL_CREATE_ERROR),
                )
            except InvalidRequestError as e:
                self._release(key)
                ClusterErrorHandler(cluster, self._error_handler).with_status(
                    ClusterStatus.ERROR
                ).handle(e)
                continue
            except BaseException:
                self._release(key)
                raise

            self._logger.info(f"Resuming creation of cluster {record.name}")
            resumed += 1
        return resumed
