from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Type

from pydantic import ValidationError

from kubeplane.cluster import hookfunctions as fn
from kubeplane.cluster.common import CommonCluster
from kubeplane.cluster.hookfunctions import HookEnvironment, HookParams
from kubeplane.errors import HookError, InvalidRequestError
from kubeplane.logger import logger as default_logger
from kubeplane.model.cluster import Distribution
from kubeplane.model.requests import PostHookRequest
from kubeplane.model.status import RUNNING_MESSAGE, ClusterStatus

HookFunction = Callable[[CommonCluster, HookEnvironment, HookParams], None]


class HookKind(str, Enum):
    STORE_KUBECONFIG = "StoreKubeConfig"
    PERSIST_KUBERNETES_KEYS = "PersistKubernetesKeys"
    UPDATE_MONITORING_CONFIG = "UpdatePrometheusPostHook"
    INSTALL_HELM = "InstallHelmPostHook"
    REGISTER_DOMAIN = "RegisterDomainPostHook"
    INSTALL_INGRESS = "InstallIngressControllerPostHook"
    INSTALL_CLUSTER_AUTOSCALER = "InstallClusterAutoscalerPostHook"
    INSTALL_HPA = "InstallHorizontalPodAutoscalerPostHook"
    CREATE_PIPELINE_NAMESPACE = "CreatePipelineNamespacePostHook"
    LABEL_NODES = "LabelNodes"
    INSTALL_MONITORING = "InstallMonitoring"
    INSTALL_LOGGING = "InstallLogging"
    INSTALL_SERVICE_MESH = "InstallServiceMesh"
    INSTALL_ANCHORE_IMAGE_VALIDATOR = "InstallAnchoreImageValidator"


@dataclass(frozen=True)
class HookDefinition:
    function: HookFunction
    params_model: Type[HookParams]
    # Extra hooks run in ascending priority after the base chain
    priority: int = 0


HOOKS: Dict[HookKind, HookDefinition] = {
    HookKind.STORE_KUBECONFIG: HookDefinition(fn.store_kubeconfig, fn.NoParams),
    HookKind.PERSIST_KUBERNETES_KEYS: HookDefinition(fn.persist_kubernetes_keys, fn.NoParams),
    HookKind.UPDATE_MONITORING_CONFIG: HookDefinition(fn.update_monitoring_config, fn.NoParams),
    HookKind.INSTALL_HELM: HookDefinition(fn.install_helm_support, fn.InstallHelmParams),
    HookKind.REGISTER_DOMAIN: HookDefinition(fn.register_domain, fn.NoParams),
    HookKind.INSTALL_INGRESS: HookDefinition(fn.install_ingress_controller, fn.ChartParams),
    HookKind.INSTALL_CLUSTER_AUTOSCALER: HookDefinition(
        fn.deploy_cluster_autoscaler, fn.ChartParams
    ),
    HookKind.INSTALL_HPA: HookDefinition(fn.install_horizontal_pod_autoscaler, fn.ChartParams),
    HookKind.CREATE_PIPELINE_NAMESPACE: HookDefinition(
        fn.create_pipeline_namespace, fn.NamespaceParams
    ),
    HookKind.LABEL_NODES: HookDefinition(fn.label_node_pools, fn.LabelNodesParams),
    HookKind.INSTALL_MONITORING: HookDefinition(fn.install_monitoring, fn.ChartParams),
    HookKind.INSTALL_LOGGING: HookDefinition(fn.install_logging, fn.ChartParams),
    HookKind.INSTALL_SERVICE_MESH: HookDefinition(
        fn.install_service_mesh, fn.ChartParams, priority=10
    ),
    HookKind.INSTALL_ANCHORE_IMAGE_VALIDATOR: HookDefinition(
        fn.install_anchore_image_validator, fn.ChartParams, priority=20
    ),
}

BASE_POST_HOOKS: List[HookKind] = [
    HookKind.STORE_KUBECONFIG,
    HookKind.PERSIST_KUBERNETES_KEYS,
    HookKind.UPDATE_MONITORING_CONFIG,
    HookKind.INSTALL_HELM,
    HookKind.REGISTER_DOMAIN,
    HookKind.INSTALL_INGRESS,
    HookKind.INSTALL_CLUSTER_AUTOSCALER,
]


@dataclass(frozen=True)
class PostHook:
    kind: HookKind
    params: HookParams

    @property
    def step(self) -> str:
        """The checklist entry recorded once the hook succeeded."""
        return f"posthook:{self.kind.value}"


def base_post_hooks_for(distribution: Distribution) -> List[HookKind]:
    # Dummy clusters have no API server to talk to
    if distribution == Distribution.DUMMY:
        return []
    return list(BASE_POST_HOOKS)


def _parse_params(kind: HookKind, params: Dict) -> HookParams:
    try:
        return HOOKS[kind].params_model.model_validate(params)
    except ValidationError as e:
        raise InvalidRequestError(f"invalid parameters for post hook {kind.value}: {e}") from e


def build_post_hooks(
    requested: List[PostHookRequest],
    base: Optional[List[HookKind]] = None,
    logger: Optional[logging.Logger] = None,
) -> List[PostHook]:
    """
    Compose the post hook chain of a cluster.

    The base chain comes first. A requested hook naming a base hook only
    replaces that hook's parameters. The remaining requested hooks follow,
    ordered by priority and then by request order.

    Args:
        requested (List[PostHookRequest]): The hooks the caller asked for.
        base (Optional[List[HookKind]]): The base chain, BASE_POST_HOOKS by default.
        logger (Optional[logging.Logger]): Receives a debug line for unknown hooks.

    Returns:
        List[PostHook]: The hooks to run, in order.

    Raises:
        InvalidRequestError: If parameters do not fit a hook.
    """
    logger = logger or default_logger
    base = BASE_POST_HOOKS if base is None else base

    params_by_kind: Dict[HookKind, Dict] = {}
    extra: List[HookKind] = []
    for request in requested:
        try:
            kind = HookKind(request.name)
        except ValueError:
            logger.debug(f"Skipping unknown post hook {request.name}")
            continue
        if kind not in params_by_kind and kind not in base:
            extra.append(kind)
        params_by_kind[kind] = request.params

    chain = [PostHook(kind, _parse_params(kind, params_by_kind.get(kind, {}))) for kind in base]
    for kind in sorted(extra, key=lambda k: HOOKS[k].priority):
        chain.append(PostHook(kind, _parse_params(kind, params_by_kind[kind])))
    return chain


class PostHookPipeline:
    """
    Runs post hooks one after the other.

    Hooks already recorded as done on the cluster are skipped. The first
    failing hook moves the cluster to ERROR and stops the chain. When every
    hook succeeded the cluster is RUNNING.
    """

    def __init__(self, env: HookEnvironment, logger: Optional[logging.Logger] = None) -> None:
        self._env = env
        self._logger = logger or default_logger

    def run(self, cluster: CommonCluster, hooks: List[PostHook]) -> None:
        """
        Raises:
            HookError: If a hook fails.
        """
        for hook in hooks:
            if cluster.is_step_done(hook.step):
                self._logger.debug(f"Post hook {hook.kind.value} already done, skipping")
                continue

            self._logger.info(f"Running post hook {hook.kind.value} on {cluster.get_name()}")
            try:
                HOOKS[hook.kind].function(cluster, self._env, hook.params)
            except Exception as e:
                self._logger.error(f"Post hook {hook.kind.value} failed: {e}")
                cluster.set_status(ClusterStatus.ERROR, str(e))
                raise HookError(hook.kind.value, e) from e
            cluster.mark_step_done(hook.step)

        cluster.set_status(ClusterStatus.RUNNING, RUNNING_MESSAGE)
