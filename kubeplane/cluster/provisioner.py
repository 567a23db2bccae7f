from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, List, Optional, Protocol

from pulumi import automation as auto

from kubeplane.cluster.tools import ensure_pulumi
from kubeplane.constants import PROJECT_NAME, PULUMI_STACK_NAME
from kubeplane.errors import (
    InfrastructureError,
    ResourceNotFoundError,
    UnsupportedProviderError,
)
from kubeplane.logger import logger as default_logger
from kubeplane.model.cluster import ClusterRecord, Distribution
from kubeplane.model.nodepool import NodePool
from kubeplane.utils import to_yaml

# Builds the Pulumi program describing a cluster
ProgramFactory = Callable[[ClusterRecord], auto.PulumiFn]
# Builds stack configuration, e.g. region and credentials, for a cluster
StackConfigFactory = Callable[[ClusterRecord, Dict[str, str]], Dict[str, auto.ConfigValue]]


class Provisioner(Protocol):
    """
    The cloud side of a managed cluster.

    Implementations raise InfrastructureError on API failures and
    ResourceNotFoundError from ``destroy`` when nothing is left to remove.
    """

    def provision(self, record: ClusterRecord, credentials: Dict[str, str]) -> Dict[str, Any]: ...

    def update(
        self,
        record: ClusterRecord,
        delta: List[NodePool],
        credentials: Dict[str, str],
    ) -> Dict[str, Any]: ...

    def destroy(self, record: ClusterRecord, credentials: Dict[str, str]) -> None: ...

    def kubeconfig(self, record: ClusterRecord, credentials: Dict[str, str]) -> bytes: ...


class PulumiProvisioner:
    """
    Provisions clusters with a Pulumi automation stack per cluster.

    Pulumi programs are declarative, so updates re-run ``up`` against the
    record's new node pools and ignore the delta.
    """

    def __init__(
        self,
        program_factory: ProgramFactory,
        config_factory: StackConfigFactory,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._program_factory = program_factory
        self._config_factory = config_factory
        self._logger = logger or default_logger

    def _project_name(self, record: ClusterRecord) -> str:
        return f"{PROJECT_NAME}-{record.uid}"

    def _stack(self, record: ClusterRecord, credentials: Dict[str, str]) -> auto.Stack:
        ensure_pulumi()
        stack = auto.create_or_select_stack(
            stack_name=PULUMI_STACK_NAME,
            project_name=self._project_name(record),
            program=self._program_factory(record),
        )
        stack.set_all_config(self._config_factory(record, credentials))
        return stack

    def _up(self, record: ClusterRecord, credentials: Dict[str, str]) -> Dict[str, Any]:
        stack = self._stack(record, credentials)
        try:
            result = stack.up(on_output=self._logger.info)
        except auto.CommandError as e:
            raise InfrastructureError(f"pulumi up failed: {e}") from e
        return {key: output.value for key, output in result.outputs.items()}

    def provision(self, record: ClusterRecord, credentials: Dict[str, str]) -> Dict[str, Any]:
        self._logger.info(f"Creating resources for cluster {record.name}...")
        return self._up(record, credentials)

    def update(
        self,
        record: ClusterRecord,
        delta: List[NodePool],
        credentials: Dict[str, str],
    ) -> Dict[str, Any]:
        self._logger.info(
            f"Updating cluster {record.name} ({len(delta)} node pool change(s))..."
        )
        return self._up(record, credentials)

    def destroy(self, record: ClusterRecord, credentials: Dict[str, str]) -> None:
        ensure_pulumi()
        try:
            stack = auto.select_stack(
                stack_name=PULUMI_STACK_NAME,
                project_name=self._project_name(record),
                program=self._program_factory(record),
            )
        except auto.StackNotFoundError as e:
            raise ResourceNotFoundError(f"no stack for cluster {record.name}") from e

        stack.set_all_config(self._config_factory(record, credentials))
        self._logger.info(f"Destroying resources of cluster {record.name}...")
        try:
            stack.destroy(on_output=self._logger.info)
        except auto.CommandError as e:
            raise InfrastructureError(f"pulumi destroy failed: {e}") from e
        stack.workspace.remove_stack(PULUMI_STACK_NAME)

    def kubeconfig(self, record: ClusterRecord, credentials: Dict[str, str]) -> bytes:
        stack = self._stack(record, credentials)
        outputs = stack.outputs()
        if "kubeconfig" not in outputs:
            raise InfrastructureError(f"cluster {record.name} has no kubeconfig output")
        kubeconfig = outputs["kubeconfig"].value
        if isinstance(kubeconfig, str):
            kubeconfig = json.loads(kubeconfig)
        return to_yaml(kubeconfig).encode("utf-8")


class UnconfiguredProvisioner:
    """
    Stands in for a distribution nobody configured a provisioner for, so that
    its stored clusters can still be listed and inspected.
    """

    def __init__(self, distribution: Distribution) -> None:
        self._distribution = distribution

    def _unsupported(self) -> UnsupportedProviderError:
        return UnsupportedProviderError(
            f"no provisioner configured for {self._distribution.value}"
        )

    def provision(self, record: ClusterRecord, credentials: Dict[str, str]) -> Dict[str, Any]:
        raise self._unsupported()

    def update(
        self,
        record: ClusterRecord,
        delta: List[NodePool],
        credentials: Dict[str, str],
    ) -> Dict[str, Any]:
        raise self._unsupported()

    def destroy(self, record: ClusterRecord, credentials: Dict[str, str]) -> None:
        raise self._unsupported()

    def kubeconfig(self, record: ClusterRecord, credentials: Dict[str, str]) -> bytes:
        raise self._unsupported()
