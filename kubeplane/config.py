from __future__ import annotations

import os
import re
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from ruamel.yaml import YAML

from kubeplane.constants import (
    CONFIG_ENV_VAR,
    SYSTEM_NAMESPACE,
    TTL_RECHECK_MINUTES,
)
from kubeplane.utils import get_project_data_dir, to_yaml

CONFIG_VERSION = "1.0"


class KubeplaneBaseModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ClusterConfig(KubeplaneBaseModel):
    """
    Settings of the cluster lifecycle manager.
    """

    systemNamespace: str = Field(
        SYSTEM_NAMESPACE,
        description="The namespace the control plane installs its own charts into.",
    )
    ttlRecheckMinutes: int = Field(
        TTL_RECHECK_MINUTES,
        description="How often a cluster with a TTL is re-evaluated.",
    )
    workers: int = Field(
        8, description="The number of concurrent lifecycle operations."
    )
    sshKeyBits: int = Field(4096, description="Size of generated SSH RSA keys.")
    retryPendingOnStart: bool = Field(
        True,
        description="Re-drive clusters left in CREATING when the controller starts.",
    )

    @field_validator("ttlRecheckMinutes", "workers", mode="before")
    def validate_positive(cls, v: int) -> int:
        """
        Validates that the value is greater than 0.

        Args:
            v (int): The value of the field.

        Returns:
            int: The input value if validation is successful.

        Raises:
            ValueError: If the value is less than 1.
        """
        if v < 1:
            raise ValueError("value must be greater than 0")
        return v

    @field_validator("sshKeyBits", mode="before")
    def validate_ssh_key_bits(cls, v: int) -> int:
        if v < 2048:
            raise ValueError("sshKeyBits must be at least 2048")
        return v


class DnsConfig(KubeplaneBaseModel):
    """
    Represents the DNS registration settings.
    """

    enabled: bool = Field(False, description="Whether clusters get a DNS domain.")
    baseDomain: Optional[str] = Field(
        None, description="The domain cluster domains are created under."
    )
    region: str = Field("us-east-1", description="The Route 53 API region.")

    @field_validator("baseDomain", mode="before")
    def validate_base_domain(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not re.match(r"^([a-z0-9-]+\.)+[a-z]{2,}$", v):
            raise ValueError("Invalid base domain")
        return v


class ChartConfig(KubeplaneBaseModel):
    """
    Represents a Helm chart installed by a post hook.
    """

    chart: str = Field(..., description="The chart reference, e.g. repo/name.")
    repo: Optional[str] = Field(None, description="The chart repository URL.")
    version: Optional[str] = Field(None, description="The chart version.")
    releaseName: str = Field(..., description="The Helm release name.")
    namespace: Optional[str] = Field(
        None,
        description="Target namespace. Defaults to the cluster system namespace.",
    )
    values: Dict[str, Any] = Field(
        default_factory=dict, description="Values passed to the chart."
    )


def _chart(chart: str, repo: str, release_name: str, **kwargs: Any) -> ChartConfig:
    return ChartConfig(chart=chart, repo=repo, releaseName=release_name, **kwargs)


class ChartsConfig(KubeplaneBaseModel):
    ingress: ChartConfig = Field(
        default_factory=lambda: _chart(
            "traefik", "https://traefik.github.io/charts", "ingress"
        )
    )
    autoscaler: ChartConfig = Field(
        default_factory=lambda: _chart(
            "cluster-autoscaler",
            "https://kubernetes.github.io/autoscaler",
            "autoscaler",
            namespace="kube-system",
        )
    )
    metricsServer: ChartConfig = Field(
        default_factory=lambda: _chart(
            "metrics-server",
            "https://kubernetes-sigs.github.io/metrics-server/",
            "hpa-operator",
            namespace="kube-system",
        )
    )
    monitoring: ChartConfig = Field(
        default_factory=lambda: _chart(
            "kube-prometheus-stack",
            "https://prometheus-community.github.io/helm-charts",
            "monitor",
        )
    )
    logging: ChartConfig = Field(
        default_factory=lambda: _chart(
            "fluent-bit", "https://fluent.github.io/helm-charts", "logging"
        )
    )
    serviceMesh: ChartConfig = Field(
        default_factory=lambda: _chart(
            "istiod",
            "https://istio-release.storage.googleapis.com/charts",
            "istio",
            namespace="istio-system",
        )
    )
    imageValidator: ChartConfig = Field(
        default_factory=lambda: _chart(
            "anchore-admission-controller",
            "https://charts.anchore.io",
            "anchore",
        )
    )


class Config(KubeplaneBaseModel):
    """
    Represents the control plane configuration file.
    """

    version: str = Field(CONFIG_VERSION, description="The configuration version.")
    dataDir: Optional[str] = Field(
        None,
        description="Where records, secrets and cluster state are kept. "
        "Defaults to the project data directory.",
    )
    cluster: ClusterConfig = Field(default_factory=ClusterConfig)
    dns: DnsConfig = Field(default_factory=DnsConfig)
    charts: ChartsConfig = Field(default_factory=ChartsConfig)

    @field_validator("version", mode="before")
    def validate_version(cls, v: str) -> str:
        if not re.match(r"^\d+\.\d+$", v):
            raise ValueError('version must be in the format "x.x"')
        return v

    @property
    def data_dir(self) -> str:
        return self.dataDir or get_project_data_dir()


def generate_yaml(config: Config) -> str:
    """
    Generate a YAML string from a Config object.

    Args:
        config (Config): The Config object to convert to YAML.

    Returns:
        str: The YAML string.
    """
    return to_yaml(config.model_dump(exclude_none=True))


def parse_yaml(yaml_str: str) -> Config:
    """
    Parse a YAML string and return a Config object.

    Args:
        yaml_str (str): The YAML string to parse.

    Returns:
        Config: The parsed Config object.

    Raises:
        ValueError: If the version is missing, malformed or not supported.
    """
    yaml = YAML(typ="safe")
    data = yaml.load(yaml_str) or {}
    version = data.get("version", None)
    if version is None:
        raise ValueError("Invalid configuration: The 'version' field is missing.")

    version = str(version)
    if not re.match(r"^\d+\.\d+$", version):
        raise ValueError('version must be in the format "x.x"')

    # Make sure the major version matches
    major_version, minor_version = map(int, version.split("."))
    tool_major_version, tool_minor_version = map(int, CONFIG_VERSION.split("."))

    if major_version < tool_major_version:
        raise ValueError(
            f"Invalid configuration: This tool supports versions starting from {tool_major_version}.0."
            " Please use an older version of the tool if you need to work with a previous configuration version."
        )
    elif major_version > tool_major_version:
        raise ValueError(
            "Invalid configuration: Your current tool is too old. Please upgrade your tool to handle this configuration."
        )
    elif minor_version > tool_minor_version:  # No forward compatibility
        raise ValueError(
            f"Invalid configuration: This tool supports versions up to {tool_major_version}.{tool_minor_version}."
            " Please upgrade your tool to handle this configuration."
        )

    data["version"] = version
    return Config(**data)


def load_config(path: Optional[str] = None) -> Config:
    """
    Load the control plane configuration.

    The path defaults to the KUBEPLANE_CONFIG environment variable. A missing
    file yields the default configuration.

    Args:
        path (Optional[str]): The path to the configuration file.

    Returns:
        Config: The loaded configuration.
    """
    path = path or os.environ.get(CONFIG_ENV_VAR)
    if not path or not os.path.exists(path):
        return Config()

    with open(path, "r") as file:
        return parse_yaml(file.read())
