from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class RequestModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class NodePoolRequest(RequestModel):
    """
    Represents a node pool in a create or update request.
    """

    instanceType: Optional[str] = Field(
        None, description="The instance or machine type of the nodes."
    )
    minCount: int = Field(1, description="The minimum number of nodes.")
    maxCount: int = Field(1, description="The maximum number of nodes.")
    count: Optional[int] = Field(
        None, description="The desired number of nodes. Defaults to minCount."
    )
    autoscaling: bool = Field(False, description="Whether the pool autoscales.")
    image: Optional[str] = Field(None, description="The node image.")
    diskSizeGb: Optional[int] = Field(None, description="The node disk size in GB.")
    labels: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_counts(self) -> NodePoolRequest:
        if self.minCount < 0:
            raise ValueError("minCount must be greater than or equal to 0")
        if self.minCount > self.maxCount:
            raise ValueError("minCount must be less than or equal to maxCount")
        if self.count is not None and not self.minCount <= self.count <= self.maxCount:
            raise ValueError("count must be between minCount and maxCount")
        return self


class NodePoolSizeRequest(RequestModel):
    """
    Represents a resize of an existing node pool.
    """

    count: Optional[int] = None
    minCount: Optional[int] = None
    maxCount: Optional[int] = None
    autoscaling: Optional[bool] = None

    @model_validator(mode="after")
    def check_counts(self) -> NodePoolSizeRequest:
        for key in ("count", "minCount", "maxCount"):
            value = getattr(self, key)
            if value is not None and value < 0:
                raise ValueError(f"{key} must be greater than or equal to 0")
        if (
            self.minCount is not None
            and self.maxCount is not None
            and self.minCount > self.maxCount
        ):
            raise ValueError("minCount must be less than or equal to maxCount")
        return self


class ScaleOptions(RequestModel):
    """
    Represents the cluster level autoscaling hints.
    """

    enabled: bool = False
    desiredCpu: float = 0
    desiredMem: float = 0
    desiredGpu: int = 0
    onDemandPct: int = Field(100, ge=0, le=100)
    excludes: List[str] = Field(default_factory=list)
    keepDesiredCapacity: bool = False


class PostHookRequest(RequestModel):
    """
    A post hook requested by the caller. Parameters are validated against the
    hook's own parameter model when the chain is built.
    """

    name: str
    params: Dict[str, Any] = Field(default_factory=dict)


class ClusterCreateRequest(RequestModel):
    """
    Represents a request to create a cluster.
    """

    name: str = Field(..., description="The cluster name, unique per organization.")
    cloud: str = Field(..., description="The cloud provider tag.")
    distribution: Optional[str] = Field(
        None, description="The distribution tag. Defaults to the cloud's default."
    )
    location: str = Field("", description="The region or zone of the cluster.")
    secretId: Optional[str] = Field(None, description="The cloud credential secret.")
    secretIds: List[str] = Field(
        default_factory=list,
        description="Candidate credential secrets; the first valid one is used.",
    )
    sshSecretId: Optional[str] = Field(None, description="An existing SSH secret.")
    ttlMinutes: int = Field(0, ge=0, description="Time to live, 0 disables it.")
    kubernetesVersion: Optional[str] = None
    nodePools: Dict[str, NodePoolRequest] = Field(default_factory=dict)
    scaleOptions: Optional[ScaleOptions] = None
    postHooks: List[PostHookRequest] = Field(default_factory=list)
    properties: Dict[str, Any] = Field(
        default_factory=dict,
        description="Provider specific settings such as resourceGroup or projectId.",
    )

    @field_validator("name", mode="before")
    def validate_name(cls, v: str) -> str:
        """
        Validates the cluster name.

        Args:
            v (str): The value of the name field.

        Returns:
            str: The input value if validation is successful.

        Raises:
            ValueError: If the name is not a valid DNS-1123 label.
        """
        if not re.match(r"^[a-z]([-a-z0-9]{0,61}[a-z0-9])?$", v):
            raise ValueError(
                "name must consist of lower case alphanumeric characters or '-', "
                "start with a letter and be at most 63 characters long"
            )
        return v


class ClusterUpdateRequest(RequestModel):
    """
    Represents a request to update a cluster.
    """

    cloud: str
    kubernetesVersion: Optional[str] = None
    nodePools: Optional[Dict[str, NodePoolRequest]] = None
    ttlMinutes: Optional[int] = Field(None, ge=0)
    scaleOptions: Optional[ScaleOptions] = None
    properties: Dict[str, Any] = Field(default_factory=dict)


class NodePoolUpdateRequest(RequestModel):
    """
    Represents a request that only resizes existing node pools.
    """

    nodePools: Dict[str, NodePoolSizeRequest]

    @field_validator("nodePools", mode="after")
    def validate_not_empty(
        cls, v: Dict[str, NodePoolSizeRequest]
    ) -> Dict[str, NodePoolSizeRequest]:
        if not v:
            raise ValueError("at least one node pool is required")
        return v
