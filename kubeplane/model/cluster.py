from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator
from typing_extensions import Annotated

from kubeplane.model.nodepool import NodePool
from kubeplane.model.requests import PostHookRequest, ScaleOptions
from kubeplane.model.status import CREATING_MESSAGE, ClusterStatus
from kubeplane.utils import utcnow


class CloudProvider(str, Enum):
    AMAZON = "amazon"
    AZURE = "azure"
    GOOGLE = "google"
    ALIBABA = "alibaba"
    ORACLE = "oracle"
    KUBERNETES = "kubernetes"
    DUMMY = "dummy"


class Distribution(str, Enum):
    EKS = "eks"
    EC2 = "ec2"
    AKS = "aks"
    GKE = "gke"
    ACK = "ack"
    ACSK = "acsk"
    OKE = "oke"
    KUBERNETES = "kubernetes"
    DUMMY = "dummy"


class EksPayload(BaseModel):
    distribution: Literal["eks"] = "eks"
    kubernetes_version: Optional[str] = None
    stack_name: Optional[str] = None
    vpc_id: Optional[str] = None


class Ec2Payload(BaseModel):
    distribution: Literal["ec2"] = "ec2"
    kubernetes_version: Optional[str] = None
    master_instance_type: str = "m5.large"
    master_image: Optional[str] = None


class AksPayload(BaseModel):
    distribution: Literal["aks"] = "aks"
    kubernetes_version: Optional[str] = None
    resource_group: str


class GkePayload(BaseModel):
    distribution: Literal["gke"] = "gke"
    kubernetes_version: Optional[str] = None
    project_id: str


class AckPayload(BaseModel):
    distribution: Literal["ack", "acsk"] = "ack"
    kubernetes_version: Optional[str] = None
    zone_id: Optional[str] = None
    vpc_id: Optional[str] = None


class OkePayload(BaseModel):
    distribution: Literal["oke"] = "oke"
    kubernetes_version: Optional[str] = None
    compartment_id: str
    vcn_id: Optional[str] = None


class KubernetesPayload(BaseModel):
    distribution: Literal["kubernetes"] = "kubernetes"
    metadata: Dict[str, str] = Field(default_factory=dict)


class DummyPayload(BaseModel):
    distribution: Literal["dummy"] = "dummy"
    kubernetes_version: str = "1.29"
    node_count: int = 0


ProviderPayload = Annotated[
    Union[
        EksPayload,
        Ec2Payload,
        AksPayload,
        GkePayload,
        AckPayload,
        OkePayload,
        KubernetesPayload,
        DummyPayload,
    ],
    Field(discriminator="distribution"),
]


class ClusterRecord(BaseModel):
    """
    The persisted state of a cluster.

    The provider payload is tagged with the distribution it belongs to and
    must match the record's own distribution.
    """

    id: Optional[int] = None
    uid: str
    organization_id: int
    created_by: Optional[int] = None
    name: str
    cloud: CloudProvider
    distribution: Distribution
    location: str = ""
    status: ClusterStatus = ClusterStatus.CREATING
    status_message: str = CREATING_MESSAGE
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    ttl_minutes: int = 0

    logging: bool = False
    monitoring: bool = False
    service_mesh: bool = False
    security_scan: bool = False

    secret_id: Optional[str] = None
    ssh_secret_id: Optional[str] = None
    config_secret_id: Optional[str] = None

    node_pools: List[NodePool] = Field(default_factory=list)
    scale_options: Optional[ScaleOptions] = None
    post_hooks: List[PostHookRequest] = Field(default_factory=list)
    # Steps of the creation that already succeeded, used by recovery
    completed_steps: List[str] = Field(default_factory=list)

    provider: ProviderPayload

    @model_validator(mode="after")
    def check_provider_payload(self) -> "ClusterRecord":
        if self.provider.distribution != self.distribution.value:
            raise ValueError(
                f"provider payload {self.provider.distribution} does not match "
                f"distribution {self.distribution.value}"
            )
        return self

    def node_pool(self, name: str) -> Optional[NodePool]:
        for pool in self.node_pools:
            if pool.name == name:
                return pool
        return None
