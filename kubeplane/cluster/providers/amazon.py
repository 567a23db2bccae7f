from __future__ import annotations

from typing import Any, Dict, Set

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from kubeplane.cluster.providers.managed import ManagedCluster
from kubeplane.errors import InfrastructureError, ProviderValidationError
from kubeplane.model.cluster import CloudProvider, Distribution, Ec2Payload, EksPayload
from kubeplane.model.requests import ClusterCreateRequest


def _ec2_client(credentials: Dict[str, str], region: str) -> Any:
    session = boto3.session.Session(
        aws_access_key_id=credentials.get("AWS_ACCESS_KEY_ID"),
        aws_secret_access_key=credentials.get("AWS_SECRET_ACCESS_KEY"),
        region_name=region,
    )
    return session.client("ec2")


def validate_region_and_instance_types(
    credentials: Dict[str, str], region: str, instance_types: Set[str]
) -> None:
    """
    Check a region and a set of instance types against the EC2 API.

    Args:
        credentials (Dict[str, str]): The values of an amazon secret.
        region (str): The region the cluster is created in.
        instance_types (Set[str]): Every instance type the request uses.

    Raises:
        ProviderValidationError: If the region or an instance type does not exist.
        InfrastructureError: If the EC2 API could not be queried.
    """
    ec2 = _ec2_client(credentials, region)
    try:
        regions = {r["RegionName"] for r in ec2.describe_regions()["Regions"]}
    except (BotoCoreError, ClientError) as e:
        raise InfrastructureError(f"failed to list regions: {e}") from e

    if region not in regions:
        raise ProviderValidationError(f"region {region} is not available")

    if not instance_types:
        return

    try:
        response = ec2.describe_instance_types(InstanceTypes=sorted(instance_types))
    except ClientError as e:
        if e.response.get("Error", {}).get("Code", "").startswith("InvalidInstanceType"):
            raise ProviderValidationError(f"invalid instance type: {e}") from e
        raise InfrastructureError(f"failed to describe instance types: {e}") from e

    found = {item["InstanceType"] for item in response.get("InstanceTypes", [])}
    missing = instance_types - found
    if missing:
        raise ProviderValidationError(
            f"instance types not available in {region}: {', '.join(sorted(missing))}"
        )


class EksCluster(ManagedCluster):
    """
    Amazon EKS, provisioned through a Pulumi stack.
    """

    CLOUD = CloudProvider.AMAZON
    DISTRIBUTIONS = frozenset({Distribution.EKS})
    LOCATION_PATTERN = r"^[a-z]{2}(-gov)?-[a-z]+-\d$"

    @classmethod
    def build_payload(cls, request: ClusterCreateRequest, distribution: Distribution) -> EksPayload:
        return EksPayload(
            kubernetes_version=request.kubernetesVersion,
            stack_name=f"{request.name}-eks",
        )

    def validate_provider_fields(self, request: ClusterCreateRequest) -> None:
        validate_region_and_instance_types(
            self.get_credentials(),
            request.location,
            {pool.instanceType for pool in request.nodePools.values() if pool.instanceType},
        )


class Ec2Cluster(ManagedCluster):
    """
    Self-hosted Kubernetes on plain EC2 instances.
    """

    CLOUD = CloudProvider.AMAZON
    DISTRIBUTIONS = frozenset({Distribution.EC2})
    LOCATION_PATTERN = r"^[a-z]{2}(-gov)?-[a-z]+-\d$"
    REQUIRES_SSH_KEY = True

    @classmethod
    def build_payload(cls, request: ClusterCreateRequest, distribution: Distribution) -> Ec2Payload:
        payload = Ec2Payload(
            kubernetes_version=request.kubernetesVersion,
            master_image=request.properties.get("masterImage"),
        )
        if request.properties.get("masterInstanceType"):
            payload.master_instance_type = str(request.properties["masterInstanceType"])
        return payload

    def validate_provider_fields(self, request: ClusterCreateRequest) -> None:
        payload = self._record.provider
        if not isinstance(payload, Ec2Payload):
            raise ProviderValidationError(
                f"cluster {self.get_name()} has no EC2 provider settings"
            )
        instance_types = {
            pool.instanceType for pool in request.nodePools.values() if pool.instanceType
        }
        instance_types.add(payload.master_instance_type)
        validate_region_and_instance_types(
            self.get_credentials(), request.location, instance_types
        )
