from __future__ import annotations

import json
from typing import Dict

import pulumi
import pulumi_aws as aws
import pulumi_awsx as awsx
import pulumi_eks as eks
from pulumi import automation as auto

from kubeplane.model.cluster import ClusterRecord
from kubeplane.utils import kubify_name


def ownership_tags(record: ClusterRecord) -> Dict[str, str]:
    """Tags that tie every AWS resource of a stack to its cluster record."""
    return {
        "kubeplane:cluster": record.name,
        "kubeplane:cluster-uid": record.uid,
        "kubeplane:organization": str(record.organization_id),
    }


def create_worker_role(cluster_name: str) -> aws.iam.Role:
    managed_policy_arns = [
        "arn:aws:iam::aws:policy/AmazonEKSWorkerNodePolicy",
        "arn:aws:iam::aws:policy/AmazonEKS_CNI_Policy",
        "arn:aws:iam::aws:policy/AmazonEC2ContainerRegistryReadOnly",
    ]
    assume_role_policy = aws.iam.get_policy_document(
        statements=[
            aws.iam.GetPolicyDocumentStatementArgs(
                actions=["sts:AssumeRole"],
                effect="Allow",
                principals=[
                    aws.iam.GetPolicyDocumentStatementPrincipalArgs(
                        type="Service",
                        identifiers=["ec2.amazonaws.com"],
                    ),
                ],
            ),
        ],
    ).json

    return aws.iam.Role(
        f"{cluster_name}-node-role",
        assume_role_policy=assume_role_policy,
        managed_policy_arns=managed_policy_arns,
    )


def create_eks_cluster(record: ClusterRecord) -> eks.Cluster:
    """
    Declares an EKS cluster with one managed node group per node pool.

    Node groups carry a "nodepool" label so that post hooks and the cluster
    autoscaler can address them. Pools without an instance type are skipped.

    Args:
        record (ClusterRecord): The cluster to declare.

    Returns:
        eks.Cluster
    """
    cluster_name = kubify_name(record.name)
    worker_role = create_worker_role(cluster_name)

    # Subnet role tags let EKS place public and internal load balancers
    vpc = awsx.ec2.Vpc(
        f"{cluster_name}-vpc",
        subnet_strategy=awsx.ec2.SubnetAllocationStrategy.AUTO,
        subnet_specs=[
            {
                "type": awsx.ec2.SubnetType.PUBLIC,
                "tags": {"kubernetes.io/role/elb": "1"},
            },
            {
                "type": awsx.ec2.SubnetType.PRIVATE,
                "tags": {"kubernetes.io/role/internal-elb": "1"},
            },
        ],
    )

    cluster = eks.Cluster(
        cluster_name,
        version=getattr(record.provider, "kubernetes_version", None),
        vpc_id=vpc.vpc_id,
        public_subnet_ids=vpc.public_subnet_ids,
        private_subnet_ids=vpc.private_subnet_ids,
        node_associate_public_ip_address=False,
        create_oidc_provider=True,
        skip_default_node_group=True,
        instance_roles=[worker_role],
    )

    for pool in record.node_pools:
        if not pool.instance_type:
            continue
        pool_name = kubify_name(pool.name)
        eks.ManagedNodeGroup(
            f"{cluster_name}-{pool_name}-group",
            node_group_name=f"{cluster_name}-{pool_name}",
            cluster=cluster,
            instance_types=[pool.instance_type],
            scaling_config=aws.eks.NodeGroupScalingConfigArgs(
                desired_size=pool.count,
                min_size=pool.min_count,
                max_size=pool.max_count,
            ),
            labels={**pool.labels, "nodepool": pool.name},
            node_role_arn=worker_role.arn,
            subnet_ids=vpc.private_subnet_ids,
            disk_size=pool.disk_size_gb,
            capacity_type="ON_DEMAND",
        )

    pulumi.export("kubeconfig", cluster.kubeconfig)
    pulumi.export("vpc_id", vpc.vpc_id)
    return cluster


def eks_program(record: ClusterRecord) -> auto.PulumiFn:
    def program() -> None:
        create_eks_cluster(record)

    return program


def eks_stack_config(
    record: ClusterRecord, credentials: Dict[str, str]
) -> Dict[str, auto.ConfigValue]:
    config = {
        "aws:region": auto.ConfigValue(value=record.location),
        "aws:defaultTags": auto.ConfigValue(value=json.dumps({"tags": ownership_tags(record)})),
    }
    if credentials.get("AWS_ACCESS_KEY_ID"):
        config["aws:accessKey"] = auto.ConfigValue(
            value=credentials["AWS_ACCESS_KEY_ID"], secret=True
        )
        config["aws:secretKey"] = auto.ConfigValue(
            value=credentials["AWS_SECRET_ACCESS_KEY"], secret=True
        )
    return config
