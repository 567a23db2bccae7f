from __future__ import annotations

import os
from typing import Optional

import typer
from tabulate import tabulate

from kubeplane.cli.utils import format_timedelta, handle_errors, load_model_file, load_runtime
from kubeplane.cluster.creators import CommonClusterCreator
from kubeplane.cluster.manager import CreationContext, UpdateContext
from kubeplane.cluster.updaters import CommonUpdater, NodePoolUpdater
from kubeplane.constants import ORGANIZATION_ENV_VAR
from kubeplane.logger import logger
from kubeplane.model.requests import (
    ClusterCreateRequest,
    ClusterUpdateRequest,
    NodePoolUpdateRequest,
)
from kubeplane.utils import to_yaml, utcnow

cluster_app = typer.Typer()

ORGANIZATION_OPTION = typer.Option(
    int(os.getenv(ORGANIZATION_ENV_VAR, "1")),
    "--org",
    "-o",
    help="The organization the cluster belongs to.",
)
USER_OPTION = typer.Option(None, "--user", "-u", help="The id of the acting user.")
CONFIG_OPTION = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to the control plane config file. Defaults to $KUBEPLANE_CONFIG.",
)


def _log_status(runtime_manager: object, organization_id: int, name: str) -> None:
    cluster = runtime_manager.get_cluster_by_name(organization_id, name)  # type: ignore
    status = cluster.get_status()
    logger.info(f"Cluster {name} is {status.status.value}: {status.status_message}")


@cluster_app.command()
@handle_errors
def create(
    request_file: str = typer.Option(
        ...,
        "--file",
        "-f",
        help="Path to the cluster creation request. The request file is a YAML "
        "file that describes the cloud, the location and the node pools.",
    ),
    organization_id: int = ORGANIZATION_OPTION,
    user_id: Optional[int] = USER_OPTION,
    config: Optional[str] = CONFIG_OPTION,
) -> None:
    """
    Creates a cluster and runs its post hooks.
    """
    request = load_model_file(request_file, ClusterCreateRequest)
    runtime = load_runtime(config)

    cluster = runtime.registry.from_request(request, organization_id, user_id)
    ctx = CreationContext(
        organization_id=organization_id,
        name=request.name,
        provider=request.cloud,
        user_id=user_id,
        distribution=request.distribution,
        secret_id=request.secretId,
        secret_ids=request.secretIds,
    )
    runtime.manager.create_cluster(ctx, CommonClusterCreator(request, cluster, logger))
    logger.info(f"Creating cluster {request.name}...")
    runtime.wait()
    _log_status(runtime.manager, organization_id, request.name)


@cluster_app.command("list")
@handle_errors
def list_clusters(
    organization_id: int = ORGANIZATION_OPTION,
    config: Optional[str] = CONFIG_OPTION,
) -> None:
    """
    Lists the clusters of an organization.
    """
    runtime = load_runtime(config)
    records = runtime.store.find_by_organization(organization_id)
    if not records:
        logger.info("No clusters found.")
        return

    now = utcnow()
    table = [
        (
            record.id,
            record.name,
            record.cloud.value,
            record.distribution.value,
            record.location,
            record.status.value,
            format_timedelta(now - record.created_at),
        )
        for record in records
    ]
    logger.info(
        tabulate(
            table,
            headers=["ID", "Name", "Cloud", "Distribution", "Location", "Status", "Age"],
        )
    )


@cluster_app.command()
@handle_errors
def status(
    name: str = typer.Argument(..., help="The name of the cluster."),
    organization_id: int = ORGANIZATION_OPTION,
    config: Optional[str] = CONFIG_OPTION,
) -> None:
    """
    Shows the status of a cluster.
    """
    runtime = load_runtime(config)
    cluster = runtime.manager.get_cluster_by_name(organization_id, name)
    logger.info(to_yaml(cluster.get_status().model_dump(mode="json")))


@cluster_app.command()
@handle_errors
def history(
    name: str = typer.Argument(..., help="The name of the cluster."),
    organization_id: int = ORGANIZATION_OPTION,
    config: Optional[str] = CONFIG_OPTION,
) -> None:
    """
    Shows the status history of a cluster.
    """
    runtime = load_runtime(config)
    cluster = runtime.manager.get_cluster_by_name(organization_id, name)
    table = [
        (
            change.created_at.isoformat(timespec="seconds"),
            change.from_status.value if change.from_status else "",
            change.to_status.value,
            change.to_status_message,
        )
        for change in runtime.manager.get_cluster_status_history(cluster.get_id())
    ]
    logger.info(tabulate(table, headers=["Time", "From", "To", "Message"]))


@cluster_app.command()
@handle_errors
def update(
    name: str = typer.Argument(..., help="The name of the cluster."),
    request_file: str = typer.Option(
        ...,
        "--file",
        "-f",
        help="Path to the cluster update request.",
    ),
    organization_id: int = ORGANIZATION_OPTION,
    user_id: Optional[int] = USER_OPTION,
    config: Optional[str] = CONFIG_OPTION,
) -> None:
    """
    Updates the node pools, version, TTL or scale options of a cluster.
    """
    request = load_model_file(request_file, ClusterUpdateRequest)
    runtime = load_runtime(config)
    cluster = runtime.manager.get_cluster_by_name(organization_id, name)
    updater = CommonUpdater(request, cluster, user_id, runtime.hook_env, logger)
    runtime.manager.update_cluster(
        UpdateContext(organization_id, cluster.get_id(), user_id), updater
    )
    logger.info(f"Updating cluster {name}...")
    runtime.wait()
    _log_status(runtime.manager, organization_id, name)


@cluster_app.command()
@handle_errors
def scale(
    name: str = typer.Argument(..., help="The name of the cluster."),
    request_file: str = typer.Option(
        ...,
        "--file",
        "-f",
        help="Path to the node pool resize request.",
    ),
    organization_id: int = ORGANIZATION_OPTION,
    user_id: Optional[int] = USER_OPTION,
    config: Optional[str] = CONFIG_OPTION,
) -> None:
    """
    Resizes existing node pools of a cluster.
    """
    request = load_model_file(request_file, NodePoolUpdateRequest)
    runtime = load_runtime(config)
    cluster = runtime.manager.get_cluster_by_name(organization_id, name)
    updater = NodePoolUpdater(request, cluster, user_id, runtime.hook_env, logger)
    runtime.manager.update_cluster(
        UpdateContext(organization_id, cluster.get_id(), user_id), updater
    )
    runtime.wait()
    _log_status(runtime.manager, organization_id, name)


@cluster_app.command()
@handle_errors
def delete(
    name: str = typer.Argument(..., help="The name of the cluster."),
    organization_id: int = ORGANIZATION_OPTION,
    force: bool = typer.Option(
        False,
        "--force",
        help="Remove the cluster record even if tearing down resources fails.",
    ),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Automatic yes to prompts. Use this option to bypass the confirmation "
        "prompt and directly proceed with the operation.",
    ),
    config: Optional[str] = CONFIG_OPTION,
) -> None:
    """
    Deletes a cluster together with its workloads and cloud resources.
    """
    if not yes and not typer.confirm(
        f"Are you sure you want to delete cluster {name}? All resources and data "
        "will be permanently deleted.",
        default=False,
    ):
        raise typer.Abort()

    runtime = load_runtime(config)
    cluster = runtime.manager.get_cluster_by_name(organization_id, name)
    runtime.manager.delete_cluster(cluster, force=force)
    logger.info(f"Deleting cluster {name}...")
    runtime.wait()

    if runtime.store.exists(organization_id, name):
        _log_status(runtime.manager, organization_id, name)
        raise typer.Exit(1)
    logger.info(f"Cluster {name} deleted.")


@cluster_app.command()
@handle_errors
def kubeconfig(
    name: str = typer.Argument(..., help="The name of the cluster."),
    organization_id: int = ORGANIZATION_OPTION,
    config: Optional[str] = CONFIG_OPTION,
) -> None:
    """
    Prints the kubeconfig of a cluster.
    """
    runtime = load_runtime(config)
    cluster = runtime.manager.get_cluster_by_name(organization_id, name)
    typer.echo(cluster.get_k8s_config().decode("utf-8"))
