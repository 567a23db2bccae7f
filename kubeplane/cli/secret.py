from __future__ import annotations

import os
from typing import Dict, List, Optional

import typer
from tabulate import tabulate

from kubeplane.cli.utils import handle_errors, load_runtime
from kubeplane.constants import ORGANIZATION_ENV_VAR
from kubeplane.logger import logger
from kubeplane.utils import read_yaml_file

secret_app = typer.Typer()

ORGANIZATION_OPTION = typer.Option(
    int(os.getenv(ORGANIZATION_ENV_VAR, "1")),
    "--org",
    "-o",
    help="The organization the secret belongs to.",
)
CONFIG_OPTION = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to the control plane config file. Defaults to $KUBEPLANE_CONFIG.",
)


@secret_app.command()
@handle_errors
def create(
    name: str = typer.Argument(..., help="The name of the secret."),
    secret_type: str = typer.Option(
        ...,
        "--type",
        "-t",
        help="The secret type, e.g. amazon, azure, google, kubernetes or ssh.",
    ),
    values_file: str = typer.Option(
        ...,
        "--file",
        "-f",
        help="Path to a YAML file holding the secret values as a flat mapping.",
    ),
    tags: Optional[List[str]] = typer.Option(
        None, "--tag", help="A tag to attach to the secret. May be repeated."
    ),
    organization_id: int = ORGANIZATION_OPTION,
    config: Optional[str] = CONFIG_OPTION,
) -> None:
    """
    Stores a secret.
    """
    path = os.path.abspath(os.path.expanduser(values_file))
    if not os.path.exists(path):
        logger.error(f"File {path} does not exist.")
        raise typer.Exit(1)

    values: Dict[str, str] = {
        str(k): str(v) for k, v in read_yaml_file(path).items()
    }
    runtime = load_runtime(config)
    secret_id = runtime.secrets.store(
        organization_id, name, secret_type, values, tags or []
    )
    logger.info(f"Secret {name} stored with id {secret_id}.")


@secret_app.command("list")
@handle_errors
def list_secrets(
    organization_id: int = ORGANIZATION_OPTION,
    config: Optional[str] = CONFIG_OPTION,
) -> None:
    """
    Lists the secrets of an organization. Values are never shown.
    """
    runtime = load_runtime(config)
    secrets = runtime.secrets.list(organization_id)
    if not secrets:
        logger.info("No secrets found.")
        return

    table = [
        (secret.id, secret.name, secret.type, ",".join(secret.tags))
        for secret in secrets
    ]
    logger.info(tabulate(table, headers=["ID", "Name", "Type", "Tags"]))


@secret_app.command()
@handle_errors
def delete(
    secret_id: str = typer.Argument(..., help="The id of the secret."),
    organization_id: int = ORGANIZATION_OPTION,
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Automatic yes to prompts.",
    ),
    config: Optional[str] = CONFIG_OPTION,
) -> None:
    """
    Deletes a secret.
    """
    if not yes and not typer.confirm(
        f"Are you sure you want to delete secret {secret_id}?", default=False
    ):
        raise typer.Abort()

    runtime = load_runtime(config)
    runtime.secrets.delete(organization_id, secret_id)
    logger.info(f"Secret {secret_id} deleted.")
