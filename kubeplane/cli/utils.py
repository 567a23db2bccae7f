from __future__ import annotations

import functools
import os
import platform
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Optional, Type, TypeVar

import typer
from pydantic import BaseModel, ValidationError

from kubeplane.cluster.events import ClusterEvents, EventBus
from kubeplane.cluster.hookfunctions import HookEnvironment
from kubeplane.cluster.manager import Manager
from kubeplane.cluster.registry import ProviderRegistry, default_registry
from kubeplane.cluster.secrets import FileSecretStore
from kubeplane.cluster.store import FileClusterStore
from kubeplane.cluster.workers import WorkerPool
from kubeplane.config import Config, load_config
from kubeplane.constants import HOME_ENV_VAR
from kubeplane.dns import Route53DnsRegistrar
from kubeplane.errors import ClusterError, LoggingErrorHandler
from kubeplane.helm import HelmCli
from kubeplane.k8s import KubernetesClientFactory
from kubeplane.logger import logger
from kubeplane.utils import get_pulumi_root, read_yaml_file

M = TypeVar("M", bound=BaseModel)


def init_pulumi() -> None:
    """
    Point Pulumi at a local file backend under the data directory.

    Values already present in the environment win.
    """
    os.environ["PULUMI_CONFIG_PASSPHRASE"] = os.environ.get(
        "PULUMI_CONFIG_PASSPHRASE", ""
    )

    pulumi_root = get_pulumi_root()
    os.makedirs(pulumi_root, exist_ok=True)
    os.environ["PULUMI_HOME"] = os.environ.get("PULUMI_HOME", pulumi_root)

    system = platform.system().lower()
    if system == "windows":
        _, pulumi_root = os.path.splitdrive(pulumi_root)
        pulumi_url = f"file:///{pulumi_root}"
    else:
        pulumi_url = f"file://{pulumi_root}"

    os.environ["PULUMI_BACKEND_URL"] = os.environ.get(
        "PULUMI_BACKEND_URL",
        pulumi_url,
    )


@dataclass
class Runtime:
    settings: Config
    store: FileClusterStore
    secrets: FileSecretStore
    workers: WorkerPool
    bus: EventBus
    registry: ProviderRegistry
    hook_env: HookEnvironment
    manager: Manager

    def wait(self) -> None:
        """Block until every background operation finished."""
        self.workers.wait()


def load_runtime(config_path: Optional[str] = None) -> Runtime:
    """
    Wire up the control plane from a configuration file.

    Args:
        config_path (Optional[str]): The configuration file, see load_config.

    Returns:
        Runtime: The assembled components.
    """
    try:
        settings = load_config(config_path)
    except (ValueError, ValidationError) as e:
        logger.error(f"Invalid configuration: {e}")
        raise typer.Exit(1)

    if settings.dataDir:
        os.environ[HOME_ENV_VAR] = settings.dataDir
    data_dir = settings.data_dir
    init_pulumi()

    error_handler = LoggingErrorHandler(logger)
    store = FileClusterStore(os.path.join(data_dir, "state"), logger)
    secrets = FileSecretStore(os.path.join(data_dir, "secrets"), logger)
    workers = WorkerPool(settings.cluster.workers, logger, error_handler)
    bus = EventBus(workers, logger)
    registry = default_registry(store, secrets, logger)
    hook_env = HookEnvironment(
        settings=settings,
        secrets=secrets,
        store=store,
        k8s=KubernetesClientFactory(logger),
        helm=HelmCli(logger=logger),
        dns=Route53DnsRegistrar(settings.dns.region, logger=logger)
        if settings.dns.enabled
        else None,
        logger=logger,
    )
    manager = Manager(
        store,
        secrets,
        ClusterEvents(bus),
        registry,
        workers,
        hook_env,
        logger=logger,
        error_handler=error_handler,
    )
    return Runtime(settings, store, secrets, workers, bus, registry, hook_env, manager)


def handle_errors(func: Callable[..., Any]) -> Callable[..., Any]:
    """
    Decorator that turns control plane errors into a logged message and exit code 1.
    """

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except ClusterError as e:
            logger.error(str(e))
            raise typer.Exit(1)

    return wrapper


def load_model_file(path: str, model: Type[M]) -> M:
    """
    Load a YAML file into a request model.

    Exits with code 1 if the file is missing or does not match the model.
    """
    path = os.path.abspath(os.path.expanduser(path))
    if not os.path.exists(path):
        logger.error(f"File {path} does not exist.")
        raise typer.Exit(1)

    try:
        return model.model_validate(read_yaml_file(path))
    except ValidationError as e:
        logger.error(f"Invalid file {path}: {e}")
        raise typer.Exit(1)


def format_timedelta(td: timedelta) -> str:
    total_seconds = int(td.total_seconds())
    hours, remainder = divmod(total_seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    days, hours = divmod(hours, 24)

    if days > 0:
        return f"{days}d{hours}h"
    elif hours > 0:
        return f"{hours}h{minutes}m"
    elif minutes > 0:
        return f"{minutes}m{seconds}s"
    else:
        return f"{seconds}s"
