from __future__ import annotations

import threading
from typing import Optional

import typer
from prometheus_client import start_http_server

from kubeplane.cli.utils import handle_errors, load_runtime
from kubeplane.cluster.ttl import TtlController
from kubeplane.errors import LoggingErrorHandler
from kubeplane.logger import get_logger, logger

controller_app = typer.Typer()


@controller_app.command()
@handle_errors
def run(
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to the control plane config file. Defaults to $KUBEPLANE_CONFIG.",
    ),
    metrics_port: Optional[int] = typer.Option(
        None,
        "--metrics-port",
        help="Serve Prometheus metrics on this port.",
    ),
) -> None:
    """
    Runs the background controllers until interrupted.

    Clusters left in CREATING are resumed first when the configuration asks
    for it. The TTL controller then deletes clusters that outlived their TTL.
    """
    runtime = load_runtime(config)

    if metrics_port is not None:
        start_http_server(metrics_port, registry=runtime.manager.metrics.registry)
        logger.info(f"Serving metrics on port {metrics_port}.")

    if runtime.settings.cluster.retryPendingOnStart:
        count = runtime.manager.retry_pending_operations()
        if count:
            logger.info(f"Resumed {count} pending cluster operation(s).")

    ttl_logger = get_logger("ttl")
    ttl = TtlController(
        runtime.manager,
        runtime.store,
        runtime.bus,
        logger=ttl_logger,
        error_handler=LoggingErrorHandler(ttl_logger),
        recheck_minutes=runtime.settings.cluster.ttlRecheckMinutes,
    )
    ttl.start()
    logger.info("Controllers started. Press Ctrl+C to stop.")

    stopped = threading.Event()
    try:
        while not stopped.wait(1):
            pass
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    finally:
        ttl.stop(timeout=5)
        runtime.workers.shutdown(wait=True)
