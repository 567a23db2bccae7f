import typer

from kubeplane import __version__
from kubeplane.cli.cluster import cluster_app
from kubeplane.cli.controller import controller_app
from kubeplane.cli.secret import secret_app
from kubeplane.logger import setup_logger


def version_callback(version: bool) -> None:
    if version:
        typer.echo(f"Kubeplane CLI Version: {__version__}")
        raise typer.Exit()


cli = typer.Typer(context_settings={"help_option_names": ["-h", "--help"]})


@cli.callback()
def main_options(
    ctx: typer.Context,
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose output"
    ),
    version: bool = typer.Option(
        False, "--version", help="Show version and exit", callback=version_callback
    ),
) -> None:
    setup_logger(verbose)


cli.add_typer(cluster_app, name="cluster", help="Manage clusters.")

cli.add_typer(secret_app, name="secret", help="Manage provider credentials and keys.")

cli.add_typer(controller_app, name="controller", help="Run background controllers.")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
