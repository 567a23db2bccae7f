from __future__ import annotations

import json
import logging
import os
import tempfile
from contextlib import contextmanager
from typing import Any, Dict, Generator, List, Optional, Protocol

import sh

from kubeplane.cluster.tools import ensure_helm
from kubeplane.errors import InfrastructureError
from kubeplane.logger import logger as default_logger
from kubeplane.utils import to_yaml

DEPLOYED = "deployed"
FAILED = "failed"


class HelmInstaller(Protocol):
    def install_deployment(
        self,
        kubeconfig: bytes,
        namespace: str,
        chart: str,
        release_name: str,
        values: Dict[str, Any],
        chart_version: Optional[str] = None,
        upgrade_if_exists: bool = False,
        repo: Optional[str] = None,
    ) -> None: ...

    def delete_all_deployments(self, kubeconfig: bytes) -> None: ...


@contextmanager
def _temp_file(content: str, suffix: str) -> Generator[str, None, None]:
    fd, path = tempfile.mkstemp(suffix=suffix)
    try:
        with os.fdopen(fd, "w") as f:
            f.write(content)
        os.chmod(path, 0o600)
        yield path
    finally:
        os.remove(path)


def _stderr(error: sh.ErrorReturnCode) -> str:
    return error.stderr.decode("utf-8", errors="replace").strip()


class HelmCli:
    """
    Drives the helm binary. Every call gets the cluster's kubeconfig through
    a private temp file.
    """

    def __init__(
        self, helm_path: Optional[str] = None, logger: Optional[logging.Logger] = None
    ) -> None:
        self._helm_path = helm_path
        self._logger = logger or default_logger

    def _helm(self) -> sh.Command:
        if self._helm_path is None:
            self._helm_path = ensure_helm()
        return sh.Command(self._helm_path)

    def _run(self, kubeconfig_path: str, args: List[str]) -> str:
        return str(self._helm()(*args, "--kubeconfig", kubeconfig_path, _tty_out=False))

    def _check(self, kubeconfig_path: str, args: List[str]) -> str:
        try:
            return self._run(kubeconfig_path, args)
        except sh.ErrorReturnCode as e:
            raise InfrastructureError(f"helm {args[0]} failed: {_stderr(e)}") from e

    def release_status(
        self, kubeconfig_path: str, namespace: str, release_name: str
    ) -> Optional[str]:
        """Return the status of a release, or None if it does not exist."""
        try:
            output = self._run(
                kubeconfig_path,
                ["status", release_name, "--namespace", namespace, "-o", "json"],
            )
        except sh.ErrorReturnCode as e:
            if "not found" in _stderr(e):
                return None
            raise InfrastructureError(f"helm status failed: {_stderr(e)}") from e
        return json.loads(output).get("info", {}).get("status")

    def install_deployment(
        self,
        kubeconfig: bytes,
        namespace: str,
        chart: str,
        release_name: str,
        values: Dict[str, Any],
        chart_version: Optional[str] = None,
        upgrade_if_exists: bool = False,
        repo: Optional[str] = None,
    ) -> None:
        """
        Installs a chart as a release.

        A release that is already deployed is left alone unless
        ``upgrade_if_exists`` is set. A failed release is uninstalled and
        installed again.

        Raises:
            InfrastructureError: If a helm command fails.
        """
        with _temp_file(kubeconfig.decode("utf-8"), ".kubeconfig") as kubeconfig_path:
            status = self.release_status(kubeconfig_path, namespace, release_name)
            if status == DEPLOYED and not upgrade_if_exists:
                self._logger.info(f"Release {release_name} is already deployed, skipping.")
                return

            if status == FAILED:
                self._logger.info(f"Release {release_name} failed before, reinstalling.")
                self._check(
                    kubeconfig_path, ["uninstall", release_name, "--namespace", namespace]
                )
                status = None

            command = "install" if status is None else "upgrade"
            with _temp_file(to_yaml(values), ".yaml") as values_path:
                args = [
                    command,
                    release_name,
                    chart,
                    "--namespace",
                    namespace,
                    "--create-namespace",
                    "--values",
                    values_path,
                ]
                if repo:
                    args += ["--repo", repo]
                if chart_version:
                    args += ["--version", chart_version]
                self._check(kubeconfig_path, args)
            self._logger.info(f"Release {release_name} ({command}) done in {namespace}.")

    def delete_all_deployments(self, kubeconfig: bytes) -> None:
        with _temp_file(kubeconfig.decode("utf-8"), ".kubeconfig") as kubeconfig_path:
            releases = json.loads(
                self._check(kubeconfig_path, ["list", "--all-namespaces", "-o", "json"]) or "[]"
            )
            for release in releases:
                self._logger.info(
                    f"Uninstalling release {release['name']} from {release['namespace']}..."
                )
                self._check(
                    kubeconfig_path,
                    ["uninstall", release["name"], "--namespace", release["namespace"]],
                )
