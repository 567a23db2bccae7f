import os
from typing import Any, List

import pytest
from typer.testing import CliRunner

from kubeplane import __version__
from kubeplane.cli.__main__ import cli
from kubeplane.cluster.secrets import FileSecretStore
from kubeplane.cluster.store import FileClusterStore
from kubeplane.model.status import ClusterStatus

runner = CliRunner()

CREATE_REQUEST = """
name: demo
cloud: dummy
location: local
nodePools:
  pool1:
    instanceType: small
    minCount: 1
    maxCount: 3
"""

SCALE_REQUEST = """
nodePools:
  pool1:
    maxCount: 5
"""


@pytest.fixture
def data_dir(tmp_path: Any, monkeypatch: pytest.MonkeyPatch) -> str:
    data_dir = str(tmp_path / "data")
    monkeypatch.setenv("KUBEPLANE_HOME", data_dir)
    monkeypatch.setenv("PULUMI_CONFIG_PASSPHRASE", "")
    monkeypatch.setenv("PULUMI_HOME", str(tmp_path / "pulumi"))
    monkeypatch.setenv("PULUMI_BACKEND_URL", f"file://{tmp_path}/pulumi")
    return data_dir


@pytest.fixture
def config_file(tmp_path: Any, data_dir: str) -> str:
    path = tmp_path / "kubeplane.yaml"
    path.write_text(
        f"version: '1.0'\ndataDir: {data_dir}\ncluster:\n  workers: 2\n  sshKeyBits: 2048\n"
    )
    return str(path)


def invoke(config_file: str, *args: str) -> Any:
    argv: List[str] = list(args) + ["--config", config_file]
    return runner.invoke(cli, argv)


def write(tmp_path: Any, name: str, content: str) -> str:
    path = tmp_path / name
    path.write_text(content)
    return str(path)


def test_version() -> None:
    result = runner.invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert f"Kubeplane CLI Version: {__version__}" in result.stdout


def test_cluster_lifecycle(tmp_path: Any, data_dir: str, config_file: str) -> None:
    store = FileClusterStore(os.path.join(data_dir, "state"))

    result = invoke(config_file, "cluster", "create", "-f", write(tmp_path, "c.yaml", CREATE_REQUEST))
    assert result.exit_code == 0, result.output
    record = store.get_by_name(1, "demo")
    assert record.status == ClusterStatus.RUNNING

    result = invoke(config_file, "cluster", "create", "-f", write(tmp_path, "c.yaml", CREATE_REQUEST))
    assert result.exit_code == 1

    assert invoke(config_file, "cluster", "list").exit_code == 0
    assert invoke(config_file, "cluster", "status", "demo").exit_code == 0
    assert invoke(config_file, "cluster", "history", "demo").exit_code == 0

    result = invoke(config_file, "cluster", "kubeconfig", "demo")
    assert result.exit_code == 0
    assert "current-context: federal-context" in result.stdout

    result = invoke(config_file, "cluster", "scale", "demo", "-f", write(tmp_path, "s.yaml", SCALE_REQUEST))
    assert result.exit_code == 0, result.output
    record = store.get_by_name(1, "demo")
    assert record.node_pools[0].max_count == 5
    assert record.status == ClusterStatus.RUNNING

    result = invoke(config_file, "cluster", "delete", "demo", "--yes")
    assert result.exit_code == 0, result.output
    assert not store.exists(1, "demo")

    assert invoke(config_file, "cluster", "status", "demo").exit_code == 1


def test_delete_requires_confirmation(tmp_path: Any, data_dir: str, config_file: str) -> None:
    invoke(config_file, "cluster", "create", "-f", write(tmp_path, "c.yaml", CREATE_REQUEST))

    result = runner.invoke(
        cli, ["cluster", "delete", "demo", "--config", config_file], input="n\n"
    )

    assert result.exit_code == 1
    assert FileClusterStore(os.path.join(data_dir, "state")).exists(1, "demo")


def test_invalid_request_file(tmp_path: Any, config_file: str) -> None:
    result = invoke(
        config_file,
        "cluster",
        "create",
        "-f",
        write(tmp_path, "c.yaml", "name: Not_Valid\ncloud: dummy\n"),
    )
    assert result.exit_code == 1

    result = invoke(config_file, "cluster", "create", "-f", str(tmp_path / "missing.yaml"))
    assert result.exit_code == 1


def test_invalid_config(tmp_path: Any) -> None:
    config_file = write(tmp_path, "bad.yaml", "version: '9.0'\n")
    assert invoke(config_file, "cluster", "list").exit_code == 1


def test_secrets(tmp_path: Any, data_dir: str, config_file: str) -> None:
    values = write(tmp_path, "values.yaml", "server: registry.example.com\nport: 443\n")

    result = invoke(config_file, "secret", "create", "registry", "-t", "tls", "-f", values, "--tag", "ci")
    assert result.exit_code == 0, result.output

    secrets = FileSecretStore(os.path.join(data_dir, "secrets"))
    [secret] = secrets.list(1)
    assert secret.values == {"server": "registry.example.com", "port": "443"}
    assert secret.tags == ["ci"]

    assert invoke(config_file, "secret", "list").exit_code == 0
    assert "registry.example.com" not in invoke(config_file, "secret", "list").output

    result = invoke(config_file, "secret", "create", "aws", "-t", "amazon", "-f", values)
    assert result.exit_code == 1

    assert invoke(config_file, "secret", "delete", secret.id, "--yes").exit_code == 0
    assert secrets.list(1) == []
    assert invoke(config_file, "secret", "delete", secret.id, "--yes").exit_code == 1
