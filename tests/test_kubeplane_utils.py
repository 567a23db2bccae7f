import os
from pathlib import Path
from unittest.mock import patch

import pytest

from kubeplane.constants import HOME_ENV_VAR, PROJECT_NAME
from kubeplane.kubeconfig import current_credentials, dummy_kubeconfig, load_kubeconfig
from kubeplane.utils import (
    clean_cluster_data_dir,
    get_cluster_data_dir,
    get_project_data_dir,
    kubify_name,
    load_yaml,
    read_yaml_file,
    to_yaml,
    write_file_atomic,
)


def test_kubify_name() -> None:
    assert kubify_name("MyName") == "myname"
    assert kubify_name("My.Name") == "my-name"
    assert kubify_name("My_Name") == "my-name"
    assert kubify_name("123MyName") == "myname"
    assert kubify_name("MyName!") == "myname"
    assert len(kubify_name("a" * 100)) == 63

    with pytest.raises(ValueError):
        kubify_name("123")


def test_get_project_data_dir(tmp_path) -> None:
    with patch.dict(os.environ, {HOME_ENV_VAR: str(tmp_path)}):
        assert get_project_data_dir() == str(tmp_path)

    with patch.dict(os.environ, {}, clear=True):
        assert get_project_data_dir() == str(Path.home() / f".{PROJECT_NAME}")


def test_clean_cluster_data_dir() -> None:
    path = get_cluster_data_dir("demo")
    os.makedirs(path)
    Path(path, "state.json").write_text("{}")

    clean_cluster_data_dir("demo")
    assert not os.path.exists(path)

    clean_cluster_data_dir("demo")


def test_yaml_helpers(tmp_path) -> None:
    assert to_yaml({"key": {"nested_key": "nested_value"}}) == (
        "key:\n  nested_key: nested_value\n"
    )
    assert load_yaml("") == {}
    assert read_yaml_file(str(tmp_path / "missing.yaml")) == {}


def test_write_file_atomic(tmp_path) -> None:
    path = str(tmp_path / "nested" / "file.yaml")

    write_file_atomic(path, "a: 1\n")
    write_file_atomic(path, "a: 2\n")

    assert read_yaml_file(path) == {"a": 2}
    assert os.listdir(tmp_path / "nested") == ["file.yaml"]


def test_load_kubeconfig() -> None:
    assert load_kubeconfig(dummy_kubeconfig())["current-context"] == "federal-context"

    with pytest.raises(ValueError, match="current-context"):
        load_kubeconfig(b"a: b")

    with pytest.raises(ValueError, match="not valid YAML"):
        load_kubeconfig(b"not yaml: [")


def test_current_credentials() -> None:
    credentials = current_credentials(dummy_kubeconfig())
    assert credentials.server == "https://horse.org:4443"
    assert credentials.token is None
    assert credentials.certificate_authority_data is None
