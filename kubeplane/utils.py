from __future__ import annotations

import hashlib
import os
import re
import shutil
import tempfile
from contextlib import contextmanager
from datetime import datetime, timezone
from io import StringIO
from pathlib import Path
from typing import Any, Dict, Generator

import requests
from ruamel.yaml import YAML

from kubeplane.constants import HOME_ENV_VAR, PROJECT_NAME

# DNS-1123 label length
MAX_K8S_NAME_LENGTH = 63


def kubify_name(old: str) -> str:
    """
    Turn an arbitrary string into a name Kubernetes accepts for its objects.

    The result is lowercase, uses '-' for every other character, starts with
    a letter, ends with a letter or digit and has at most 63 characters.

    Args:
        old (str): The string to convert.

    Returns:
        str: A valid Kubernetes object name.

    Raises:
        ValueError: If nothing usable is left of the string.
    """
    name = re.sub(r"[^-a-z0-9]", "-", old.lower())
    name = re.sub(r"^[^a-z]+", "", name)
    name = re.sub(r"[^a-z0-9]+$", "", name)[:MAX_K8S_NAME_LENGTH]

    if not name:
        raise ValueError(f"Name: {old} can't be converted to a valid Kubernetes name")
    return name


def get_project_data_dir() -> str:
    """
    The directory kubeplane keeps its state in.

    $KUBEPLANE_HOME when set, ~/.kubeplane otherwise.
    """
    return os.environ.get(HOME_ENV_VAR, str(Path.home() / f".{PROJECT_NAME}"))


def get_cluster_data_dir(cluster_name: str) -> str:
    """
    Get the local state directory of a cluster.

    Args:
        cluster_name (str): The name of the cluster.

    Returns:
        str: The cluster data directory.
    """
    return os.path.join(get_project_data_dir(), "clusters", cluster_name)


def clean_cluster_data_dir(cluster_name: str) -> None:
    """Remove the local state directory of a cluster if it exists."""
    path = get_cluster_data_dir(cluster_name)
    if os.path.isdir(path):
        shutil.rmtree(path)


def get_pulumi_root() -> str:
    return str(Path(get_project_data_dir()) / "pulumi")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_yaml(obj: Dict[Any, Any]) -> str:
    """
    Dump a mapping as block style YAML.

    Args:
        obj (Dict[Any, Any]): The mapping to dump.

    Returns:
        str: The YAML document.
    """
    yaml = YAML()
    yaml.indent(mapping=2, sequence=4, offset=2)
    buf = StringIO()
    yaml.dump(obj, buf)
    return buf.getvalue()


def load_yaml(content: str) -> Dict[str, Any]:
    """Parse a YAML document, returning an empty dict for empty input."""
    yaml = YAML(typ="safe")
    data = yaml.load(content)
    return data or {}


def read_yaml_file(path: str) -> Dict[str, Any]:
    """
    Load a YAML file.

    A missing or empty file reads as an empty dict.
    """
    yaml = YAML(typ="safe")
    try:
        with open(path, "r") as file:
            data = yaml.load(file)
    except FileNotFoundError:
        data = {}
    return data or {}


def write_file_atomic(path: str, content: str) -> None:
    """Write a file by renaming a sibling temp file over it."""
    directory = os.path.dirname(path)
    os.makedirs(directory, exist_ok=True)
    fd, tmp_file = tempfile.mkstemp(dir=directory, prefix=".tmp-")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_file, path)
    except BaseException:
        os.remove(tmp_file)
        raise


def file_sha256(path: str) -> str:
    """Hex SHA-256 digest of a file's content."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(64 * 1024), b""):
            digest.update(block)
    return digest.hexdigest()


@contextmanager
def download_url(url: str) -> Generator[str, None, None]:
    """
    Stream a URL into a temp file and yield its path.

    The file is removed when the context exits.

    Raises:
        requests.HTTPError: If the server answers with an error status.
    """
    fd, tmp_file = tempfile.mkstemp()
    try:
        with os.fdopen(fd, "wb") as out:
            with requests.get(url, stream=True, timeout=60) as response:
                response.raise_for_status()
                for chunk in response.iter_content(chunk_size=64 * 1024):
                    out.write(chunk)
        yield tmp_file
    finally:
        os.remove(tmp_file)
