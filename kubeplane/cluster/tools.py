from __future__ import annotations

import os
import platform
import shutil
import tarfile
import zipfile
from pathlib import Path
from typing import Dict, Tuple

import requests

from kubeplane.logger import logger
from kubeplane.utils import file_sha256, download_url, get_project_data_dir

# Pin the tool versions to avoid breaking changes
PULUMI_VERSION = os.getenv("PULUMI_VERSION", "v3.114.0")
HELM_VERSION = os.getenv("HELM_VERSION", "v3.14.4")


def _bin_dir() -> Path:
    bin_dir = Path(get_project_data_dir()) / "bin"
    bin_dir.mkdir(parents=True, exist_ok=True)
    return bin_dir


def _platform() -> Tuple[str, str]:
    """Return the lowercase system name and the amd64/arm64 architecture."""
    system = platform.system().lower()
    arch = platform.machine().lower()

    if arch in ["amd64", "x86_64"]:
        arch = "amd64"
    elif arch in ["arm64", "aarch64"]:
        arch = "arm64"
    else:
        raise Exception(f"Unsupported architecture: {arch}")
    return system, arch


def _prepend_path(directory: Path) -> None:
    current_path = os.environ.get("PATH", "")
    if str(directory) not in current_path.split(os.pathsep):
        os.environ["PATH"] = f"{directory}{os.pathsep}{current_path}"


def _parse_checksums(text: str) -> Dict[str, str]:
    checksums = {}
    for line in text.strip().split("\n"):
        if not line.strip():
            continue
        expected_sha256, filename = line.strip().split()
        checksums[filename] = expected_sha256
    return checksums


def _download_and_extract(url: str, expected_sha256: str, dest: Path) -> None:
    archive_name = url.rsplit("/", 1)[-1]
    logger.info(f"Downloading {archive_name}...")

    with download_url(url) as archive_file:
        archive_file_sha256 = file_sha256(archive_file)
        if archive_file_sha256 != expected_sha256:
            raise Exception(
                f"SHA256 mismatch: {archive_file_sha256} != {expected_sha256}"
            )

        if archive_name.endswith(".zip"):
            with zipfile.ZipFile(archive_file, "r") as zip_ref:
                zip_ref.extractall(dest)
        else:
            with tarfile.open(archive_file, "r:gz") as tar:
                tar.extractall(dest)


def _make_executable(path: Path) -> None:
    for child in path.iterdir():
        child.chmod(0o755)
        if child.is_dir():
            _make_executable(child)


def ensure_pulumi() -> None:
    """
    Make sure the Pulumi CLI is on PATH, downloading it into the data dir if needed.
    """
    bin_dir = _bin_dir()
    pulumi_path = bin_dir / f"pulumi-{PULUMI_VERSION}"
    if pulumi_path.exists():
        _prepend_path(pulumi_path)
        return

    system, arch = _platform()
    # Pulumi names the amd64 build x64
    pulumi_arch = "x64" if arch == "amd64" else arch
    pulumi_file = f"pulumi-{PULUMI_VERSION}-{system}-{pulumi_arch}"
    pulumi_file += ".zip" if system == "windows" else ".tar.gz"

    base_url = f"https://github.com/pulumi/pulumi/releases/download/{PULUMI_VERSION}"
    response = requests.get(f"{base_url}/pulumi-{PULUMI_VERSION[1:]}-checksums.txt")
    response.raise_for_status()
    checksums = _parse_checksums(response.text)
    if pulumi_file not in checksums:
        raise Exception(f"SHA256 not found for {pulumi_file}")

    _download_and_extract(f"{base_url}/{pulumi_file}", checksums[pulumi_file], bin_dir)

    extracted = bin_dir / "pulumi"
    _make_executable(extracted)
    extracted.rename(pulumi_path)

    # For windows, the Pulumi binary is under pulumi_path/bin
    if system == "windows":
        for file in (pulumi_path / "bin").iterdir():
            if file.is_file():
                shutil.move(str(file), str(pulumi_path))

    logger.info("Pulumi installed successfully.")
    _prepend_path(pulumi_path)


def ensure_helm() -> str:
    """
    Make sure the Helm CLI is installed in the data dir.

    Returns:
        str: The path to the helm binary.
    """
    system, arch = _platform()
    helm_dir = _bin_dir() / f"helm-{HELM_VERSION}"
    helm_bin = helm_dir / ("helm.exe" if system == "windows" else "helm")
    if helm_bin.exists():
        return str(helm_bin)

    archive = f"helm-{HELM_VERSION}-{system}-{arch}"
    archive += ".zip" if system == "windows" else ".tar.gz"
    url = f"https://get.helm.sh/{archive}"

    response = requests.get(f"{url}.sha256sum")
    response.raise_for_status()
    checksums = _parse_checksums(response.text)
    if archive not in checksums:
        raise Exception(f"SHA256 not found for {archive}")

    staging = _bin_dir() / f".helm-{HELM_VERSION}"
    _download_and_extract(url, checksums[archive], staging)

    # The archive holds a single <system>-<arch>/ directory
    helm_dir.mkdir(parents=True, exist_ok=True)
    shutil.move(str(staging / f"{system}-{arch}" / helm_bin.name), str(helm_bin))
    shutil.rmtree(staging)
    helm_bin.chmod(0o755)

    logger.info("Helm installed successfully.")
    return str(helm_bin)
