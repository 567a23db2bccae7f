import os
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

import kubeplane.cluster.tools
from kubeplane.cluster.tools import HELM_VERSION, _parse_checksums, ensure_helm


def test_parse_checksums() -> None:
    text = "abc123  helm-v3.14.4-linux-amd64.tar.gz\n\ndef456  helm-v3.14.4-linux-arm64.tar.gz\n"
    assert _parse_checksums(text) == {
        "helm-v3.14.4-linux-amd64.tar.gz": "abc123",
        "helm-v3.14.4-linux-arm64.tar.gz": "def456",
    }


def test_ensure_helm_reuses_installed_binary(kubeplane_home: str) -> None:
    helm_dir = Path(kubeplane_home) / "bin" / f"helm-{HELM_VERSION}"
    helm_dir.mkdir(parents=True)
    (helm_dir / "helm").write_text("#!/bin/sh\n")

    with patch("platform.system", return_value="Linux"), patch(
        "platform.machine", return_value="x86_64"
    ), patch("requests.get") as mock_get:
        assert ensure_helm() == str(helm_dir / "helm")

    mock_get.assert_not_called()


def test_ensure_helm_rejects_unknown_archive(kubeplane_home: str) -> None:
    response = MagicMock()
    response.text = "abc123  helm-other.tar.gz\n"

    with patch("platform.system", return_value="Linux"), patch(
        "platform.machine", return_value="aarch64"
    ), patch("requests.get", return_value=response):
        with pytest.raises(Exception, match="SHA256 not found"):
            ensure_helm()


def test_checksum_mismatch(tmp_path) -> None:
    archive = tmp_path / "helm.tar.gz"
    archive.write_bytes(b"not the archive")

    with patch.object(kubeplane.cluster.tools, "download_url") as mock_download:
        mock_download.return_value.__enter__.return_value = str(archive)
        with pytest.raises(Exception, match="SHA256 mismatch"):
            kubeplane.cluster.tools._download_and_extract(
                "https://get.helm.sh/helm.tar.gz", "0" * 64, tmp_path / "out"
            )

    assert not os.path.exists(tmp_path / "out")
