from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ruamel.yaml import YAMLError

from kubeplane.utils import load_yaml, to_yaml


def load_kubeconfig(kubeconfig: bytes) -> Dict[str, Any]:
    """
    Parse a kubeconfig blob.

    Raises:
        ValueError: If the blob is not a kubeconfig with a current context.
    """
    try:
        data = load_yaml(kubeconfig.decode("utf-8"))
    except (UnicodeDecodeError, YAMLError) as e:
        raise ValueError(f"kubeconfig is not valid YAML: {e}") from e
    if not isinstance(data, dict) or not data.get("current-context"):
        raise ValueError("kubeconfig has no current-context")
    return data


def _find(entries: Optional[List[Dict[str, Any]]], name: str) -> Dict[str, Any]:
    for entry in entries or []:
        if entry.get("name") == name:
            return entry
    return {}


@dataclass
class KubeconfigCredentials:
    server: str
    certificate_authority_data: Optional[bytes] = None
    client_certificate_data: Optional[bytes] = None
    client_key_data: Optional[bytes] = None
    token: Optional[str] = None


def current_credentials(kubeconfig: bytes) -> KubeconfigCredentials:
    """
    Resolve the server and TLS material of the current context.

    Base64 encoded fields are decoded.
    """
    data = load_kubeconfig(kubeconfig)
    context = _find(data.get("contexts"), data["current-context"]).get("context", {})
    cluster = _find(data.get("clusters"), context.get("cluster", "")).get("cluster", {})
    user = _find(data.get("users"), context.get("user", "")).get("user", {}) or {}

    def decode(value: Optional[str]) -> Optional[bytes]:
        return base64.b64decode(value) if value else None

    return KubeconfigCredentials(
        server=cluster.get("server", ""),
        certificate_authority_data=decode(cluster.get("certificate-authority-data")),
        client_certificate_data=decode(user.get("client-certificate-data")),
        client_key_data=decode(user.get("client-key-data")),
        token=user.get("token"),
    )


def dummy_kubeconfig() -> bytes:
    """A syntactically valid kubeconfig that points nowhere, for the dummy provider."""
    config = {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [
            {"name": "cow-cluster", "cluster": {"server": "http://cow.org:8080"}},
            {"name": "horse-cluster", "cluster": {"server": "https://horse.org:4443"}},
            {"name": "pig-cluster", "cluster": {"server": "https://pig.org:443"}},
        ],
        "contexts": [
            {
                "name": "federal-context",
                "context": {"cluster": "horse-cluster", "user": "green-user"},
            },
            {
                "name": "queen-anne-context",
                "context": {"cluster": "pig-cluster", "user": "black-user"},
            },
        ],
        "users": [
            {"name": "blue-user", "user": {"token": "blue-token"}},
            {"name": "green-user", "user": {}},
        ],
        "current-context": "federal-context",
    }
    return to_yaml(config).encode("utf-8")
