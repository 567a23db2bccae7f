from __future__ import annotations

import base64
import hashlib
import logging
import os
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Protocol

import fasteners
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from pydantic import BaseModel, Field

from kubeplane.errors import SecretNotFoundError, SecretValidationError
from kubeplane.logger import logger as default_logger
from kubeplane.utils import read_yaml_file, to_yaml, utcnow, write_file_atomic

SSH_SECRET_TYPE = "ssh"
TLS_SECRET_TYPE = "tls"
KUBERNETES_SECRET_TYPE = "kubernetes"
KUBECONFIG_KEY = "K8Sconfig"

# Keys a secret of each type must carry
REQUIRED_KEYS: Dict[str, List[str]] = {
    "amazon": ["AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY"],
    "azure": [
        "AZURE_CLIENT_ID",
        "AZURE_CLIENT_SECRET",
        "AZURE_TENANT_ID",
        "AZURE_SUBSCRIPTION_ID",
    ],
    "google": ["type", "project_id", "private_key", "client_email"],
    "alibaba": ["ALIBABA_ACCESS_KEY_ID", "ALIBABA_ACCESS_KEY_SECRET"],
    "oracle": ["user_ocid", "tenancy_ocid", "api_key", "api_key_fingerprint", "region"],
    KUBERNETES_SECRET_TYPE: [KUBECONFIG_KEY],
    "dummy": [],
    TLS_SECRET_TYPE: ["server"],
    SSH_SECRET_TYPE: [
        "user",
        "identifier",
        "public_key_data",
        "public_key_fingerprint",
        "private_key_data",
    ],
}


class SecretItem(BaseModel):
    id: str
    organization_id: int
    name: str
    type: str
    values: Dict[str, str] = Field(default_factory=dict)
    tags: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)


class SecretStore(Protocol):
    def validate_secret_type(self, organization_id: int, secret_id: str, cloud: str) -> None: ...

    def get(self, organization_id: int, secret_id: str) -> SecretItem: ...

    def store(
        self,
        organization_id: int,
        name: str,
        secret_type: str,
        values: Dict[str, str],
        tags: Optional[List[str]] = None,
    ) -> str: ...

    def delete(self, organization_id: int, secret_id: str) -> None: ...

    def list(self, organization_id: int) -> List[SecretItem]: ...


def check_required_keys(secret_type: str, values: Dict[str, str]) -> None:
    """
    Validate that a secret carries every key its type requires.

    Raises:
        SecretValidationError: If the type is unknown or keys are missing.
    """
    if secret_type not in REQUIRED_KEYS:
        raise SecretValidationError(f"unsupported secret type: {secret_type}")
    missing = [key for key in REQUIRED_KEYS[secret_type] if not values.get(key)]
    if missing:
        raise SecretValidationError(
            f"secret of type {secret_type} is missing keys: {', '.join(missing)}"
        )


class FileSecretStore:
    """
    Stores secrets as YAML files under ``<root>/<organization id>/``.

    Files are created with owner-only permissions. Secret values are opaque to
    the rest of the control plane.
    """

    def __init__(self, root: str, logger: Optional[logging.Logger] = None) -> None:
        self._root = root
        os.makedirs(root, exist_ok=True)
        self._logger = logger or default_logger
        self._lock = fasteners.ReaderWriterLock()

    def _path(self, organization_id: int, secret_id: str) -> str:
        return os.path.join(self._root, str(organization_id), f"{secret_id}.yaml")

    @fasteners.read_locked(lock="_lock")
    def get(self, organization_id: int, secret_id: str) -> SecretItem:
        data = read_yaml_file(self._path(organization_id, secret_id))
        if not data:
            raise SecretNotFoundError(
                f"secret {secret_id} not found in organization {organization_id}"
            )
        return SecretItem.model_validate(data)

    def validate_secret_type(self, organization_id: int, secret_id: str, cloud: str) -> None:
        """
        Check that a secret exists and can be used for the given cloud.

        Args:
            organization_id (int): The organization owning the secret.
            secret_id (str): The secret to check.
            cloud (str): The cloud tag of the cluster.

        Raises:
            SecretValidationError: If the secret is missing, has another type or lacks keys.
        """
        try:
            secret = self.get(organization_id, secret_id)
        except SecretNotFoundError as e:
            raise SecretValidationError(str(e)) from e

        if secret.type != cloud:
            raise SecretValidationError(
                f"secret type {secret.type} doesn't match with cloud type {cloud}"
            )
        check_required_keys(secret.type, secret.values)

    @fasteners.write_locked(lock="_lock")
    def store(
        self,
        organization_id: int,
        name: str,
        secret_type: str,
        values: Dict[str, str],
        tags: Optional[List[str]] = None,
    ) -> str:
        check_required_keys(secret_type, values)
        secret = SecretItem(
            id=uuid.uuid4().hex,
            organization_id=organization_id,
            name=name,
            type=secret_type,
            values=values,
            tags=tags or [],
        )
        path = self._path(organization_id, secret.id)
        write_file_atomic(path, to_yaml(secret.model_dump(mode="json")))
        os.chmod(path, 0o600)
        self._logger.debug(f"Stored {secret_type} secret {name} ({secret.id})")
        return secret.id

    @fasteners.write_locked(lock="_lock")
    def delete(self, organization_id: int, secret_id: str) -> None:
        try:
            os.remove(self._path(organization_id, secret_id))
        except FileNotFoundError:
            raise SecretNotFoundError(
                f"secret {secret_id} not found in organization {organization_id}"
            )

    @fasteners.read_locked(lock="_lock")
    def list(self, organization_id: int) -> List[SecretItem]:
        directory = os.path.join(self._root, str(organization_id))
        if not os.path.isdir(directory):
            return []
        return sorted(
            (
                SecretItem.model_validate(read_yaml_file(os.path.join(directory, name)))
                for name in os.listdir(directory)
                if name.endswith(".yaml")
            ),
            key=lambda s: s.created_at,
        )


@dataclass
class SshKeyPair:
    user: str
    identifier: str
    public_key_data: str
    public_key_fingerprint: str
    private_key_data: str

    def to_values(self) -> Dict[str, str]:
        return {
            "user": self.user,
            "identifier": self.identifier,
            "public_key_data": self.public_key_data,
            "public_key_fingerprint": self.public_key_fingerprint,
            "private_key_data": self.private_key_data,
        }


def ssh_fingerprint(public_key: str) -> str:
    """Return the colon separated MD5 fingerprint of an OpenSSH public key."""
    body = base64.b64decode(public_key.strip().split()[1].encode("ascii"))
    digest = hashlib.md5(body).hexdigest()
    return ":".join(digest[i : i + 2] for i in range(0, len(digest), 2))


def generate_ssh_key_pair(bits: int = 4096, user: str = "kubeplane") -> SshKeyPair:
    """
    Generate an RSA key pair for cluster nodes.

    Args:
        bits (int): The key size.
        user (str): The login user the key is meant for.

    Returns:
        SshKeyPair: The key pair, private key in PEM and public key in OpenSSH format.
    """
    key = rsa.generate_private_key(
        backend=default_backend(), public_exponent=65537, key_size=bits
    )
    private_key = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")
    public_key = (
        key.public_key()
        .public_bytes(serialization.Encoding.OpenSSH, serialization.PublicFormat.OpenSSH)
        .decode("utf-8")
    )
    return SshKeyPair(
        user=user,
        identifier=f"{user}@kubeplane",
        public_key_data=public_key,
        public_key_fingerprint=ssh_fingerprint(public_key),
        private_key_data=private_key,
    )


def store_ssh_key_pair(
    secrets: SecretStore,
    organization_id: int,
    cluster_id: int,
    cluster_name: str,
    key: SshKeyPair,
) -> str:
    """Store an SSH key pair as a secret tagged with the cluster and return its id."""
    return secrets.store(
        organization_id,
        f"ssh-cluster-{cluster_id}",
        SSH_SECRET_TYPE,
        key.to_values(),
        tags=[f"cluster:{cluster_name}", f"clusterID:{cluster_id}"],
    )
