from typing import Any, Callable

import pytest

from kubeplane.cluster.secrets import FileSecretStore
from kubeplane.cluster.store import FileClusterStore
from kubeplane.model.cluster import (
    ClusterRecord,
    CloudProvider,
    Distribution,
    DummyPayload,
    EksPayload,
)
from kubeplane.model.nodepool import NodePool


@pytest.fixture(autouse=True)
def kubeplane_home(tmp_path: Any, monkeypatch: pytest.MonkeyPatch) -> str:
    home = str(tmp_path / "home")
    monkeypatch.setenv("KUBEPLANE_HOME", home)
    return home


@pytest.fixture
def store(tmp_path: Any) -> FileClusterStore:
    return FileClusterStore(str(tmp_path / "state"))


@pytest.fixture
def secrets(tmp_path: Any) -> FileSecretStore:
    return FileSecretStore(str(tmp_path / "secrets"))


@pytest.fixture
def make_record() -> Callable[..., ClusterRecord]:
    def factory(
        name: str = "test-cluster",
        organization_id: int = 1,
        distribution: Distribution = Distribution.DUMMY,
        **kwargs: Any,
    ) -> ClusterRecord:
        if distribution == Distribution.EKS:
            cloud, payload = CloudProvider.AMAZON, EksPayload(kubernetes_version="1.29")
        else:
            cloud, payload = CloudProvider.DUMMY, DummyPayload()
        fields = {
            "uid": f"uid-{name}",
            "organization_id": organization_id,
            "name": name,
            "cloud": cloud,
            "distribution": distribution,
            "location": "us-west-2",
            "node_pools": [
                NodePool(id=1, name="pool1", instance_type="t3.large", min_count=1, max_count=3),
            ],
            "provider": payload,
        }
        fields.update(kwargs)
        return ClusterRecord(**fields)

    return factory
