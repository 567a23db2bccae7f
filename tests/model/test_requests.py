import pytest
from pydantic import ValidationError

from kubeplane.model.requests import (
    ClusterCreateRequest,
    NodePoolRequest,
    NodePoolSizeRequest,
    NodePoolUpdateRequest,
)


def test_node_pool_counts() -> None:
    pool = NodePoolRequest(instanceType="t3.large", minCount=1, maxCount=3, count=2)
    assert pool.count == 2


def test_node_pool_min_greater_than_max() -> None:
    with pytest.raises(ValueError):
        NodePoolRequest(minCount=5, maxCount=1)


def test_node_pool_count_out_of_range() -> None:
    with pytest.raises(ValueError):
        NodePoolRequest(minCount=1, maxCount=2, count=3)


def test_create_request_name_validation() -> None:
    with pytest.raises(ValueError):
        ClusterCreateRequest(name="Invalid_Name", cloud="dummy")

    request = ClusterCreateRequest(name="my-cluster-1", cloud="dummy")
    assert request.ttlMinutes == 0
    assert request.nodePools == {}


def test_create_request_rejects_unknown_fields() -> None:
    with pytest.raises(ValidationError):
        ClusterCreateRequest(name="c1", cloud="dummy", region="us-east-1")


def test_create_request_negative_ttl() -> None:
    with pytest.raises(ValidationError):
        ClusterCreateRequest(name="c1", cloud="dummy", ttlMinutes=-1)


def test_node_pool_update_requires_pools() -> None:
    with pytest.raises(ValidationError):
        NodePoolUpdateRequest(nodePools={})


def test_node_pool_counts_from_strings() -> None:
    pool = NodePoolRequest.model_validate(
        {"instanceType": "t3.large", "minCount": "1", "maxCount": "3", "count": "2"}
    )
    assert (pool.minCount, pool.maxCount, pool.count) == (1, 3, 2)

    with pytest.raises(ValidationError, match="count must be between"):
        NodePoolRequest.model_validate({"minCount": "1", "maxCount": "2", "count": "3"})

    with pytest.raises(ValidationError):
        NodePoolRequest.model_validate({"minCount": "many"})


def test_node_pool_size_counts_from_strings() -> None:
    assert NodePoolSizeRequest.model_validate({"count": "2"}).count == 2

    with pytest.raises(ValidationError, match="greater than or equal to 0"):
        NodePoolSizeRequest.model_validate({"count": "-1"})

    with pytest.raises(ValidationError, match="less than or equal to maxCount"):
        NodePoolSizeRequest.model_validate({"minCount": "4", "maxCount": "2"})
