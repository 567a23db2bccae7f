from datetime import datetime, timezone

import pytest

from kubeplane.errors import InvalidRequestError
from kubeplane.model.nodepool import (
    NodePool,
    apply_node_pool_delta,
    compute_node_pool_delta,
    resize_node_pools,
)
from kubeplane.model.requests import NodePoolRequest, NodePoolSizeRequest

CREATED = datetime(2024, 1, 1, tzinfo=timezone.utc)


def stored_pools() -> list:
    return [
        NodePool(
            id=i,
            name=name,
            instance_type="t3.large",
            min_count=1,
            max_count=3,
            count=2,
            created_by=7,
            created_at=CREATED,
            provider_id=f"ng-{name}",
        )
        for i, name in enumerate(["a", "b", "c"], start=1)
    ]


def test_compute_node_pool_delta() -> None:
    requested = {
        "a": NodePoolRequest(instanceType="m5.xlarge", minCount=1, maxCount=5),
        "d": NodePoolRequest(instanceType="t3.small", minCount=2, maxCount=4),
    }

    delta = {pool.name: pool for pool in compute_node_pool_delta(stored_pools(), requested, 9)}

    assert set(delta) == {"a", "b", "c", "d"}
    assert delta["b"].marked_for_deletion
    assert delta["c"].marked_for_deletion

    a = delta["a"]
    assert not a.marked_for_deletion
    assert a.instance_type == "m5.xlarge"
    assert a.max_count == 5
    assert a.id == 1
    assert a.created_by == 7
    assert a.created_at == CREATED
    assert a.count == 2
    assert a.provider_id == "ng-a"

    d = delta["d"]
    assert d.id is None
    assert d.created_by == 9
    assert d.count == 2
    assert not d.marked_for_deletion


def test_compute_node_pool_delta_skips_unchanged_pools() -> None:
    requested = {
        name: NodePoolRequest(instanceType="t3.large", minCount=1, maxCount=3, count=2)
        for name in ["a", "b", "c"]
    }

    assert compute_node_pool_delta(stored_pools(), requested, None) == []


def test_new_pool_requires_instance_type() -> None:
    with pytest.raises(InvalidRequestError):
        compute_node_pool_delta([], {"x": NodePoolRequest()}, None)


def test_apply_node_pool_delta() -> None:
    stored = stored_pools()
    requested = {
        "a": NodePoolRequest(instanceType="m5.xlarge", minCount=1, maxCount=5),
        "d": NodePoolRequest(instanceType="t3.small"),
    }

    result = apply_node_pool_delta(stored, compute_node_pool_delta(stored, requested, None))

    assert [pool.name for pool in result] == ["a", "d"]
    assert result[0].instance_type == "m5.xlarge"
    assert result[1].id == 2


def test_resize_node_pools() -> None:
    resized = resize_node_pools(stored_pools(), {"b": NodePoolSizeRequest(count=3)})

    assert [pool.count for pool in resized] == [2, 3, 2]


def test_resize_unknown_pool() -> None:
    with pytest.raises(InvalidRequestError, match="zz"):
        resize_node_pools(stored_pools(), {"zz": NodePoolSizeRequest(count=1)})


def test_resize_out_of_bounds() -> None:
    with pytest.raises(InvalidRequestError):
        resize_node_pools(stored_pools(), {"a": NodePoolSizeRequest(count=10)})
