from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from kubeplane.errors import InvalidRequestError
from kubeplane.model.requests import NodePoolRequest, NodePoolSizeRequest
from kubeplane.utils import utcnow


class NodePool(BaseModel):
    """
    A named group of worker machines within one cluster.
    """

    id: Optional[int] = None
    name: str
    instance_type: Optional[str] = None
    min_count: int = 1
    max_count: int = 1
    count: int = 1
    autoscaling: bool = False
    image: Optional[str] = None
    disk_size_gb: Optional[int] = None
    labels: Dict[str, str] = Field(default_factory=dict)
    created_by: Optional[int] = None
    created_at: Optional[datetime] = None
    # Identifier of the pool on the provider side, e.g. an EKS node group name
    provider_id: Optional[str] = None
    marked_for_deletion: bool = False

    def differs_from(self, request: NodePoolRequest) -> bool:
        return (
            (request.instanceType is not None and request.instanceType != self.instance_type)
            or request.minCount != self.min_count
            or request.maxCount != self.max_count
            or (request.count is not None and request.count != self.count)
            or request.autoscaling != self.autoscaling
            or (request.image is not None and request.image != self.image)
            or (request.diskSizeGb is not None and request.diskSizeGb != self.disk_size_gb)
            or request.labels != self.labels
        )


def node_pool_from_request(
    name: str, request: NodePoolRequest, user_id: Optional[int]
) -> NodePool:
    """
    Build a brand new node pool from a request entry.

    Raises:
        InvalidRequestError: If the request does not name an instance type.
    """
    if not request.instanceType:
        raise InvalidRequestError(f"instanceType is required for new node pool {name}")
    return NodePool(
        name=name,
        instance_type=request.instanceType,
        min_count=request.minCount,
        max_count=request.maxCount,
        count=request.count if request.count is not None else request.minCount,
        autoscaling=request.autoscaling,
        image=request.image,
        disk_size_gb=request.diskSizeGb,
        labels=dict(request.labels),
        created_by=user_id,
        created_at=utcnow(),
    )


def compute_node_pool_delta(
    stored: List[NodePool],
    requested: Dict[str, NodePoolRequest],
    user_id: Optional[int],
) -> List[NodePool]:
    """
    Compute the node pool changes an update request implies.

    Stored pools missing from the request come back marked for deletion.
    Stored pools whose fields changed come back updated, keeping their id,
    creator, creation time, current count and provider id. Requested pools
    that are not stored come back as additions created by ``user_id`` with
    ``count`` set to the requested count or ``minCount``. Unchanged pools are
    left out.

    Args:
        stored (List[NodePool]): The pools currently recorded for the cluster.
        requested (Dict[str, NodePoolRequest]): The pools in the update request, by name.
        user_id (Optional[int]): The user issuing the update.

    Returns:
        List[NodePool]: The delta to apply.

    Raises:
        InvalidRequestError: If a new pool has no instance type.
    """
    delta: List[NodePool] = []
    stored_names = set()

    for pool in stored:
        stored_names.add(pool.name)
        request = requested.get(pool.name)
        if request is None:
            delta.append(pool.model_copy(update={"marked_for_deletion": True}))
            continue

        if not pool.differs_from(request):
            continue

        count = pool.count
        if request.count is not None:
            count = request.count
        delta.append(
            pool.model_copy(
                update={
                    "instance_type": request.instanceType or pool.instance_type,
                    "min_count": request.minCount,
                    "max_count": request.maxCount,
                    "count": count,
                    "autoscaling": request.autoscaling,
                    "image": request.image or pool.image,
                    "disk_size_gb": request.diskSizeGb or pool.disk_size_gb,
                    "labels": dict(request.labels),
                    "marked_for_deletion": False,
                }
            )
        )

    for name, request in requested.items():
        if name in stored_names:
            continue
        delta.append(node_pool_from_request(name, request, user_id))

    return delta


def apply_node_pool_delta(stored: List[NodePool], delta: List[NodePool]) -> List[NodePool]:
    """
    Return the pool list that results from applying a delta.

    Pools marked for deletion are dropped, updated pools replace their stored
    counterpart in place and additions are appended.
    """
    changes = {pool.name: pool for pool in delta}
    result: List[NodePool] = []
    for pool in stored:
        change = changes.pop(pool.name, None)
        if change is None:
            result.append(pool)
        elif not change.marked_for_deletion:
            result.append(change)
    result.extend(pool for pool in changes.values() if not pool.marked_for_deletion)

    next_id = max((pool.id or 0 for pool in result), default=0) + 1
    for i, pool in enumerate(result):
        if pool.id is None:
            result[i] = pool.model_copy(update={"id": next_id})
            next_id += 1
    return result


def resize_node_pools(
    stored: List[NodePool], requested: Dict[str, NodePoolSizeRequest]
) -> List[NodePool]:
    """
    Apply a resize-only request to existing pools.

    Raises:
        InvalidRequestError: If a pool does not exist or the resulting sizes are inconsistent.
    """
    by_name = {pool.name: pool for pool in stored}
    missing = sorted(set(requested) - set(by_name))
    if missing:
        raise InvalidRequestError(f"node pools not found: {', '.join(missing)}")

    result: List[NodePool] = []
    for pool in stored:
        request = requested.get(pool.name)
        if request is None:
            result.append(pool)
            continue

        update = {
            key: value
            for key, value in {
                "count": request.count,
                "min_count": request.minCount,
                "max_count": request.maxCount,
                "autoscaling": request.autoscaling,
            }.items()
            if value is not None
        }
        resized = pool.model_copy(update=update)
        if resized.min_count > resized.max_count:
            raise InvalidRequestError(
                f"node pool {pool.name}: minCount must be less than or equal to maxCount"
            )
        if not resized.autoscaling and not (
            resized.min_count <= resized.count <= resized.max_count
        ):
            raise InvalidRequestError(
                f"node pool {pool.name}: count must be between minCount and maxCount"
            )
        result.append(resized)
    return result
