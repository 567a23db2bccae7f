from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel

from kubeplane.model.status import ClusterStatus


class NodePoolStatus(BaseModel):
    instance_type: Optional[str] = None
    count: int
    min_count: int
    max_count: int
    autoscaling: bool
    image: Optional[str] = None


class ClusterStatusResponse(BaseModel):
    """
    Provider agnostic view of a cluster.
    """

    id: int
    uid: str
    name: str
    organization_id: int
    cloud: str
    distribution: str
    location: str
    status: ClusterStatus
    status_message: str
    ttl_minutes: int
    start_time: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    created_by: Optional[int] = None
    logging: bool
    monitoring: bool
    service_mesh: bool
    security_scan: bool
    node_pools: Dict[str, NodePoolStatus]
