from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field

from kubeplane.utils import utcnow


class ClusterStatus(str, Enum):
    CREATING = "CREATING"
    RUNNING = "RUNNING"
    WARNING = "WARNING"
    ERROR = "ERROR"
    UPDATING = "UPDATING"
    DELETING = "DELETING"


CREATING_MESSAGE = "Cluster is creating"
RUNNING_MESSAGE = "Cluster is running"
UPDATING_MESSAGE = "Cluster is updating"
DELETING_MESSAGE = "Cluster is deleting"
POSTHOOKS_MESSAGE = "running posthooks"

# Statuses a cluster can be updated, resized or expired from
OPERABLE_STATUSES: FrozenSet[ClusterStatus] = frozenset(
    {ClusterStatus.RUNNING, ClusterStatus.WARNING}
)

_TRANSITIONS: Dict[ClusterStatus, FrozenSet[ClusterStatus]] = {
    ClusterStatus.CREATING: frozenset(
        {
            ClusterStatus.RUNNING,
            ClusterStatus.WARNING,
            ClusterStatus.ERROR,
            ClusterStatus.DELETING,
        }
    ),
    ClusterStatus.RUNNING: frozenset(
        {
            ClusterStatus.UPDATING,
            ClusterStatus.WARNING,
            ClusterStatus.ERROR,
            ClusterStatus.DELETING,
        }
    ),
    ClusterStatus.WARNING: frozenset(
        {
            ClusterStatus.UPDATING,
            ClusterStatus.RUNNING,
            ClusterStatus.ERROR,
            ClusterStatus.DELETING,
        }
    ),
    ClusterStatus.UPDATING: frozenset(
        {
            ClusterStatus.RUNNING,
            ClusterStatus.WARNING,
            ClusterStatus.ERROR,
            ClusterStatus.DELETING,
        }
    ),
    # ERROR -> CREATING is the recovery path
    ClusterStatus.ERROR: frozenset({ClusterStatus.CREATING, ClusterStatus.DELETING}),
    ClusterStatus.DELETING: frozenset({ClusterStatus.ERROR}),
}


def is_valid_transition(
    from_status: Optional[ClusterStatus], to_status: ClusterStatus
) -> bool:
    """
    Check whether a cluster may move from one status to another.

    A new record (no previous status) may only start in CREATING. Staying in
    the same status is always allowed, so that the message can change.
    """
    if from_status is None:
        return to_status == ClusterStatus.CREATING
    if from_status == to_status:
        return True
    return to_status in _TRANSITIONS[from_status]


class StatusChange(BaseModel):
    """
    One entry of a cluster's append-only status history.
    """

    model_config = ConfigDict(frozen=True)

    cluster_id: int
    created_at: datetime = Field(default_factory=utcnow)
    from_status: Optional[ClusterStatus] = None
    from_status_message: str = ""
    to_status: ClusterStatus
    to_status_message: str = ""


def get_cluster_start_time(history: Iterable[StatusChange]) -> Optional[datetime]:
    """
    Find when a cluster first became usable.

    The start time is the timestamp of the first change from CREATING into
    RUNNING or WARNING. Later update cycles do not move it.

    Args:
        history (Iterable[StatusChange]): The status history in write order.

    Returns:
        Optional[datetime]: The start time, or None if the cluster never
        finished creating.
    """
    for change in history:
        if change.from_status == ClusterStatus.CREATING and change.to_status in (
            ClusterStatus.RUNNING,
            ClusterStatus.WARNING,
        ):
            return change.created_at
    return None


def is_cluster_end_of_life(
    start_time: Optional[datetime], ttl_minutes: int, now: datetime
) -> bool:
    """
    Check whether a cluster has outlived its TTL.

    Args:
        start_time (Optional[datetime]): The value of get_cluster_start_time.
        ttl_minutes (int): The cluster's time to live.
        now (datetime): The current time.

    Returns:
        bool: False without a start time or while now <= start + ttl.
    """
    if start_time is None:
        return False
    return now > start_time + timedelta(minutes=ttl_minutes)
