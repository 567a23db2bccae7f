from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from kubeplane.cluster.workers import WorkerPool
from kubeplane.logger import logger as default_logger

CLUSTER_CREATED_TOPIC = "cluster_created"
CLUSTER_UPDATED_TOPIC = "cluster_updated"
CLUSTER_DELETED_TOPIC = "cluster_deleted"

Handler = Callable[..., Any]


@dataclass
class _Subscription:
    handler: Handler
    transactional: bool
    lock: threading.Lock = field(default_factory=threading.Lock)
    backlog: Deque[Tuple[Any, ...]] = field(default_factory=deque)
    draining: bool = False


class EventBus:
    """
    In-process publish/subscribe bus.

    Handlers run on the worker pool. A transactional subscription runs one
    event at a time, in publish order for events published from one thread.
    """

    def __init__(self, workers: WorkerPool, logger: Optional[logging.Logger] = None) -> None:
        self._workers = workers
        self._logger = logger or default_logger
        self._subscriptions: Dict[str, List[_Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe_async(self, topic: str, handler: Handler, transactional: bool = False) -> None:
        with self._lock:
            self._subscriptions.setdefault(topic, []).append(
                _Subscription(handler=handler, transactional=transactional)
            )

    def unsubscribe(self, topic: str, handler: Handler) -> None:
        with self._lock:
            self._subscriptions[topic] = [
                s for s in self._subscriptions.get(topic, []) if s.handler != handler
            ]

    def has_callback(self, topic: str) -> bool:
        with self._lock:
            return bool(self._subscriptions.get(topic))

    def publish(self, topic: str, *args: Any) -> None:
        with self._lock:
            subscriptions = list(self._subscriptions.get(topic, []))

        self._logger.debug(f"Publishing {topic}{args} to {len(subscriptions)} subscriber(s)")
        for subscription in subscriptions:
            if not subscription.transactional:
                self._workers.submit(f"event:{topic}", subscription.handler, *args)
                continue

            with subscription.lock:
                subscription.backlog.append(args)
                if subscription.draining:
                    continue
                subscription.draining = True
            self._workers.submit(f"event:{topic}", self._drain, subscription)

    def _drain(self, subscription: _Subscription) -> None:
        while True:
            with subscription.lock:
                if not subscription.backlog:
                    subscription.draining = False
                    return
                args = subscription.backlog.popleft()
            try:
                subscription.handler(*args)
            except Exception as e:
                self._logger.error(f"Event handler failed: {e}")

    def wait_async(self, timeout: Optional[float] = None) -> bool:
        return self._workers.wait(timeout)


class ClusterEvents:
    """Typed facade over the bus for cluster lifecycle events."""

    def __init__(self, bus: EventBus) -> None:
        self.bus = bus

    def cluster_created(self, cluster_id: int) -> None:
        self.bus.publish(CLUSTER_CREATED_TOPIC, cluster_id)

    def cluster_updated(self, cluster_id: int) -> None:
        self.bus.publish(CLUSTER_UPDATED_TOPIC, cluster_id)

    def cluster_deleted(self, organization_id: int, name: str) -> None:
        self.bus.publish(CLUSTER_DELETED_TOPIC, organization_id, name)
