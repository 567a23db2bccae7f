import threading
import time
from typing import List

from kubeplane.cluster.events import (
    CLUSTER_CREATED_TOPIC,
    CLUSTER_DELETED_TOPIC,
    ClusterEvents,
    EventBus,
)
from kubeplane.cluster.workers import WorkerPool


def test_publish_to_subscribers() -> None:
    workers = WorkerPool(4)
    bus = EventBus(workers)
    received: List[int] = []
    lock = threading.Lock()

    def handler(cluster_id: int) -> None:
        with lock:
            received.append(cluster_id)

    bus.subscribe_async(CLUSTER_CREATED_TOPIC, handler)
    ClusterEvents(bus).cluster_created(7)
    ClusterEvents(bus).cluster_deleted(1, "c1")

    assert bus.wait_async(timeout=5)
    assert received == [7]
    assert bus.has_callback(CLUSTER_CREATED_TOPIC)
    assert not bus.has_callback(CLUSTER_DELETED_TOPIC)
    workers.shutdown()


def test_transactional_subscription_keeps_order() -> None:
    workers = WorkerPool(4)
    bus = EventBus(workers)
    received: List[int] = []
    running = []

    def handler(cluster_id: int) -> None:
        running.append(cluster_id)
        assert len(running) == 1
        time.sleep(0.01)
        received.append(cluster_id)
        running.remove(cluster_id)

    bus.subscribe_async(CLUSTER_CREATED_TOPIC, handler, transactional=True)
    for i in range(10):
        bus.publish(CLUSTER_CREATED_TOPIC, i)

    assert bus.wait_async(timeout=10)
    assert received == list(range(10))
    workers.shutdown()


def test_unsubscribe() -> None:
    workers = WorkerPool(1)
    bus = EventBus(workers)
    received: List[int] = []

    bus.subscribe_async(CLUSTER_CREATED_TOPIC, received.append)
    bus.unsubscribe(CLUSTER_CREATED_TOPIC, received.append)
    bus.publish(CLUSTER_CREATED_TOPIC, 1)

    assert bus.wait_async(timeout=5)
    assert received == []
    workers.shutdown()
