from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from kubeplane.cluster.events import CLUSTER_CREATED_TOPIC, CLUSTER_UPDATED_TOPIC
from kubeplane.cluster.providers.dummy import DummyCluster
from kubeplane.cluster.ttl import TtlController
from kubeplane.cluster.workqueue import RateLimitingQueue
from kubeplane.errors import ClusterNotFoundError
from kubeplane.model.status import ClusterStatus
from kubeplane.utils import utcnow


@pytest.fixture
def queue():
    q: RateLimitingQueue[int] = RateLimitingQueue()
    yield q
    q.shut_down()


def running_cluster(store, secrets, make_record, ttl: int) -> DummyCluster:
    cluster = DummyCluster(make_record(ttl_minutes=ttl), store, secrets)
    cluster.persist()
    cluster.set_status(ClusterStatus.RUNNING, "up")
    return cluster


def controller(store, queue, manager, now) -> TtlController:
    return TtlController(manager, store, MagicMock(), queue=queue, clock=lambda: now)


def manager_for(store, cluster) -> MagicMock:
    manager = MagicMock()
    manager.get_cluster_by_id_only.return_value = cluster
    manager.get_cluster_status_history.side_effect = store.status_history
    return manager


def test_expired_cluster_is_deleted(store, secrets, make_record, queue) -> None:
    cluster = running_cluster(store, secrets, make_record, ttl=30)
    manager = manager_for(store, cluster)

    ttl = controller(store, queue, manager, utcnow() + timedelta(minutes=31))
    ttl.handle_cluster(cluster.get_id())

    manager.delete_cluster.assert_called_once_with(cluster, force=False)
    assert queue.waiting() == 0


def test_live_cluster_is_rechecked(store, secrets, make_record, queue) -> None:
    cluster = running_cluster(store, secrets, make_record, ttl=30)
    manager = manager_for(store, cluster)

    ttl = controller(store, queue, manager, utcnow() + timedelta(minutes=10))
    ttl.handle_cluster(cluster.get_id())

    manager.delete_cluster.assert_not_called()
    assert queue.waiting() == 1


def test_cluster_without_ttl_is_ignored(store, secrets, make_record, queue) -> None:
    cluster = running_cluster(store, secrets, make_record, ttl=0)
    manager = manager_for(store, cluster)

    controller(store, queue, manager, utcnow() + timedelta(days=365)).handle_cluster(1)

    manager.delete_cluster.assert_not_called()
    assert queue.waiting() == 0


def test_updating_cluster_is_skipped(store, secrets, make_record, queue) -> None:
    cluster = running_cluster(store, secrets, make_record, ttl=1)
    cluster.set_status(ClusterStatus.UPDATING, "changing")
    manager = manager_for(store, cluster)

    controller(store, queue, manager, utcnow() + timedelta(days=1)).handle_cluster(1)

    manager.delete_cluster.assert_not_called()


def test_deleted_cluster_is_dropped(store, queue) -> None:
    manager = MagicMock()
    manager.get_cluster_by_id_only.side_effect = ClusterNotFoundError("gone")

    controller(store, queue, manager, utcnow()).handle_cluster(7)

    assert queue.waiting() == 0


def test_failed_check_is_retried_with_backoff(store, queue) -> None:
    manager = MagicMock()
    manager.get_cluster_by_id_only.side_effect = RuntimeError("store unavailable")
    error_handler = MagicMock()
    ttl = TtlController(manager, store, MagicMock(), queue=queue, error_handler=error_handler)

    queue.add(3)
    assert ttl.process_next_cluster(timeout=1)

    error_handler.handle.assert_called_once()
    assert queue.num_requeues(3) == 1


def test_successful_check_forgets_failures(store, secrets, make_record, queue) -> None:
    cluster = running_cluster(store, secrets, make_record, ttl=0)
    ttl = controller(store, queue, manager_for(store, cluster), utcnow())
    queue.add_rate_limited(cluster.get_id())

    assert ttl.process_next_cluster(timeout=2)
    assert queue.num_requeues(cluster.get_id()) == 0


def test_start_enqueues_clusters_and_subscribes(store, secrets, make_record, queue) -> None:
    running_cluster(store, secrets, make_record, ttl=0)
    bus = MagicMock()
    manager = MagicMock()
    ttl = TtlController(manager, store, bus, queue=queue)

    ttl.start()
    topics = [c.args[0] for c in bus.subscribe_async.call_args_list]
    ttl.stop(timeout=5)

    assert topics == [CLUSTER_CREATED_TOPIC, CLUSTER_UPDATED_TOPIC]
    assert queue.shutting_down()
