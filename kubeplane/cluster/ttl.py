from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable, Optional

from kubeplane.cluster.events import CLUSTER_CREATED_TOPIC, CLUSTER_UPDATED_TOPIC, EventBus
from kubeplane.cluster.manager import Manager
from kubeplane.cluster.store import ClusterStore
from kubeplane.cluster.workqueue import RateLimitingQueue
from kubeplane.constants import TTL_RECHECK_MINUTES
from kubeplane.errors import ClusterNotFoundError, ErrorHandler, LoggingErrorHandler
from kubeplane.logger import get_logger
from kubeplane.model.status import (
    OPERABLE_STATUSES,
    get_cluster_start_time,
    is_cluster_end_of_life,
)
from kubeplane.utils import utcnow


class TtlController:
    """
    Deletes clusters that outlived their TTL.

    Cluster ids flow through a rate limited work queue processed by a single
    worker thread. Every cluster is enqueued on start, and again whenever it
    is created or updated. A live cluster with a TTL is re-checked
    periodically; failed checks are retried with backoff.
    """

    def __init__(
        self,
        manager: Manager,
        store: ClusterStore,
        bus: EventBus,
        queue: Optional[RateLimitingQueue[int]] = None,
        logger: Optional[logging.Logger] = None,
        error_handler: Optional[ErrorHandler] = None,
        recheck_minutes: int = TTL_RECHECK_MINUTES,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._manager = manager
        self._store = store
        self._bus = bus
        self._queue: RateLimitingQueue[int] = queue or RateLimitingQueue()
        self._logger = logger or get_logger("ttl")
        self._error_handler = error_handler or LoggingErrorHandler(self._logger)
        self._recheck_seconds = recheck_minutes * 60
        self._clock = clock
        self._thread: Optional[threading.Thread] = None

    @property
    def queue(self) -> RateLimitingQueue[int]:
        return self._queue

    def start(self) -> None:
        self._logger.info("Starting cluster TTL controller")
        for record in self._store.find_all():
            if record.id is not None:
                self._queue.add(record.id)

        self._bus.subscribe_async(CLUSTER_CREATED_TOPIC, self._enqueue)
        self._bus.subscribe_async(CLUSTER_UPDATED_TOPIC, self._enqueue)

        self._thread = threading.Thread(
            target=self._run_worker, name="ttl-controller", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._logger.info("Stopping cluster TTL controller")
        self._bus.unsubscribe(CLUSTER_CREATED_TOPIC, self._enqueue)
        self._bus.unsubscribe(CLUSTER_UPDATED_TOPIC, self._enqueue)
        self._queue.shut_down()
        if self._thread is not None:
            self._thread.join(timeout)

    def _enqueue(self, cluster_id: int) -> None:
        self._queue.add(cluster_id)

    def _run_worker(self) -> None:
        while self.process_next_cluster():
            pass

    def process_next_cluster(self, timeout: Optional[float] = None) -> bool:
        """
        Process one queued cluster.

        Returns:
            bool: False once the queue is shutting down.
        """
        cluster_id, shutting_down = self._queue.get(timeout)
        if shutting_down:
            return False
        if cluster_id is None:
            return True

        try:
            self.handle_cluster(cluster_id)
        except Exception as e:
            self._logger.error(f"Checking TTL of cluster {cluster_id} failed: {e}")
            self._error_handler.handle(e)
            self._queue.add_rate_limited(cluster_id)
        else:
            self._queue.forget(cluster_id)
        finally:
            self._queue.done(cluster_id)
        return True

    def handle_cluster(self, cluster_id: int) -> None:
        try:
            cluster = self._manager.get_cluster_by_id_only(cluster_id)
        except ClusterNotFoundError:
            self._logger.debug(f"Cluster {cluster_id} is gone, dropping it")
            return

        ttl = cluster.get_ttl()
        if ttl == 0:
            return
        if cluster.model.status not in OPERABLE_STATUSES:
            self._logger.debug(
                f"Cluster {cluster.get_name()} is {cluster.model.status.value}, skipping TTL check"
            )
            return

        start_time = get_cluster_start_time(
            self._manager.get_cluster_status_history(cluster_id)
        )
        if is_cluster_end_of_life(start_time, ttl, self._clock()):
            self._logger.info(
                f"Cluster {cluster.get_name()} reached its TTL of {ttl} minutes, deleting it"
            )
            self._manager.delete_cluster(cluster, force=False)
            return

        self._queue.add_after(cluster_id, self._recheck_seconds)
