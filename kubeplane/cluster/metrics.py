from __future__ import annotations

import time
from typing import Callable, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram

from kubeplane.cluster.common import CommonCluster
from kubeplane.model.status import ClusterStatus

STATUS_CHANGE_DURATION = "kubeplane_cluster_status_change_duration_seconds"
CLUSTERS_TOTAL = "kubeplane_clusters_total"

# Provisioning takes minutes, not milliseconds
DURATION_BUCKETS = (10, 30, 60, 120, 300, 600, 900, 1200, 1800, 2700, 3600)


class ClusterMetrics:
    """
    Prometheus metrics of the cluster lifecycle.

    Every instance owns its registry unless one is given, so several managers
    can live in one process.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry or CollectorRegistry(auto_describe=True)
        self._duration = Histogram(
            STATUS_CHANGE_DURATION,
            "Time a cluster spent in a transitional status",
            ["provider", "location", "distribution", "status"],
            buckets=DURATION_BUCKETS,
            registry=self.registry,
        )
        self._total = Counter(
            CLUSTERS_TOTAL,
            "Clusters submitted for creation",
            ["provider", "location"],
            registry=self.registry,
        )

    def cluster_submitted(self, cluster: CommonCluster) -> None:
        self._total.labels(provider=cluster.get_cloud(), location=cluster.get_location()).inc()

    def start_timer(self, cluster: CommonCluster, status: ClusterStatus) -> Callable[[], None]:
        """
        Start timing a status change of a cluster.

        Returns:
            Callable[[], None]: Records the elapsed time when called.
        """
        observer = self._duration.labels(
            provider=cluster.get_cloud(),
            location=cluster.get_location(),
            distribution=cluster.get_distribution(),
            status=status.value,
        )
        start = time.monotonic()

        def observe() -> None:
            observer.observe(time.monotonic() - start)

        return observe
