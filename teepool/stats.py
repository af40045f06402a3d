"""
Point-in-time pool statistics.

Everything here is derived from a registry snapshot plus the queue depth;
nothing is stored, so any number of readers may call in concurrently.

Exposed via:
- StatsCollector.collect(): PoolStats for GET /stats
- prometheus_format(): Prometheus text exposition for GET /metrics
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Iterable, List

from teepool.models import Worker, WorkerStatus

if TYPE_CHECKING:
    from teepool.admission import AdmissionQueue
    from teepool.registry import NodePoolRegistry


@dataclass
class PoolStats:
    """Snapshot of pool health at a point in time."""

    total_requests: int
    queued_requests: int
    average_cold_start_ms: float
    nodes_warm: int  # warm + hot
    nodes_cold: int  # tracked but neither serving nor coming up
    nodes_starting: int
    by_status: Dict[str, int] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    @property
    def total_nodes(self) -> int:
        return sum(self.by_status.values())


def average_cold_start_ms(workers: Iterable[Worker]) -> float:
    """Incremental mean over workers that completed a cold start."""
    mean = 0.0
    count = 0
    for worker in workers:
        if worker.cold_start_duration_ms is None:
            continue
        count += 1
        mean += (worker.cold_start_duration_ms - mean) / count
    return mean


def compute_stats(
    workers: List[Worker],
    queue_depth: int,
    total_requests: int = 0,
) -> PoolStats:
    by_status = {status.value: 0 for status in WorkerStatus}
    for worker in workers:
        by_status[worker.status.value] += 1

    return PoolStats(
        total_requests=total_requests,
        queued_requests=queue_depth,
        average_cold_start_ms=average_cold_start_ms(workers),
        nodes_warm=by_status["warm"] + by_status["hot"],
        nodes_cold=by_status["cold"] + by_status["draining"] + by_status["error"],
        nodes_starting=by_status["starting"],
        by_status=by_status,
    )


class StatsCollector:
    """Reads the registry and queue; owns no state of its own."""

    def __init__(self, registry: "NodePoolRegistry", queue: "AdmissionQueue") -> None:
        self._registry = registry
        self._queue = queue

    def collect(self, total_requests: int = 0) -> PoolStats:
        return compute_stats(
            self._registry.snapshot(),
            self._queue.depth(),
            total_requests=total_requests,
        )


def prometheus_format(stats: PoolStats) -> str:
    """
    Export pool statistics in Prometheus text exposition format.

    Returns:
        String in Prometheus format for /metrics endpoint
    """
    lines = []

    lines.append("# HELP teepool_requests_total Route requests received")
    lines.append("# TYPE teepool_requests_total counter")
    lines.append(f"teepool_requests_total {stats.total_requests}")

    lines.append("")
    lines.append("# HELP teepool_queue_depth Requests waiting for a worker")
    lines.append("# TYPE teepool_queue_depth gauge")
    lines.append(f"teepool_queue_depth {stats.queued_requests}")

    lines.append("")
    lines.append("# HELP teepool_cold_start_ms_avg Mean cold start duration in milliseconds")
    lines.append("# TYPE teepool_cold_start_ms_avg gauge")
    lines.append(f"teepool_cold_start_ms_avg {stats.average_cold_start_ms:.1f}")

    lines.append("")
    lines.append("# HELP teepool_nodes Workers by status")
    lines.append("# TYPE teepool_nodes gauge")
    for status, count in stats.by_status.items():
        lines.append(f'teepool_nodes{{status="{status}"}} {count}')

    lines.append("")
    return "\n".join(lines)
