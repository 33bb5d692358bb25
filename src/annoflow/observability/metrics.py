from __future__ import annotations

"""
annoflow.observability.metrics
==============================

Prometheus metrics for one engine.

Every `EngineMetrics` owns its own `CollectorRegistry`, so several engines
(or several test runs) in one process never collide on metric names. Use
`serve()` to expose the registry over HTTP while a long run is in progress.
"""

from prometheus_client import CollectorRegistry, Counter, Histogram, start_http_server

from ..core.logging import get_logger

__all__ = ["EngineMetrics"]

_log = get_logger("observability.metrics")

_DURATION_BUCKETS = (0.01, 0.1, 0.5, 1, 5, 15, 60, 300, 900, 3600, float("inf"))


class EngineMetrics:
    """
    Counters and histograms describing a run.

    Example:
        m = EngineMetrics()
        m.instances.labels(node="blast_nr", state="succeeded").inc()
        m.sample("annoflow_task_instances_total", node="blast_nr", state="succeeded")  # -> 1.0
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()
        self.instances = Counter(
            "annoflow_task_instances_total",
            "Task instances by node and terminal state",
            labelnames=["node", "state"],
            registry=self.registry,
        )
        self.tokens = Counter(
            "annoflow_channel_tokens_total",
            "Tokens emitted per channel",
            labelnames=["channel"],
            registry=self.registry,
        )
        self.pruned = Counter(
            "annoflow_pruned_nodes_total",
            "Nodes pruned at compile time",
            registry=self.registry,
        )
        self.runs = Counter(
            "annoflow_runs_total",
            "Completed runs by outcome",
            labelnames=["outcome"],
            registry=self.registry,
        )
        self.duration = Histogram(
            "annoflow_task_duration_seconds",
            "Wall time of task instances",
            labelnames=["node"],
            buckets=_DURATION_BUCKETS,
            registry=self.registry,
        )

    def sample(self, name: str, **labels: str) -> float:
        """Current value of a sample (0.0 when it was never touched)."""
        return self.registry.get_sample_value(name, labels) or 0.0

    def serve(self, port: int, *, addr: str = "0.0.0.0") -> None:
        start_http_server(port, addr=addr, registry=self.registry)
        _log.info("metrics exporter started", event="metrics.serve", port=port)
