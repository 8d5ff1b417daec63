"""
Prometheus metrics for the topic pipeline.

Covers pipeline runs, item flow through fetch/dedup/persist, per-source
adapter errors, lock contention, queue jobs and the external summarizer
and notifier calls. Exposed over HTTP for Prometheus scraping.
"""

import logging

from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

from topic_tracker.config.settings import get_settings

logger = logging.getLogger(__name__)

LATENCY_BUCKETS = (0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0)


class MetricsCollector:
    """
    Prometheus metrics collector for topic-tracker.

    Usage:
        metrics = get_metrics()
        metrics.start_server()
        metrics.record_run("python-releases", "completed", duration=4.2)
    """

    def __init__(self):
        self.runs_total = Counter(
            "topic_tracker_runs_total",
            "Pipeline runs by terminal status",
            ["topic", "status"],
        )

        self.run_duration = Histogram(
            "topic_tracker_run_duration_seconds",
            "Wall time of a pipeline run, lock wait excluded",
            ["topic"],
            buckets=LATENCY_BUCKETS,
        )

        self.items_fetched = Counter(
            "topic_tracker_items_fetched_total",
            "Items returned by source adapters",
            ["topic", "kind"],
        )

        self.items_duplicate = Counter(
            "topic_tracker_items_duplicate_total",
            "Items rejected by the deduplication gate",
            ["topic"],
        )

        self.items_persisted = Counter(
            "topic_tracker_items_persisted_total",
            "Items persisted and linked to a run",
            ["topic"],
        )

        self.source_errors = Counter(
            "topic_tracker_source_errors_total",
            "Source fetches that failed after retries",
            ["topic", "kind"],
        )

        self.lock_wait = Histogram(
            "topic_tracker_lock_wait_seconds",
            "Time spent waiting for an advisory lock",
            ["operation"],
            buckets=LATENCY_BUCKETS,
        )

        self.lock_timeouts = Counter(
            "topic_tracker_lock_timeouts_total",
            "Advisory lock acquisitions that timed out",
            ["operation"],
        )

        self.jobs_total = Counter(
            "topic_tracker_jobs_total",
            "Queue jobs by kind and outcome",
            ["kind", "outcome"],  # outcome: completed, retried, failed, duplicate
        )

        self.queue_depth = Gauge(
            "topic_tracker_queue_depth",
            "Jobs per queue state",
            ["state"],
        )

        self.summarizer_latency = Histogram(
            "topic_tracker_summarizer_latency_seconds",
            "Summarizer call latency",
            buckets=LATENCY_BUCKETS,
        )

        self.summarizer_errors = Counter(
            "topic_tracker_summarizer_errors_total",
            "Summarizer failures",
            ["error_type"],
        )

        self.notifier_errors = Counter(
            "topic_tracker_notifier_errors_total",
            "Notification deliveries that failed per channel",
        )

        # Queue reclaim metrics (used by BaseRedisQueue)
        self.pending_reclaimed = Counter(
            "topic_tracker_queue_pending_reclaimed_total",
            "Total messages reclaimed from pending state",
            ["queue"],
        )

        self.dlq_max_retries = Counter(
            "topic_tracker_queue_dlq_max_retries_total",
            "Total messages moved to DLQ due to max retries exceeded",
            ["queue"],
        )

        logger.info("Prometheus metrics initialized")

    def start_server(self, port: int | None = None) -> None:
        """Start Prometheus metrics HTTP server."""
        settings = get_settings()
        port = port or settings.metrics_port

        start_http_server(port, registry=REGISTRY)
        logger.info(f"Prometheus metrics server started on port {port}")

    def record_run(self, topic: str, status: str, duration: float | None = None) -> None:
        self.runs_total.labels(topic=topic, status=status).inc()
        if duration is not None:
            self.run_duration.labels(topic=topic).observe(duration)

    def record_fetch(self, topic: str, kind: str, count: int) -> None:
        if count:
            self.items_fetched.labels(topic=topic, kind=kind).inc(count)

    def record_source_error(self, topic: str, kind: str) -> None:
        self.source_errors.labels(topic=topic, kind=kind).inc()

    def record_dedup(self, topic: str, rejected: int) -> None:
        if rejected:
            self.items_duplicate.labels(topic=topic).inc(rejected)

    def record_persisted(self, topic: str, count: int) -> None:
        if count:
            self.items_persisted.labels(topic=topic).inc(count)

    def record_lock_wait(self, operation: str, seconds: float, timed_out: bool = False) -> None:
        self.lock_wait.labels(operation=operation).observe(seconds)
        if timed_out:
            self.lock_timeouts.labels(operation=operation).inc()

    def record_job(self, kind: str, outcome: str) -> None:
        self.jobs_total.labels(kind=kind, outcome=outcome).inc()

    def set_queue_depth(self, counts: dict[str, int]) -> None:
        for state, count in counts.items():
            self.queue_depth.labels(state=state).set(count)


_metrics: MetricsCollector | None = None


def get_metrics() -> MetricsCollector:
    """Get global metrics collector instance."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics
