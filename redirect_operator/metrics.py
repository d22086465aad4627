import logging
import time
from contextlib import contextmanager
from typing import Iterator, Tuple

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Histogram, generate_latest

logger = logging.getLogger(__name__)

METRICS_PREFIX = "redirect_controller"
RECONCILE_BUCKETS = (0.01, 0.1, 0.25, 0.5, 1.0, 5.0, 15.0, 60.0)


class ReconcileMetrics:
    def __init__(self, registry: CollectorRegistry):
        self.runs = Counter(
            f"{METRICS_PREFIX}_reconcile_runs", "reconciliations", registry=registry
        )
        self.failures = Counter(
            f"{METRICS_PREFIX}_reconcile_failures",
            "reconciliation errors",
            ["instance", "error"],
            registry=registry,
        )
        self.duration = Histogram(
            f"{METRICS_PREFIX}_reconcile_duration_seconds",
            "reconcile duration",
            buckets=RECONCILE_BUCKETS,
            registry=registry,
        )

    @contextmanager
    def count_and_measure(self) -> Iterator[None]:
        """Count one reconciliation attempt and time it, failed attempts included."""
        self.runs.inc()
        start = time.monotonic()
        try:
            yield
        finally:
            self.duration.observe(time.monotonic() - start)

    def set_failure(self, instance: str, error: BaseException):
        label = error.metric_label() if hasattr(error, "metric_label") else type(error).__name__.lower()
        self.failures.labels(instance=instance, error=label).inc()


class HttpMetrics:
    def __init__(self, registry: CollectorRegistry):
        self.requests = Counter(
            f"{METRICS_PREFIX}_http_requests", "redirects served", ["host"], registry=registry
        )
        self.failures = Counter(
            f"{METRICS_PREFIX}_http_failures", "requests without a matching redirect", ["host"], registry=registry
        )

    def set_request(self, host: str):
        self.requests.labels(host=host).inc()

    def set_failure(self, host: str):
        self.failures.labels(host=host).inc()


class Metrics:
    """All operator metrics, registered in a private registry."""

    def __init__(self):
        self.registry = CollectorRegistry()
        self.reconcile = ReconcileMetrics(self.registry)
        self.http = HttpMetrics(self.registry)

    def render(self) -> Tuple[bytes, str]:
        return generate_latest(self.registry), CONTENT_TYPE_LATEST
