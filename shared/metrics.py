"""
Prometheus metrics for the layout service.
"""

import time
from contextlib import contextmanager
from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, Info

# Resolutions are expected in the low milliseconds; the tail covers store round trips.
RESOLUTION_BUCKETS = (0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5)


class MetricsCollector:
    """Owns every collector of one service instance in its own registry."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_service_metrics()
        self._setup_layout_metrics()

    def _counter(self, name: str, documentation: str, labels=()):
        self._metrics[name] = Counter(name, documentation, list(labels), registry=self.registry)

    def _histogram(self, name: str, documentation: str, labels=(), buckets=Histogram.DEFAULT_BUCKETS):
        self._metrics[name] = Histogram(name, documentation, list(labels), buckets=buckets, registry=self.registry)

    def _gauge(self, name: str, documentation: str, labels=()):
        self._metrics[name] = Gauge(name, documentation, list(labels), registry=self.registry)

    def _setup_service_metrics(self):
        """HTTP, health and error metrics common to every service."""
        info = Info("service_info", "Service information", registry=self.registry)
        info.info({"service": self.service_name, "version": "1.0.0"})
        self._metrics["service_info"] = info

        self._counter("http_requests_total", "Total HTTP requests", ["method", "endpoint", "status_code"])
        self._histogram("http_request_duration_seconds", "HTTP request duration in seconds", ["method", "endpoint"])
        self._counter("health_check_total", "Total health check requests", ["status"])
        self._counter("errors_total", "Total errors", ["error_type", "service"])
        self._counter("business_events_total", "Total business events", ["event_type", "service"])

    def _setup_layout_metrics(self):
        """Resolution, cache tier, audit and maintenance metrics."""
        self._counter("layout_resolutions_total", "Total layout resolutions", ["cache_status", "outcome"])
        self._histogram(
            "layout_resolution_duration_seconds",
            "Layout resolution duration in seconds",
            ["cache_status"],
            buckets=RESOLUTION_BUCKETS
        )
        self._counter("cache_hits_total", "Total cache hits", ["tier"])
        self._counter("cache_misses_total", "Total cache misses", ["tier"])
        self._gauge("cache_entries", "Entries currently held per cache tier", ["tier"])
        self._counter("audit_write_failures_total", "Audit records that could not be persisted", ["error_type"])
        self._histogram("maintenance_duration_seconds", "Duration of background maintenance passes", ["task"])

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        self._metrics["http_requests_total"].labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()
        self._metrics["http_request_duration_seconds"].labels(method=method, endpoint=endpoint).observe(duration)

    def record_health_check(self, status: str):
        self._metrics["health_check_total"].labels(status=status).inc()

    def record_error(self, error_type: str):
        self._metrics["errors_total"].labels(error_type=error_type, service=self.service_name).inc()

    def record_business_event(self, event_type: str):
        self._metrics["business_events_total"].labels(event_type=event_type, service=self.service_name).inc()

    def record_resolution(self, cache_status: str, outcome: str, duration: float):
        """Count a finished layout resolution and observe its duration."""
        self._metrics["layout_resolutions_total"].labels(cache_status=cache_status, outcome=outcome).inc()
        self._metrics["layout_resolution_duration_seconds"].labels(cache_status=cache_status).observe(duration)

    @contextmanager
    def time_operation(self, metric_name: str, **labels):
        """Observe the duration of the enclosed block on a histogram."""
        start_time = time.time()
        try:
            yield
        finally:
            self.observe_histogram(metric_name, time.time() - start_time, **labels)

    # Name-based helpers; unknown metric names are ignored.

    def increment_counter(self, metric_name: str, **labels):
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).inc()

    def set_gauge(self, metric_name: str, value: float, **labels):
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).set(value)

    def observe_histogram(self, metric_name: str, value: float, **labels):
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).observe(value)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """New collector for a service instance."""
    return MetricsCollector(service_name, registry)
