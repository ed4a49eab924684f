"""
Metrics Collection with Prometheus.

Exposes business and system metrics for monitoring.
"""

import time
from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from oneshot.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    OUTCOME = "outcome"
    SIGNAL_TYPE = "signal_type"
    STATUS = "status"
    ERROR_TYPE = "error_type"


class OneShotMetrics:
    """
    Centralized metrics for the One-Shot Unlock API.

    Covers:
    - HTTP requests (rate, duration, in flight)
    - Unlock requests by outcome and credit rollbacks
    - Demand signals, contributions and derivation failures
    - Status transitions
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "oneshot_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "oneshot_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "oneshot_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "oneshot_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Unlock Metrics
        # ====================================================================
        self.unlock_requests_total = Counter(
            "oneshot_unlock_requests_total",
            "Total unlock requests by outcome",
            [MetricLabels.OUTCOME],
        )

        self.unlock_duration_seconds = Histogram(
            "oneshot_unlock_duration_seconds",
            "Unlock request duration in seconds",
            buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
        )

        self.credit_rollbacks_total = Counter(
            "oneshot_credit_rollbacks_total",
            "Credits returned after a reservation was not used",
            ["reason"],
        )

        # ====================================================================
        # Demand Metrics
        # ====================================================================
        self.signals_recorded_total = Counter(
            "oneshot_signals_recorded_total",
            "Total demand signals recorded",
            [MetricLabels.SIGNAL_TYPE],
        )

        self.contributions_total = Counter(
            "oneshot_contributions_total",
            "Total photo contributions",
            ["bounty_awarded"],
        )

        self.derivation_failures_total = Counter(
            "oneshot_derivation_failures_total",
            "Derived-field recomputations that failed after raw counters persisted",
        )

        self.status_transitions_total = Counter(
            "oneshot_status_transitions_total",
            "Total demand status transitions",
            [MetricLabels.STATUS],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "oneshot_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_unlock(self, outcome: str, duration: float) -> None:
        """Record unlock request metrics."""
        self.unlock_requests_total.labels(outcome=outcome).inc()
        self.unlock_duration_seconds.observe(duration)

    def record_credit_rollback(self, reason: str) -> None:
        self.credit_rollbacks_total.labels(reason=reason).inc()

    def record_signal(self, signal_type: str) -> None:
        self.signals_recorded_total.labels(signal_type=signal_type).inc()

    def record_contribution(self, bounty_awarded: bool) -> None:
        self.contributions_total.labels(bounty_awarded=str(bounty_awarded)).inc()

    def record_derivation_failure(self) -> None:
        self.derivation_failures_total.inc()

    def record_status_transition(self, status: str) -> None:
        self.status_transitions_total.labels(status=status).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = OneShotMetrics()


class track_http_request:
    """
    Context manager for tracking HTTP requests.

    Usage:
        with track_http_request("/v1/demand/signals", "POST") as tracker:
            # ... process request
            tracker.set_status_code(201)
    """

    def __init__(self, endpoint: str, method: str) -> None:
        self.endpoint = endpoint
        self.method = method
        self.status_code = 200
        self.start_time: float = 0.0

    def set_status_code(self, status_code: int) -> None:
        """Set the response status code."""
        self.status_code = status_code

    def __enter__(self) -> "track_http_request":
        self.start_time = time.perf_counter()
        metrics.http_requests_in_progress.labels(
            endpoint=self.endpoint, method=self.method
        ).inc()
        return self

    def __exit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        duration = time.perf_counter() - self.start_time
        if exc_type is not None:
            self.status_code = 500
        metrics.record_http_request(self.endpoint, self.method, self.status_code, duration)
        metrics.http_requests_in_progress.labels(
            endpoint=self.endpoint, method=self.method
        ).dec()
