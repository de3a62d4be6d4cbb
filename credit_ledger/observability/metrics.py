"""
Metrics Collection with Prometheus.

Exposes ledger and HTTP metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from credit_ledger.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    TRANSACTION_TYPE = "transaction_type"
    ERROR_TYPE = "error_type"


class LedgerMetrics:
    """
    Centralized metrics for the credit ledger.

    Covers:
    - HTTP requests (rate, duration, in progress)
    - Ledger operations (rate, outcome, duration)
    - Credit flow (debited / granted amounts)
    - Retries and store write conflicts
    - Repairs, including histories that sum negative
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "ledger_service",
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
            "ledger_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "ledger_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "ledger_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Ledger Operation Metrics
        # ====================================================================
        self.operations_total = Counter(
            "ledger_operations_total",
            "Total ledger operations by outcome",
            [MetricLabels.OPERATION, "success", MetricLabels.ERROR_TYPE],
        )

        self.operation_duration_seconds = Histogram(
            "ledger_operation_duration_seconds",
            "Ledger operation duration in seconds, retries included",
            [MetricLabels.OPERATION],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0),
        )

        self.credits_debited_total = Counter(
            "ledger_credits_debited_total",
            "Total credits debited by usage",
        )

        self.credits_granted_total = Counter(
            "ledger_credits_granted_total",
            "Total credits granted",
            [MetricLabels.TRANSACTION_TYPE],
        )

        # ====================================================================
        # Reliability Metrics
        # ====================================================================
        self.retries_total = Counter(
            "ledger_retries_total",
            "Retries of transient store failures",
            [MetricLabels.OPERATION],
        )

        self.store_conflicts_total = Counter(
            "ledger_store_conflicts_total",
            "Units of work re-run after a write conflict",
        )

        self.repairs_total = Counter(
            "ledger_repairs_total",
            "Balance repairs by outcome",
            ["changed"],
        )

        self.negative_history_total = Counter(
            "ledger_negative_history_total",
            "Repairs whose transaction history summed below zero",
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "ledger_errors_total",
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

    def record_operation(
        self, operation: str, success: bool, duration: float, error_type: str | None = None
    ) -> None:
        """Record ledger operation outcome."""
        self.operations_total.labels(
            operation=operation, success=str(success), error_type=error_type or "none"
        ).inc()
        self.operation_duration_seconds.labels(operation=operation).observe(duration)

    def record_debit(self, amount: int) -> None:
        """Record credits debited by a committed usage."""
        self.credits_debited_total.inc(amount)

    def record_grant(self, transaction_type: str, amount: int) -> None:
        """Record credits granted."""
        self.credits_granted_total.labels(transaction_type=transaction_type).inc(amount)

    def record_retry(self, operation: str) -> None:
        """Record a retry of a transient failure."""
        self.retries_total.labels(operation=operation).inc()

    def record_store_conflict(self) -> None:
        """Record a unit of work re-run after a write conflict."""
        self.store_conflicts_total.inc()

    def record_repair(self, changed: bool, negative_history: bool) -> None:
        """Record a completed repair."""
        self.repairs_total.labels(changed=str(changed)).inc()
        if negative_history:
            self.negative_history_total.inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = LedgerMetrics()
