"""
Metrics Collection with Prometheus.

Exposes sale pipeline and HTTP metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from batchsale.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    OUTCOME = "outcome"
    STATUS = "status"
    ERROR_TYPE = "error_type"


class SaleMetrics:
    """
    Centralized metrics for the sale pipeline.

    Covers:
    - HTTP requests (rate, duration)
    - Invoice issuance and state transitions
    - Ledger settlements and operator incidents
    - Payment processor calls and polling failures
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        self.service_info = Info(
            "batchsale_service",
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
            "batchsale_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "batchsale_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "batchsale_http_requests_in_progress",
            "HTTP requests currently in progress",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Invoice Metrics
        # ====================================================================
        self.invoices_issued_total = Counter(
            "batchsale_invoices_issued_total",
            "Purchase requests handled by the issuer",
            [MetricLabels.OUTCOME],
        )

        self.invoice_transitions_total = Counter(
            "batchsale_invoice_transitions_total",
            "Invoice state transitions by target status",
            [MetricLabels.STATUS],
        )

        self.invoice_batches = Histogram(
            "batchsale_invoice_batches",
            "Batches per issued invoice",
            buckets=(1, 2, 3, 5, 8, 10),
        )

        self.active_watchers = Gauge(
            "batchsale_active_invoice_watchers",
            "Invoices currently driven by a watcher task",
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.settlements_total = Counter(
            "batchsale_settlements_total",
            "Ledger settlement attempts by outcome",
            [MetricLabels.OUTCOME],
        )

        self.tokens_distributed = Gauge(
            "batchsale_tokens_distributed",
            "Tokens allocated by the distribution ledger",
        )

        self.tokens_remaining = Gauge(
            "batchsale_tokens_remaining",
            "Tokens still available for sale",
        )

        self.operator_incidents_total = Counter(
            "batchsale_operator_incidents_total",
            "Events that need manual reconciliation (paid but undeliverable, late payments)",
            ["incident"],
        )

        # ====================================================================
        # External Collaborator Metrics
        # ====================================================================
        self.processor_requests_total = Counter(
            "batchsale_processor_requests_total",
            "Payment processor calls",
            [MetricLabels.OPERATION, "success"],
        )

        self.poll_failures_total = Counter(
            "batchsale_poll_failures_total",
            "Failed status polls",
            ["poller"],
        )

        self.consignments_total = Counter(
            "batchsale_consignments_total",
            "Consignment generation attempts",
            ["success"],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "batchsale_errors_total",
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

    def record_issuance(self, outcome: str, batch_count: int | None = None) -> None:
        """Record an issuance outcome (issued, replayed, invalid, processor_unavailable, persist_failed)."""
        self.invoices_issued_total.labels(outcome=outcome).inc()
        if batch_count is not None and outcome == "issued":
            self.invoice_batches.observe(batch_count)

    def record_transition(self, status: str) -> None:
        """Record an invoice state transition."""
        self.invoice_transitions_total.labels(status=status).inc()

    def record_settlement(self, outcome: str, distributed: int, remaining: int) -> None:
        """Record a ledger settlement outcome and current totals."""
        self.settlements_total.labels(outcome=outcome).inc()
        self.tokens_distributed.set(distributed)
        self.tokens_remaining.set(remaining)

    def record_incident(self, incident: str) -> None:
        """Record an operator-visible incident."""
        self.operator_incidents_total.labels(incident=incident).inc()

    def record_processor_call(self, operation: str, success: bool) -> None:
        """Record a payment processor call."""
        self.processor_requests_total.labels(operation=operation, success=str(success)).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = SaleMetrics()
