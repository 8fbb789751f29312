"""
Metrics Collection with Prometheus.

Exposes ledger, webhook and HTTP metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from app.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    EVENT_TYPE = "event_type"
    OUTCOME = "outcome"
    ERROR_TYPE = "error_type"


class LedgerMetrics:
    """
    Centralized metrics for the entitlement ledger.

    - HTTP requests (rate, duration, in-flight)
    - Webhook deliveries by event type and outcome
    - Token consumes and grants
    - Subscription transitions
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        self.service_info = Info("ledger_service", "Service information")
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
        # Webhook Metrics
        # ====================================================================
        self.webhook_events_total = Counter(
            "ledger_webhook_events_total",
            "Processor webhook deliveries",
            [MetricLabels.EVENT_TYPE, MetricLabels.OUTCOME],
        )

        self.subscription_transitions_total = Counter(
            "ledger_subscription_transitions_total",
            "Subscription rows written, by target status",
            ["status"],
        )

        # ====================================================================
        # Token Metrics
        # ====================================================================
        self.token_consumes_total = Counter(
            "ledger_token_consumes_total",
            "Token consume attempts",
            ["action_type", MetricLabels.OUTCOME],
        )

        self.tokens_granted_total = Counter(
            "ledger_tokens_granted_total",
            "Tokens granted",
            ["grant_type"],
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

    def record_webhook(self, event_type: str, outcome: str) -> None:
        self.webhook_events_total.labels(event_type=event_type, outcome=outcome).inc()

    def record_transition(self, status: str) -> None:
        self.subscription_transitions_total.labels(status=status).inc()

    def record_consume(self, action_type: str, success: bool) -> None:
        self.token_consumes_total.labels(
            action_type=action_type, outcome="success" if success else "insufficient_balance"
        ).inc()

    def record_grant(self, grant_type: str, amount: int) -> None:
        self.tokens_granted_total.labels(grant_type=grant_type).inc(amount)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = LedgerMetrics()
