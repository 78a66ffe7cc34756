"""
Metrics Collection with Prometheus.

Exposes credit-flow and system metrics for monitoring.
"""

from collections.abc import Callable
from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from qc_billing.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    CHANNEL = "channel"
    OUTCOME = "outcome"
    TASK = "task"
    ERROR_TYPE = "error_type"


class CreditMetrics:
    """
    Centralized metrics for the QC Billing API.

    Covers:
    - HTTP requests (rate, duration, in flight)
    - Orders and gateway notifications (outcome, signature failures)
    - Credit grants and debits by channel
    - Redemptions by outcome
    - AI provider attempts, retries and final outcome
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "qc_billing_service",
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
            "qc_billing_http_requests_total",
            "Total HTTP requests",
            [
                MetricLabels.ENDPOINT.value,
                MetricLabels.METHOD.value,
                MetricLabels.STATUS_CODE.value,
            ],
        )

        self.http_request_duration_seconds = Histogram(
            "qc_billing_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT.value, MetricLabels.METHOD.value],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        self.http_requests_in_progress = Gauge(
            "qc_billing_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT.value, MetricLabels.METHOD.value],
        )

        # ====================================================================
        # Payment Metrics
        # ====================================================================
        self.orders_created_total = Counter(
            "qc_billing_orders_created_total",
            "Total payment orders created",
            ["package_id"],
        )

        self.notifications_total = Counter(
            "qc_billing_notifications_total",
            "Gateway notifications handled, by outcome",
            [MetricLabels.OUTCOME.value],
        )

        self.signature_failures_total = Counter(
            "qc_billing_signature_failures_total",
            "Gateway notifications whose signature did not verify",
            ["accepted"],
        )

        # ====================================================================
        # Credit Metrics
        # ====================================================================
        self.credits_granted_total = Counter(
            "qc_billing_credits_granted_total",
            "Total credits granted",
            [MetricLabels.CHANNEL.value],
        )

        self.credits_debited_total = Counter(
            "qc_billing_credits_debited_total",
            "Total credits spent on AI calls",
            [MetricLabels.TASK.value],
        )

        self.redemptions_total = Counter(
            "qc_billing_redemptions_total",
            "Redemption attempts by outcome",
            [MetricLabels.OUTCOME.value],
        )

        self.users_registered_total = Counter(
            "qc_billing_users_registered_total",
            "Total users registered",
            ["signup_bonus"],
        )

        # ====================================================================
        # AI Provider Metrics
        # ====================================================================
        self.ai_attempts_total = Counter(
            "qc_billing_ai_attempts_total",
            "Individual provider attempts",
            [MetricLabels.TASK.value, "success"],
        )

        self.ai_invocations_total = Counter(
            "qc_billing_ai_invocations_total",
            "Logical AI calls by final outcome",
            [MetricLabels.TASK.value, MetricLabels.OUTCOME.value],
        )

        self.ai_retry_delay_seconds = Histogram(
            "qc_billing_ai_retry_delay_seconds",
            "Backoff delays scheduled between attempts",
            buckets=(1.0, 2.0, 4.0, 8.0, 16.0, 32.0),
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "qc_billing_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE.value, MetricLabels.OPERATION.value],
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

    def record_order_created(self, package_id: str) -> None:
        self.orders_created_total.labels(package_id=package_id).inc()

    def record_notification(self, outcome: str) -> None:
        """Record one handled notification (credited, duplicate, ignored, rejected...)."""
        self.notifications_total.labels(outcome=outcome).inc()

    def record_signature_failure(self, accepted: bool) -> None:
        self.signature_failures_total.labels(accepted=str(accepted)).inc()

    def record_credit_grant(self, channel: str, amount: int) -> None:
        self.credits_granted_total.labels(channel=channel).inc(amount)

    def record_credit_debit(self, task: str) -> None:
        self.credits_debited_total.labels(task=task).inc()

    def record_redemption(self, outcome: str) -> None:
        self.redemptions_total.labels(outcome=outcome).inc()

    def record_registration(self, signup_bonus: bool) -> None:
        self.users_registered_total.labels(signup_bonus=str(signup_bonus)).inc()

    def record_ai_attempt(self, task: str, success: bool) -> None:
        self.ai_attempts_total.labels(task=task, success=str(success)).inc()

    def record_ai_invocation(self, task: str, outcome: str) -> None:
        self.ai_invocations_total.labels(task=task, outcome=outcome).inc()

    def record_retry_delay(self, delay: float) -> None:
        self.ai_retry_delay_seconds.observe(delay)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = CreditMetrics()


def get_metrics_handler() -> Callable[[], bytes]:
    """
    Get Prometheus metrics handler for FastAPI.

    Usage:
        handler = get_metrics_handler()
        return Response(content=handler(), media_type=CONTENT_TYPE_LATEST)
    """
    from prometheus_client import REGISTRY, generate_latest

    def metrics_endpoint() -> bytes:
        return generate_latest(REGISTRY)

    return metrics_endpoint
