"""
Metrics Collection with Prometheus.

Exposes settlement and system metrics for monitoring.
"""

from collections.abc import Callable, Mapping
from enum import StrEnum
from typing import Any

from prometheus_client import Counter, Gauge, Histogram, Info

from voucherflow.config import settings


class MetricLabels(StrEnum):
    """Standard metric label names."""

    ROUTE = "route"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    OUTCOME = "outcome"
    EVENT_TYPE = "event_type"
    ERROR_TYPE = "error_type"


class SettlementMetrics:
    """
    Centralized metrics for the Voucherflow settlement API.

    Covers:
    - HTTP requests (rate, duration, in flight)
    - Inventory reservations and compensating releases
    - Payment authorizations and confirmations
    - Voucher redemptions
    - Webhook events by type and outcome
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "voucherflow_service",
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
            "voucherflow_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ROUTE, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "voucherflow_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ROUTE, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "voucherflow_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.METHOD],
        )

        # ====================================================================
        # Inventory Metrics
        # ====================================================================
        self.inventory_reservations_total = Counter(
            "voucherflow_inventory_reservations_total",
            "Inventory reservation attempts",
            [MetricLabels.OUTCOME],
        )

        self.inventory_releases_total = Counter(
            "voucherflow_inventory_releases_total",
            "Compensating inventory releases",
            ["reason"],
        )

        # ====================================================================
        # Payment Metrics
        # ====================================================================
        self.authorizations_total = Counter(
            "voucherflow_authorizations_total",
            "Payment authorizations requested",
            [MetricLabels.OUTCOME, "saved_method"],
        )

        self.authorization_amount_minor = Histogram(
            "voucherflow_authorization_amount_minor",
            "Authorized amounts in minor units (cents)",
            buckets=(100, 500, 1000, 2500, 5000, 10000, 25000, 50000, 100000),
        )

        self.authorization_duration_seconds = Histogram(
            "voucherflow_authorization_duration_seconds",
            "Authorization duration in seconds, processor call included",
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0),
        )

        self.confirmations_total = Counter(
            "voucherflow_confirmations_total",
            "Purchase confirmations",
            [MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Redemption Metrics
        # ====================================================================
        self.redemptions_total = Counter(
            "voucherflow_redemptions_total",
            "Voucher redemption attempts",
            [MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Webhook Metrics
        # ====================================================================
        self.webhook_events_total = Counter(
            "voucherflow_webhook_events_total",
            "Processor webhook events received",
            [MetricLabels.EVENT_TYPE, MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "voucherflow_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_http_request(
        self, route: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record a finished request under its route template."""
        self.http_requests_total.labels(route=route, method=method, status_code=status_code).inc()
        self.http_request_duration_seconds.labels(route=route, method=method).observe(duration)

    def record_reservation(self, outcome: str) -> None:
        """Record an inventory reservation attempt."""
        self.inventory_reservations_total.labels(outcome=outcome).inc()

    def record_release(self, reason: str) -> None:
        """Record a compensating inventory release."""
        self.inventory_releases_total.labels(reason=reason).inc()

    def record_authorization(
        self, outcome: str, saved_method: bool, amount_minor: int, duration: float
    ) -> None:
        """Record payment authorization metrics."""
        self.authorizations_total.labels(outcome=outcome, saved_method=str(saved_method)).inc()
        if outcome == "success":
            self.authorization_amount_minor.observe(amount_minor)
        self.authorization_duration_seconds.observe(duration)

    def record_confirmation(self, outcome: str) -> None:
        """Record a purchase confirmation."""
        self.confirmations_total.labels(outcome=outcome).inc()

    def record_redemption(self, outcome: str) -> None:
        """Record a voucher redemption attempt."""
        self.redemptions_total.labels(outcome=outcome).inc()

    def record_webhook_event(self, event_type: str, outcome: str) -> None:
        """Record a processed (or skipped) webhook event."""
        self.webhook_events_total.labels(event_type=event_type, outcome=outcome).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


UNMATCHED_ROUTE = "unmatched"


def route_label(scope: Mapping[str, Any]) -> str:
    """
    Route template for metric labels.

    Paths carry purchase and account ids, so the raw path would create one
    series per purchase. Requests that matched no route share one label.
    """
    return getattr(scope.get("route"), "path", UNMATCHED_ROUTE)


# Global metrics instance
metrics = SettlementMetrics()


def get_metrics_handler() -> Callable[[], bytes]:
    """Get Prometheus exposition handler for the /metrics route."""
    from prometheus_client import REGISTRY, generate_latest

    def metrics_endpoint() -> bytes:
        return generate_latest(REGISTRY)

    return metrics_endpoint
