"""
Metrics Collection with Prometheus.

Exposes purchase, webhook and vendor-call metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Histogram, Info

from iap_engine.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    VENDOR = "vendor"
    OUTCOME = "outcome"
    ACTION = "action"
    OPERATION = "operation"


class IAPMetrics:
    """
    Centralized metrics for the IAP engine.

    Covers:
    - Purchase verifications (by vendor and terminal stage / error)
    - Webhook notifications (by vendor and action taken)
    - Vendor API calls (rate, duration, failures)
    - JWKS refreshes
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""
        self.service_info = Info(
            "iap_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.service_version,
                "service_name": settings.service_name,
            }
        )

        self.purchases_total = Counter(
            "iap_purchases_total",
            "Purchase verifications by terminal outcome",
            [MetricLabels.VENDOR, MetricLabels.OUTCOME],
        )

        self.notifications_total = Counter(
            "iap_notifications_total",
            "Webhook notifications by action taken",
            [MetricLabels.VENDOR, MetricLabels.ACTION],
        )

        self.vendor_calls_total = Counter(
            "iap_vendor_calls_total",
            "Vendor API calls",
            [MetricLabels.VENDOR, MetricLabels.OPERATION, "success"],
        )

        self.vendor_call_duration_seconds = Histogram(
            "iap_vendor_call_duration_seconds",
            "Vendor API call duration in seconds",
            [MetricLabels.VENDOR, MetricLabels.OPERATION],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        self.jwks_refreshes_total = Counter(
            "iap_jwks_refreshes_total",
            "Apple JWKS fetches",
            ["success"],
        )

    def record_purchase(self, vendor: str, outcome: str) -> None:
        """Record a purchase verification outcome."""
        if not settings.metrics_enabled:
            return
        self.purchases_total.labels(vendor=vendor, outcome=outcome).inc()

    def record_notification(self, vendor: str, action: str) -> None:
        """Record a webhook notification outcome."""
        if not settings.metrics_enabled:
            return
        self.notifications_total.labels(vendor=vendor, action=action).inc()

    def record_vendor_call(
        self, vendor: str, operation: str, success: bool, duration: float
    ) -> None:
        """Record a vendor API call."""
        if not settings.metrics_enabled:
            return
        self.vendor_calls_total.labels(
            vendor=vendor, operation=operation, success=str(success)
        ).inc()
        self.vendor_call_duration_seconds.labels(vendor=vendor, operation=operation).observe(
            duration
        )

    def record_jwks_refresh(self, success: bool) -> None:
        """Record an Apple JWKS fetch."""
        if not settings.metrics_enabled:
            return
        self.jwks_refreshes_total.labels(success=str(success)).inc()


# Global metrics instance
metrics = IAPMetrics()
