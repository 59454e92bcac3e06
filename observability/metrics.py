"""
Prometheus metrics, exposed on GET /metrics.

HTTP traffic is recorded by ObservabilityMiddleware. Business events
(uploads, verifications, redemptions, claims) go through
track_business_event so dashboards can follow the launch funnel.
"""

from prometheus_client import REGISTRY, Counter, Gauge, Histogram

metrics_registry = REGISTRY

http_requests_total = Counter(
    "http_requests_total",
    "HTTP requests by method, endpoint template and status",
    ["method", "endpoint", "status"],
    registry=metrics_registry,
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=metrics_registry,
)

http_requests_in_progress = Gauge(
    "http_requests_in_progress",
    "HTTP requests currently being served",
    ["method", "endpoint"],
    registry=metrics_registry,
)

business_events_total = Counter(
    "business_events_total",
    "Pre-order funnel events",
    ["event_type"],  # receipt_uploaded, receipt_verified, code_redeemed, ...
    registry=metrics_registry,
)

rate_limit_rejections_total = Counter(
    "rate_limit_rejections_total",
    "Requests rejected by a rate limiter",
    ["limiter"],
    registry=metrics_registry,
)

entitlement_resolution_failures_total = Counter(
    "entitlement_resolution_failures_total",
    "Entitlement lookups that failed closed",
    registry=metrics_registry,
)


def track_business_event(event_type: str) -> None:
    business_events_total.labels(event_type=event_type).inc()
