"""
Observability for the pre-order backend: structured logging with request
IDs, Sentry, Prometheus metrics and the request middleware.
"""

from .logging import get_logger, get_request_id, request_id_scope
from .metrics import metrics_registry, track_business_event
from .middleware import ObservabilityMiddleware
from .sentry_config import init_sentry

__all__ = [
    "get_logger",
    "get_request_id",
    "request_id_scope",
    "metrics_registry",
    "track_business_event",
    "ObservabilityMiddleware",
    "init_sentry",
]
