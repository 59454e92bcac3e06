# Services package
from .entitlements import EntitlementSet, resolve_entitlements, grant_entitlement
from .rate_limiter import get_rate_limiter, reset_rate_limiters

__all__ = [
    "EntitlementSet",
    "resolve_entitlements",
    "grant_entitlement",
    "get_rate_limiter",
    "reset_rate_limiters",
]
