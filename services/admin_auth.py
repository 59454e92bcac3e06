"""
Admin authorization guard.

Admins are identified by email against the ADMIN_EMAILS allow-list. The
identity is taken from the caller's session on every request; nothing
about admin status is cached or stored on the user row.

Check order:
    1. valid session with an email        -> else 401
    2. admin rate limit (per identity)    -> else 429
    3. email on the allow-list            -> else 403
Any unexpected exception inside the guard becomes a generic 500.
"""

import os
from dataclasses import dataclass
from typing import Iterable, List, Optional

from models import AuthSession, normalize_email
from observability.logging import get_logger
from services.rate_limiter import FixedWindowRateLimiter, LIMITS

logger = get_logger(__name__)

UNAUTHORIZED_MESSAGE = "Unauthorized: No valid session"
FORBIDDEN_MESSAGE = "Forbidden: Admin access required"
RATE_LIMITED_MESSAGE = "Rate limit exceeded"
INTERNAL_ERROR_MESSAGE = "Internal server error"


@dataclass
class AdminAuthResult:
    authorized: bool
    admin_id: Optional[str] = None
    error: Optional[str] = None
    rate_limited: bool = False
    status_code: int = 200
    retry_after: Optional[int] = None


def get_admin_emails(raw: Optional[str] = None) -> List[str]:
    """
    Parse a comma-separated admin allow-list.

    Entries are trimmed and lower-cased; empty entries are dropped. With
    raw=None the ADMIN_EMAILS environment variable is read.
    """
    if raw is None:
        raw = os.getenv("ADMIN_EMAILS", "")
    return [email.strip().lower() for email in raw.split(",") if email.strip()]


def is_admin_email(email: Optional[str], admin_emails: Iterable[str]) -> bool:
    normalized = normalize_email(email)
    if not normalized:
        return False
    return normalized in set(admin_emails)


async def check_admin_auth(
    auth_session: Optional[AuthSession],
    limiter: FixedWindowRateLimiter,
    admin_emails: Optional[Iterable[str]] = None,
) -> AdminAuthResult:
    try:
        email = normalize_email(auth_session.email) if auth_session else None
        if not email:
            return AdminAuthResult(authorized=False, error=UNAUTHORIZED_MESSAGE, status_code=401)

        max_requests, window_ms = LIMITS["admin"]
        limit = await limiter.check(email, max_requests=max_requests, window_ms=window_ms)
        if not limit.allowed:
            logger.warning("Admin rate limit exceeded", extra={"admin_email": email})
            return AdminAuthResult(
                authorized=False,
                error=RATE_LIMITED_MESSAGE,
                rate_limited=True,
                status_code=429,
                retry_after=limit.reset_after_seconds,
            )

        allow_list = get_admin_emails() if admin_emails is None else list(admin_emails)
        if not is_admin_email(email, allow_list):
            logger.warning("Non-admin attempted admin access", extra={"admin_email": email})
            return AdminAuthResult(authorized=False, error=FORBIDDEN_MESSAGE, status_code=403)

        return AdminAuthResult(authorized=True, admin_id=email)

    except Exception:
        logger.exception("Admin authorization check failed")
        return AdminAuthResult(authorized=False, error=INTERNAL_ERROR_MESSAGE, status_code=500)
