"""
Redaction and request inspection helpers.

Used by the audit log, the admin guard, storage error logging and the
routes that rate-limit by client IP.
"""

import os
import re
from typing import Any, Optional

from fastapi import Request

REDACTED = "[REDACTED]"

# Reverse proxies in front of the app (load balancer = 1)
TRUSTED_PROXY_COUNT = int(os.getenv("TRUSTED_PROXY_COUNT", "1"))

# "code" is here so VIP code values never land in audit details
SENSITIVE_KEYS = frozenset({"password", "token", "secret", "api_key", "code", "session_token", "authorization"})

_TEXT_SECRETS = [
    (re.compile(r"(X-Amz-(?:Signature|Credential|Security-Token)=)[^&\s]+", re.IGNORECASE), rf"\1{REDACTED}"),
    (re.compile(r"(token=)[^&\s]+", re.IGNORECASE), rf"\1{REDACTED}"),
    (re.compile(r"(Authorization:\s*Bearer)\s+\S+", re.IGNORECASE), rf"\1 {REDACTED}"),
    (re.compile(r"(rediss?://[^:/\s]*:)[^@\s]+(@)", re.IGNORECASE), rf"\1{REDACTED}\2"),
]


def redact_sensitive(data: Any) -> Any:
    """Copy of data with values under SENSITIVE_KEYS replaced, at any depth."""
    if isinstance(data, dict):
        return {
            key: REDACTED if str(key).lower() in SENSITIVE_KEYS else redact_sensitive(value)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [redact_sensitive(item) for item in data]
    return data


def redact_secrets_from_text(text: str) -> str:
    """Scrub presigned-URL credentials, bearer tokens and Redis passwords from free text."""
    if not text:
        return text
    for pattern, replacement in _TEXT_SECRETS:
        text = pattern.sub(replacement, text)
    return text


def get_client_ip(request: Optional[Request], trusted_proxies: Optional[int] = None) -> str:
    """
    Client IP for rate limiting and audit records.

    Each proxy appends the peer it saw to X-Forwarded-For, so only the
    last ``trusted_proxies`` hops were written by infrastructure we run.
    The client is the hop the outermost trusted proxy recorded; anything
    to its left is client-supplied and ignored. With no trusted proxies
    the forwarding headers are ignored and the socket peer is used.
    Returns "unknown" when nothing is available.
    """
    if request is None:
        return "unknown"

    hops = TRUSTED_PROXY_COUNT if trusted_proxies is None else trusted_proxies

    if hops > 0:
        forwarded = [ip.strip() for ip in request.headers.get("x-forwarded-for", "").split(",") if ip.strip()]
        if forwarded:
            return forwarded[-min(hops, len(forwarded))]

        real_ip = request.headers.get("x-real-ip")
        if real_ip and real_ip.strip():
            return real_ip.strip()

    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def get_user_agent(request: Optional[Request], limit: int = 500) -> Optional[str]:
    """User-Agent header truncated to the audit column width."""
    if request is None:
        return None
    ua = request.headers.get("user-agent")
    return ua[:limit] if ua else None
