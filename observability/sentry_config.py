"""Sentry error tracking."""

import logging
import os

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from .logging import get_logger, get_request_id

logger = get_logger(__name__)

# Client-side validation failures are not worth an event
IGNORED_ERROR_CODES = {
    "RATE_LIMIT_EXCEEDED",
    "DUPLICATE_RECEIPT",
    "DUPLICATE_RECEIPT_SAME_USER",
    "ALREADY_REDEEMED",
}


def init_sentry() -> bool:
    """
    Initialize Sentry when SENTRY_DSN is set and SENTRY_ENABLE is not "false".

    SENTRY_ENVIRONMENT (falls back to ENVIRONMENT), SENTRY_RELEASE and
    SENTRY_TRACES_SAMPLE_RATE tune the client.
    """
    dsn = os.getenv("SENTRY_DSN")
    if not dsn or os.getenv("SENTRY_ENABLE", "true").lower() == "false":
        logger.info("Sentry disabled")
        return False

    environment = os.getenv("SENTRY_ENVIRONMENT") or os.getenv("ENVIRONMENT", "development")
    default_rate = "0.2" if environment == "production" else "0.0"

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        release=f"preorder-backend@{os.getenv('SENTRY_RELEASE', 'unknown')}",
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        traces_sample_rate=float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", default_rate)),
        # Receipts carry emails and IP addresses
        send_default_pii=False,
        before_send=before_send,
    )
    logger.info("Sentry initialized", extra={"environment": environment})
    return True


def before_send(event, hint):
    exc_info = hint.get("exc_info") if hint else None
    if exc_info and getattr(exc_info[1], "error_code", None) in IGNORED_ERROR_CODES:
        return None

    request_id = get_request_id()
    if request_id:
        event.setdefault("tags", {})["request_id"] = request_id
    return event
