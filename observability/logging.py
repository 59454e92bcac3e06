"""
Structured logging for the pre-order backend.

Every record carries the request ID of the request that produced it, and
secrets are scrubbed before anything is formatted. JSON output is the
default in production; elsewhere a single readable line per record.

Usage:
    from observability import get_logger

    logger = get_logger(__name__)
    logger.info("Receipt uploaded", extra={"receipt_id": receipt.id, "file_hash": file_hash[:16]})
"""

import logging
import os
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Optional

from pythonjsonlogger import jsonlogger

SERVICE_NAME = "preorder-backend"

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Keys scrubbed from log records wherever they appear
REDACTED_LOG_KEYS = frozenset({
    "password", "token", "session_token", "authorization", "cookie",
    "secret", "api_key", "access_key", "secret_access_key",
    "bucket_secret_access_key", "dsn",
})

_NOISY_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "botocore": logging.WARNING,
    "aiobotocore": logging.WARNING,
    "httpx": logging.WARNING,
}


def get_request_id() -> Optional[str]:
    return _request_id.get()


def new_request_id() -> str:
    return f"req-{uuid.uuid4().hex[:16]}"


@contextmanager
def request_id_scope(request_id: Optional[str] = None) -> Iterator[str]:
    """Bind a request ID (a fresh one when none is given) for the duration of the block."""
    rid = request_id or new_request_id()
    token = _request_id.set(rid)
    try:
        yield rid
    finally:
        _request_id.reset(token)


def _scrub(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: "[REDACTED]" if str(k).lower() in REDACTED_LOG_KEYS else _scrub(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return type(value)(_scrub(v) for v in value)
    return value


class RequestContextFilter(logging.Filter):
    """Stamps request_id on the record and scrubs secret-looking extras."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id() or "-"
        for key in list(vars(record)):
            if key.lower() in REDACTED_LOG_KEYS:
                setattr(record, key, "[REDACTED]")
        if isinstance(record.args, dict):
            record.args = _scrub(record.args)
        return True


class PreorderJsonFormatter(jsonlogger.JsonFormatter):
    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["@timestamp"] = self.formatTime(record, self.datefmt)
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["request_id"] = getattr(record, "request_id", "-")
        log_record["service"] = SERVICE_NAME
        log_record["environment"] = os.getenv("ENVIRONMENT", "development")


def configure_logging() -> None:
    """
    Install the application's root handler.

    LOG_LEVEL sets the root level (default INFO). LOG_FORMAT is "json" or
    "text"; it defaults to json when ENVIRONMENT is production.
    """
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    production = os.getenv("ENVIRONMENT") == "production"
    fmt = os.getenv("LOG_FORMAT", "json" if production else "text").lower()

    handler = logging.StreamHandler()
    if fmt == "json":
        handler.setFormatter(PreorderJsonFormatter("%(message)s"))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)-7s [%(request_id)s] %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        ))
    handler.addFilter(RequestContextFilter())

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)

    for name, noisy_level in _NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(noisy_level)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


configure_logging()
