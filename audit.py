"""
Audit logging utilities.

Two entry points:

- ``audit_log``: write an AuditLog row on the caller's session (used inside
  request handlers, e.g. denied admin access).
- ``log_admin_action``: fire-and-forget record of an authorized admin
  mutation. Scheduled as a FastAPI background task so the response is not
  held up; emits an ``ADMIN_AUDIT`` log line and then persists the row on
  its own session.

Usage:
    background_tasks.add_task(
        log_admin_action,
        session_factory,
        admin_email=admin.email,
        action="VERIFY_RECEIPT",
        resource_type="receipt",
        resource_id=receipt.id,
        details={"previous_status": "PENDING"},
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )

Neither function ever raises.
"""

from typing import Optional, Dict, Any, Callable
from datetime import datetime
import json

from fastapi import Request
from sqlmodel.ext.asyncio.session import AsyncSession

from models import AuditLog
from observability.logging import get_logger
from utils.security import redact_sensitive, get_client_ip, get_user_agent

logger = get_logger(__name__)
admin_audit_logger = get_logger("audit.admin")


def _serialize_details(details: Optional[Dict[str, Any]]) -> Optional[str]:
    if not details:
        return None
    return json.dumps(redact_sensitive(details), default=str)


async def audit_log(
    session: AsyncSession,
    action: str,
    user_id: Optional[int] = None,
    admin_email: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    success: bool = True,
    error_message: Optional[str] = None,
    request: Optional[Request] = None,
):
    """
    Create an audit log entry on the given session and commit it.

    This should never raise - failures are logged but not propagated.
    """
    try:
        log_entry = AuditLog(
            timestamp=datetime.utcnow(),
            user_id=user_id,
            admin_email=admin_email,
            ip_address=get_client_ip(request) if request else None,
            user_agent=get_user_agent(request),
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            details=_serialize_details(details),
            success=success,
            error_message=error_message,
        )

        session.add(log_entry)
        await session.commit()

    except Exception:
        # Audit logging must not break the main flow
        logger.exception("Failed to write audit log", extra={"action": action})


async def log_admin_action(
    session_factory: Callable[[], AsyncSession],
    *,
    admin_email: str,
    action: str,
    resource_type: str,
    resource_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    admin_user_id: Optional[int] = None,
) -> None:
    """Record an authorized admin mutation. Never raises."""
    timestamp = datetime.utcnow()
    safe_details = redact_sensitive(details) if details else None

    admin_audit_logger.info(
        "ADMIN_AUDIT",
        extra={
            "audit_timestamp": timestamp.isoformat(),
            "admin_email": admin_email,
            "action": action,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "details": safe_details,
            "ip_address": ip_address,
            "user_agent": user_agent,
        },
    )

    try:
        async with session_factory() as session:
            session.add(
                AuditLog(
                    timestamp=timestamp,
                    user_id=admin_user_id,
                    admin_email=admin_email,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    action=action,
                    resource_type=resource_type,
                    resource_id=resource_id,
                    details=json.dumps(safe_details, default=str) if safe_details else None,
                    success=True,
                )
            )
            await session.commit()
    except Exception:
        logger.exception(
            "Failed to persist admin audit record",
            extra={"action": action, "resource_type": resource_type},
        )
