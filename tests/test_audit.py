import json
import logging

import pytest
from sqlmodel import select

from audit import audit_log, log_admin_action
from models import AuditLog


@pytest.mark.asyncio
async def test_log_admin_action_persists_redacted_record(session, session_factory, caplog):
    with caplog.at_level(logging.INFO, logger="audit.admin"):
        await log_admin_action(
            session_factory,
            admin_email="admin@example.com",
            action="GENERATE_CODES",
            resource_type="codes",
            details={"count": 5, "token": "should-not-leak"},
            ip_address="203.0.113.9",
            user_agent="pytest",
        )

    result = await session.exec(select(AuditLog).where(AuditLog.action == "GENERATE_CODES"))
    entry = result.one()
    assert entry.admin_email == "admin@example.com"
    assert entry.resource_type == "codes"
    assert entry.ip_address == "203.0.113.9"
    assert entry.success is True
    assert json.loads(entry.details) == {"count": 5, "token": "[REDACTED]"}

    assert any(record.getMessage() == "ADMIN_AUDIT" for record in caplog.records)


@pytest.mark.asyncio
async def test_log_admin_action_never_raises():
    def broken_factory():
        raise RuntimeError("database gone")

    await log_admin_action(
        broken_factory,
        admin_email="admin@example.com",
        action="REVOKE_CODE",
        resource_type="code",
        resource_id="7",
    )


@pytest.mark.asyncio
async def test_audit_log_writes_failure_entry(session):
    await audit_log(
        session=session,
        action="admin.access_denied",
        admin_email="reader@example.com",
        resource_type="admin",
        resource_id="/admin/codes",
        success=False,
        error_message="Forbidden: Admin access required",
    )

    entry = (await session.exec(select(AuditLog))).one()
    assert entry.success is False
    assert entry.error_message == "Forbidden: Admin access required"
    assert entry.details is None
