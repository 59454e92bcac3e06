"""Admin routes - code batches, receipt review, bonus delivery, direct grants.

Every route is behind ``require_admin``. Successful mutations are recorded
with ``log_admin_action`` as a background task.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field
from sqlmodel.ext.asyncio.session import AsyncSession

from audit import log_admin_action
from database import get_session, get_session_factory
from dependencies import AdminIdentity, get_or_create_user, require_admin
from exceptions import ValidationError
from models import CodeStatus, CodeType, EntitlementType, ReceiptStatus
from services.bonus_claims import deliver_bonus_claim, delivered_claim_payload
from services.codes import (
    CodeGenerationOptions,
    code_payload,
    expire_stale_codes,
    export_codes_to_csv,
    generate_and_save_codes,
    get_code_statistics,
    list_codes,
    revoke_code,
)
from services.entitlements import entitlement_payload, grant_entitlement
from services.receipts import list_receipts, receipt_summary, reject_receipt, verify_receipt
from utils.security import get_client_ip, get_user_agent

router = APIRouter(prefix="/admin", tags=["admin"])


class GenerateCodesRequest(BaseModel):
    # Left untyped so a non-numeric count gets the same message as an out-of-range one
    count: Any = None
    type: Optional[str] = None
    description: Optional[str] = None
    max_redemptions: Optional[int] = Field(None, alias="maxRedemptions")
    valid_from: Optional[datetime] = Field(None, alias="validFrom")
    valid_until: Optional[datetime] = Field(None, alias="validUntil")
    org_id: Optional[str] = Field(None, alias="orgId")
    format: str = "json"


class RejectReceiptRequest(BaseModel):
    reason: Optional[str] = None


class DeliverClaimRequest(BaseModel):
    tracking_id: Optional[str] = Field(None, alias="trackingId")


class GrantEntitlementRequest(BaseModel):
    email: Optional[str] = None
    type: Optional[str] = None


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _parse_enum(enum_cls, value: Optional[str], label: str):
    if value is None or value == "":
        return None
    try:
        return enum_cls(value.upper())
    except ValueError:
        raise ValidationError(f"Invalid {label}")


class AdminAudit:
    """Schedules audit records for the current admin request."""

    def __init__(self, request: Request, background_tasks: BackgroundTasks, admin: AdminIdentity, session_factory):
        self.request = request
        self.background_tasks = background_tasks
        self.admin = admin
        self.session_factory = session_factory

    def record(
        self,
        action: str,
        resource_type: str,
        resource_id: Optional[Any] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.background_tasks.add_task(
            log_admin_action,
            self.session_factory,
            admin_email=self.admin.email,
            action=action,
            resource_type=resource_type,
            resource_id=str(resource_id) if resource_id is not None else None,
            details=details,
            ip_address=get_client_ip(self.request),
            user_agent=get_user_agent(self.request),
            admin_user_id=self.admin.user_id,
        )


async def get_admin_audit(
    request: Request,
    background_tasks: BackgroundTasks,
    admin: AdminIdentity = Depends(require_admin),
    session_factory=Depends(get_session_factory),
) -> AdminAudit:
    return AdminAudit(request, background_tasks, admin, session_factory)


# ---------------------------------------------------------------------------
# Codes
# ---------------------------------------------------------------------------

@router.post("/codes/generate")
async def generate_codes(
    body: GenerateCodesRequest,
    admin_audit: AdminAudit = Depends(get_admin_audit),
    session: AsyncSession = Depends(get_session),
):
    """
    Generate a batch of codes.

    Returns 201 with the codes as JSON, or a CSV attachment when
    ``format`` is ``csv``.
    """
    code_type = _parse_enum(CodeType, body.type, "code type")
    if code_type is None:
        raise ValidationError("Code type is required")
    output_format = (body.format or "json").lower()
    if output_format not in ("json", "csv"):
        raise ValidationError("Format must be json or csv")

    options = CodeGenerationOptions(
        count=body.count,
        type=code_type,
        description=body.description,
        max_redemptions=body.max_redemptions,
        valid_from=_naive_utc(body.valid_from),
        valid_until=_naive_utc(body.valid_until),
        created_by=admin_audit.admin.email,
        org_id=body.org_id,
    )
    codes = await generate_and_save_codes(session, options)

    admin_audit.record(
        "GENERATE_CODES",
        "codes",
        details={"count": len(codes), "type": code_type.value, "format": output_format},
    )

    if output_format == "csv":
        timestamp = datetime.utcnow().strftime("%Y%m%d%H%M%S")
        filename = f"vip-codes-{code_type.value.lower()}-{timestamp}.csv"
        return Response(
            content=export_codes_to_csv(codes),
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    return JSONResponse(
        status_code=201,
        content={
            "success": True,
            "data": {"count": len(codes), "codes": [code_payload(c) for c in codes]},
        },
    )


@router.get("/codes")
async def get_codes(
    type: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 50,
    admin: AdminIdentity = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    code_type = _parse_enum(CodeType, type, "code type")
    code_status = _parse_enum(CodeStatus, status, "code status")

    await expire_stale_codes(session)
    codes = await list_codes(
        session, code_type=code_type, status=code_status, limit=max(1, min(limit, 500))
    )
    stats = await get_code_statistics(session, code_type)
    return {
        "success": True,
        "data": {"codes": [code_payload(c) for c in codes], "statistics": stats},
    }


@router.post("/codes/{code_id}/revoke")
async def revoke(
    code_id: int,
    admin_audit: AdminAudit = Depends(get_admin_audit),
    session: AsyncSession = Depends(get_session),
):
    code = await revoke_code(session, code_id)
    admin_audit.record("REVOKE_CODE", "code", code_id, {"code_type": code.type})
    return {"success": True, "data": code_payload(code)}


# ---------------------------------------------------------------------------
# Receipts
# ---------------------------------------------------------------------------

@router.get("/receipts")
async def get_receipts(
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    admin: AdminIdentity = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    receipt_status = _parse_enum(ReceiptStatus, status, "receipt status")
    receipts = await list_receipts(
        session, status=receipt_status, limit=max(1, min(limit, 200)), offset=max(offset, 0)
    )
    return {"success": True, "data": [receipt_summary(r) for r in receipts]}


@router.post("/receipts/{receipt_id}/verify")
async def verify(
    receipt_id: str,
    admin_audit: AdminAudit = Depends(get_admin_audit),
    session: AsyncSession = Depends(get_session),
):
    receipt = await verify_receipt(session, receipt_id, admin_audit.admin.email)
    admin_audit.record(
        "VERIFY_RECEIPT", "receipt", receipt_id,
        {"previous_status": ReceiptStatus.PENDING.value, "user_id": receipt.user_id},
    )
    return {"success": True, "data": receipt_summary(receipt)}


@router.post("/receipts/{receipt_id}/reject")
async def reject(
    receipt_id: str,
    body: RejectReceiptRequest,
    admin_audit: AdminAudit = Depends(get_admin_audit),
    session: AsyncSession = Depends(get_session),
):
    receipt = await reject_receipt(session, receipt_id, admin_audit.admin.email, body.reason)
    admin_audit.record(
        "REJECT_RECEIPT", "receipt", receipt_id,
        {"reason": receipt.rejection_reason, "user_id": receipt.user_id},
    )
    return {"success": True, "data": receipt_summary(receipt)}


# ---------------------------------------------------------------------------
# Bonus claims and entitlements
# ---------------------------------------------------------------------------

@router.post("/bonus-claims/{claim_id}/deliver")
async def deliver_claim(
    claim_id: int,
    body: Optional[DeliverClaimRequest] = None,
    admin_audit: AdminAudit = Depends(get_admin_audit),
    session: AsyncSession = Depends(get_session),
):
    tracking_id = body.tracking_id if body else None
    claim = await deliver_bonus_claim(session, claim_id, admin_audit.admin.email, tracking_id)
    admin_audit.record(
        "DELIVER_BONUS_CLAIM", "bonus_claim", claim_id,
        {"tracking_id": claim.delivery_tracking_id, "user_id": claim.user_id},
    )
    return {"success": True, "data": delivered_claim_payload(claim)}


@router.post("/entitlements/grant")
async def grant(
    body: GrantEntitlementRequest,
    admin_audit: AdminAudit = Depends(get_admin_audit),
    session: AsyncSession = Depends(get_session),
):
    email = (body.email or "").strip()
    if not email:
        raise ValidationError("Email is required", error_code="MISSING_FIELDS")
    entitlement_type = _parse_enum(EntitlementType, body.type, "entitlement type")
    if entitlement_type is None:
        raise ValidationError("Entitlement type is required", error_code="MISSING_FIELDS")

    user = await get_or_create_user(session, email)
    user_id = user.id
    entitlement = await grant_entitlement(
        session,
        user_id,
        entitlement_type,
        source="admin",
        granted_by=admin_audit.admin.email,
        idempotent=True,
    )
    admin_audit.record(
        "GRANT_ENTITLEMENT", "entitlement", entitlement.id,
        {"user_id": user_id, "type": entitlement_type.value},
    )
    return {"success": True, "data": {"userId": user_id, "entitlement": entitlement_payload(entitlement)}}
