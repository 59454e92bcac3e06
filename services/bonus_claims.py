"""
Bonus pack claims.

A claim is attached to one of the reader's own receipts and follows it:
verifying the receipt approves a pending claim, rejecting the receipt
rejects it. Only an APPROVED claim can be marked DELIVERED, and a
DELIVERED claim is what grants ``has_agent_charter_pack``. Delivery also
issues the signed per-asset download links (services.bonus_pack).
"""

import re
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from exceptions import ConflictError, ResourceNotFoundError, ValidationError
from models import BonusClaim, BonusClaimStatus, Receipt, ReceiptStatus
from observability.logging import get_logger
from observability.metrics import track_business_event
from services.bonus_pack import build_download_links, require_token_secret

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MAX_EMAIL_LENGTH = 254
MAX_TRACKING_ID_LENGTH = 255

CLAIM_EXISTS_MESSAGE = "A bonus claim already exists for this receipt"


async def create_bonus_claim(
    session: AsyncSession,
    *,
    user_id: int,
    receipt_id: Optional[str],
    delivery_email: Optional[str],
) -> BonusClaim:
    """
    Open a bonus claim for one of the user's receipts.

    The claim starts APPROVED when the receipt is already VERIFIED,
    otherwise PENDING.
    """
    receipt_id = (receipt_id or "").strip()
    delivery_email = (delivery_email or "").strip().lower()
    if not receipt_id or not delivery_email:
        raise ValidationError("Missing required fields", error_code="MISSING_FIELDS")
    if len(delivery_email) > MAX_EMAIL_LENGTH or not EMAIL_PATTERN.match(delivery_email):
        raise ValidationError("Invalid email address", error_code="INVALID_EMAIL")

    receipt = await session.get(Receipt, receipt_id)
    # Someone else's receipt looks the same as a missing one
    if receipt is None or receipt.user_id != user_id:
        raise ResourceNotFoundError("Receipt not found", error_code="RECEIPT_NOT_FOUND")
    if receipt.status == ReceiptStatus.REJECTED.value:
        raise ConflictError("This receipt was rejected and cannot be used for a claim", error_code="RECEIPT_REJECTED")

    existing = await session.exec(select(BonusClaim.id).where(BonusClaim.receipt_id == receipt_id))
    if existing.first() is not None:
        raise ConflictError(CLAIM_EXISTS_MESSAGE, error_code="CLAIM_EXISTS")

    verified = receipt.status == ReceiptStatus.VERIFIED.value
    claim = BonusClaim(
        user_id=user_id,
        receipt_id=receipt_id,
        delivery_email=delivery_email,
        retailer=receipt.retailer,
        order_number=receipt.order_number,
        format=receipt.format,
        status=BonusClaimStatus.APPROVED.value if verified else BonusClaimStatus.PENDING.value,
    )
    session.add(claim)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise ConflictError(CLAIM_EXISTS_MESSAGE, error_code="CLAIM_EXISTS")
    await session.refresh(claim)

    track_business_event("bonus_claim_submitted")
    logger.info(
        "Bonus claim submitted",
        extra={"claim_id": claim.id, "receipt_id": receipt_id, "user_id": user_id, "status": claim.status},
    )
    return claim


async def sync_claim_with_receipt(
    session: AsyncSession,
    receipt_id: str,
    receipt_status: ReceiptStatus,
    admin_email: str,
) -> int:
    """
    Carry a receipt decision over to its PENDING claim.

    Runs inside the caller's transaction and does not commit.

    Returns:
        Number of claims updated (0 or 1)
    """
    if receipt_status == ReceiptStatus.VERIFIED:
        new_status = BonusClaimStatus.APPROVED
    elif receipt_status == ReceiptStatus.REJECTED:
        new_status = BonusClaimStatus.REJECTED
    else:
        return 0

    result = await session.exec(
        update(BonusClaim)
        .where(
            BonusClaim.receipt_id == receipt_id,
            BonusClaim.status == BonusClaimStatus.PENDING.value,
        )
        .values(status=new_status.value, processed_by=admin_email, processed_at=datetime.utcnow())
    )
    return result.rowcount


async def deliver_bonus_claim(
    session: AsyncSession,
    claim_id: int,
    admin_email: str,
    tracking_id: Optional[str] = None,
) -> BonusClaim:
    """
    APPROVED -> DELIVERED. Any other source state is a conflict.

    Download links are signed after the commit, so a missing signing
    secret is caught before the claim changes state.
    """
    require_token_secret()
    claim = await session.get(BonusClaim, claim_id, populate_existing=True)
    if claim is None:
        raise ResourceNotFoundError("Bonus claim not found", error_code="CLAIM_NOT_FOUND")

    tracking_id = (tracking_id or "").strip()[:MAX_TRACKING_ID_LENGTH] or None
    now = datetime.utcnow()
    result = await session.exec(
        update(BonusClaim)
        .where(BonusClaim.id == claim_id, BonusClaim.status == BonusClaimStatus.APPROVED.value)
        .values(
            status=BonusClaimStatus.DELIVERED.value,
            delivered_at=now,
            processed_at=now,
            processed_by=admin_email,
            delivery_tracking_id=tracking_id,
        )
    )
    if result.rowcount == 0:
        await session.rollback()
        current = await session.get(BonusClaim, claim_id, populate_existing=True)
        raise ConflictError(
            f"Only APPROVED claims can be delivered (claim is {current.status})",
            error_code="INVALID_STATE_TRANSITION",
        )
    await session.commit()

    claim = await session.get(BonusClaim, claim_id, populate_existing=True)
    track_business_event("bonus_claim_delivered")
    logger.info(
        "Bonus claim delivered",
        extra={"claim_id": claim_id, "user_id": claim.user_id, "admin_email": admin_email},
    )
    return claim


def claim_payload(claim: BonusClaim) -> dict:
    return {
        "claimId": claim.id,
        "receiptId": claim.receipt_id,
        "status": claim.status,
        "deliveryEmail": claim.delivery_email,
        "retailer": claim.retailer,
        "deliveredAt": claim.delivered_at.isoformat() if claim.delivered_at else None,
        "deliveryTrackingId": claim.delivery_tracking_id,
        "createdAt": claim.created_at.isoformat(),
    }


def delivered_claim_payload(claim: BonusClaim) -> dict:
    payload = claim_payload(claim)
    payload["downloads"] = build_download_links(claim.delivery_email, claim.id)
    return payload
