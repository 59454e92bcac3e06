"""
Receipt upload pipeline and verification lifecycle.

Upload stages run in order and stop at the first failure:

    rate limit -> field validation -> file validation -> virus scan
    -> duplicate check -> store -> persist

Each failure is raised as a PreorderServiceError subclass carrying the
client-facing message and error code. Nothing in this module touches
entitlements; a verified receipt shows up as ``has_preordered`` the next
time the resolver runs.

Verification is a synchronous admin action: PENDING -> VERIFIED or
PENDING -> REJECTED, applied with a conditional UPDATE so two admins
acting on the same receipt cannot both win.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from exceptions import (
    ConflictError,
    DatabaseError,
    RateLimitError,
    ResourceNotFoundError,
    ValidationError,
)
from models import BookFormat, Receipt, ReceiptStatus, User
from observability.logging import get_logger
from observability.metrics import track_business_event
from services.bonus_claims import sync_claim_with_receipt
from services.duplicate_detector import check_duplicate_receipt
from services.file_validation import (
    generate_secure_filename,
    scan_file_for_virus,
    validate_receipt_file,
)
from services.rate_limiter import FixedWindowRateLimiter, LIMITS
from storage import IStorageProvider, RECEIPTS_FOLDER

logger = get_logger(__name__)

GENERIC_ERROR_MESSAGE = "An unexpected error occurred. Please try again later."
UPLOAD_SUCCESS_MESSAGE = "Receipt uploaded successfully! We will verify it within 24 hours."

DUPLICATE_SAME_USER_MESSAGE = "You have already uploaded this receipt"
DUPLICATE_OTHER_USER_MESSAGE = "This receipt has already been used"

MAX_RETAILER_LENGTH = 100
MAX_ORDER_NUMBER_LENGTH = 100
MAX_REJECTION_REASON_LENGTH = 1000


@dataclass
class UploadOutcome:
    receipt: Receipt
    file_url: str
    public_url: bool


def _duplicate_error(same_user: bool) -> ConflictError:
    if same_user:
        return ConflictError(DUPLICATE_SAME_USER_MESSAGE, error_code="DUPLICATE_RECEIPT_SAME_USER")
    return ConflictError(DUPLICATE_OTHER_USER_MESSAGE, error_code="DUPLICATE_RECEIPT")


def parse_purchase_date(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 date or datetime. Blank means not provided.

    Aware values are converted to naive UTC to match the other timestamps.
    """
    if value is None or not value.strip():
        return None
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        raise ValidationError("Invalid purchase date", error_code="INVALID_DATE")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_book_format(value: Optional[str]) -> Optional[BookFormat]:
    if value is None or not value.strip():
        return None
    try:
        return BookFormat(value.strip().lower())
    except ValueError:
        raise ValidationError("Invalid book format", error_code="INVALID_FORMAT")


async def enforce_upload_rate_limit(
    limiter: FixedWindowRateLimiter,
    user_id: int,
    client_ip: str,
) -> None:
    max_requests, window_ms = LIMITS["receipt-upload"]
    result = await limiter.check(f"{user_id}:{client_ip}", max_requests=max_requests, window_ms=window_ms)
    if not result.allowed:
        minutes = max(1, math.ceil(result.reset_after_seconds / 60))
        raise RateLimitError(
            f"Too many uploads. Please try again in {minutes} minutes.",
            retry_after=result.reset_after_seconds,
        )


async def _discard_stored_file(storage: IStorageProvider, file_url: str) -> None:
    try:
        await storage.delete_file(file_url)
    except Exception:
        logger.warning("Could not remove orphaned receipt file", extra={"file_url": file_url}, exc_info=True)


async def upload_receipt(
    session: AsyncSession,
    *,
    user: User,
    file_bytes: Optional[bytes],
    declared_mime_type: Optional[str],
    retailer: Optional[str],
    order_number: Optional[str] = None,
    book_format: Optional[str] = None,
    purchase_date: Optional[str] = None,
    storage: IStorageProvider,
    limiter: FixedWindowRateLimiter,
    client_ip: str = "unknown",
    user_agent: Optional[str] = None,
) -> UploadOutcome:
    """
    Run the full upload pipeline for an authenticated user.

    Returns:
        UploadOutcome with the persisted PENDING receipt

    Raises:
        RateLimitError, ValidationError, ConflictError,
        StorageServiceError, DatabaseError
    """
    # Captured up front: a rollback below expires the ORM instance
    user_id = user.id

    await enforce_upload_rate_limit(limiter, user_id, client_ip)

    # Field validation
    if file_bytes is None:
        raise ValidationError("Receipt file is required", error_code="MISSING_FILE")

    retailer = (retailer or "").strip()
    if not retailer:
        raise ValidationError("Retailer is required", error_code="MISSING_RETAILER")
    if len(retailer) > MAX_RETAILER_LENGTH:
        raise ValidationError("Retailer is too long", error_code="INVALID_REQUEST")

    order_number = (order_number or "").strip() or None
    if order_number and len(order_number) > MAX_ORDER_NUMBER_LENGTH:
        raise ValidationError("Order number is too long", error_code="INVALID_REQUEST")

    fmt = parse_book_format(book_format)
    purchased_at = parse_purchase_date(purchase_date)

    # File validation
    validation = validate_receipt_file(file_bytes, declared_mime_type)
    if not validation.valid:
        raise ValidationError(validation.error, error_code="INVALID_FILE")

    file_hash = validation.hash
    hash_prefix = file_hash[:16]

    if not scan_file_for_virus(file_bytes):
        logger.warning(
            "Receipt failed security scan",
            extra={"user_id": user_id, "file_hash": hash_prefix, "client_ip": client_ip},
        )
        raise ValidationError("File failed security scan", error_code="SECURITY_SCAN_FAILED")

    duplicate = await check_duplicate_receipt(session, file_hash, user_id)
    if duplicate.is_duplicate:
        logger.warning(
            "Duplicate receipt upload attempt",
            extra={
                "user_id": user_id,
                "file_hash": hash_prefix,
                "existing_receipt_id": duplicate.existing_receipt_id,
                "same_user": duplicate.same_user,
            },
        )
        raise _duplicate_error(duplicate.same_user)

    # Store
    filename = generate_secure_filename(validation.mime_type)
    file_url = await storage.save_file(
        file_bytes,
        filename,
        subfolder=RECEIPTS_FOLDER,
        content_type=validation.mime_type,
        metadata={"user-id": str(user_id), "file-hash": file_hash},
    )

    if not storage.public_urls:
        logger.warning("Receipt stored without a public URL", extra={"file_url": file_url})

    # Persist
    receipt = Receipt(
        user_id=user_id,
        retailer=retailer,
        order_number=order_number,
        format=fmt.value if fmt else None,
        purchase_date=purchased_at,
        status=ReceiptStatus.PENDING.value,
        file_hash=file_hash,
        file_url=file_url,
        mime_type=validation.mime_type,
        file_size=validation.size,
        ip_address=client_ip,
        user_agent=user_agent,
    )
    session.add(receipt)

    try:
        await session.commit()
    except IntegrityError:
        # Lost the race against a concurrent upload of the same bytes
        await session.rollback()
        await _discard_stored_file(storage, file_url)
        race = await check_duplicate_receipt(session, file_hash, user_id)
        logger.warning(
            "Duplicate receipt rejected by unique constraint",
            extra={"user_id": user_id, "file_hash": hash_prefix, "same_user": race.same_user},
        )
        raise _duplicate_error(race.same_user)
    except SQLAlchemyError as exc:
        await session.rollback()
        await _discard_stored_file(storage, file_url)
        logger.error("Failed to persist receipt", extra={"user_id": user_id}, exc_info=True)
        raise DatabaseError(GENERIC_ERROR_MESSAGE) from exc

    await session.refresh(receipt)

    track_business_event("receipt_uploaded")
    logger.info(
        "Receipt uploaded",
        extra={
            "receipt_id": receipt.id,
            "user_id": user_id,
            "retailer": retailer,
            "format": receipt.format,
            "file_hash": hash_prefix,
            "file_size": validation.size,
            "mime_type": validation.mime_type,
        },
    )

    return UploadOutcome(receipt=receipt, file_url=file_url, public_url=storage.public_urls)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

async def get_receipt(session: AsyncSession, receipt_id: str) -> Receipt:
    receipt = await session.get(Receipt, receipt_id, populate_existing=True)
    if receipt is None:
        raise ResourceNotFoundError("Receipt not found", error_code="RECEIPT_NOT_FOUND")
    return receipt


async def _transition(
    session: AsyncSession,
    receipt_id: str,
    new_status: ReceiptStatus,
    admin_email: str,
    rejection_reason: Optional[str] = None,
) -> Receipt:
    receipt = await get_receipt(session, receipt_id)
    if receipt.status != ReceiptStatus.PENDING.value:
        raise ConflictError(
            f"Receipt is already {receipt.status}",
            error_code="INVALID_STATE_TRANSITION",
        )

    now = datetime.utcnow()
    result = await session.exec(
        update(Receipt)
        .where(Receipt.id == receipt_id, Receipt.status == ReceiptStatus.PENDING.value)
        .values(
            status=new_status.value,
            verified_by=admin_email,
            verified_at=now,
            rejection_reason=rejection_reason,
            updated_at=now,
        )
    )
    if result.rowcount == 0:
        await session.rollback()
        current = await get_receipt(session, receipt_id)
        raise ConflictError(
            f"Receipt is already {current.status}",
            error_code="INVALID_STATE_TRANSITION",
        )

    await sync_claim_with_receipt(session, receipt_id, new_status, admin_email)
    await session.commit()

    return await get_receipt(session, receipt_id)


async def verify_receipt(session: AsyncSession, receipt_id: str, admin_email: str) -> Receipt:
    """PENDING -> VERIFIED. Approves a pending bonus claim on the receipt."""
    receipt = await _transition(session, receipt_id, ReceiptStatus.VERIFIED, admin_email)
    track_business_event("receipt_verified")
    logger.info(
        "Receipt verified",
        extra={"receipt_id": receipt_id, "user_id": receipt.user_id, "admin_email": admin_email},
    )
    return receipt


async def reject_receipt(
    session: AsyncSession,
    receipt_id: str,
    admin_email: str,
    reason: Optional[str],
) -> Receipt:
    """PENDING -> REJECTED with a reason. Rejects a pending bonus claim on the receipt."""
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("Rejection reason is required", error_code="MISSING_REASON")
    reason = reason[:MAX_REJECTION_REASON_LENGTH]

    receipt = await _transition(
        session, receipt_id, ReceiptStatus.REJECTED, admin_email, rejection_reason=reason
    )
    track_business_event("receipt_rejected")
    logger.info(
        "Receipt rejected",
        extra={"receipt_id": receipt_id, "user_id": receipt.user_id, "admin_email": admin_email},
    )
    return receipt


async def list_receipts(
    session: AsyncSession,
    *,
    user_id: Optional[int] = None,
    status: Optional[ReceiptStatus] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[Receipt]:
    query = select(Receipt)
    if user_id is not None:
        query = query.where(Receipt.user_id == user_id)
    if status is not None:
        query = query.where(Receipt.status == status.value)
    query = query.order_by(Receipt.created_at.desc()).offset(offset).limit(limit)
    result = await session.exec(query)
    return list(result.all())


def receipt_status_payload(receipt: Receipt) -> dict:
    """
    Public verification status of a receipt.

    Amount, currency and book title are not extracted from receipts, so
    they are always null and confidence is 0. Every PENDING receipt is
    waiting on manual review.
    """
    pending = receipt.status == ReceiptStatus.PENDING.value
    return {
        "receiptId": receipt.id,
        "status": receipt.status,
        "verified": receipt.status == ReceiptStatus.VERIFIED.value,
        "retailer": receipt.retailer,
        "amount": None,
        "currency": None,
        "bookTitle": None,
        "purchaseDate": receipt.purchase_date.isoformat() if receipt.purchase_date else None,
        "format": receipt.format,
        "confidence": 0,
        "requiresManualReview": pending,
        "manualReviewReason": None,
        "verifiedAt": receipt.verified_at.isoformat() if receipt.verified_at else None,
        "rejectionReason": receipt.rejection_reason,
    }


def receipt_summary(receipt: Receipt) -> dict:
    return {
        "id": receipt.id,
        "userId": receipt.user_id,
        "retailer": receipt.retailer,
        "orderNumber": receipt.order_number,
        "format": receipt.format,
        "purchaseDate": receipt.purchase_date.isoformat() if receipt.purchase_date else None,
        "status": receipt.status,
        "fileUrl": receipt.file_url,
        "mimeType": receipt.mime_type,
        "fileSize": receipt.file_size,
        "verifiedBy": receipt.verified_by,
        "verifiedAt": receipt.verified_at.isoformat() if receipt.verified_at else None,
        "rejectionReason": receipt.rejection_reason,
        "createdAt": receipt.created_at.isoformat(),
    }
