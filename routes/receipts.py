"""Receipt routes - upload, public status lookup, the reader's own receipts."""
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlmodel.ext.asyncio.session import AsyncSession

from database import get_session
from dependencies import get_api_rate_limiter, get_current_user, get_upload_rate_limiter
from exceptions import ValidationError
from models import User
from services.file_validation import MAX_RECEIPT_FILE_SIZE
from services.rate_limiter import FixedWindowRateLimiter, enforce_rate_limit
from services.receipts import (
    UPLOAD_SUCCESS_MESSAGE,
    get_receipt,
    list_receipts,
    receipt_status_payload,
    receipt_summary,
    upload_receipt,
)
from storage import IStorageProvider, get_storage_provider
from utils.security import get_client_ip, get_user_agent

router = APIRouter(tags=["receipts"])


class ReceiptStatusRequest(BaseModel):
    receipt_id: Optional[str] = Field(None, alias="receiptId")


@router.post("/receipts/upload")
async def upload(
    request: Request,
    file: Optional[UploadFile] = File(None),
    retailer: Optional[str] = Form(None),
    order_number: Optional[str] = Form(None, alias="orderNumber"),
    book_format: Optional[str] = Form(None, alias="format"),
    purchase_date: Optional[str] = Form(None, alias="purchaseDate"),
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    storage: IStorageProvider = Depends(get_storage_provider),
    limiter: FixedWindowRateLimiter = Depends(get_upload_rate_limiter),
):
    file_bytes = None
    declared_type = None
    if file is not None:
        # One byte past the cap is enough to know the file is too large
        file_bytes = await file.read(MAX_RECEIPT_FILE_SIZE + 1)
        declared_type = file.content_type

    outcome = await upload_receipt(
        session,
        user=user,
        file_bytes=file_bytes,
        declared_mime_type=declared_type,
        retailer=retailer,
        order_number=order_number,
        book_format=book_format,
        purchase_date=purchase_date,
        storage=storage,
        limiter=limiter,
        client_ip=get_client_ip(request),
        user_agent=get_user_agent(request),
    )

    receipt = outcome.receipt
    return JSONResponse(
        status_code=201,
        content={
            "success": True,
            "message": UPLOAD_SUCCESS_MESSAGE,
            "data": {
                "receiptId": receipt.id,
                "status": receipt.status,
                "fileUrl": outcome.file_url,
                "publicUrl": outcome.public_url,
            },
        },
    )


@router.post("/receipts/verify")
async def receipt_status(
    body: ReceiptStatusRequest,
    request: Request,
    session: AsyncSession = Depends(get_session),
    limiter: FixedWindowRateLimiter = Depends(get_api_rate_limiter),
):
    """Public status of a receipt by id. Does not change its state."""
    await enforce_rate_limit(limiter, get_client_ip(request))

    receipt_id = (body.receipt_id or "").strip()
    if not receipt_id:
        raise ValidationError("Receipt ID is required", error_code="MISSING_RECEIPT_ID")

    receipt = await get_receipt(session, receipt_id)
    return {"success": True, "data": receipt_status_payload(receipt)}


@router.get("/receipts")
async def my_receipts(
    limit: int = 50,
    offset: int = 0,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
):
    limit = max(1, min(limit, 100))
    receipts = await list_receipts(session, user_id=user.id, limit=limit, offset=max(offset, 0))
    return {"success": True, "data": [receipt_summary(r) for r in receipts]}
