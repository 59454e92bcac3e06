"""Bonus pack claims and signed downloads."""
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, Field
from sqlmodel.ext.asyncio.session import AsyncSession

from database import get_session
from dependencies import get_bonus_claim_rate_limiter, get_bonus_download_rate_limiter, get_current_user
from models import User
from observability.logging import get_logger
from observability.metrics import track_business_event
from services.bonus_claims import claim_payload, create_bonus_claim
from services.bonus_pack import BONUS_ASSETS, authorize_download, get_asset_path
from services.rate_limiter import FixedWindowRateLimiter, enforce_rate_limit
from utils.security import get_client_ip

logger = get_logger(__name__)

router = APIRouter(prefix="/bonus", tags=["bonus"])


class BonusClaimRequest(BaseModel):
    receipt_id: Optional[str] = Field(None, alias="receiptId")
    delivery_email: Optional[str] = Field(None, alias="deliveryEmail")


@router.post("/claim")
async def claim(
    body: BonusClaimRequest,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    limiter: FixedWindowRateLimiter = Depends(get_bonus_claim_rate_limiter),
):
    user_id = user.id
    await enforce_rate_limit(limiter, str(user_id), "Too many claim attempts. Please try again later.")

    bonus_claim = await create_bonus_claim(
        session,
        user_id=user_id,
        receipt_id=body.receipt_id,
        delivery_email=body.delivery_email,
    )
    return JSONResponse(
        status_code=201,
        content={
            "success": True,
            "message": "Bonus claim submitted",
            "data": claim_payload(bonus_claim),
        },
    )


@router.get("/download/{asset}")
async def download(
    asset: str,
    request: Request,
    token: Optional[str] = Query(None),
    session: AsyncSession = Depends(get_session),
    limiter: FixedWindowRateLimiter = Depends(get_bonus_download_rate_limiter),
):
    """Serve one bonus pack asset to the holder of a signed link. No session needed."""
    payload = await authorize_download(session, token, asset)

    client_ip = get_client_ip(request)
    await enforce_rate_limit(
        limiter,
        f"{payload['email']}:{client_ip}",
        "Too many downloads. Please try again later.",
    )

    path = get_asset_path(asset)
    track_business_event("bonus_pack_downloaded")
    logger.info(
        "Bonus pack asset downloaded",
        extra={"claim_id": payload["claim_id"], "asset": asset, "client_ip": client_ip},
    )
    return FileResponse(
        path,
        media_type=BONUS_ASSETS[asset].mime_type,
        filename=BONUS_ASSETS[asset].filename,
        headers={"Cache-Control": "private, no-cache, no-store, must-revalidate"},
    )
