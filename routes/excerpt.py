"""Early excerpt routes - request access, check it, download."""
import os

from fastapi import APIRouter, Depends
from sqlmodel.ext.asyncio.session import AsyncSession

from database import get_session, get_session_factory
from dependencies import get_api_rate_limiter, get_current_user, require_entitlement
from models import EntitlementType, User
from observability.metrics import track_business_event
from services.entitlements import (
    entitlement_payload,
    grant_entitlement,
    mark_excerpt_fulfilled,
    resolve_entitlements,
)
from services.rate_limiter import FixedWindowRateLimiter, enforce_rate_limit

router = APIRouter(prefix="/excerpt", tags=["excerpt"])


def get_excerpt_download_url() -> str:
    return os.getenv("EXCERPT_DOWNLOAD_URL", "/downloads/excerpt.pdf")


@router.post("/request")
async def request_excerpt(
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    limiter: FixedWindowRateLimiter = Depends(get_api_rate_limiter),
):
    user_id = user.id
    await enforce_rate_limit(limiter, f"excerpt:{user_id}")

    entitlement = await grant_entitlement(
        session,
        user_id,
        EntitlementType.EARLY_EXCERPT,
        source="excerpt_request",
        idempotent=True,
    )
    track_business_event("excerpt_requested")
    return {
        "success": True,
        "message": "Your early excerpt is ready to download",
        "data": entitlement_payload(entitlement),
    }


@router.get("/check-entitlement")
async def check_entitlement(
    user: User = Depends(get_current_user),
    session_factory=Depends(get_session_factory),
):
    entitlements = await resolve_entitlements(session_factory, user.id)
    return {"hasExcerpt": entitlements.has_excerpt}


@router.get("/download")
async def download_excerpt(
    user: User = Depends(require_entitlement("excerpt")),
    session: AsyncSession = Depends(get_session),
):
    # First download moves the grant from ACTIVE to FULFILLED
    await mark_excerpt_fulfilled(session, user.id)
    track_business_event("excerpt_downloaded")
    return {"success": True, "downloadUrl": get_excerpt_download_url()}
