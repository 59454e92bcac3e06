"""Code routes - public validation and redemption by signed-in readers."""
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlmodel.ext.asyncio.session import AsyncSession

from database import get_session
from dependencies import get_api_rate_limiter, get_current_user, get_redemption_rate_limiter
from models import User
from services.codes import redeem_code, redemptions_remaining, validate_code
from services.entitlements import entitlement_payload
from services.rate_limiter import FixedWindowRateLimiter, enforce_rate_limit
from utils.security import get_client_ip

router = APIRouter(prefix="/codes", tags=["codes"])


class ValidateCodeRequest(BaseModel):
    code: Optional[str] = None


@router.post("/validate")
async def validate(
    body: ValidateCodeRequest,
    request: Request,
    session: AsyncSession = Depends(get_session),
    limiter: FixedWindowRateLimiter = Depends(get_api_rate_limiter),
):
    """Check a code without redeeming it. Invalid codes still answer 200."""
    await enforce_rate_limit(limiter, get_client_ip(request))

    result = await validate_code(session, body.code)
    if not result.valid:
        return {"valid": False, "error": result.error}
    return {
        "valid": True,
        "code": {
            "type": result.code.type,
            "redemptionsRemaining": redemptions_remaining(result.code),
        },
    }


@router.post("/{code}/redeem")
async def redeem(
    code: str,
    request: Request,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    limiter: FixedWindowRateLimiter = Depends(get_redemption_rate_limiter),
):
    user_id = user.id
    await enforce_rate_limit(
        limiter, str(user_id), "Too many redemption attempts. Please try again later."
    )

    outcome = await redeem_code(session, code, user_id, ip_address=get_client_ip(request))
    return {
        "success": True,
        "message": "Code redeemed successfully",
        "data": {
            "code": {
                "type": outcome.code.type,
                "redemptionsRemaining": redemptions_remaining(outcome.code),
            },
            "entitlement": entitlement_payload(outcome.entitlement),
        },
    }
