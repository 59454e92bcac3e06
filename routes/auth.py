"""Authentication routes - session introspection and logout.

Sign-in itself happens in the identity provider; these routes only read
and revoke the sessions it issues.
"""
from datetime import datetime
from typing import FrozenSet, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlmodel.ext.asyncio.session import AsyncSession

from database import get_session, get_session_factory
from dependencies import get_admin_allow_list, get_current_session, get_optional_user, require_auth
from models import AuthSession, User
from observability.logging import get_logger
from services.admin_auth import is_admin_email
from services.entitlements import NO_ENTITLEMENTS, resolve_entitlements

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


class AuthMeResponse(BaseModel):
    authenticated: bool
    email: Optional[str] = None
    isAdmin: bool = False
    entitlements: dict


@router.get("/me", response_model=AuthMeResponse)
async def auth_me(
    auth_session: Optional[AuthSession] = Depends(get_current_session),
    user: Optional[User] = Depends(get_optional_user),
    session_factory=Depends(get_session_factory),
    admin_emails: FrozenSet[str] = Depends(get_admin_allow_list),
):
    """Who is signed in, whether they are an admin, and what they can access."""
    if not auth_session:
        return {"authenticated": False, "entitlements": NO_ENTITLEMENTS.to_api()}

    entitlements = await resolve_entitlements(session_factory, user.id if user else None)
    return {
        "authenticated": True,
        "email": auth_session.email,
        "isAdmin": is_admin_email(auth_session.email, admin_emails),
        "entitlements": entitlements.to_api(),
    }


@router.post("/logout")
async def auth_logout(
    auth_session: AuthSession = Depends(require_auth),
    session: AsyncSession = Depends(get_session),
):
    """Revoke the current session."""
    auth_session.revoked_at = datetime.utcnow()
    session.add(auth_session)
    await session.commit()

    logger.info("Session revoked", extra={"session_id": auth_session.id})
    return {"success": True}
