"""Entitlement routes - the signed-in reader's derived access flags."""
from fastapi import APIRouter, Depends

from database import get_session_factory
from dependencies import get_current_user
from models import User
from services.entitlements import resolve_entitlements

router = APIRouter(prefix="/entitlements", tags=["entitlements"])


@router.get("")
async def get_entitlements(
    user: User = Depends(get_current_user),
    session_factory=Depends(get_session_factory),
):
    entitlements = await resolve_entitlements(session_factory, user.id)
    return {"success": True, "data": entitlements.to_api()}


@router.post("/refresh")
async def refresh_entitlements(
    user: User = Depends(get_current_user),
    session_factory=Depends(get_session_factory),
):
    """
    Recompute entitlements after a change (upload verified, code redeemed).

    Nothing is cached server-side, so this is the same resolution as GET;
    clients call it to refresh the flags they keep on their session.
    """
    entitlements = await resolve_entitlements(session_factory, user.id)
    return {"success": True, "data": entitlements.to_api(), "refreshed": True}
