"""
Shared FastAPI dependencies: sessions, users, the admin guard and
entitlement gates.

Usage:
    @router.post("/receipts/upload")
    async def upload(user: User = Depends(get_current_user)): ...

    @router.post("/admin/codes/generate")
    async def generate(admin: AdminIdentity = Depends(require_admin)): ...

    @router.get("/excerpt/download")
    async def download(user: User = Depends(require_entitlement("excerpt"))): ...
"""

from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import FrozenSet, Optional

from fastapi import Depends, Header, Request
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from audit import audit_log
from database import get_session, get_session_factory
from exceptions import (
    AuthenticationError,
    AuthorizationError,
    PreorderServiceError,
    RateLimitError,
)
from models import AuthSession, User, hash_token, normalize_email
from observability.logging import get_logger
from services.admin_auth import check_admin_auth, get_admin_emails
from services.entitlements import resolve_entitlements
from services.rate_limiter import FixedWindowRateLimiter, get_rate_limiter

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Rate limiters (overridable in tests)
# ---------------------------------------------------------------------------

def get_upload_rate_limiter() -> FixedWindowRateLimiter:
    return get_rate_limiter("receipt-upload")


def get_admin_rate_limiter() -> FixedWindowRateLimiter:
    return get_rate_limiter("admin")


def get_api_rate_limiter() -> FixedWindowRateLimiter:
    return get_rate_limiter("api")


def get_redemption_rate_limiter() -> FixedWindowRateLimiter:
    return get_rate_limiter("code-redemption")


def get_bonus_claim_rate_limiter() -> FixedWindowRateLimiter:
    return get_rate_limiter("bonus-claim")


def get_bonus_download_rate_limiter() -> FixedWindowRateLimiter:
    return get_rate_limiter("bonus-download")


# ---------------------------------------------------------------------------
# Sessions and users
# ---------------------------------------------------------------------------

async def get_current_session(
    authorization: Optional[str] = Header(None),
    session: AsyncSession = Depends(get_session)
) -> Optional[AuthSession]:
    """
    Extract and validate session from the Authorization header.

    Returns None for a missing, unknown, revoked or expired token.
    """
    if not authorization or not authorization.startswith("Bearer "):
        return None

    token = authorization[7:].strip()
    if not token:
        return None

    result = await session.exec(
        select(AuthSession).where(
            AuthSession.session_token_hash == hash_token(token),
            AuthSession.revoked_at == None,  # noqa: E711
            AuthSession.expires_at > datetime.utcnow(),
        )
    )
    return result.first()


async def require_auth(
    auth_session: Optional[AuthSession] = Depends(get_current_session),
) -> AuthSession:
    """Raise 401 unless the request carries a valid session."""
    if not auth_session:
        raise AuthenticationError("Authentication required")
    return auth_session


async def get_or_create_user(session: AsyncSession, email: str) -> User:
    """Find the user for an email, creating it on first sight."""
    email = normalize_email(email)
    result = await session.exec(select(User).where(User.email == email))
    user = result.first()
    if user:
        return user

    user = User(email=email)
    session.add(user)
    try:
        await session.commit()
    except IntegrityError:
        # Another request created the same user first
        await session.rollback()
        result = await session.exec(select(User).where(User.email == email))
        return result.one()

    await session.refresh(user)
    logger.info("Created user from session", extra={"user_id": user.id})
    return user


async def resolve_session_user(auth_session: AuthSession, session: AsyncSession) -> Optional[User]:
    """
    The User behind a session, created lazily from the session email.

    Backfills ``user_id`` on sessions minted with only an email. Returns
    None for a session without an email, which cannot own receipts or
    redemptions.
    """
    # Plain values: a rollback inside get_or_create_user expires ORM instances
    session_id = auth_session.id
    session_user_id = auth_session.user_id
    email = normalize_email(auth_session.email)

    if session_user_id is not None:
        user = await session.get(User, session_user_id)
        if user:
            return user

    if not email:
        return None

    user = await get_or_create_user(session, email)
    if session_user_id != user.id:
        await session.exec(
            update(AuthSession).where(AuthSession.id == session_id).values(user_id=user.id)
        )
        await session.commit()
    return user


async def get_current_user(
    auth_session: AuthSession = Depends(require_auth),
    session: AsyncSession = Depends(get_session),
) -> User:
    """The signed-in User; 401 when the session cannot name one."""
    user = await resolve_session_user(auth_session, session)
    if user is None:
        raise AuthenticationError("Authentication required")
    return user


async def get_optional_user(
    auth_session: Optional[AuthSession] = Depends(get_current_session),
    session: AsyncSession = Depends(get_session),
) -> Optional[User]:
    if auth_session is None:
        return None
    return await resolve_session_user(auth_session, session)


# ---------------------------------------------------------------------------
# Admin guard
# ---------------------------------------------------------------------------

@lru_cache(maxsize=1)
def get_admin_allow_list() -> FrozenSet[str]:
    """ADMIN_EMAILS, parsed once per process. Override in tests to swap the list."""
    return frozenset(get_admin_emails())


@dataclass
class AdminIdentity:
    email: str
    user_id: Optional[int] = None


async def require_admin(
    request: Request,
    auth_session: Optional[AuthSession] = Depends(get_current_session),
    limiter: FixedWindowRateLimiter = Depends(get_admin_rate_limiter),
    session: AsyncSession = Depends(get_session),
    admin_emails: FrozenSet[str] = Depends(get_admin_allow_list),
) -> AdminIdentity:
    """
    Admin allow-list guard.

    Maps the guard result to 401 / 429 / 403 / 500. Denied attempts by a
    signed-in non-admin are written to the audit log.
    """
    result = await check_admin_auth(auth_session, limiter, admin_emails)
    if result.authorized:
        return AdminIdentity(email=result.admin_id, user_id=auth_session.user_id)

    if result.status_code == 401:
        raise AuthenticationError(result.error)
    if result.rate_limited:
        raise RateLimitError(result.error, retry_after=result.retry_after)
    if result.status_code == 403:
        await audit_log(
            session=session,
            action="admin.access_denied",
            user_id=auth_session.user_id,
            admin_email=normalize_email(auth_session.email),
            resource_type="admin",
            resource_id=request.url.path,
            details={"reason": "Not on admin allow-list"},
            success=False,
            error_message=result.error,
            request=request,
        )
        raise AuthorizationError(result.error)
    raise PreorderServiceError(result.error)


# ---------------------------------------------------------------------------
# Entitlement gates
# ---------------------------------------------------------------------------

ENTITLEMENT_FLAGS = {
    "preorder": "has_preordered",
    "excerpt": "has_excerpt",
    "agent_charter_pack": "has_agent_charter_pack",
}


def require_entitlement(name: str):
    """
    Dependency factory gating a route on one derived entitlement.

    Resolution fails closed, so a database problem denies access.
    """
    flag = ENTITLEMENT_FLAGS[name]

    async def _require(
        user: User = Depends(get_current_user),
        session_factory=Depends(get_session_factory),
    ) -> User:
        entitlements = await resolve_entitlements(session_factory, user.id)
        if not getattr(entitlements, flag):
            raise AuthorizationError(
                "You do not have access to this content",
                error_code="ENTITLEMENT_REQUIRED",
            )
        return user

    return _require
