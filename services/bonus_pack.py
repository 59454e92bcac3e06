"""
Signed download links for the bonus pack.

Delivering a claim issues one HS256 JWT per asset. A token names the
claim, the delivery email and a single asset, and expires after
BONUS_PACK_TOKEN_TTL_HOURS. A download needs a valid token for that
exact asset, and the claim must still be DELIVERED to the same email.
"""

import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import jwt
from sqlmodel.ext.asyncio.session import AsyncSession

from exceptions import (
    AuthenticationError,
    AuthorizationError,
    PreorderServiceError,
    ResourceNotFoundError,
    ValidationError,
)
from models import BonusClaim, BonusClaimStatus
from observability.logging import get_logger
from security.path_validation import secure_join

logger = get_logger(__name__)

BONUS_PACK_TOKEN_SECRET = os.getenv("BONUS_PACK_TOKEN_SECRET", "")
BONUS_PACK_TOKEN_TTL_HOURS = int(os.getenv("BONUS_PACK_TOKEN_TTL_HOURS", "24"))
BONUS_PACK_ASSET_DIR = os.getenv("BONUS_PACK_ASSET_DIR", "bonus-pack")

TOKEN_ALGORITHM = "HS256"
TOKEN_VERSION = 1
DOWNLOAD_PATH = "/bonus/download"


@dataclass(frozen=True)
class BonusAsset:
    filename: str
    display_name: str
    mime_type: str


BONUS_ASSETS: Dict[str, BonusAsset] = {
    "agent-charter-pack": BonusAsset("agent-charter-pack.pdf", "Agent Charter Pack", "application/pdf"),
    "coi-diagnostic": BonusAsset(
        "cognitive-overhead-index.xlsx",
        "Cognitive Overhead Index (COI) Diagnostic",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ),
    "vp-agent-templates": BonusAsset("vp-agent-templates.pdf", "VP-Agent Templates", "application/pdf"),
    "sub-agent-ladders": BonusAsset("sub-agent-ladders.pdf", "Sub-Agent Ladders", "application/pdf"),
    "escalation-protocols": BonusAsset(
        "escalation-override-protocols.pdf", "Escalation & Override Protocols", "application/pdf"
    ),
    "implementation-guide": BonusAsset("implementation-guide.pdf", "Implementation Guide", "application/pdf"),
    "full-bonus-pack": BonusAsset("ai-born-bonus-pack-complete.zip", "Complete Bonus Pack", "application/zip"),
}


def require_token_secret(secret: Optional[str] = None) -> str:
    secret = secret or BONUS_PACK_TOKEN_SECRET
    if not secret:
        logger.error("BONUS_PACK_TOKEN_SECRET is not set; bonus pack links cannot be issued")
        raise PreorderServiceError(
            "Bonus pack downloads are not configured. Please contact support.",
            error_code="CONFIGURATION_ERROR",
        )
    return secret


def create_download_token(
    email: str,
    claim_id: int,
    asset: str,
    *,
    secret: Optional[str] = None,
    now: Optional[datetime] = None,
) -> str:
    if asset not in BONUS_ASSETS:
        raise ValueError(f"Unknown bonus asset: {asset}")
    now = now or datetime.utcnow()
    payload = {
        "email": email.strip().lower(),
        "claim_id": claim_id,
        "asset": asset,
        "iat": now,
        "exp": now + timedelta(hours=BONUS_PACK_TOKEN_TTL_HOURS),
        "v": TOKEN_VERSION,
    }
    return jwt.encode(payload, require_token_secret(secret), algorithm=TOKEN_ALGORITHM)


def build_download_links(email: str, claim_id: int, *, secret: Optional[str] = None) -> Dict[str, str]:
    """Relative download URL for every asset, each carrying its own token."""
    return {
        asset: f"{DOWNLOAD_PATH}/{asset}?"
        + urlencode({"token": create_download_token(email, claim_id, asset, secret=secret)})
        for asset in BONUS_ASSETS
    }


def verify_download_token(token: Optional[str], asset: str, *, secret: Optional[str] = None) -> Dict[str, Any]:
    """
    Decode a download token and check it was issued for ``asset``.

    Raises:
        AuthenticationError: missing, tampered, malformed or mismatched token
        PreorderServiceError: expired token (410)
    """
    if not token:
        raise AuthenticationError(
            "Missing download token. Please use the link from your email.",
            error_code="MISSING_TOKEN",
        )

    try:
        payload = jwt.decode(
            token,
            require_token_secret(secret),
            algorithms=[TOKEN_ALGORITHM],
            options={"require": ["exp", "iat", "email", "claim_id", "asset"]},
        )
    except jwt.ExpiredSignatureError:
        raise PreorderServiceError(
            "Download link has expired. Please contact support for a new link.",
            error_code="TOKEN_EXPIRED",
            status_code=410,
        )
    except jwt.InvalidSignatureError:
        logger.warning("Bonus pack token with a bad signature", extra={"asset": asset})
        raise AuthenticationError(
            "Invalid download token. Please use the link from your email.",
            error_code="INVALID_TOKEN",
        )
    except jwt.InvalidTokenError:
        raise AuthenticationError(
            "Malformed download token. Please use the link from your email.",
            error_code="MALFORMED_TOKEN",
        )

    if payload.get("v") != TOKEN_VERSION:
        raise AuthenticationError(
            "Malformed download token. Please use the link from your email.",
            error_code="MALFORMED_TOKEN",
        )
    if payload["asset"] != asset:
        raise AuthenticationError("Token does not match requested asset.", error_code="ASSET_MISMATCH")
    return payload


def get_asset_path(asset: str) -> Path:
    path = secure_join(Path(BONUS_PACK_ASSET_DIR), BONUS_ASSETS[asset].filename)
    if path is None or not path.is_file():
        logger.error("Bonus pack asset missing on disk", extra={"asset": asset, "asset_dir": BONUS_PACK_ASSET_DIR})
        raise ResourceNotFoundError(
            f"Asset file not found: {BONUS_ASSETS[asset].display_name}. Please contact support.",
            error_code="FILE_NOT_FOUND",
        )
    return path


async def authorize_download(session: AsyncSession, token: Optional[str], asset: str) -> Dict[str, Any]:
    """Token checks first, then the claim behind it. Returns the token payload."""
    if asset not in BONUS_ASSETS:
        raise ValidationError("Invalid asset type", error_code="INVALID_ASSET")

    payload = verify_download_token(token, asset)

    claim = await session.get(BonusClaim, payload["claim_id"])
    if claim is None:
        raise ResourceNotFoundError("Bonus claim not found. Please contact support.", error_code="CLAIM_NOT_FOUND")
    if claim.status != BonusClaimStatus.DELIVERED.value:
        raise AuthorizationError(
            "Bonus claim has not been delivered yet. Please check your email for updates.",
            error_code="CLAIM_NOT_DELIVERED",
        )
    if claim.delivery_email.lower() != payload["email"]:
        logger.warning("Bonus pack token email does not match claim", extra={"claim_id": claim.id})
        raise AuthorizationError(
            "Token email does not match claim. Please use the link from your email.",
            error_code="EMAIL_MISMATCH",
        )
    return payload
