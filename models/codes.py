"""VIP code models."""

from enum import Enum
from typing import Optional
from datetime import datetime
from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


class CodeType(str, Enum):
    VIP_PREVIEW = "VIP_PREVIEW"
    VIP_BONUS = "VIP_BONUS"
    VIP_LAUNCH = "VIP_LAUNCH"
    PARTNER = "PARTNER"
    MEDIA = "MEDIA"
    INFLUENCER = "INFLUENCER"


class CodeStatus(str, Enum):
    ACTIVE = "ACTIVE"
    EXHAUSTED = "EXHAUSTED"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"


class Code(SQLModel, table=True):
    """
    Redeemable VIP code.

    redemption_count never exceeds max_redemptions; redeem_code enforces
    this with a conditional UPDATE. max_redemptions=None means unlimited.
    """
    __tablename__ = "code"

    id: Optional[int] = Field(default=None, primary_key=True)
    code: str = Field(unique=True, index=True, max_length=6)
    type: str = Field(index=True)  # CodeType value
    status: str = Field(default=CodeStatus.ACTIVE.value, index=True)
    description: Optional[str] = None
    max_redemptions: Optional[int] = None
    redemption_count: int = 0
    valid_from: datetime = Field(default_factory=datetime.utcnow)
    valid_until: Optional[datetime] = None
    created_by: Optional[str] = None
    org_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class CodeRedemption(SQLModel, table=True):
    """One row per (code, user); a reader redeems a given code once."""
    __tablename__ = "code_redemption"
    __table_args__ = (
        UniqueConstraint("code_id", "user_id", name="uq_code_redemption_code_user"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    code_id: int = Field(foreign_key="code.id", index=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    entitlement_id: Optional[int] = Field(default=None, foreign_key="entitlement.id")
    ip_address: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
