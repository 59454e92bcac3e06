"""Entitlement grants."""

from enum import Enum
from typing import Optional
from datetime import datetime
from sqlmodel import Field, SQLModel


class EntitlementType(str, Enum):
    EARLY_EXCERPT = "EARLY_EXCERPT"
    BONUS_PACK = "BONUS_PACK"
    LAUNCH_EVENT = "LAUNCH_EVENT"
    PREORDER_PERKS = "PREORDER_PERKS"


class EntitlementStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    FULFILLED = "FULFILLED"
    REVOKED = "REVOKED"


# Statuses that count as "has access"
GRANTED_STATUSES = (EntitlementStatus.ACTIVE.value, EntitlementStatus.FULFILLED.value)


class Entitlement(SQLModel, table=True):
    __tablename__ = "entitlement"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    type: str = Field(index=True)  # EntitlementType value
    status: str = Field(default=EntitlementStatus.ACTIVE.value, index=True)
    source: str = "admin"  # "code", "excerpt_request", "admin"
    code_id: Optional[int] = Field(default=None, foreign_key="code.id")
    granted_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    fulfilled_at: Optional[datetime] = None
