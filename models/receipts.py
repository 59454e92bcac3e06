"""Receipt and bonus-claim models."""

from enum import Enum
from typing import Optional
from datetime import datetime
import uuid
from sqlmodel import Field, SQLModel


class ReceiptStatus(str, Enum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"


class BookFormat(str, Enum):
    HARDCOVER = "hardcover"
    EBOOK = "ebook"
    AUDIOBOOK = "audiobook"


class BonusClaimStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    DELIVERED = "DELIVERED"


class Receipt(SQLModel, table=True):
    """
    Uploaded proof of purchase.

    file_hash (SHA-256 of the raw bytes) is unique across all users; the
    constraint is what actually stops two concurrent uploads of the same
    file. Rows are only ever moved PENDING -> VERIFIED | REJECTED.
    """
    __tablename__ = "receipt"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    retailer: str
    order_number: Optional[str] = None
    format: Optional[str] = None  # BookFormat value
    purchase_date: Optional[datetime] = None
    status: str = Field(default=ReceiptStatus.PENDING.value, index=True)

    file_hash: str = Field(unique=True, index=True)
    file_url: str
    mime_type: str
    file_size: int

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    verified_by: Optional[str] = None
    verified_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class BonusClaim(SQLModel, table=True):
    """Request for the physical/digital bonus pack, tied to one receipt."""
    __tablename__ = "bonus_claim"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    receipt_id: Optional[str] = Field(default=None, foreign_key="receipt.id", unique=True)
    delivery_email: str
    retailer: str
    order_number: Optional[str] = None
    format: Optional[str] = None
    status: str = Field(default=BonusClaimStatus.PENDING.value, index=True)

    processed_by: Optional[str] = None
    processed_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    delivery_tracking_id: Optional[str] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
