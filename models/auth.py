"""Authentication models: users, sessions and the audit trail."""

from typing import Optional
from datetime import datetime, timedelta
import hashlib
import secrets
from sqlmodel import Field, SQLModel


SESSION_TTL_DAYS = 7


def hash_token(token: str) -> str:
    """Hash a session token using SHA-256."""
    return hashlib.sha256(token.encode()).hexdigest()


def generate_session_token() -> str:
    """Generate a cryptographically secure session token."""
    return secrets.token_urlsafe(32)


def normalize_email(email: Optional[str]) -> Optional[str]:
    if email is None:
        return None
    email = email.strip().lower()
    return email or None


class User(SQLModel, table=True):
    """Registered readers. Created lazily from the session email."""
    __tablename__ = "user"

    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(index=True, unique=True)
    name: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class AuthSession(SQLModel, table=True):
    """
    Opaque bearer-token session.

    Only the SHA-256 of the token is stored. Whatever identity provider
    signs a reader in ends by inserting one of these rows.
    """
    __tablename__ = "auth_session"

    id: Optional[int] = Field(default=None, primary_key=True)
    email: Optional[str] = Field(default=None, index=True)
    user_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)
    session_token_hash: str = Field(index=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    expires_at: datetime = Field(default_factory=lambda: datetime.utcnow() + timedelta(days=SESSION_TTL_DAYS))
    last_activity_at: datetime = Field(default_factory=datetime.utcnow)
    revoked_at: Optional[datetime] = None


class AuditLog(SQLModel, table=True):
    """Append-only record of admin decisions (code batches, receipt reviews, deliveries)."""
    __tablename__ = "audit_log"

    id: Optional[int] = Field(default=None, primary_key=True)

    # When
    timestamp: datetime = Field(default_factory=datetime.utcnow, index=True)

    # Who
    user_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)
    admin_email: Optional[str] = Field(default=None, index=True)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    # What
    action: str = Field(index=True)  # e.g. "GENERATE_CODES", "VERIFY_RECEIPT"
    resource_type: Optional[str] = None  # e.g. "codes", "receipt"
    resource_id: Optional[str] = None

    # Details
    details: Optional[str] = None  # JSON string, sensitive keys redacted

    # Outcome
    success: bool = True
    error_message: Optional[str] = None
