"""
Model exports.

Models are organized into domain modules:
- auth.py: users, sessions and the audit log
- receipts.py: receipts and bonus claims
- entitlements.py: entitlement grants
- codes.py: VIP codes and redemptions
"""

from models.auth import (
    User,
    AuthSession,
    AuditLog,
    hash_token,
    generate_session_token,
    normalize_email,
)

from models.receipts import (
    Receipt,
    ReceiptStatus,
    BookFormat,
    BonusClaim,
    BonusClaimStatus,
)

from models.entitlements import (
    Entitlement,
    EntitlementType,
    EntitlementStatus,
    GRANTED_STATUSES,
)

from models.codes import (
    Code,
    CodeType,
    CodeStatus,
    CodeRedemption,
)

__all__ = [
    "User",
    "AuthSession",
    "AuditLog",
    "hash_token",
    "generate_session_token",
    "normalize_email",
    "Receipt",
    "ReceiptStatus",
    "BookFormat",
    "BonusClaim",
    "BonusClaimStatus",
    "Entitlement",
    "EntitlementType",
    "EntitlementStatus",
    "GRANTED_STATUSES",
    "Code",
    "CodeType",
    "CodeStatus",
    "CodeRedemption",
]
