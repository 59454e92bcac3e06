"""
Entitlement resolution and grants.

The entitlement set is derived on every read from three independent
counts and is never stored:

    has_preordered          VERIFIED receipts > 0
    has_excerpt             EARLY_EXCERPT grants in ACTIVE/FULFILLED > 0
    has_agent_charter_pack  DELIVERED bonus claims > 0

Resolution fails closed: any error or timeout in any of the three queries
yields the all-false set. Callers never see an exception from it.

grant_entitlement is the only code path that inserts Entitlement rows.
"""

import asyncio
import os
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Callable, Dict, Optional

from sqlalchemy import func
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from models import (
    BonusClaim,
    BonusClaimStatus,
    Entitlement,
    EntitlementStatus,
    EntitlementType,
    GRANTED_STATUSES,
    Receipt,
    ReceiptStatus,
)
from observability.logging import get_logger
from observability.metrics import entitlement_resolution_failures_total

logger = get_logger(__name__)

ENTITLEMENT_QUERY_TIMEOUT_SECONDS = float(os.getenv("ENTITLEMENT_QUERY_TIMEOUT_SECONDS", "5"))

SessionFactory = Callable[[], AsyncSession]


@dataclass(frozen=True)
class EntitlementSet:
    has_preordered: bool = False
    has_excerpt: bool = False
    has_agent_charter_pack: bool = False

    def to_api(self) -> Dict[str, bool]:
        return {
            "hasPreordered": self.has_preordered,
            "hasExcerpt": self.has_excerpt,
            "hasAgentCharterPack": self.has_agent_charter_pack,
        }

    def to_dict(self) -> Dict[str, bool]:
        return asdict(self)


NO_ENTITLEMENTS = EntitlementSet()


async def _count_verified_receipts(session: AsyncSession, user_id: int) -> int:
    result = await session.exec(
        select(func.count(Receipt.id)).where(
            Receipt.user_id == user_id,
            Receipt.status == ReceiptStatus.VERIFIED.value,
        )
    )
    return result.one()


async def _count_excerpt_grants(session: AsyncSession, user_id: int) -> int:
    result = await session.exec(
        select(func.count(Entitlement.id)).where(
            Entitlement.user_id == user_id,
            Entitlement.type == EntitlementType.EARLY_EXCERPT.value,
            Entitlement.status.in_(GRANTED_STATUSES),
        )
    )
    return result.one()


async def _count_delivered_bonus_claims(session: AsyncSession, user_id: int) -> int:
    result = await session.exec(
        select(func.count(BonusClaim.id)).where(
            BonusClaim.user_id == user_id,
            BonusClaim.status == BonusClaimStatus.DELIVERED.value,
        )
    )
    return result.one()


async def _run_count(session_factory: SessionFactory, query, user_id: int, timeout: float) -> int:
    # One session per query: an AsyncSession cannot run statements concurrently
    async with session_factory() as session:
        return await asyncio.wait_for(query(session, user_id), timeout=timeout)


async def resolve_entitlements(
    session_factory: SessionFactory,
    user_id: Optional[int],
    timeout: Optional[float] = None,
) -> EntitlementSet:
    """
    Compute the entitlement set for a user.

    Args:
        session_factory: Callable returning a new AsyncSession (async context manager)
        user_id: User to resolve; None resolves to no entitlements
        timeout: Per-query timeout in seconds

    Returns:
        EntitlementSet, all-false on any failure
    """
    if user_id is None:
        return NO_ENTITLEMENTS

    timeout = ENTITLEMENT_QUERY_TIMEOUT_SECONDS if timeout is None else timeout

    try:
        receipts, excerpts, claims = await asyncio.gather(
            _run_count(session_factory, _count_verified_receipts, user_id, timeout),
            _run_count(session_factory, _count_excerpt_grants, user_id, timeout),
            _run_count(session_factory, _count_delivered_bonus_claims, user_id, timeout),
        )
    except Exception as exc:
        entitlement_resolution_failures_total.inc()
        logger.error(
            "Entitlement resolution failed, returning no entitlements",
            extra={"user_id": user_id, "error_type": type(exc).__name__},
            exc_info=True,
        )
        return NO_ENTITLEMENTS

    return EntitlementSet(
        has_preordered=receipts > 0,
        has_excerpt=excerpts > 0,
        has_agent_charter_pack=claims > 0,
    )


async def grant_entitlement(
    session: AsyncSession,
    user_id: int,
    entitlement_type: EntitlementType,
    *,
    source: str,
    status: EntitlementStatus = EntitlementStatus.ACTIVE,
    code_id: Optional[int] = None,
    granted_by: Optional[str] = None,
    idempotent: bool = False,
    commit: bool = True,
) -> Entitlement:
    """
    Insert an Entitlement row.

    With idempotent=True an existing ACTIVE/FULFILLED grant of the same
    type is returned instead of creating a second one. With commit=False
    the row is only flushed, leaving the transaction to the caller.
    """
    if idempotent:
        result = await session.exec(
            select(Entitlement).where(
                Entitlement.user_id == user_id,
                Entitlement.type == entitlement_type.value,
                Entitlement.status.in_(GRANTED_STATUSES),
            )
        )
        existing = result.first()
        if existing is not None:
            return existing

    entitlement = Entitlement(
        user_id=user_id,
        type=entitlement_type.value,
        status=status.value,
        source=source,
        code_id=code_id,
        granted_by=granted_by,
    )
    session.add(entitlement)

    if commit:
        await session.commit()
        await session.refresh(entitlement)
    else:
        await session.flush()

    logger.info(
        "Entitlement granted",
        extra={
            "user_id": user_id,
            "entitlement_type": entitlement_type.value,
            "source": source,
            "entitlement_id": entitlement.id,
        },
    )
    return entitlement


async def mark_excerpt_fulfilled(session: AsyncSession, user_id: int) -> Optional[Entitlement]:
    """Move the user's ACTIVE excerpt grant to FULFILLED on first download."""
    result = await session.exec(
        select(Entitlement).where(
            Entitlement.user_id == user_id,
            Entitlement.type == EntitlementType.EARLY_EXCERPT.value,
            Entitlement.status.in_(GRANTED_STATUSES),
        )
    )
    entitlement = result.first()
    if entitlement is None:
        return None

    if entitlement.status == EntitlementStatus.ACTIVE.value:
        entitlement.status = EntitlementStatus.FULFILLED.value
        entitlement.fulfilled_at = datetime.utcnow()
        session.add(entitlement)
        await session.commit()
        await session.refresh(entitlement)
    return entitlement


def entitlement_payload(entitlement: Entitlement) -> dict:
    return {
        "id": entitlement.id,
        "type": entitlement.type,
        "status": entitlement.status,
        "source": entitlement.source,
        "createdAt": entitlement.created_at.isoformat(),
        "fulfilledAt": entitlement.fulfilled_at.isoformat() if entitlement.fulfilled_at else None,
    }
