"""Duplicate receipt detection by content hash."""

from dataclasses import dataclass
from typing import Optional

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from models import Receipt


@dataclass
class DuplicateCheckResult:
    is_duplicate: bool
    existing_receipt_id: Optional[str] = None
    same_user: bool = False


async def check_duplicate_receipt(
    session: AsyncSession,
    file_hash: str,
    user_id: int,
) -> DuplicateCheckResult:
    """
    Look up a previously stored receipt with the same SHA-256.

    This is a fast pre-check only. Two concurrent uploads can both pass it;
    the unique index on receipt.file_hash decides which insert wins.
    """
    result = await session.exec(
        select(Receipt.id, Receipt.user_id).where(Receipt.file_hash == file_hash)
    )
    row = result.first()
    if row is None:
        return DuplicateCheckResult(is_duplicate=False)

    existing_id, owner_id = row
    return DuplicateCheckResult(
        is_duplicate=True,
        existing_receipt_id=existing_id,
        same_user=owner_id == user_id,
    )
