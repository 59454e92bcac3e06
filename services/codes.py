"""
VIP code generation, validation and redemption.

Codes are 6 characters from an alphabet without the worst look-alikes
(no 0/O, no 1/I). Readers may type them with spaces, hyphens or lower case;
normalize_code folds all of that away before lookup.

Redemption is one transaction: a conditional UPDATE bumps
redemption_count only while the code is ACTIVE and below its cap, then
the CodeRedemption and Entitlement rows are inserted. If anything fails
the whole transaction rolls back, so redemption_count never runs ahead of
the redemptions actually recorded.
"""

import csv
import io
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import and_, case, func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from exceptions import (
    ConflictError,
    PreorderServiceError,
    ResourceNotFoundError,
    ValidationError,
)
from models import (
    Code,
    CodeRedemption,
    CodeStatus,
    CodeType,
    Entitlement,
    EntitlementType,
)
from observability.logging import get_logger
from observability.metrics import track_business_event
from services.entitlements import grant_entitlement

logger = get_logger(__name__)

CODE_CHARS = "23456789ABCDEFGHJKLMNPQRSTUVWXYZ"
CODE_LENGTH = 6
MAX_CODES_PER_BATCH = 10000
MAX_UNIQUE_ATTEMPTS = 10
LOOKUP_CHUNK_SIZE = 500

CODE_TYPE_ENTITLEMENTS: Dict[CodeType, EntitlementType] = {
    CodeType.VIP_PREVIEW: EntitlementType.EARLY_EXCERPT,
    CodeType.PARTNER: EntitlementType.EARLY_EXCERPT,
    CodeType.MEDIA: EntitlementType.EARLY_EXCERPT,
    CodeType.INFLUENCER: EntitlementType.EARLY_EXCERPT,
    CodeType.VIP_BONUS: EntitlementType.BONUS_PACK,
    CodeType.VIP_LAUNCH: EntitlementType.LAUNCH_EVENT,
}

# Validation failures: error_code -> (message, HTTP status)
CODE_ERRORS = {
    "CODE_NOT_FOUND": ("Invalid code", 404),
    "CODE_REVOKED": ("Code has been revoked", 400),
    "CODE_EXPIRED": ("Code has expired", 400),
    "CODE_NOT_YET_VALID": ("Code is not yet valid", 400),
    "CODE_EXHAUSTED": ("Code has reached maximum redemptions", 409),
}


def generate_random_code(length: int = CODE_LENGTH) -> str:
    return "".join(secrets.choice(CODE_CHARS) for _ in range(length))


def normalize_code(code: Optional[str]) -> str:
    """Strip spaces and hyphens, upper-case."""
    if not code:
        return ""
    return "".join(ch for ch in code if ch not in " -\t").upper()


def format_code(code: str, with_separator: bool = False) -> str:
    """ABC123 -> ABC-123 when with_separator is set."""
    if not with_separator or len(code) != CODE_LENGTH:
        return code
    return f"{code[:3]}-{code[3:]}"


async def _existing_codes(session: AsyncSession, candidates: Sequence[str]) -> set:
    found = set()
    for start in range(0, len(candidates), LOOKUP_CHUNK_SIZE):
        chunk = list(candidates[start:start + LOOKUP_CHUNK_SIZE])
        result = await session.exec(select(Code.code).where(Code.code.in_(chunk)))
        found.update(result.all())
    return found


async def generate_unique_codes(session: AsyncSession, count: int, length: int = CODE_LENGTH) -> List[str]:
    """
    Generate count codes unique within the batch and against the table.

    Collisions with stored codes are replaced and re-checked, giving up
    after MAX_UNIQUE_ATTEMPTS rounds.
    """
    batch: List[str] = []
    seen = set()
    while len(batch) < count:
        code = generate_random_code(length)
        if code not in seen:
            seen.add(code)
            batch.append(code)

    for _ in range(MAX_UNIQUE_ATTEMPTS):
        taken = await _existing_codes(session, batch)
        if not taken:
            return batch
        kept = [c for c in batch if c not in taken]
        seen = set(kept) | taken
        while len(kept) < count:
            code = generate_random_code(length)
            if code not in seen:
                seen.add(code)
                kept.append(code)
        batch = kept

    raise PreorderServiceError(
        f"Failed to generate unique codes after {MAX_UNIQUE_ATTEMPTS} attempts",
        error_code="CODE_GENERATION_FAILED",
    )


@dataclass
class CodeGenerationOptions:
    count: int
    type: CodeType
    description: Optional[str] = None
    max_redemptions: Optional[int] = None
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    created_by: Optional[str] = None
    org_id: Optional[str] = None


def validate_generation_options(options: CodeGenerationOptions) -> None:
    if not isinstance(options.count, int) or isinstance(options.count, bool) \
            or options.count < 1 or options.count > MAX_CODES_PER_BATCH:
        raise ValidationError("Count must be a number between 1 and 10,000")
    if options.max_redemptions is not None and options.max_redemptions < 1:
        raise ValidationError("maxRedemptions must be a positive number")
    valid_from = options.valid_from or datetime.utcnow()
    if options.valid_until is not None and options.valid_until <= valid_from:
        raise ValidationError("validUntil must be after validFrom", error_code="INVALID_DATE")


async def generate_and_save_codes(session: AsyncSession, options: CodeGenerationOptions) -> List[Code]:
    """Create a batch of codes in one transaction and return the stored rows."""
    validate_generation_options(options)
    valid_from = options.valid_from or datetime.utcnow()

    attempts = 0
    while True:
        attempts += 1
        values = await generate_unique_codes(session, options.count)
        rows = [
            Code(
                code=value,
                type=options.type.value,
                description=options.description,
                max_redemptions=options.max_redemptions,
                valid_from=valid_from,
                valid_until=options.valid_until,
                created_by=options.created_by,
                org_id=options.org_id,
            )
            for value in values
        ]
        session.add_all(rows)
        try:
            await session.commit()
        except IntegrityError:
            # A concurrent batch took one of our values; regenerate once
            await session.rollback()
            if attempts >= 2:
                raise ConflictError("Code generation collided, please retry", error_code="CODE_GENERATION_FAILED")
            continue

        track_business_event("codes_generated")
        logger.info(
            "Code batch generated",
            extra={"count": len(rows), "code_type": options.type.value, "created_by": options.created_by},
        )
        return rows


def _csv_date(value: Optional[datetime]) -> str:
    return value.isoformat() if value else "Never"


def export_codes_to_csv(codes: Iterable[Code]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(["Code", "Type", "Valid From", "Valid Until"])
    for code in codes:
        writer.writerow([code.code, code.type, _csv_date(code.valid_from), _csv_date(code.valid_until)])
    return buffer.getvalue()


@dataclass
class CodeValidationResult:
    valid: bool
    code: Optional[Code] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    def to_exception(self) -> PreorderServiceError:
        message, status_code = CODE_ERRORS[self.error_code]
        return PreorderServiceError(message, error_code=self.error_code, status_code=status_code)


def check_code_usable(code: Optional[Code], now: Optional[datetime] = None) -> CodeValidationResult:
    """Pure check of a loaded code against its status, window and cap."""
    now = now or datetime.utcnow()

    def fail(error_code: str) -> CodeValidationResult:
        return CodeValidationResult(valid=False, code=code, error=CODE_ERRORS[error_code][0], error_code=error_code)

    if code is None:
        return fail("CODE_NOT_FOUND")
    if code.status == CodeStatus.REVOKED.value:
        return fail("CODE_REVOKED")
    if code.status == CodeStatus.EXPIRED.value:
        return fail("CODE_EXPIRED")
    if code.valid_from and now < code.valid_from:
        return fail("CODE_NOT_YET_VALID")
    if code.valid_until and now > code.valid_until:
        return fail("CODE_EXPIRED")
    if code.status == CodeStatus.EXHAUSTED.value or (
        code.max_redemptions is not None and code.redemption_count >= code.max_redemptions
    ):
        return fail("CODE_EXHAUSTED")
    return CodeValidationResult(valid=True, code=code)


async def get_code_by_value(session: AsyncSession, raw_code: Optional[str]) -> Optional[Code]:
    normalized = normalize_code(raw_code)
    if len(normalized) != CODE_LENGTH or any(ch not in CODE_CHARS for ch in normalized):
        return None
    result = await session.exec(
        select(Code).where(Code.code == normalized).execution_options(populate_existing=True)
    )
    return result.first()


async def validate_code(
    session: AsyncSession,
    raw_code: Optional[str],
    now: Optional[datetime] = None,
) -> CodeValidationResult:
    code = await get_code_by_value(session, raw_code)
    return check_code_usable(code, now)


def redemptions_remaining(code: Code) -> Optional[int]:
    if code.max_redemptions is None:
        return None
    return max(0, code.max_redemptions - code.redemption_count)


@dataclass
class RedemptionOutcome:
    code: Code
    entitlement: Entitlement


async def redeem_code(
    session: AsyncSession,
    raw_code: Optional[str],
    user_id: int,
    ip_address: Optional[str] = None,
    now: Optional[datetime] = None,
) -> RedemptionOutcome:
    """
    Redeem a code for a user and grant the matching entitlement.

    Raises:
        PreorderServiceError subclasses with the CODE_ERRORS codes, or
        ConflictError(ALREADY_REDEEMED) when this user already used the code
    """
    now = now or datetime.utcnow()

    code = await get_code_by_value(session, raw_code)
    if code is not None:
        already = await session.exec(
            select(CodeRedemption.id).where(CodeRedemption.code_id == code.id, CodeRedemption.user_id == user_id)
        )
        if already.first() is not None:
            raise ConflictError("Code already redeemed", error_code="ALREADY_REDEEMED")

    validation = check_code_usable(code, now)
    if not validation.valid:
        raise validation.to_exception()
    code_id = code.id
    code_type = CodeType(code.type)

    try:
        result = await session.exec(
            update(Code)
            .where(
                Code.id == code_id,
                Code.status == CodeStatus.ACTIVE.value,
                or_(Code.max_redemptions.is_(None), Code.redemption_count < Code.max_redemptions),
                Code.valid_from <= now,
                or_(Code.valid_until.is_(None), Code.valid_until >= now),
            )
            .values(
                redemption_count=Code.redemption_count + 1,
                status=case(
                    (
                        and_(
                            Code.max_redemptions.is_not(None),
                            Code.redemption_count + 1 >= Code.max_redemptions,
                        ),
                        CodeStatus.EXHAUSTED.value,
                    ),
                    else_=Code.status,
                ),
                updated_at=now,
            )
        )

        if result.rowcount == 0:
            # Someone else took the last redemption (or the code changed) since we read it
            await session.rollback()
            recheck = await validate_code(session, raw_code, now)
            if recheck.valid:
                raise ConflictError(CODE_ERRORS["CODE_EXHAUSTED"][0], error_code="CODE_EXHAUSTED")
            raise recheck.to_exception()

        entitlement = await grant_entitlement(
            session,
            user_id,
            CODE_TYPE_ENTITLEMENTS[code_type],
            source="code",
            code_id=code_id,
            commit=False,
        )
        session.add(
            CodeRedemption(
                code_id=code_id,
                user_id=user_id,
                entitlement_id=entitlement.id,
                ip_address=ip_address,
            )
        )
        await session.commit()

    except IntegrityError:
        await session.rollback()
        raise ConflictError("Code already redeemed", error_code="ALREADY_REDEEMED")
    except PreorderServiceError:
        raise
    except Exception:
        await session.rollback()
        raise

    await session.refresh(entitlement)
    code = await session.get(Code, code_id, populate_existing=True)

    track_business_event("code_redeemed")
    logger.info(
        "Code redeemed",
        extra={
            "code_id": code_id,
            "code_type": code_type.value,
            "user_id": user_id,
            "entitlement_type": entitlement.type,
            "redemption_count": code.redemption_count,
        },
    )
    return RedemptionOutcome(code=code, entitlement=entitlement)


async def revoke_code(session: AsyncSession, code_id: int) -> Code:
    """ACTIVE -> REVOKED."""
    code = await session.get(Code, code_id, populate_existing=True)
    if code is None:
        raise ResourceNotFoundError("Code not found", error_code="CODE_NOT_FOUND")

    result = await session.exec(
        update(Code)
        .where(Code.id == code_id, Code.status == CodeStatus.ACTIVE.value)
        .values(status=CodeStatus.REVOKED.value, updated_at=datetime.utcnow())
    )
    if result.rowcount == 0:
        await session.rollback()
        current = await session.get(Code, code_id, populate_existing=True)
        raise ConflictError(f"Code is already {current.status}", error_code="INVALID_STATE_TRANSITION")
    await session.commit()

    return await session.get(Code, code_id, populate_existing=True)


async def expire_stale_codes(session: AsyncSession, now: Optional[datetime] = None) -> int:
    """Mark ACTIVE codes whose window has closed as EXPIRED."""
    now = now or datetime.utcnow()
    result = await session.exec(
        update(Code)
        .where(
            Code.status == CodeStatus.ACTIVE.value,
            Code.valid_until.is_not(None),
            Code.valid_until < now,
        )
        .values(status=CodeStatus.EXPIRED.value, updated_at=now)
    )
    await session.commit()
    if result.rowcount:
        logger.info("Expired stale codes", extra={"count": result.rowcount})
    return result.rowcount


async def list_codes(
    session: AsyncSession,
    *,
    code_type: Optional[CodeType] = None,
    status: Optional[CodeStatus] = None,
    limit: int = 50,
) -> List[Code]:
    query = select(Code)
    if code_type is not None:
        query = query.where(Code.type == code_type.value)
    if status is not None:
        query = query.where(Code.status == status.value)
    result = await session.exec(query.order_by(Code.created_at.desc(), Code.id.desc()).limit(limit))
    return list(result.all())


async def get_code_statistics(session: AsyncSession, code_type: Optional[CodeType] = None) -> dict:
    status_query = select(Code.status, func.count(Code.id)).group_by(Code.status)
    sum_query = select(func.coalesce(func.sum(Code.redemption_count), 0))
    if code_type is not None:
        status_query = status_query.where(Code.type == code_type.value)
        sum_query = sum_query.where(Code.type == code_type.value)

    counts = {status.value: 0 for status in CodeStatus}
    for status, count in (await session.exec(status_query)).all():
        counts[status] = count
    total_redemptions = int((await session.exec(sum_query)).one())
    total = sum(counts.values())

    return {
        "totalCodes": total,
        "activeCount": counts[CodeStatus.ACTIVE.value],
        "exhaustedCount": counts[CodeStatus.EXHAUSTED.value],
        "expiredCount": counts[CodeStatus.EXPIRED.value],
        "revokedCount": counts[CodeStatus.REVOKED.value],
        "totalRedemptions": total_redemptions,
        "redemptionRate": round(total_redemptions / total * 100, 2) if total else 0,
    }


def code_payload(code: Code) -> dict:
    return {
        "id": code.id,
        "code": code.code,
        "type": code.type,
        "status": code.status,
        "description": code.description,
        "maxRedemptions": code.max_redemptions,
        "redemptionCount": code.redemption_count,
        "validFrom": code.valid_from.isoformat() if code.valid_from else None,
        "validUntil": code.valid_until.isoformat() if code.valid_until else None,
        "orgId": code.org_id,
        "createdAt": code.created_at.isoformat(),
    }
