"""Promotional code definitions and redemption.

A redemption is not stored on the code. It is the ledger entry with reason
``promo:<CODE>`` and the deterministic ext ref ``promo:<CODE>:<user_id>``, so the
ledger's global ext-ref uniqueness is what enforces one redemption per account. The same
entries are counted against a code's ``max_uses`` cap across all accounts.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
import logging
import secrets
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_account import CreditAccount
from models.promo_code import PromoCode
from services import transaction_log
from services.credit_errors import (
    AlreadyRedeemed,
    DuplicatePromoCode,
    ExpiredCode,
    FullyRedeemed,
    InvalidCreditAmount,
    LedgerUnavailable,
    PromoCodeError,
    UnknownCode,
)
from services.credits import grant_credits
from services.subscriptions import apply_subscription_grant, validate_tier
from services.transaction_log import ensure_utc, utc_now

logger = logging.getLogger(__name__)

MAX_CODE_LENGTH = 32
CODE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"


@dataclass(frozen=True)
class RedeemResult:
    code: str
    credits_granted: int
    new_balance: int
    subscription_granted: Optional[str] = None
    subscription_days: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def normalize_code(raw_code: Any) -> str:
    return str(raw_code or "").strip().upper()


def promo_reason(code: str) -> str:
    return f"promo:{code}"


def redemption_ext_ref(code: str, user_id: str, sequence: Optional[int] = None) -> str:
    base = f"promo:{code}:{user_id}"
    return base if sequence is None else f"{base}:{sequence}"


async def get_promo_code(raw_code: Any, db: AsyncSession) -> Optional[PromoCode]:
    code = normalize_code(raw_code)
    if not code:
        return None
    result = await db.execute(select(PromoCode).where(PromoCode.code == code))
    return result.scalar_one_or_none()


async def count_redemptions(code: str, db: AsyncSession, *, user_id: Optional[str] = None) -> int:
    return await transaction_log.count_by_reason(promo_reason(code), db, user_id=user_id)


async def _lock_promo_code(code: str, db: AsyncSession) -> None:
    # Row lock on PostgreSQL; SQLite already holds the database write lock here.
    await db.execute(select(PromoCode.code).where(PromoCode.code == code).with_for_update())


async def redeem_promo_code(
    user_id: str,
    raw_code: Any,
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> RedeemResult:
    code = normalize_code(raw_code)
    if not code or len(code) > MAX_CODE_LENGTH:
        raise UnknownCode()

    try:
        promo = await get_promo_code(code, db)
    except SQLAlchemyError as exc:
        logger.exception("Promo lookup for %s failed", code)
        raise LedgerUnavailable() from exc
    # Inactive codes look exactly like missing ones so callers cannot enumerate them.
    if promo is None or not promo.is_active:
        logger.info("promo_unknown user=%s code=%s", user_id, code)
        raise UnknownCode()

    current = now or utc_now()
    promo_expires_at = ensure_utc(promo.expires_at)
    if promo_expires_at is not None and promo_expires_at <= current:
        logger.info("promo_expired user=%s code=%s", user_id, code)
        raise ExpiredCode()

    # Copy the definition out of the ORM object; the grant path may roll back the session.
    credit_amount = max(int(promo.credit_amount or 0), 0)
    tier = promo.subscription_tier or "none"
    days = int(promo.subscription_days or 0)
    single_use = bool(promo.single_use_per_account)
    max_uses = promo.max_uses
    grants_subscription = tier != "none" and days > 0

    try:
        if max_uses is not None and await count_redemptions(code, db) >= max_uses:
            logger.info("promo_fully_redeemed user=%s code=%s", user_id, code)
            raise FullyRedeemed()
        if single_use:
            ext_ref = redemption_ext_ref(code, user_id)
        else:
            previous = await count_redemptions(code, db, user_id=user_id)
            ext_ref = redemption_ext_ref(code, user_id, previous + 1)
    except SQLAlchemyError as exc:
        logger.exception("Promo redemption count for %s failed", code)
        raise LedgerUnavailable() from exc

    credits_expire_at = None
    if credit_amount > 0:
        credits_expire_at = current + timedelta(days=max(int(settings.PROMO_CREDIT_EXPIRY_DAYS), 1))

    async def _within_redemption(account: CreditAccount) -> None:
        if max_uses is not None:
            await _lock_promo_code(code, db)
            # The entry for this redemption is already flushed and counted.
            if await count_redemptions(code, db) > max_uses:
                raise FullyRedeemed()
        if grants_subscription:
            apply_subscription_grant(account, tier, days, current)

    result = await grant_credits(
        user_id,
        db,
        amount=credit_amount,
        reason=promo_reason(code),
        expires_at=credits_expire_at,
        ext_ref=ext_ref,
        within_transaction=_within_redemption if max_uses is not None or grants_subscription else None,
    )
    if result.idempotent:
        logger.info("promo_already_redeemed user=%s code=%s", user_id, code)
        raise AlreadyRedeemed()

    logger.info(
        "promo_redeemed user=%s code=%s credits=%s subscription=%s days=%s",
        user_id,
        code,
        credit_amount,
        tier if grants_subscription else None,
        days if grants_subscription else None,
    )
    return RedeemResult(
        code=code,
        credits_granted=credit_amount,
        new_balance=result.new_balance,
        subscription_granted=tier if grants_subscription else None,
        subscription_days=days if grants_subscription else None,
    )


async def create_promo_code(
    db: AsyncSession,
    *,
    code: str,
    credit_amount: int = 0,
    subscription_tier: str = "none",
    subscription_days: int = 0,
    single_use_per_account: bool = True,
    max_uses: Optional[int] = None,
    expires_at: Optional[datetime] = None,
    notes: Optional[str] = None,
) -> PromoCode:
    normalized = normalize_code(code)
    if not normalized or len(normalized) > MAX_CODE_LENGTH:
        raise PromoCodeError(f"Promo codes must be 1-{MAX_CODE_LENGTH} characters.")
    credits = int(credit_amount)
    if credits < 0:
        raise InvalidCreditAmount("credit_amount must not be negative")
    tier = validate_tier(subscription_tier, allow_none=True)
    days = int(subscription_days) if tier != "none" else 0
    if tier != "none" and days <= 0:
        raise PromoCodeError("subscription_days must be positive when a tier is granted.")
    if credits == 0 and tier == "none":
        raise PromoCodeError("A promo code must grant credits or a subscription.")
    if max_uses is not None and int(max_uses) <= 0:
        raise PromoCodeError("max_uses must be positive when set.")

    promo = PromoCode(
        code=normalized,
        credit_amount=credits,
        subscription_tier=tier,
        subscription_days=days,
        single_use_per_account=bool(single_use_per_account),
        max_uses=int(max_uses) if max_uses is not None else None,
        is_active=True,
        expires_at=ensure_utc(expires_at),
        notes=notes,
    )
    db.add(promo)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise DuplicatePromoCode(f"Promo code {normalized} already exists.") from exc
    except SQLAlchemyError as exc:
        await db.rollback()
        raise LedgerUnavailable() from exc

    logger.info("promo_created code=%s credits=%s tier=%s days=%s", normalized, credits, tier, days)
    return promo


def generate_code(prefix: str = "", length: int = 8) -> str:
    body = "".join(secrets.choice(CODE_ALPHABET) for _ in range(max(int(length), 4)))
    return f"{normalize_code(prefix)}{body}"


async def generate_promo_codes(
    db: AsyncSession,
    *,
    prefix: str,
    count: int,
    credit_amount: int = 0,
    subscription_tier: str = "none",
    subscription_days: int = 0,
    single_use_per_account: bool = True,
    max_uses: Optional[int] = 1,
    expires_at: Optional[datetime] = None,
    notes: Optional[str] = None,
) -> List[str]:
    """Create ``count`` random codes sharing one template. Collisions are retried.

    Generated codes are handed out one per person, so each is capped at one use by default.
    """
    created: List[str] = []
    attempts = 0
    while len(created) < count and attempts < count * 5:
        attempts += 1
        try:
            promo = await create_promo_code(
                db,
                code=generate_code(prefix),
                credit_amount=credit_amount,
                subscription_tier=subscription_tier,
                subscription_days=subscription_days,
                single_use_per_account=single_use_per_account,
                max_uses=max_uses,
                expires_at=expires_at,
                notes=notes,
            )
        except DuplicatePromoCode:
            continue
        created.append(promo.code)
    return created


def serialize_promo_code(promo: PromoCode) -> Dict[str, Any]:
    expires_at = ensure_utc(promo.expires_at)
    return {
        "code": promo.code,
        "credit_amount": promo.credit_amount,
        "subscription_tier": promo.subscription_tier,
        "subscription_days": promo.subscription_days,
        "single_use_per_account": promo.single_use_per_account,
        "max_uses": promo.max_uses,
        "is_active": promo.is_active,
        "expires_at": expires_at.isoformat() if expires_at else None,
        "notes": promo.notes,
    }

