"""Credit ledger: balance reads, atomic consume and idempotent grant."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
import logging
import math
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.credit_account import CreditAccount
from services import transaction_log
from services.accounts import ensure_credit_account, lock_credit_account, record_completed_check
from services.credit_errors import (
    AlreadyConsumed,
    CreditOperationError,
    GrantConflict,
    InsufficientCredits,
    InvalidCreditAmount,
    LedgerUnavailable,
    MonthlyFreeScanUsed,
)
from services.subscriptions import apply_subscription_grant
from services.transaction_log import ensure_utc, utc_now

logger = logging.getLogger(__name__)

SCAN_CONSUME_REASON = "scan_consume"
ADMIN_GRANT_REASON = "admin_grant"
SIGNUP_REASON = "signup:free"
MONTHLY_FREE_REASON = "monthly_free"

GrantHook = Callable[[CreditAccount], Awaitable[Any]]


@dataclass(frozen=True)
class ConsumeResult:
    job_id: str
    charged: int
    remaining_balance: int
    replayed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class GrantResult:
    credited: int
    new_balance: int
    idempotent: bool = False
    transaction_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


async def get_balance(user_id: str, db: AsyncSession, now: Optional[datetime] = None) -> int:
    """Usable balance: the unspent remainder of live grants, evaluated at read time."""
    try:
        return await transaction_log.sum_available(user_id, db, now)
    except SQLAlchemyError as exc:
        logger.exception("Balance read for user %s failed", user_id)
        raise LedgerUnavailable() from exc


async def _replay_consume(user_id: str, job_id: str, db: AsyncSession) -> Optional[ConsumeResult]:
    existing = await transaction_log.find_by_job_id(job_id, db)
    if existing is None:
        return None
    if existing.user_id != user_id:
        raise AlreadyConsumed(job_id)
    remaining = existing.balance_after
    if remaining is None:
        remaining = await get_balance(user_id, db)
    return ConsumeResult(
        job_id=job_id,
        charged=-int(existing.delta),
        remaining_balance=int(remaining),
        replayed=True,
    )


async def consume_credits(
    user_id: str,
    db: AsyncSession,
    *,
    job_id: str,
    cost: Optional[int] = None,
) -> ConsumeResult:
    """Debit ``cost`` credits for one unit of work, at most once per ``job_id``.

    A repeated call with the same job id returns the original outcome. Otherwise the
    balance check and the debit insert run inside one account-locked transaction, so
    concurrent consumers cannot both pass the check on a stale balance.
    """
    debit_cost = int(settings.SCAN_CREDIT_COST if cost is None else cost)
    if debit_cost <= 0:
        raise InvalidCreditAmount("cost must be greater than 0")
    job_key = str(job_id or "").strip()
    if not job_key:
        raise InvalidCreditAmount("job_id is required to charge credits")

    prior = await _replay_consume(user_id, job_key, db)
    if prior is not None:
        return prior

    await ensure_credit_account(user_id, db)
    try:
        await lock_credit_account(user_id, db)
        prior = await _replay_consume(user_id, job_key, db)
        if prior is not None:
            await db.rollback()
            return prior

        balance = await get_balance(user_id, db)
        if balance < debit_cost:
            await db.rollback()
            logger.info(
                "consume_rejected user=%s job=%s required=%s available=%s",
                user_id,
                job_key,
                debit_cost,
                balance,
            )
            raise InsufficientCredits(required=debit_cost, available=balance)

        remaining = balance - debit_cost
        await transaction_log.append_transaction(
            db,
            user_id=user_id,
            delta=-debit_cost,
            reason=SCAN_CONSUME_REASON,
            balance_after=remaining,
            job_id=job_key,
        )
        await record_completed_check(user_id, db)
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        prior = await _replay_consume(user_id, job_key, db)
        if prior is not None:
            logger.info("consume_replayed_after_race user=%s job=%s", user_id, job_key)
            return prior
        logger.exception("Consume for user %s job %s hit an unexplained integrity error", user_id, job_key)
        raise LedgerUnavailable() from exc
    except CreditOperationError:
        await db.rollback()
        raise
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("Consume for user %s job %s failed", user_id, job_key)
        raise LedgerUnavailable() from exc

    logger.info("consume user=%s job=%s charged=%s remaining=%s", user_id, job_key, debit_cost, remaining)
    return ConsumeResult(job_id=job_key, charged=debit_cost, remaining_balance=remaining)


def _validate_grant(amount: int, reason: str, ext_ref: Optional[str]) -> int:
    try:
        credits = int(amount)
    except (TypeError, ValueError) as exc:
        raise InvalidCreditAmount("amount must be an integer") from exc
    if credits < 0 or (credits == 0 and not ext_ref):
        raise InvalidCreditAmount("amount must be greater than 0")
    if not str(reason or "").strip():
        raise InvalidCreditAmount("reason is required")
    return credits


async def grant_credits(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    reason: str,
    expires_at: Optional[datetime] = None,
    ext_ref: Optional[str] = None,
    within_transaction: Optional[GrantHook] = None,
) -> GrantResult:
    """Credit ``amount`` to the user, at most once per ``ext_ref``.

    ``ext_ref`` is global: if any transaction already carries it, the call is a
    duplicate delivery and returns ``idempotent=True`` without writing. A zero amount is
    accepted only with an ``ext_ref`` and records a marker entry.

    ``within_transaction`` receives the locked account and runs in the same unit of
    work as the insert, so side effects such as a subscription extension commit or
    roll back together with the credit.
    """
    credits = _validate_grant(amount, reason, ext_ref)
    reference = str(ext_ref).strip() if ext_ref else None
    expiry = ensure_utc(expires_at)

    if reference is not None:
        existing = await transaction_log.find_by_ext_ref(reference, db)
        if existing is not None:
            return await _idempotent_grant(user_id, reference, db)

    await ensure_credit_account(user_id, db)
    try:
        account = await lock_credit_account(user_id, db)
        if reference is not None and await transaction_log.find_by_ext_ref(reference, db) is not None:
            await db.rollback()
            return await _idempotent_grant(user_id, reference, db)

        available = await transaction_log.sum_available(user_id, db)
        balance_after = available + (credits if _counts_now(expiry) else 0)
        entry = await transaction_log.append_transaction(
            db,
            user_id=user_id,
            delta=credits,
            reason=reason,
            balance_after=balance_after,
            ext_ref=reference,
            expires_at=expiry,
        )
        transaction_id = entry.id
        if within_transaction is not None:
            await within_transaction(account)
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        if reference is not None and await transaction_log.find_by_ext_ref(reference, db) is not None:
            return await _idempotent_grant(user_id, reference, db)
        logger.exception("Grant for user %s reason=%s hit an integrity error", user_id, reason)
        raise GrantConflict(f"Grant for user {user_id} conflicts with existing ledger state.") from exc
    except CreditOperationError:
        await db.rollback()
        raise
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("Grant for user %s reason=%s failed", user_id, reason)
        raise LedgerUnavailable() from exc

    logger.info(
        "grant user=%s amount=%s reason=%s ext_ref=%s balance=%s",
        user_id,
        credits,
        reason,
        reference,
        balance_after,
    )
    return GrantResult(
        credited=credits,
        new_balance=balance_after,
        idempotent=False,
        transaction_id=transaction_id,
    )


def _counts_now(expires_at: Optional[datetime]) -> bool:
    return expires_at is None or expires_at > utc_now()


async def _idempotent_grant(user_id: str, ext_ref: str, db: AsyncSession) -> GrantResult:
    logger.info("grant_duplicate user=%s ext_ref=%s", user_id, ext_ref)
    return GrantResult(
        credited=0,
        new_balance=await get_balance(user_id, db),
        idempotent=True,
    )


async def grant_purchased_credits(
    user_id: str,
    db: AsyncSession,
    *,
    credits: int,
    reason: str,
    ext_ref: str,
    starter_pack: bool = False,
    subscription_tier: Optional[str] = None,
    subscription_days: int = 0,
) -> GrantResult:
    """Credits bought through the payment processor expire after a fixed window.

    A purchase that carries a subscription extends it in the same transaction as the
    credit entry, so a redelivered payment event extends it at most once.
    """
    expires_at = None
    if int(credits) > 0:
        expires_at = utc_now() + timedelta(days=max(int(settings.PURCHASED_CREDIT_EXPIRY_DAYS), 1))
    grants_subscription = bool(subscription_tier) and subscription_tier != "none" and int(subscription_days) > 0

    async def _apply_purchase(account: CreditAccount) -> None:
        if starter_pack:
            account.starter_pack_purchased = True
        if grants_subscription:
            apply_subscription_grant(account, subscription_tier, subscription_days)

    return await grant_credits(
        user_id,
        db,
        amount=credits,
        reason=reason,
        expires_at=expires_at,
        ext_ref=ext_ref,
        within_transaction=_apply_purchase if starter_pack or grants_subscription else None,
    )


async def grant_signup_credits(user_id: str, db: AsyncSession) -> GrantResult:
    return await grant_credits(
        user_id,
        db,
        amount=max(int(settings.SIGNUP_FREE_CREDITS), 0),
        reason=SIGNUP_REASON,
        ext_ref=f"signup:{user_id}",
    )


@dataclass(frozen=True)
class MonthlyFreeScanStatus:
    can_use: bool
    reason: str
    days_until_reset: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _free_scan_window() -> timedelta:
    return timedelta(days=max(int(settings.MONTHLY_FREE_SCAN_WINDOW_DAYS), 1))


async def get_monthly_free_scan_status(
    user_id: str,
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> MonthlyFreeScanStatus:
    """The free scan resets one window after the last claim, not on calendar months."""
    current = now or utc_now()
    window = _free_scan_window()
    try:
        last = await transaction_log.latest_by_reason(user_id, MONTHLY_FREE_REASON, db)
    except SQLAlchemyError as exc:
        logger.exception("Free scan lookup for user %s failed", user_id)
        raise LedgerUnavailable() from exc

    if last is None:
        return MonthlyFreeScanStatus(can_use=True, reason="First free scan available")
    elapsed = current - ensure_utc(last.created_at)
    if elapsed >= window:
        return MonthlyFreeScanStatus(can_use=True, reason="Monthly free scan reset")
    days_until_reset = max(math.ceil((window - elapsed).total_seconds() / 86400), 1)
    return MonthlyFreeScanStatus(
        can_use=False,
        reason="Monthly free scan already used",
        days_until_reset=days_until_reset,
    )


async def claim_monthly_free_scan(
    user_id: str,
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> GrantResult:
    """Grant the free scan credit. It lapses when the window closes if left unused.

    Claims are numbered per user, so two concurrent claims share one ext ref and only
    one of them is written.
    """
    current = now or utc_now()
    status = await get_monthly_free_scan_status(user_id, db, current)
    if not status.can_use:
        raise MonthlyFreeScanUsed(status.days_until_reset)

    sequence = await transaction_log.count_by_reason(MONTHLY_FREE_REASON, db, user_id=user_id) + 1
    result = await grant_credits(
        user_id,
        db,
        amount=max(int(settings.MONTHLY_FREE_SCAN_CREDITS), 1),
        reason=MONTHLY_FREE_REASON,
        expires_at=current + _free_scan_window(),
        ext_ref=f"monthly_free:{user_id}:{sequence}",
    )
    if result.idempotent:
        raise MonthlyFreeScanUsed(int(_free_scan_window().days))
    return result


async def get_balance_details(user_id: str, db: AsyncSession, now: Optional[datetime] = None) -> Dict[str, Any]:
    current = now or utc_now()
    warning_cutoff = current + timedelta(days=max(int(settings.EXPIRY_WARNING_DAYS), 0))
    try:
        replay = await transaction_log.replay_balance(user_id, db, current)
        total = await transaction_log.sum_all(user_id, db)
    except SQLAlchemyError as exc:
        logger.exception("Balance details for user %s failed", user_id)
        raise LedgerUnavailable() from exc

    pending_expiry = [
        {
            "id": lot.entry_id,
            "credits": lot.remaining,
            "reason": lot.reason,
            "expires_at": lot.expires_at.isoformat(),
        }
        for lot in replay.live_lots
        if lot.expires_at is not None and lot.expires_at <= warning_cutoff
    ]
    return {
        "total_balance": total,
        "unexpired_balance": replay.available,
        "expired_credits": replay.forfeited,
        "pending_expiry": pending_expiry,
    }


def serialize_transaction(entry) -> Dict[str, Any]:
    expires_at = ensure_utc(entry.expires_at)
    created_at = ensure_utc(entry.created_at)
    return {
        "id": entry.id,
        "delta": entry.delta,
        "reason": entry.reason,
        "job_id": entry.job_id,
        "ext_ref": entry.ext_ref,
        "balance_after": entry.balance_after,
        "expires_at": expires_at.isoformat() if expires_at else None,
        "created_at": created_at.isoformat() if created_at else None,
    }


async def get_credit_history(
    user_id: str,
    db: AsyncSession,
    *,
    limit: int = 50,
    offset: int = 0,
) -> Dict[str, Any]:
    try:
        entries = await transaction_log.list_transactions(user_id, db, limit=limit, offset=offset)
        total_count = await transaction_log.count_transactions(user_id, db)
    except SQLAlchemyError as exc:
        logger.exception("History read for user %s failed", user_id)
        raise LedgerUnavailable() from exc
    return {
        "transactions": [serialize_transaction(entry) for entry in entries],
        "total_count": total_count,
        "limit": limit,
        "offset": offset,
    }


async def refund_consumed_job(user_id: str, db: AsyncSession, *, job_id: str) -> GrantResult:
    """Compensating grant for a debited job. The original debit is left untouched.

    Refunds are never issued automatically; support calls this when a scan failed after
    its credits were consumed. Repeating the call is a no-op thanks to the ext ref.
    """
    job_key = str(job_id or "").strip()
    debit = await transaction_log.find_by_job_id(job_key, db) if job_key else None
    if debit is None or debit.user_id != user_id or debit.delta >= 0:
        raise InvalidCreditAmount(f"No debit found for job {job_key!r} on this account.")
    return await grant_credits(
        user_id,
        db,
        amount=-int(debit.delta),
        reason=f"refund:{job_key}",
        ext_ref=f"refund:{job_key}",
    )
