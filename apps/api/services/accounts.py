"""Lazy account creation and the per-account write lock."""

from __future__ import annotations

import logging

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.sql import func

from models.credit_account import CreditAccount
from models.user import User
from services.credit_errors import LedgerUnavailable

logger = logging.getLogger(__name__)


async def ensure_credit_account(user_id: str, db: AsyncSession) -> CreditAccount:
    """Return the user's account, creating the user and account rows on first use."""
    account = await get_credit_account(user_id, db)
    if account is not None:
        return account

    try:
        user_result = await db.execute(select(User.id).where(User.id == user_id))
        if user_result.scalar_one_or_none() is None:
            db.add(User(id=user_id, email=f"{user_id}@local.invalid"))
            await db.flush()
        db.add(
            CreditAccount(
                user_id=user_id,
                total_checks_performed=0,
                subscription_status="none",
                starter_pack_purchased=False,
            )
        )
        await db.commit()
        logger.info("credit_account_created user=%s", user_id)
    except IntegrityError:
        # Another request created it first.
        await db.rollback()

    account = await get_credit_account(user_id, db, refresh=True)
    if account is None:
        raise LedgerUnavailable(f"Credit account for user {user_id} could not be created.")
    return account


async def get_credit_account(user_id: str, db: AsyncSession, *, refresh: bool = False):
    query = select(CreditAccount).where(CreditAccount.user_id == user_id)
    if refresh:
        query = query.execution_options(populate_existing=True)
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def lock_credit_account(user_id: str, db: AsyncSession) -> CreditAccount:
    """Open the write scope for an account and return its freshly loaded row.

    Must be the first statement of the transaction: the UPDATE takes the row lock on
    PostgreSQL and the database write lock on SQLite, so concurrent ledger writers for
    the same account serialize from here until commit or rollback.
    """
    result = await db.execute(
        update(CreditAccount)
        .where(CreditAccount.user_id == user_id)
        .values(updated_at=func.now())
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        raise LedgerUnavailable(f"Credit account for user {user_id} is missing.")
    account = await get_credit_account(user_id, db, refresh=True)
    return account


async def record_completed_check(user_id: str, db: AsyncSession) -> None:
    await db.execute(
        update(CreditAccount)
        .where(CreditAccount.user_id == user_id)
        .values(total_checks_performed=CreditAccount.total_checks_performed + 1)
        .execution_options(synchronize_session=False)
    )
