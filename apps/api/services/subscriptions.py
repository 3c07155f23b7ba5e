"""Subscription overlay: a time-boxed tier layered on top of metered credits.

State lives on ``CreditAccount`` (tier + end timestamp). Whether a subscription is
active or expired is never stored; it is decided at read time by comparing the end
timestamp with now, the same lazy approach the ledger uses for expiring grants.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
import math
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from models.credit_account import SUBSCRIPTION_TIERS, CreditAccount
from services.accounts import ensure_credit_account, get_credit_account, lock_credit_account
from services.credit_errors import InvalidSubscriptionTier, LedgerUnavailable
from services.transaction_log import ensure_utc, utc_now

logger = logging.getLogger(__name__)

TIER_RANK = {tier: rank for rank, tier in enumerate(SUBSCRIPTION_TIERS)}


@dataclass(frozen=True)
class SubscriptionState:
    tier: str
    status: str  # none, active, expired
    ends_at: Optional[datetime] = None
    days_remaining: int = 0

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": self.tier,
            "status": self.status,
            "is_active": self.is_active,
            "ends_at": self.ends_at.isoformat() if self.ends_at else None,
            "days_remaining": self.days_remaining,
        }


def validate_tier(tier: str, *, allow_none: bool = False) -> str:
    normalized = str(tier or "").strip().lower()
    if normalized not in TIER_RANK or (normalized == "none" and not allow_none):
        raise InvalidSubscriptionTier(f"Unsupported subscription tier: {tier!r}")
    return normalized


def resolve_subscription_state(
    account: Optional[CreditAccount],
    now: Optional[datetime] = None,
) -> SubscriptionState:
    if account is None or (account.subscription_status or "none") == "none":
        return SubscriptionState(tier="none", status="none")

    current = now or utc_now()
    ends_at = ensure_utc(account.subscription_end_date)
    if ends_at is None:
        # Open-ended tier set by an administrator.
        return SubscriptionState(tier=account.subscription_status, status="active")
    if ends_at <= current:
        return SubscriptionState(tier=account.subscription_status, status="expired", ends_at=ends_at)

    remaining = math.ceil((ends_at - current).total_seconds() / 86400)
    return SubscriptionState(
        tier=account.subscription_status,
        status="active",
        ends_at=ends_at,
        days_remaining=max(int(remaining), 0),
    )


async def get_subscription_state(
    user_id: str,
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> SubscriptionState:
    try:
        account = await get_credit_account(user_id, db)
    except SQLAlchemyError as exc:
        logger.exception("Subscription read for user %s failed", user_id)
        raise LedgerUnavailable() from exc
    return resolve_subscription_state(account, now)


def apply_subscription_grant(
    account: CreditAccount,
    tier: str,
    days: int,
    now: Optional[datetime] = None,
) -> SubscriptionState:
    """Mutate a locked account for a tier grant. The caller commits.

    Inactive accounts start a fresh period of ``days`` from now. An active subscription
    is extended from its current end, never replaced, and keeps the higher of the two
    tiers so a lower-tier grant cannot downgrade it.
    """
    granted_tier = validate_tier(tier)
    grant_days = int(days)
    if grant_days <= 0:
        raise InvalidSubscriptionTier("Subscription grants need a positive number of days.")

    current = now or utc_now()
    state = resolve_subscription_state(account, current)
    if state.is_active:
        if TIER_RANK[granted_tier] < TIER_RANK[state.tier]:
            granted_tier = state.tier
        ends_at = state.ends_at + timedelta(days=grant_days) if state.ends_at else None
    else:
        ends_at = current + timedelta(days=grant_days)

    account.subscription_status = granted_tier
    account.subscription_end_date = ends_at
    return resolve_subscription_state(account, current)


async def set_subscription_status(
    user_id: str,
    db: AsyncSession,
    *,
    tier: str,
    ends_at: Optional[datetime] = None,
) -> SubscriptionState:
    """Administrative override that bypasses the grant path."""
    override_tier = validate_tier(tier, allow_none=True)
    await ensure_credit_account(user_id, db)
    try:
        account = await lock_credit_account(user_id, db)
        account.subscription_status = override_tier
        account.subscription_end_date = None if override_tier == "none" else ensure_utc(ends_at)
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("Subscription override failed for user %s", user_id)
        raise LedgerUnavailable() from exc

    logger.info(
        "subscription_override user=%s tier=%s ends_at=%s",
        user_id,
        override_tier,
        ends_at.isoformat() if ends_at else None,
    )
    return await get_subscription_state(user_id, db)
