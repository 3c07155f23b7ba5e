"""Read-side balance projection. Recomputed from the ledger on every call."""

from __future__ import annotations

from datetime import datetime
import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from services.accounts import get_credit_account
from services.credit_errors import LedgerUnavailable
from services.credits import get_balance
from services.subscriptions import resolve_subscription_state
from services.transaction_log import utc_now

logger = logging.getLogger(__name__)


async def get_balance_view(user_id: str, db: AsyncSession, now: Optional[datetime] = None) -> Dict[str, Any]:
    current = now or utc_now()
    try:
        account = await get_credit_account(user_id, db, refresh=True)
    except SQLAlchemyError as exc:
        logger.exception("Account read for user %s failed", user_id)
        raise LedgerUnavailable() from exc
    return {
        "user_id": user_id,
        "usable_credits": await get_balance(user_id, db, current),
        "per_operation_cost": max(int(settings.SCAN_CREDIT_COST), 1),
        "subscription": resolve_subscription_state(account, current).to_dict(),
        "starter_pack_purchased": bool(account.starter_pack_purchased) if account else False,
        "total_checks_performed": int(account.total_checks_performed or 0) if account else 0,
    }
