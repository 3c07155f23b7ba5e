"""Administrative router: manual grants, refunds, subscription overrides, promo codes."""

from __future__ import annotations

from datetime import datetime, timedelta
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import require_admin_key
from routers.error_mapping import http_error_for
from services.balance import get_balance_view
from services.credit_errors import CreditOperationError
from services.credits import ADMIN_GRANT_REASON, grant_credits, refund_consumed_job
from services.promo_codes import create_promo_code, generate_promo_codes, serialize_promo_code
from services.subscriptions import set_subscription_status
from services.transaction_log import utc_now

router = APIRouter(dependencies=[Depends(require_admin_key)])
logger = logging.getLogger(__name__)


class AdminGrantRequest(BaseModel):
    user_id: str = Field(min_length=1)
    amount: int = Field(ge=1, le=1000000)
    reason: str = Field(default=ADMIN_GRANT_REASON, min_length=1, max_length=128)
    ext_ref: Optional[str] = Field(default=None, max_length=255)
    expires_at: Optional[datetime] = None


class RefundRequest(BaseModel):
    user_id: str = Field(min_length=1)
    job_id: str = Field(min_length=1, max_length=128)


class SubscriptionOverrideRequest(BaseModel):
    tier: str = Field(pattern="^(none|starter|pro)$")
    ends_at: Optional[datetime] = None
    days: Optional[int] = Field(default=None, ge=1, le=3650)


class PromoCodeCreateRequest(BaseModel):
    code: Optional[str] = Field(default=None, max_length=32)
    prefix: str = Field(default="", max_length=16)
    count: int = Field(default=1, ge=1, le=500)
    credit_amount: int = Field(default=0, ge=0, le=100000)
    subscription_tier: str = Field(default="none", pattern="^(none|starter|pro)$")
    subscription_days: int = Field(default=0, ge=0, le=3650)
    single_use_per_account: bool = True
    max_uses: Optional[int] = Field(default=None, ge=1, le=1000000)
    expires_at: Optional[datetime] = None
    notes: Optional[str] = None


@router.post("/grants")
async def admin_grant(request: AdminGrantRequest, db: AsyncSession = Depends(get_db)):
    try:
        result = await grant_credits(
            request.user_id,
            db,
            amount=request.amount,
            reason=request.reason,
            expires_at=request.expires_at,
            ext_ref=request.ext_ref,
        )
    except CreditOperationError as exc:
        raise http_error_for(exc) from exc
    logger.info("Admin grant of %s credits to %s (idempotent=%s)", request.amount, request.user_id, result.idempotent)
    return {"ok": True, **result.to_dict()}


@router.post("/refunds")
async def admin_refund(request: RefundRequest, db: AsyncSession = Depends(get_db)):
    try:
        result = await refund_consumed_job(request.user_id, db, job_id=request.job_id)
    except CreditOperationError as exc:
        raise http_error_for(exc) from exc
    return {"ok": True, **result.to_dict()}


@router.put("/subscriptions/{user_id}")
async def override_subscription(
    user_id: str,
    request: SubscriptionOverrideRequest,
    db: AsyncSession = Depends(get_db),
):
    ends_at = request.ends_at
    if ends_at is None and request.days:
        ends_at = utc_now() + timedelta(days=request.days)
    try:
        state = await set_subscription_status(user_id, db, tier=request.tier, ends_at=ends_at)
    except CreditOperationError as exc:
        raise http_error_for(exc) from exc
    return {"ok": True, "subscription": state.to_dict()}


@router.get("/users/{user_id}/balance")
async def admin_balance(user_id: str, db: AsyncSession = Depends(get_db)):
    try:
        return await get_balance_view(user_id, db)
    except CreditOperationError as exc:
        raise http_error_for(exc) from exc


@router.post("/promocodes")
async def admin_create_promo_codes(request: PromoCodeCreateRequest, db: AsyncSession = Depends(get_db)):
    try:
        if request.code:
            promo = await create_promo_code(
                db,
                code=request.code,
                credit_amount=request.credit_amount,
                subscription_tier=request.subscription_tier,
                subscription_days=request.subscription_days,
                single_use_per_account=request.single_use_per_account,
                max_uses=request.max_uses,
                expires_at=request.expires_at,
                notes=request.notes,
            )
            return {"ok": True, "codes": [promo.code], "promo_code": serialize_promo_code(promo)}

        if not request.prefix:
            raise HTTPException(status_code=422, detail="Provide either code or prefix.")
        codes = await generate_promo_codes(
            db,
            prefix=request.prefix,
            count=request.count,
            credit_amount=request.credit_amount,
            subscription_tier=request.subscription_tier,
            subscription_days=request.subscription_days,
            single_use_per_account=request.single_use_per_account,
            max_uses=request.max_uses if request.max_uses is not None else 1,
            expires_at=request.expires_at,
            notes=request.notes,
        )
    except CreditOperationError as exc:
        raise http_error_for(exc) from exc
    return {"ok": True, "codes": codes}
