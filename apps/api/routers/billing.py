"""Billing router: credit packs, subscription plans and payment-processor purchase grants."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import require_admin_key
from routers.error_mapping import http_error_for
from services.credit_errors import CreditOperationError
from services.credits import grant_purchased_credits
from services.pricing import get_purchase_item, list_packs, list_subscription_plans, scan_costs, suggest_pack
from services.subscriptions import get_subscription_state

router = APIRouter()
logger = logging.getLogger(__name__)


class PurchaseGrantRequest(BaseModel):
    user_id: str = Field(min_length=1)
    pack: str = Field(min_length=1, max_length=32)
    # Payment processor event id; redelivery of the same event is absorbed by the ledger.
    event_id: str = Field(min_length=1, max_length=255)


@router.get("/plans")
async def plans():
    return {
        "packs": list_packs(),
        "subscriptions": list_subscription_plans(),
        "scan_costs": scan_costs(),
    }


@router.get("/plans/suggest")
async def plans_suggest(expected_credits: int = Query(ge=1, le=100000)):
    return suggest_pack(expected_credits)


@router.post("/purchases", dependencies=[Depends(require_admin_key)])
async def record_purchase(
    request: PurchaseGrantRequest,
    db: AsyncSession = Depends(get_db),
):
    """Credit a completed purchase. Payment verification must already have happened."""
    item = get_purchase_item(request.pack)
    if item is None:
        raise HTTPException(status_code=422, detail=f"Unknown credit pack: {request.pack}")

    try:
        result = await grant_purchased_credits(
            request.user_id,
            db,
            credits=item["credits"],
            reason=f"purchase:{item['key']}",
            ext_ref=f"purchase:{request.event_id}",
            starter_pack=item["key"] == "starter",
            subscription_tier=item["subscription_tier"],
            subscription_days=item["subscription_days"],
        )
        subscription = await get_subscription_state(request.user_id, db)
    except CreditOperationError as exc:
        raise http_error_for(exc) from exc

    if result.idempotent:
        logger.info("Duplicate purchase event %s for user %s ignored", request.event_id, request.user_id)
    return {
        "ok": True,
        "pack": item["key"],
        "credits_added": result.credited,
        "balance_after": result.new_balance,
        "idempotent": result.idempotent,
        "subscription": subscription.to_dict(),
    }
