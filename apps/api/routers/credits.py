"""Credit balance and consumption router."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, require_scope
from routers.error_mapping import http_error_for
from services.balance import get_balance_view
from services.credit_errors import CreditOperationError
from services.credits import (
    claim_monthly_free_scan,
    consume_credits,
    get_balance_details,
    get_credit_history,
    get_monthly_free_scan_status,
)
from services.pricing import resolve_scan_cost
from services.session_token import SCOPE_CONSUME, SCOPE_READ, SCOPE_REDEEM

router = APIRouter()
logger = logging.getLogger(__name__)


class ConsumeRequest(BaseModel):
    user_id: Optional[str] = None
    job_id: str = Field(min_length=1, max_length=128)
    scan_type: str = Field(default="basic", max_length=16)


@router.get("/balance")
async def credit_balance(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(require_scope(SCOPE_READ)),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    try:
        return await get_balance_view(scoped_user_id, db)
    except CreditOperationError as exc:
        raise http_error_for(exc) from exc


@router.get("/details")
async def credit_balance_details(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(require_scope(SCOPE_READ)),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    try:
        return await get_balance_details(scoped_user_id, db)
    except CreditOperationError as exc:
        raise http_error_for(exc) from exc


@router.get("/history")
async def credit_history(
    user_id: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    auth: AuthContext = Depends(require_scope(SCOPE_READ)),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    try:
        return await get_credit_history(scoped_user_id, db, limit=limit, offset=offset)
    except CreditOperationError as exc:
        raise http_error_for(exc) from exc


@router.post("/consume")
async def consume_for_scan(
    request: ConsumeRequest,
    auth: AuthContext = Depends(require_scope(SCOPE_CONSUME)),
    db: AsyncSession = Depends(get_db),
):
    """Charge one scan before the pipeline starts work. 402 is a hard stop."""
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    try:
        cost = resolve_scan_cost(request.scan_type)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    try:
        result = await consume_credits(scoped_user_id, db, job_id=request.job_id, cost=cost)
    except CreditOperationError as exc:
        raise http_error_for(exc) from exc
    return {"ok": True, **result.to_dict()}


@router.get("/monthly-free")
async def monthly_free_scan_status(
    auth: AuthContext = Depends(require_scope(SCOPE_READ)),
    db: AsyncSession = Depends(get_db),
):
    try:
        status = await get_monthly_free_scan_status(auth.user_id, db)
    except CreditOperationError as exc:
        raise http_error_for(exc) from exc
    return status.to_dict()


@router.post("/monthly-free")
async def claim_monthly_free(
    auth: AuthContext = Depends(require_scope(SCOPE_REDEEM)),
    db: AsyncSession = Depends(get_db),
):
    try:
        result = await claim_monthly_free_scan(auth.user_id, db)
    except CreditOperationError as exc:
        raise http_error_for(exc) from exc
    logger.info("Monthly free scan claimed by %s", auth.user_id)
    return {"ok": True, **result.to_dict()}
