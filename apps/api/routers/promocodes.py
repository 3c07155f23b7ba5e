"""Promo code redemption router."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, require_scope
from routers.error_mapping import http_error_for
from routers.rate_limit import rate_limit
from services.credit_errors import CreditOperationError, PromoCodeError
from services.promo_codes import redeem_promo_code
from services.session_token import SCOPE_REDEEM

router = APIRouter()
logger = logging.getLogger(__name__)


class RedeemRequest(BaseModel):
    user_id: Optional[str] = None
    code: str = Field(min_length=1, max_length=32)


@router.post("/redeem")
async def redeem(
    request: RedeemRequest,
    _rate_limit: None = Depends(
        rate_limit(
            "promo_redeem",
            limit=settings.PROMO_REDEEM_RATE_LIMIT,
            window_seconds=settings.PROMO_REDEEM_RATE_WINDOW_SECONDS,
            per_account=True,
        )
    ),
    auth: AuthContext = Depends(require_scope(SCOPE_REDEEM)),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    try:
        result = await redeem_promo_code(scoped_user_id, request.code, db)
    except CreditOperationError as exc:
        if isinstance(exc, PromoCodeError):
            logger.info("Promo redemption failed for user %s: %s", scoped_user_id, exc.error_code)
        raise http_error_for(exc) from exc

    return {
        "success": True,
        "message": "Promo code redeemed successfully!",
        **result.to_dict(),
    }
