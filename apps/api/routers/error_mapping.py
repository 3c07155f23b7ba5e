"""Translate ledger failures into HTTP responses."""

from fastapi import HTTPException

from services.credit_errors import (
    AlreadyConsumed,
    CreditOperationError,
    DuplicatePromoCode,
    GrantConflict,
    InsufficientCredits,
    InvalidCreditAmount,
    InvalidSubscriptionTier,
    LedgerUnavailable,
    MonthlyFreeScanUsed,
    PromoCodeError,
)


def http_error_for(exc: CreditOperationError) -> HTTPException:
    if isinstance(exc, InsufficientCredits):
        status_code = 402
    elif isinstance(exc, (AlreadyConsumed, GrantConflict, DuplicatePromoCode, MonthlyFreeScanUsed)):
        status_code = 409
    elif isinstance(exc, (InvalidCreditAmount, InvalidSubscriptionTier)):
        status_code = 422
    elif isinstance(exc, PromoCodeError):
        status_code = 400
    elif isinstance(exc, LedgerUnavailable):
        status_code = 503
    else:
        status_code = 400
    headers = {"Retry-After": "1"} if status_code == 503 else None
    return HTTPException(status_code=status_code, detail=exc.to_detail(), headers=headers)
