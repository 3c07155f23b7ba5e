"""Failure kinds raised by the credit ledger, promo redeemer and subscription overlay."""

from __future__ import annotations

from typing import Any, Dict, Optional


class CreditOperationError(Exception):
    """Base class for ledger failures. ``error_code`` is stable for API clients."""

    error_code = "CREDIT_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_detail(self) -> Dict[str, Any]:
        return {"code": self.error_code, "message": self.message}


class InvalidCreditAmount(CreditOperationError):
    error_code = "INVALID_AMOUNT"


class InsufficientCredits(CreditOperationError):
    """Balance at consume time is below the required cost. Nothing was written."""

    error_code = "INSUFFICIENT_CREDITS"

    def __init__(self, required: int, available: int):
        self.required = int(required)
        self.available = int(available)
        super().__init__(
            f"Insufficient credits. Required: {self.required}, available: {self.available}. "
            "Top up credits to continue."
        )

    @property
    def shortfall(self) -> int:
        return max(self.required - self.available, 0)

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail.update(
            {
                "required": self.required,
                "available": self.available,
                "shortfall": self.shortfall,
            }
        )
        return detail


class AlreadyConsumed(CreditOperationError):
    """The job id has already been debited against a different account."""

    error_code = "JOB_ALREADY_CONSUMED"

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} has already been charged.")


class GrantConflict(CreditOperationError):
    """A grant failed on an integrity constraint other than a duplicate ext ref."""

    error_code = "GRANT_CONFLICT"


class PromoCodeError(CreditOperationError):
    error_code = "PROMO_ERROR"


class UnknownCode(PromoCodeError):
    error_code = "UNKNOWN_CODE"

    def __init__(self, message: str = "Invalid promo code."):
        super().__init__(message)


class ExpiredCode(PromoCodeError):
    error_code = "EXPIRED_CODE"

    def __init__(self, message: str = "This promo code has expired."):
        super().__init__(message)


class AlreadyRedeemed(PromoCodeError):
    error_code = "ALREADY_REDEEMED"

    def __init__(self, message: str = "You have already used this promo code."):
        super().__init__(message)


class InvalidSubscriptionTier(CreditOperationError):
    error_code = "INVALID_SUBSCRIPTION_TIER"


class LedgerUnavailable(CreditOperationError):
    """Storage failure. Retryable; the caller must not assume any partial effect."""

    error_code = "LEDGER_UNAVAILABLE"

    def __init__(self, message: str = "Credit ledger is temporarily unavailable. Retry the request."):
        super().__init__(message)


class DuplicatePromoCode(PromoCodeError):
    error_code = "DUPLICATE_CODE"


class FullyRedeemed(PromoCodeError):
    """The code reached its redemption cap across all accounts."""

    error_code = "CODE_FULLY_REDEEMED"

    def __init__(self, message: str = "This promo code has been fully redeemed."):
        super().__init__(message)


class MonthlyFreeScanUsed(CreditOperationError):
    error_code = "MONTHLY_FREE_SCAN_USED"

    def __init__(self, days_until_reset: Optional[int] = None):
        self.days_until_reset = days_until_reset
        super().__init__("Monthly free scan already used.")

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail["days_until_reset"] = self.days_until_reset
        return detail
