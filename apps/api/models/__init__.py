"""Models package."""

from .user import User
from .credit_account import CreditAccount
from .credit_ledger import CreditTransaction
from .promo_code import PromoCode
