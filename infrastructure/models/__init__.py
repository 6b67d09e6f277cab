"""Infrastructure models package exports."""
from .base import Base, metadata
from .charging import ChargeModel, MerchantAccountModel, PurchaseModel
from .payout import BalanceModel, PayoutModel, PayoutRecipientModel

__all__ = [
    "Base",
    "metadata",
    "ChargeModel",
    "MerchantAccountModel",
    "PurchaseModel",
    "BalanceModel",
    "PayoutModel",
    "PayoutRecipientModel",
]
