"""
Charging / payout specific codes and processor status mapping.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    SUCCESS = 0

    # Charge processor errors (6xxxx)
    PROCESSOR_INVALID_REQUEST = 60000
    PROCESSOR_UNAVAILABLE = 60001
    PROCESSOR_CARD_DECLINED = 60002
    PROCESSOR_ALREADY_REFUNDED = 60003
    PROCESSOR_UNKNOWN = 60004
    PROCESSOR_SIGNATURE_ERROR = 60005
    MERCHANT_ACCOUNT_MISMATCH = 60006

    # Payout errors (7xxxx)
    PAYOUT_ERROR = 70000
    PAYOUT_TRANSPORT_ERROR = 70001
    PAYOUT_RECONCILIATION_ERROR = 70002


# Processor intent status -> internal intent state value
PROVIDER_STATUS_TO_INTERNAL = {
    "stripe": {
        "requires_payment_method": "in_progress",
        "requires_confirmation": "in_progress",
        "processing": "in_progress",
        "requires_capture": "in_progress",
        "requires_action": "requires_action",
        "succeeded": "succeeded",
        "canceled": "canceled",
    },
}
