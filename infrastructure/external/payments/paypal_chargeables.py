"""
PayPal chargeables: a reusable billing agreement, or a one-off order the buyer
already approved in the PayPal checkout.
"""
from __future__ import annotations

from typing import Optional

from domain.charging.entity import ChargeProcessorId


class _PaypalChargeable:
    charge_processor_id = ChargeProcessorId.PAYPAL.value

    payment_method_id: Optional[str] = None
    last4: Optional[str] = None
    number_length: Optional[int] = None
    expiry_month: Optional[int] = None
    expiry_year: Optional[int] = None
    zip_code: Optional[str] = None
    card_type = "paypal"

    def __init__(self, visual: Optional[str] = None, country: Optional[str] = None) -> None:
        self.visual = visual
        self.country = country

    async def prepare(self) -> bool:
        return True


class PaypalChargeable(_PaypalChargeable):
    """A billing agreement; the agreement id doubles as the fingerprint."""

    def __init__(self, billing_agreement_id: str, visual: Optional[str] = None, country: Optional[str] = None) -> None:
        super().__init__(visual, country)
        self.billing_agreement_id = billing_agreement_id
        self.reusable_token = billing_agreement_id
        self.fingerprint = billing_agreement_id

    def can_be_saved(self) -> bool:
        return True


class PaypalApprovedOrderChargeable(_PaypalChargeable):
    def __init__(self, order_id: str, visual: Optional[str] = None, country: Optional[str] = None) -> None:
        super().__init__(visual, country)
        self.order_id = order_id
        self.reusable_token = None
        self.fingerprint = order_id

    def can_be_saved(self) -> bool:
        return False
