"""
Stripe payment method tokens handed to the charging engine.
"""
from __future__ import annotations

from typing import Any, Optional

import stripe

from .stripe_client import call_stripe, field


INDIA = "IN"


class _StripeCard:
    """Card metadata shared by every Stripe token flavour."""

    charge_processor_id = "stripe"

    def __init__(self, *, zip_code: Optional[str] = None) -> None:
        self.reusable_token: Optional[str] = None
        self.payment_method_id: Optional[str] = None
        self.fingerprint: Optional[str] = None
        self.last4: Optional[str] = None
        self.number_length: Optional[int] = None
        self.visual: Optional[str] = None
        self.expiry_month: Optional[int] = None
        self.expiry_year: Optional[int] = None
        self.card_type: Optional[str] = None
        self.country: Optional[str] = None
        self.zip_code = zip_code
        self.stripe_setup_intent_id: Optional[str] = None
        self.stripe_payment_intent_id: Optional[str] = None

    def _load_card(self, card: Any) -> None:
        self.fingerprint = field(card, "fingerprint")
        self.last4 = field(card, "last4")
        self.number_length = 15 if field(card, "brand") in ("amex", "American Express") else 16
        self.visual = f"**** **** **** {self.last4}" if self.last4 else None
        self.expiry_month = field(card, "exp_month")
        self.expiry_year = field(card, "exp_year")
        self.card_type = (field(card, "brand") or "").lower() or None
        self.country = field(card, "country")

    def requires_mandate(self) -> bool:
        # Off-session recurring charges on Indian cards need an e-mandate.
        return self.country == INDIA

    def stripe_charge_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {}
        if self.payment_method_id:
            params["payment_method"] = self.payment_method_id
        if self.reusable_token:
            params["customer"] = self.reusable_token
        return params


class StripeChargeableToken(_StripeCard):
    """A one-time card token (``tok_...``)."""

    def __init__(self, token: str, zip_code: Optional[str] = None, *, product_permalink: Optional[str] = None) -> None:
        super().__init__(zip_code=zip_code)
        self.token = token
        self.product_permalink = product_permalink
        self._prepared = False

    async def prepare(self) -> bool:
        if self._prepared:
            return True
        payment_method = await call_stripe(
            stripe.PaymentMethod.create, type="card", card={"token": self.token}
        )
        self.payment_method_id = field(payment_method, "id")
        self._load_card(field(payment_method, "card"))
        self._prepared = True
        return True

    def can_be_saved(self) -> bool:
        return True

    def stripe_charge_params(self) -> dict[str, Any]:
        if self.payment_method_id:
            return super().stripe_charge_params()
        return {"payment_method_data": {"type": "card", "card": {"token": self.token}}}


class StripeChargeablePaymentMethod(_StripeCard):
    """A payment method collected by Stripe.js, optionally attached to a customer."""

    def __init__(
        self,
        payment_method_id: str,
        *,
        customer_id: Optional[str] = None,
        stripe_setup_intent_id: Optional[str] = None,
        zip_code: Optional[str] = None,
        product_permalink: Optional[str] = None,
    ) -> None:
        super().__init__(zip_code=zip_code)
        self.payment_method_id = payment_method_id
        self.reusable_token = customer_id
        self.stripe_setup_intent_id = stripe_setup_intent_id
        self.product_permalink = product_permalink
        self._prepared = False

    async def prepare(self) -> bool:
        if self._prepared:
            return True
        payment_method = await call_stripe(stripe.PaymentMethod.retrieve, self.payment_method_id)
        self._load_card(field(payment_method, "card"))
        if not self.reusable_token:
            # a customer makes the payment method reusable for later charges
            customer = await call_stripe(stripe.Customer.create, payment_method=self.payment_method_id)
            self.reusable_token = field(customer, "id")
        self._prepared = True
        return True

    def can_be_saved(self) -> bool:
        return True


class StripeChargeableCreditCard(_StripeCard):
    """A saved card: Stripe customer id plus the stored card metadata."""

    def __init__(
        self,
        reusable_token: str,
        payment_method_id: Optional[str] = None,
        *,
        fingerprint: Optional[str] = None,
        stripe_setup_intent_id: Optional[str] = None,
        stripe_payment_intent_id: Optional[str] = None,
        last4: Optional[str] = None,
        number_length: Optional[int] = None,
        visual: Optional[str] = None,
        expiry_month: Optional[int] = None,
        expiry_year: Optional[int] = None,
        card_type: Optional[str] = None,
        country: Optional[str] = None,
        zip_code: Optional[str] = None,
        merchant_account=None,
    ) -> None:
        super().__init__(zip_code=zip_code)
        self.reusable_token = reusable_token
        self.payment_method_id = payment_method_id
        self.fingerprint = fingerprint
        self.stripe_setup_intent_id = stripe_setup_intent_id
        self.stripe_payment_intent_id = stripe_payment_intent_id
        self.last4 = last4
        self.number_length = number_length
        self.visual = visual
        self.expiry_month = expiry_month
        self.expiry_year = expiry_year
        self.card_type = card_type
        self.country = country
        self.merchant_account = merchant_account

    async def prepare(self) -> bool:
        return True

    def can_be_saved(self) -> bool:
        # already saved
        return False
