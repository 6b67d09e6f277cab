"""
Charging entities: merchant accounts, per-seller charges and purchases.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from domain.common.exceptions import DomainValidationException

from .intents import ChargeIntent, ProcessorCharge, SetupIntent


class ChargeProcessorId(str, Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"


class HolderOfFunds(str, Enum):
    GUMROAD = "gumroad"
    STRIPE = "stripe"
    CREATOR = "creator"


@dataclass
class MerchantAccount:
    id: int
    charge_processor_id: str
    charge_processor_merchant_id: Optional[str] = None
    user_id: Optional[int] = None
    is_stripe_connect: bool = False
    country: Optional[str] = None

    @property
    def is_platform_account(self) -> bool:
        return self.user_id is None


class ChargeState(str, Enum):
    IN_PROGRESS = "in_progress"
    REQUIRES_ACTION = "requires_action"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class Charge:
    """
    One charge per (order, seller).

    Rules:
    1. amount and the platform cut are fixed once set
    2. owns at most one charge intent and at most one setup intent
    """

    id: Optional[int]
    order_id: str
    seller_id: int
    state: ChargeState = ChargeState.IN_PROGRESS
    merchant_account_id: Optional[int] = None
    amount_cents: Optional[int] = None
    amount_for_gumroad_cents: Optional[int] = None
    charge_processor_id: Optional[str] = None
    processor_charge_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    setup_intent_id: Optional[str] = None
    processor_fee_cents: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def reference(self) -> str:
        return f"CH-{self.id}"

    def set_amounts(self, amount_cents: int, amount_for_gumroad_cents: int) -> None:
        if amount_cents < 0 or amount_for_gumroad_cents < 0:
            raise DomainValidationException("Charge amounts must not be negative", field="amount_cents")
        if amount_for_gumroad_cents > amount_cents:
            raise DomainValidationException(
                "Platform cut cannot exceed the charge amount", field="amount_for_gumroad_cents"
            )
        if self.amount_for_gumroad_cents is not None and (
            self.amount_for_gumroad_cents != amount_for_gumroad_cents or self.amount_cents != amount_cents
        ):
            raise DomainValidationException(
                "Charge amounts are immutable once set",
                field="amount_for_gumroad_cents",
                details={"charge_id": self.id},
            )
        self.amount_cents = amount_cents
        self.amount_for_gumroad_cents = amount_for_gumroad_cents
        self._touch()

    def record_charge_intent(self, intent: ChargeIntent) -> None:
        if self.payment_intent_id and intent.id and intent.id != self.payment_intent_id:
            raise DomainValidationException(
                "Charge already owns a different payment intent", field="payment_intent_id"
            )
        if intent.id:
            self.payment_intent_id = intent.id
        if intent.charge is not None:
            self.processor_charge_id = intent.charge.id
            self.processor_fee_cents = intent.charge.fee_cents
        if intent.succeeded:
            self.state = ChargeState.SUCCEEDED
        elif intent.requires_action:
            self.state = ChargeState.REQUIRES_ACTION
        else:
            self.state = ChargeState.FAILED
        self._touch()

    def record_setup_intent(self, intent: SetupIntent) -> None:
        if self.setup_intent_id and intent.id and intent.id != self.setup_intent_id:
            raise DomainValidationException(
                "Charge already owns a different setup intent", field="setup_intent_id"
            )
        if intent.id:
            self.setup_intent_id = intent.id
        self._touch()

    def mark_failed(self) -> None:
        self.state = ChargeState.FAILED
        self._touch()

    def _touch(self) -> None:
        self.updated_at = datetime.now(timezone.utc)


class PurchaseState(str, Enum):
    IN_PROGRESS = "in_progress"
    SUCCESSFUL = "successful"
    FAILED = "failed"


DEFAULT_PURCHASE_ERROR = "Sorry, something went wrong. Please try again."
GENERIC_CHARGE_ERROR = "Sorry, something went wrong."


@dataclass
class Purchase:
    """
    A purchase of one line item. Lifecycle: in_progress -> successful | failed.

    The orchestrator only transitions purchases that are still in progress;
    ``errors`` collects buyer facing messages for the current attempt.
    """

    id: int
    order_id: str
    seller_id: int
    line_item_uid: str
    total_transaction_cents: int
    amount_for_gumroad_cents: int = 0
    quantity: int = 1
    merchant_account_id: Optional[int] = None
    purchaser_id: Optional[int] = None
    save_card: bool = False
    is_test_purchase: bool = False
    is_preorder_authorization: bool = False
    is_free_trial_purchase: bool = False
    is_recurring_billing: bool = False
    state: PurchaseState = PurchaseState.IN_PROGRESS
    charge_id: Optional[int] = None
    charge_processor_id: Optional[str] = None
    processor_charge_id: Optional[str] = None
    processor_payment_intent_id: Optional[str] = None
    processor_setup_intent_id: Optional[str] = None
    processor_fee_cents: Optional[int] = None
    card_fingerprint: Optional[str] = None
    errors: list[str] = field(default_factory=list)
    succeeded_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    @property
    def in_progress(self) -> bool:
        return self.state == PurchaseState.IN_PROGRESS

    @property
    def successful(self) -> bool:
        return self.state == PurchaseState.SUCCESSFUL

    @property
    def failed(self) -> bool:
        return self.state == PurchaseState.FAILED

    @property
    def is_free(self) -> bool:
        return self.total_transaction_cents == 0

    def add_error(self, message: str) -> None:
        self.errors.append(message)

    def mark_successful(self) -> None:
        if not self.in_progress:
            raise DomainValidationException(
                f"Cannot transition purchase from {self.state.value} to successful", field="state"
            )
        self.state = PurchaseState.SUCCESSFUL
        self.succeeded_at = datetime.now(timezone.utc)

    def mark_failed(self) -> None:
        if not self.in_progress:
            raise DomainValidationException(
                f"Cannot transition purchase from {self.state.value} to failed", field="state"
            )
        self.state = PurchaseState.FAILED
        self.failed_at = datetime.now(timezone.utc)

    def save_charge_data(self, charge: ProcessorCharge, fingerprint: Optional[str] = None) -> None:
        self.charge_processor_id = charge.charge_processor_id
        self.processor_charge_id = charge.id
        self.processor_fee_cents = charge.fee_cents
        self.card_fingerprint = charge.card_fingerprint or fingerprint
        if charge.payment_intent_id:
            self.processor_payment_intent_id = charge.payment_intent_id

    def response(self) -> dict:
        return {
            "success": self.successful,
            "id": self.id,
            "order_id": self.order_id,
            "state": self.state.value,
            "processor_charge_id": self.processor_charge_id,
        }


@dataclass
class Order:
    id: str
    purchases: list[Purchase] = field(default_factory=list)
    purchaser_id: Optional[int] = None
