"""
Payout entities - Payment aggregate, split sub-payments and recipients.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from domain.charging.entity import HolderOfFunds
from domain.common.exceptions import DomainValidationException


class PayoutState(str, Enum):
    CREATING = "creating"
    PROCESSING = "processing"
    UNCLAIMED = "unclaimed"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REVERSED = "reversed"
    RETURNED = "returned"


# A completed PayPal payout can still be reversed or returned by the receiver.
NON_TERMINAL_STATES = frozenset(
    {PayoutState.CREATING, PayoutState.PROCESSING, PayoutState.UNCLAIMED, PayoutState.COMPLETED}
)

# target state -> states it may be reached from
_ALLOWED_TRANSITIONS: dict[PayoutState, frozenset[PayoutState]] = {
    PayoutState.PROCESSING: frozenset({PayoutState.CREATING}),
    PayoutState.UNCLAIMED: frozenset({PayoutState.PROCESSING}),
    PayoutState.COMPLETED: frozenset({PayoutState.PROCESSING, PayoutState.UNCLAIMED}),
    PayoutState.FAILED: frozenset({PayoutState.CREATING, PayoutState.PROCESSING}),
    PayoutState.CANCELLED: frozenset({PayoutState.PROCESSING, PayoutState.UNCLAIMED}),
    PayoutState.REVERSED: frozenset({PayoutState.PROCESSING, PayoutState.UNCLAIMED}),
    PayoutState.RETURNED: frozenset({PayoutState.PROCESSING, PayoutState.UNCLAIMED}),
}


class SplitPaymentState(str, Enum):
    PROCESSING = "processing"
    PENDING = "pending"
    UNCLAIMED = "unclaimed"
    COMPLETED = "completed"
    FAILED = "failed"
    RETURNED = "returned"
    REVERSED = "reversed"

    @property
    def in_flight(self) -> bool:
        return self in (SplitPaymentState.PROCESSING, SplitPaymentState.PENDING)


@dataclass
class SplitPayment:
    """One chunk of a payout that exceeded the per-transaction cap."""

    state: SplitPaymentState
    amount_cents: int
    correlation_id: Optional[str] = None
    txn_id: Optional[str] = None
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "amount_cents": self.amount_cents,
            "correlation_id": self.correlation_id,
            "txn_id": self.txn_id,
            "errors": list(self.errors),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SplitPayment":
        return cls(
            state=SplitPaymentState(data["state"]),
            amount_cents=int(data["amount_cents"]),
            correlation_id=data.get("correlation_id"),
            txn_id=data.get("txn_id"),
            errors=list(data.get("errors") or []),
        )


@dataclass
class Payment:
    """
    A payout of a user's balance.

    Rules:
    1. state changes follow _ALLOWED_TRANSITIONS
    2. a split payment has was_created_in_split_mode set and owns its chunks in order
    """

    id: Optional[int]
    user_id: int
    amount_cents: int = 0
    currency: str = "USD"
    state: PayoutState = PayoutState.PROCESSING
    payment_address: Optional[str] = None
    correlation_id: Optional[str] = None
    txn_id: Optional[str] = None
    processor_fee_cents: Optional[int] = None
    gumroad_fee_cents: Optional[int] = None
    failure_reason: Optional[str] = None
    was_created_in_split_mode: bool = False
    split_payments_info: list[SplitPayment] = field(default_factory=list)
    payout_period_end_date: Optional[date] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_non_terminal(self) -> bool:
        return self.state in NON_TERMINAL_STATES

    def can_transition_to(self, new_state: PayoutState) -> bool:
        return self.state in _ALLOWED_TRANSITIONS.get(new_state, frozenset())

    def mark(self, new_state: PayoutState | str) -> None:
        new_state = PayoutState(new_state)
        if not self.can_transition_to(new_state):
            raise DomainValidationException(
                f"Cannot transition payment from {self.state.value} to {new_state.value}",
                field="state",
                details={"payment_id": self.id},
            )
        self.state = new_state
        self.updated_at = datetime.now(timezone.utc)

    def mark_processing(self) -> None:
        self.mark(PayoutState.PROCESSING)

    def mark_completed(self) -> None:
        self.mark(PayoutState.COMPLETED)

    def mark_failed(self, failure_reason: Optional[str] = None) -> None:
        self.mark(PayoutState.FAILED)
        self.failure_reason = failure_reason

    def add_processor_fee(self, fee_cents: int) -> None:
        self.processor_fee_cents = (self.processor_fee_cents or 0) + fee_cents

    def add_split_payment(self, split: SplitPayment) -> None:
        self.was_created_in_split_mode = True
        self.split_payments_info.append(split)


class BalanceState(str, Enum):
    UNPAID = "unpaid"
    PROCESSING = "processing"
    PAID = "paid"


def balance_state_for(payout_state: PayoutState) -> BalanceState:
    """State of the balances attached to a payout in ``payout_state``."""
    if payout_state == PayoutState.COMPLETED:
        return BalanceState.PAID
    if payout_state in (PayoutState.FAILED, PayoutState.CANCELLED, PayoutState.REVERSED, PayoutState.RETURNED):
        return BalanceState.UNPAID
    return BalanceState.PROCESSING


@dataclass
class Balance:
    """A user's earnings for one day, held by ``holder_of_funds`` in ``holding_currency``."""

    id: Optional[int]
    user_id: int
    date: date
    amount_cents: int
    state: BalanceState = BalanceState.UNPAID
    holder_of_funds: HolderOfFunds = HolderOfFunds.GUMROAD
    holding_currency: str = "USD"
    payout_id: Optional[int] = None


_EMAIL_RE = re.compile(r"\A[^\s@]+@[^\s@]+\.[^\s@]+\Z")


def is_valid_email(value: Optional[str]) -> bool:
    return bool(value) and bool(_EMAIL_RE.match(value))


@dataclass
class PayoutRecipient:
    """The payout-relevant view of a creator account."""

    id: int
    paypal_payout_email: Optional[str] = None
    legal_entity_name: Optional[str] = None
    country: Optional[str] = None
    has_active_bank_account: bool = False
    has_paypal_account_connected: bool = False
    payable_via_stripe: bool = False
    should_paypal_payout_be_split: bool = False
    split_payment_by_cents: Optional[int] = None
    paypal_payout_fee_waived: bool = False
    payout_notes: list[str] = field(default_factory=list)

    def add_payout_note(self, content: str) -> None:
        self.payout_notes.append(content)
