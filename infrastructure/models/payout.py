"""
Payout ORM models.
"""
from sqlalchemy import (
    Column, Integer, String, Boolean, Date, DateTime, Text, JSON, Index
)
from datetime import datetime, timezone

from .base import Base


def _utcnow():
    return datetime.now(timezone.utc)


class PayoutModel(Base):
    """A payout of a user's balance; split chunks are kept inline as JSON."""
    __tablename__ = "payouts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    amount_cents = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")
    state = Column(String(32), nullable=False, default="processing", index=True)
    payment_address = Column(String(255), nullable=True)
    correlation_id = Column(String(100), nullable=True)
    txn_id = Column(String(100), nullable=True, index=True)
    processor_fee_cents = Column(Integer, nullable=True)
    gumroad_fee_cents = Column(Integer, nullable=True)
    failure_reason = Column(Text, nullable=True)
    was_created_in_split_mode = Column(Boolean, nullable=False, default=False)
    split_payments_info = Column(JSON, nullable=True)
    payout_period_end_date = Column(Date, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_payouts_user_state", "user_id", "state"),
    )

    def __repr__(self):
        return f"<PayoutModel(id={self.id}, user_id={self.user_id}, state='{self.state}')>"


class PayoutRecipientModel(Base):
    __tablename__ = "payout_recipients"

    id = Column(Integer, primary_key=True, index=True, comment="User id")
    paypal_payout_email = Column(String(255), nullable=True)
    legal_entity_name = Column(String(255), nullable=True)
    country = Column(String(2), nullable=True)
    has_active_bank_account = Column(Boolean, nullable=False, default=False)
    has_paypal_account_connected = Column(Boolean, nullable=False, default=False)
    payable_via_stripe = Column(Boolean, nullable=False, default=False)
    should_paypal_payout_be_split = Column(Boolean, nullable=False, default=False)
    split_payment_by_cents = Column(Integer, nullable=True)
    paypal_payout_fee_waived = Column(Boolean, nullable=False, default=False)
    payout_notes = Column(JSON, nullable=True)


class BalanceModel(Base):
    """A user's earnings for one day; ``payout_id`` is set once paid out."""
    __tablename__ = "balances"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    date = Column(Date, nullable=False)
    amount_cents = Column(Integer, nullable=False, default=0)
    state = Column(String(32), nullable=False, default="unpaid", index=True)
    holder_of_funds = Column(String(32), nullable=False, default="gumroad")
    holding_currency = Column(String(3), nullable=False, default="USD")
    payout_id = Column(Integer, nullable=True, index=True)

    __table_args__ = (
        Index("ix_balances_user_state_date", "user_id", "state", "date"),
    )
