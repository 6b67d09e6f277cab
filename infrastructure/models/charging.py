"""
Charging ORM models. Table mappings only; rules live in domain.charging.entity.
"""
from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, JSON, Index
)
from datetime import datetime, timezone

from .base import Base


def _utcnow():
    return datetime.now(timezone.utc)


class MerchantAccountModel(Base):
    __tablename__ = "merchant_accounts"

    id = Column(Integer, primary_key=True, index=True)
    charge_processor_id = Column(String(32), nullable=False, index=True, comment="stripe/paypal")
    charge_processor_merchant_id = Column(String(100), nullable=True, comment="Processor side account id")
    user_id = Column(Integer, nullable=True, index=True, comment="Owner; NULL for platform accounts")
    is_stripe_connect = Column(Boolean, nullable=False, default=False)
    country = Column(String(2), nullable=True)

    def __repr__(self):
        return f"<MerchantAccountModel(id={self.id}, processor='{self.charge_processor_id}')>"


class ChargeModel(Base):
    __tablename__ = "charges"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String(100), nullable=False, index=True)
    seller_id = Column(Integer, nullable=False, index=True)
    state = Column(String(32), nullable=False, default="in_progress", index=True)
    merchant_account_id = Column(Integer, nullable=True)
    amount_cents = Column(Integer, nullable=True)
    amount_for_gumroad_cents = Column(Integer, nullable=True)
    charge_processor_id = Column(String(32), nullable=True)
    processor_charge_id = Column(String(200), nullable=True, index=True)
    payment_intent_id = Column(String(200), nullable=True)
    setup_intent_id = Column(String(200), nullable=True)
    processor_fee_cents = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_charges_order_seller", "order_id", "seller_id"),
    )

    def __repr__(self):
        return f"<ChargeModel(id={self.id}, order_id='{self.order_id}', state='{self.state}')>"


class PurchaseModel(Base):
    __tablename__ = "purchases"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String(100), nullable=False, index=True)
    seller_id = Column(Integer, nullable=False, index=True)
    line_item_uid = Column(String(100), nullable=False)
    total_transaction_cents = Column(Integer, nullable=False)
    amount_for_gumroad_cents = Column(Integer, nullable=False, default=0)
    quantity = Column(Integer, nullable=False, default=1)
    merchant_account_id = Column(Integer, nullable=True)
    purchaser_id = Column(Integer, nullable=True, index=True)

    save_card = Column(Boolean, nullable=False, default=False)
    is_test_purchase = Column(Boolean, nullable=False, default=False)
    is_preorder_authorization = Column(Boolean, nullable=False, default=False)
    is_free_trial_purchase = Column(Boolean, nullable=False, default=False)
    is_recurring_billing = Column(Boolean, nullable=False, default=False)

    state = Column(String(32), nullable=False, default="in_progress", index=True)
    charge_id = Column(Integer, nullable=True, index=True)
    charge_processor_id = Column(String(32), nullable=True)
    processor_charge_id = Column(String(200), nullable=True)
    processor_payment_intent_id = Column(String(200), nullable=True)
    processor_setup_intent_id = Column(String(200), nullable=True)
    processor_fee_cents = Column(Integer, nullable=True)
    card_fingerprint = Column(String(200), nullable=True)
    errors = Column(JSON, nullable=True, comment="Buyer facing error messages")
    succeeded_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<PurchaseModel(id={self.id}, order_id='{self.order_id}', state='{self.state}')>"
