"""
Charging repositories - SQLAlchemy implementations.
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.logging_config import get_logger
from domain.charging.entity import (
    Charge,
    ChargeState,
    MerchantAccount,
    Purchase,
    PurchaseState,
)
from domain.charging.repository import (
    ChargeRepository,
    MerchantAccountRepository,
    PurchaseRepository,
)
from domain.common.exceptions import NotFoundException
from infrastructure.models.charging import ChargeModel, MerchantAccountModel, PurchaseModel


logger = get_logger(__name__)


class SQLAlchemyChargeRepository(ChargeRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: ChargeModel) -> Charge:
        return Charge(
            id=model.id,
            order_id=model.order_id,
            seller_id=model.seller_id,
            state=ChargeState(model.state),
            merchant_account_id=model.merchant_account_id,
            amount_cents=model.amount_cents,
            amount_for_gumroad_cents=model.amount_for_gumroad_cents,
            charge_processor_id=model.charge_processor_id,
            processor_charge_id=model.processor_charge_id,
            payment_intent_id=model.payment_intent_id,
            setup_intent_id=model.setup_intent_id,
            processor_fee_cents=model.processor_fee_cents,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    @staticmethod
    def _apply(model: ChargeModel, entity: Charge) -> None:
        model.state = entity.state.value
        model.merchant_account_id = entity.merchant_account_id
        model.amount_cents = entity.amount_cents
        model.amount_for_gumroad_cents = entity.amount_for_gumroad_cents
        model.charge_processor_id = entity.charge_processor_id
        model.processor_charge_id = entity.processor_charge_id
        model.payment_intent_id = entity.payment_intent_id
        model.setup_intent_id = entity.setup_intent_id
        model.processor_fee_cents = entity.processor_fee_cents

    async def create(self, charge: Charge) -> Charge:
        model = ChargeModel(order_id=charge.order_id, seller_id=charge.seller_id)
        self._apply(model, charge)
        self.session.add(model)
        await self.session.flush()
        await self.session.refresh(model)
        logger.info("charge_created", charge_id=model.id, order_id=model.order_id, seller_id=model.seller_id)
        return self._to_entity(model)

    async def get_by_id(self, charge_id: int) -> Optional[Charge]:
        model = await self.session.get(ChargeModel, charge_id)
        return self._to_entity(model) if model else None

    async def find_active(self, order_id: str, seller_id: int) -> Optional[Charge]:
        result = await self.session.execute(
            select(ChargeModel)
            .where(
                ChargeModel.order_id == order_id,
                ChargeModel.seller_id == seller_id,
                ChargeModel.state != ChargeState.FAILED.value,
            )
            .order_by(ChargeModel.id.desc())
            .limit(1)
        )
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def list_for_order(self, order_id: str) -> List[Charge]:
        result = await self.session.execute(
            select(ChargeModel).where(ChargeModel.order_id == order_id).order_by(ChargeModel.id)
        )
        return [self._to_entity(m) for m in result.scalars().all()]

    async def update(self, charge: Charge) -> Charge:
        model = await self.session.get(ChargeModel, charge.id)
        if model is None:
            raise NotFoundException("Charge", charge.id)
        self._apply(model, charge)
        await self.session.flush()
        await self.session.refresh(model)
        return self._to_entity(model)


class SQLAlchemyPurchaseRepository(PurchaseRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PurchaseModel) -> Purchase:
        return Purchase(
            id=model.id,
            order_id=model.order_id,
            seller_id=model.seller_id,
            line_item_uid=model.line_item_uid,
            total_transaction_cents=model.total_transaction_cents,
            amount_for_gumroad_cents=model.amount_for_gumroad_cents,
            quantity=model.quantity,
            merchant_account_id=model.merchant_account_id,
            purchaser_id=model.purchaser_id,
            save_card=model.save_card,
            is_test_purchase=model.is_test_purchase,
            is_preorder_authorization=model.is_preorder_authorization,
            is_free_trial_purchase=model.is_free_trial_purchase,
            is_recurring_billing=model.is_recurring_billing,
            state=PurchaseState(model.state),
            charge_id=model.charge_id,
            charge_processor_id=model.charge_processor_id,
            processor_charge_id=model.processor_charge_id,
            processor_payment_intent_id=model.processor_payment_intent_id,
            processor_setup_intent_id=model.processor_setup_intent_id,
            processor_fee_cents=model.processor_fee_cents,
            card_fingerprint=model.card_fingerprint,
            errors=list(model.errors or []),
            succeeded_at=model.succeeded_at,
            failed_at=model.failed_at,
        )

    @staticmethod
    def _apply(model: PurchaseModel, entity: Purchase) -> None:
        model.state = entity.state.value
        model.charge_id = entity.charge_id
        model.charge_processor_id = entity.charge_processor_id
        model.processor_charge_id = entity.processor_charge_id
        model.processor_payment_intent_id = entity.processor_payment_intent_id
        model.processor_setup_intent_id = entity.processor_setup_intent_id
        model.processor_fee_cents = entity.processor_fee_cents
        model.card_fingerprint = entity.card_fingerprint
        model.errors = list(entity.errors)
        model.succeeded_at = entity.succeeded_at
        model.failed_at = entity.failed_at

    async def get_by_id(self, purchase_id: int) -> Optional[Purchase]:
        model = await self.session.get(PurchaseModel, purchase_id)
        return self._to_entity(model) if model else None

    async def list_for_order(self, order_id: str) -> List[Purchase]:
        result = await self.session.execute(
            select(PurchaseModel).where(PurchaseModel.order_id == order_id).order_by(PurchaseModel.id)
        )
        return [self._to_entity(m) for m in result.scalars().all()]

    async def update(self, purchase: Purchase) -> Purchase:
        model = await self.session.get(PurchaseModel, purchase.id)
        if model is None:
            raise NotFoundException("Purchase", purchase.id)
        self._apply(model, purchase)
        await self.session.flush()
        return self._to_entity(model)

    @asynccontextmanager
    async def locked(self, purchase_id: int) -> AsyncIterator[Optional[Purchase]]:
        result = await self.session.execute(
            select(PurchaseModel)
            .where(PurchaseModel.id == purchase_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        if model is None:
            yield None
            return
        purchase = self._to_entity(model)
        yield purchase
        self._apply(model, purchase)
        await self.session.flush()


class SQLAlchemyMerchantAccountRepository(MerchantAccountRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, merchant_account_id: int) -> Optional[MerchantAccount]:
        model = await self.session.get(MerchantAccountModel, merchant_account_id)
        if model is None:
            return None
        return MerchantAccount(
            id=model.id,
            charge_processor_id=model.charge_processor_id,
            charge_processor_merchant_id=model.charge_processor_merchant_id,
            user_id=model.user_id,
            is_stripe_connect=model.is_stripe_connect,
            country=model.country,
        )
