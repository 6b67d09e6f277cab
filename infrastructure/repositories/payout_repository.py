"""
Payout repositories - SQLAlchemy implementations.
"""
from contextlib import asynccontextmanager
from datetime import date
from typing import AsyncIterator, List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.logging_config import get_logger
from domain.charging.entity import HolderOfFunds
from domain.common.exceptions import NotFoundException
from domain.payout.entity import Balance, BalanceState, Payment, PayoutRecipient, PayoutState, SplitPayment
from domain.payout.exceptions import PayoutError
from domain.payout.repository import PayoutPaymentRepository, PayoutRecipientRepository
from infrastructure.models.payout import BalanceModel, PayoutModel, PayoutRecipientModel


logger = get_logger(__name__)


class SQLAlchemyPayoutPaymentRepository(PayoutPaymentRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PayoutModel) -> Payment:
        return Payment(
            id=model.id,
            user_id=model.user_id,
            amount_cents=model.amount_cents,
            currency=model.currency,
            state=PayoutState(model.state),
            payment_address=model.payment_address,
            correlation_id=model.correlation_id,
            txn_id=model.txn_id,
            processor_fee_cents=model.processor_fee_cents,
            gumroad_fee_cents=model.gumroad_fee_cents,
            failure_reason=model.failure_reason,
            was_created_in_split_mode=model.was_created_in_split_mode,
            split_payments_info=[SplitPayment.from_dict(d) for d in (model.split_payments_info or [])],
            payout_period_end_date=model.payout_period_end_date,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    @staticmethod
    def _apply(model: PayoutModel, entity: Payment) -> None:
        model.amount_cents = entity.amount_cents
        model.currency = entity.currency
        model.state = entity.state.value
        model.payment_address = entity.payment_address
        model.correlation_id = entity.correlation_id
        model.txn_id = entity.txn_id
        model.processor_fee_cents = entity.processor_fee_cents
        model.gumroad_fee_cents = entity.gumroad_fee_cents
        model.failure_reason = entity.failure_reason
        model.was_created_in_split_mode = entity.was_created_in_split_mode
        # a new list so the JSON column is flagged dirty
        model.split_payments_info = [s.to_dict() for s in entity.split_payments_info]
        model.payout_period_end_date = entity.payout_period_end_date

    async def create(self, payment: Payment) -> Payment:
        model = PayoutModel(user_id=payment.user_id)
        self._apply(model, payment)
        if payment.created_at is not None:
            model.created_at = payment.created_at
        self.session.add(model)
        await self.session.flush()
        await self.session.refresh(model)
        logger.info("payout_created", payment_id=model.id, user_id=model.user_id, amount_cents=model.amount_cents)
        return self._to_entity(model)

    async def get_by_id(self, payment_id: int) -> Optional[Payment]:
        model = await self.session.get(PayoutModel, payment_id)
        return self._to_entity(model) if model else None

    async def list_processing_ids_for_user(self, user_id: int) -> List[int]:
        result = await self.session.execute(
            select(PayoutModel.id)
            .where(PayoutModel.user_id == user_id, PayoutModel.state == PayoutState.PROCESSING.value)
            .order_by(PayoutModel.id)
        )
        return list(result.scalars().all())

    async def update(self, payment: Payment) -> Payment:
        model = await self.session.get(PayoutModel, payment.id)
        if model is None:
            raise NotFoundException("Payout", payment.id)
        self._apply(model, payment)
        await self.session.flush()
        return self._to_entity(model)

    @asynccontextmanager
    async def locked(self, payment_id: int) -> AsyncIterator[Optional[Payment]]:
        result = await self.session.execute(
            select(PayoutModel)
            .where(PayoutModel.id == payment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        if model is None:
            yield None
            return
        payment = self._to_entity(model)
        yield payment
        self._apply(model, payment)
        await self.session.flush()


class SQLAlchemyPayoutRecipientRepository(PayoutRecipientRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PayoutRecipientModel) -> PayoutRecipient:
        return PayoutRecipient(
            id=model.id,
            paypal_payout_email=model.paypal_payout_email,
            legal_entity_name=model.legal_entity_name,
            country=model.country,
            has_active_bank_account=model.has_active_bank_account,
            has_paypal_account_connected=model.has_paypal_account_connected,
            payable_via_stripe=model.payable_via_stripe,
            should_paypal_payout_be_split=model.should_paypal_payout_be_split,
            split_payment_by_cents=model.split_payment_by_cents,
            paypal_payout_fee_waived=model.paypal_payout_fee_waived,
            payout_notes=list(model.payout_notes or []),
        )

    async def get_by_id(self, user_id: int) -> Optional[PayoutRecipient]:
        model = await self.session.get(PayoutRecipientModel, user_id)
        return self._to_entity(model) if model else None

    async def update(self, recipient: PayoutRecipient) -> PayoutRecipient:
        model = await self.session.get(PayoutRecipientModel, recipient.id)
        if model is None:
            raise NotFoundException("PayoutRecipient", recipient.id)
        model.payout_notes = list(recipient.payout_notes)
        await self.session.flush()
        return self._to_entity(model)

    @staticmethod
    def _balance_to_entity(model: BalanceModel) -> Balance:
        return Balance(
            id=model.id,
            user_id=model.user_id,
            date=model.date,
            amount_cents=model.amount_cents,
            state=BalanceState(model.state),
            holder_of_funds=HolderOfFunds(model.holder_of_funds),
            holding_currency=model.holding_currency,
            payout_id=model.payout_id,
        )

    async def unpaid_balances(self, user_id: int, payout_period_end_date: date) -> List[Balance]:
        result = await self.session.execute(
            select(BalanceModel)
            .where(
                BalanceModel.user_id == user_id,
                BalanceModel.state == BalanceState.UNPAID.value,
                BalanceModel.date <= payout_period_end_date,
            )
            .order_by(BalanceModel.date, BalanceModel.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return [self._balance_to_entity(m) for m in result.scalars().all()]

    async def attach_balances(self, balance_ids: Sequence[int], payment_id: int) -> None:
        if not balance_ids:
            return
        result = await self.session.execute(
            update(BalanceModel)
            .where(BalanceModel.id.in_(list(balance_ids)), BalanceModel.state == BalanceState.UNPAID.value)
            .values(state=BalanceState.PROCESSING.value, payout_id=payment_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != len(balance_ids):
            raise PayoutError(
                f"Balances of payout {payment_id} are no longer unpaid",
                payment_id=payment_id,
                details={"balance_ids": list(balance_ids)},
            )
        logger.info("payout_balances_attached", payment_id=payment_id, balances=len(balance_ids))

    async def settle_balances(self, payment_id: int, state: BalanceState) -> None:
        values = {"state": state.value}
        if state == BalanceState.UNPAID:
            values["payout_id"] = None
        result = await self.session.execute(
            update(BalanceModel)
            .where(BalanceModel.payout_id == payment_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        logger.info("payout_balances_settled", payment_id=payment_id, state=state.value, balances=result.rowcount)
