"""
Creates the combined charge of one seller's purchases.
"""
from __future__ import annotations

from typing import Optional, Sequence

from application.services.charge_processor_dispatcher import ChargeProcessorDispatcher
from core.logging_config import get_logger
from domain.charging.chargeable import Chargeable
from domain.charging.entity import GENERIC_CHARGE_ERROR, Charge, MerchantAccount, Purchase
from domain.charging.exceptions import ChargeProcessorError, ChargeProcessorInvalidRequestError
from domain.charging.intents import ChargeIntent
from domain.charging.repository import ChargeRepository


logger = get_logger(__name__)


class ChargeCreationService:
    def __init__(self, dispatcher: ChargeProcessorDispatcher, charges: ChargeRepository) -> None:
        self.dispatcher = dispatcher
        self.charges = charges

    async def create(
        self,
        *,
        charge: Charge,
        merchant_account: MerchantAccount,
        chargeable: Chargeable,
        purchases: Sequence[Purchase],
        amount_cents: int,
        amount_for_gumroad_cents: int,
        setup_future_charges: bool,
        off_session: bool,
        statement_description: Optional[str] = None,
        mandate_options: Optional[dict] = None,
    ) -> ChargeIntent:
        charge.merchant_account_id = merchant_account.id
        charge.charge_processor_id = merchant_account.charge_processor_id
        charge.set_amounts(amount_cents, amount_for_gumroad_cents)
        await self.charges.update(charge)

        purchase_ids = [p.id for p in purchases]
        if charge.payment_intent_id:
            return await self._resume(charge, merchant_account, purchase_ids)

        try:
            intent = await self.dispatcher.create_payment_intent_or_charge(
                merchant_account,
                chargeable,
                amount_cents,
                amount_for_gumroad_cents,
                charge.reference,
                f"Order {charge.order_id}",
                metadata={"purchases": ",".join(str(pid) for pid in purchase_ids)},
                statement_description=statement_description,
                transfer_group=charge.reference,
                off_session=off_session,
                setup_future_charges=setup_future_charges,
                mandate_options=mandate_options,
            )
        except ChargeProcessorError:
            charge.mark_failed()
            await self.charges.update(charge)
            raise

        charge.record_charge_intent(intent)
        await self.charges.update(charge)
        logger.info(
            "charge_created",
            charge_id=charge.id,
            order_id=charge.order_id,
            seller_id=charge.seller_id,
            purchase_ids=purchase_ids,
            state=charge.state.value,
        )
        return intent

    async def _resume(self, charge: Charge, merchant_account: MerchantAccount, purchase_ids: list) -> ChargeIntent:
        """A charge that already owns an intent is driven from that intent, never charged twice."""
        intent = await self.dispatcher.get_charge_intent(merchant_account, charge.payment_intent_id)
        if intent is None:
            logger.error(
                "charge_intent_missing",
                charge_id=charge.id,
                payment_intent_id=charge.payment_intent_id,
            )
            raise ChargeProcessorInvalidRequestError(
                GENERIC_CHARGE_ERROR, processor=merchant_account.charge_processor_id
            )

        charge.record_charge_intent(intent)
        await self.charges.update(charge)
        logger.info(
            "charge_intent_resumed",
            charge_id=charge.id,
            order_id=charge.order_id,
            payment_intent_id=intent.id,
            purchase_ids=purchase_ids,
            state=charge.state.value,
        )
        return intent
