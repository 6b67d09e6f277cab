"""
SCA timeout re-check.

Scheduled once, TIME_TO_COMPLETE_SCA after a purchase was left waiting for
buyer authentication. Resolved purchases are left alone; otherwise the pending
intent is cancelled and the purchase fails. Never reschedules itself.
"""
from __future__ import annotations

from typing import Optional

from application.services.charge_processor_dispatcher import ChargeProcessorDispatcher
from core.logging_config import get_logger
from domain.charging.entity import MerchantAccount, Purchase
from domain.charging.exceptions import ChargeProcessorError
from domain.charging.repository import MerchantAccountRepository, PurchaseRepository
from domain.common.exceptions import NotFoundException


logger = get_logger(__name__)


class FailAbandonedPurchaseService:
    def __init__(
        self,
        *,
        dispatcher: ChargeProcessorDispatcher,
        purchases: PurchaseRepository,
        merchant_accounts: MerchantAccountRepository,
    ) -> None:
        self.dispatcher = dispatcher
        self.purchases = purchases
        self.merchant_accounts = merchant_accounts

    async def perform(self, purchase_id: int) -> None:
        async with self.purchases.locked(purchase_id) as purchase:
            if purchase is None:
                logger.warning("abandoned_purchase_not_found", purchase_id=purchase_id)
                return
            if not purchase.in_progress:
                logger.info("abandoned_purchase_already_resolved", purchase_id=purchase_id, state=purchase.state.value)
                return

            merchant_account = await self.merchant_accounts.get_by_id(purchase.merchant_account_id)
            if merchant_account is None:
                raise NotFoundException("MerchantAccount", purchase.merchant_account_id)

            try:
                await self._cancel_pending_intent(merchant_account, purchase)
            except ChargeProcessorError:
                if await self._intent_resolved_in_parallel(merchant_account, purchase):
                    logger.info("abandoned_purchase_intent_resolved_in_parallel", purchase_id=purchase_id)
                    return
                raise

            purchase.mark_failed()
            logger.info("abandoned_purchase_failed", purchase_id=purchase_id)

    async def _cancel_pending_intent(self, merchant_account: MerchantAccount, purchase: Purchase) -> None:
        if purchase.processor_setup_intent_id:
            await self.dispatcher.cancel_setup_intent(merchant_account, purchase.processor_setup_intent_id)
        elif purchase.processor_payment_intent_id:
            await self.dispatcher.cancel_payment_intent(merchant_account, purchase.processor_payment_intent_id)

    async def _intent_resolved_in_parallel(self, merchant_account: MerchantAccount, purchase: Purchase) -> bool:
        intent: Optional[object]
        if purchase.processor_setup_intent_id:
            intent = await self.dispatcher.get_setup_intent(merchant_account, purchase.processor_setup_intent_id)
        else:
            intent = await self.dispatcher.get_charge_intent(merchant_account, purchase.processor_payment_intent_id)
        return intent is not None and (intent.succeeded or intent.canceled)
