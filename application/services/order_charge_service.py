"""
Order charge orchestration.

Charges an order once per seller, decides between charging now and only
saving the payment method for later, drives processor intents and guarantees
that every submitted purchase ends with exactly one response: success,
requires action (SCA) or an error message.
"""
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from typing import Optional, Sequence

from application.dtos.charging import LineItemResponse, OrderChargeRequest, OrderChargeResult, OrderRef
from application.ports.jobs import FAIL_ABANDONED_PURCHASE, JobScheduler
from application.services.charge_creation_service import ChargeCreationService
from application.services.charge_processor_dispatcher import ChargeProcessorDispatcher
from core.logging_config import get_logger
from domain.charging.chargeable import Chargeable
from domain.charging.entity import (
    DEFAULT_PURCHASE_ERROR,
    GENERIC_CHARGE_ERROR,
    Charge,
    MerchantAccount,
    Order,
    Purchase,
)
from domain.charging.exceptions import (
    ChargeProcessorCardError,
    ChargeProcessorInvalidRequestError,
    MerchantAccountMismatchError,
)
from domain.charging.intents import TIME_TO_COMPLETE_SCA, ChargeIntent, SetupIntent
from domain.charging.repository import ChargeRepository, MerchantAccountRepository, PurchaseRepository
from domain.common.exceptions import NotFoundException


logger = get_logger(__name__)

MANDATE_PREFIX = "Mandate-"
CARD_NOT_CHARGEABLE_ERROR = "We couldn't charge your card. Try again or use a different card."


@dataclass
class _SellerRun:
    """Per seller-group state shared by the steps of one group."""

    merchant_account: Optional[MerchantAccount] = None
    charge_intent: Optional[ChargeIntent] = None
    setup_intent: Optional[SetupIntent] = None

    @property
    def requires_action(self) -> bool:
        return bool(
            (self.charge_intent and self.charge_intent.requires_action)
            or (self.setup_intent and self.setup_intent.requires_action)
        )


class OrderChargeService:
    def __init__(
        self,
        *,
        dispatcher: ChargeProcessorDispatcher,
        charges: ChargeRepository,
        purchases: PurchaseRepository,
        merchant_accounts: MerchantAccountRepository,
        scheduler: JobScheduler,
        charge_creator: Optional[ChargeCreationService] = None,
    ) -> None:
        self.dispatcher = dispatcher
        self.charges = charges
        self.purchases = purchases
        self.merchant_accounts = merchant_accounts
        self.scheduler = scheduler
        self.charge_creator = charge_creator or ChargeCreationService(dispatcher, charges)

    async def perform(self, order: Order, request: OrderChargeRequest) -> OrderChargeResult:
        result = OrderChargeResult(order_id=order.id)

        # Orders spanning several sellers are charged off-session with a
        # reusable payment method created before the order was submitted.
        non_free_sellers = {p.seller_id for p in order.purchases if not p.is_free}
        off_session = len(non_free_sellers) > 1

        logger.info(
            "order_charge_started",
            order_id=order.id,
            purchases=len(order.purchases),
            sellers=len({p.seller_id for p in order.purchases}),
            off_session=off_session,
        )

        for seller_id, seller_purchases in self._group_by_seller(order.purchases).items():
            run = _SellerRun()
            try:
                charge = await self._charge_for(order.id, seller_id)
                result.charge_ids.append(charge.id)
                for purchase in seller_purchases:
                    purchase.charge_id = charge.id
                    self._mark_successful_if_free_or_test(purchase, result)

                in_progress = [p for p in seller_purchases if p.in_progress]
                if not in_progress:
                    continue
                await self._charge_seller_group(order, request, charge, in_progress, off_session, run)
            except Exception as exc:
                logger.error(
                    "order_charge_group_failed",
                    order_id=order.id,
                    seller_id=seller_id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                    exc_info=True,
                )
            finally:
                await self._ensure_all_purchases_processed(order, seller_purchases, run, result)

        logger.info(
            "order_charge_finished",
            order_id=order.id,
            charges=result.charge_ids,
            succeeded=sum(1 for r in result.responses.values() if r.success and not r.requires_action),
            requires_action=sum(1 for r in result.responses.values() if r.requires_action),
            failed=sum(1 for r in result.responses.values() if not r.success),
        )
        return result

    @staticmethod
    def _group_by_seller(purchases: Sequence[Purchase]) -> dict[int, list[Purchase]]:
        groups: dict[int, list[Purchase]] = {}
        for purchase in purchases:
            groups.setdefault(purchase.seller_id, []).append(purchase)
        return groups

    async def _charge_for(self, order_id: str, seller_id: int) -> Charge:
        existing = await self.charges.find_active(order_id, seller_id)
        if existing is not None:
            logger.info("order_charge_reused", order_id=order_id, seller_id=seller_id, charge_id=existing.id)
            return existing
        return await self.charges.create(Charge(id=None, order_id=order_id, seller_id=seller_id))

    def _mark_successful_if_free_or_test(self, purchase: Purchase, result: OrderChargeResult) -> None:
        if not purchase.in_progress:
            return
        if purchase.is_free or (purchase.is_test_purchase and not purchase.is_preorder_authorization):
            purchase.mark_successful()
            result.responses[purchase.line_item_uid] = LineItemResponse(success=True, purchase=purchase.response())

    async def _charge_seller_group(
        self,
        order: Order,
        request: OrderChargeRequest,
        charge: Charge,
        purchases: list[Purchase],
        off_session: bool,
        run: _SellerRun,
    ) -> None:
        merchant_account_ids = {p.merchant_account_id for p in purchases if p.merchant_account_id is not None}
        if len(merchant_account_ids) > 1:
            raise MerchantAccountMismatchError(order.id, [p.id for p in purchases])

        merchant_account = await self._merchant_account_for(purchases[0])
        run.merchant_account = merchant_account
        charge.merchant_account_id = merchant_account.id

        chargeable_from_params = await self._prepare_chargeable(
            lambda: self.dispatcher.get_chargeable_for_params(request.card_params, request.browser_guid),
            purchases,
        )

        setup_future_charges = any(
            (p.purchaser_id is not None and p.save_card and chargeable_from_params is not None
             and chargeable_from_params.can_be_saved())
            or p.is_preorder_authorization
            or p.is_recurring_billing
            for p in purchases
        )

        chargeable = chargeable_from_params
        if chargeable is None and request.stored_payment_method is not None:
            chargeable = await self._prepare_chargeable(
                lambda: self.dispatcher.get_chargeable_for_data(request.stored_payment_method, merchant_account),
                purchases,
            )

        for purchase in purchases:
            if purchase.charge_processor_id is None and chargeable is not None:
                purchase.charge_processor_id = chargeable.charge_processor_id
            if chargeable is None and not purchase.is_test_purchase and not purchase.errors:
                purchase.add_error(CARD_NOT_CHARGEABLE_ERROR)

        all_in_progress = [p for p in purchases if p.in_progress and not p.errors]
        only_setup_for_future_charges = bool(all_in_progress) and all(
            p.is_free_trial_purchase or p.is_preorder_authorization for p in all_in_progress
        )

        if only_setup_for_future_charges:
            card_already_saved = chargeable_from_params is None and chargeable is not None
            await self._setup_for_future_charges_without_charging(
                purchases, charge, merchant_account, chargeable, card_already_saved, run
            )
        else:
            await self._create_charge_for_seller_purchases(
                purchases, charge, merchant_account, chargeable, off_session,
                setup_future_charges, request.statement_description, run,
            )

    async def _merchant_account_for(self, purchase: Purchase) -> MerchantAccount:
        if purchase.merchant_account_id is None:
            raise NotFoundException("MerchantAccount", None)
        merchant_account = await self.merchant_accounts.get_by_id(purchase.merchant_account_id)
        if merchant_account is None:
            raise NotFoundException("MerchantAccount", purchase.merchant_account_id)
        return merchant_account

    async def _prepare_chargeable(self, build, purchases: Sequence[Purchase]) -> Optional[Chargeable]:
        chargeable = build()
        if chargeable is None:
            return None
        try:
            await chargeable.prepare()
        except (ChargeProcessorCardError, ChargeProcessorInvalidRequestError) as exc:
            logger.info("chargeable_prepare_failed", error_code=exc.error_code, error=exc.message)
            for purchase in purchases:
                if purchase.in_progress and not purchase.errors:
                    purchase.add_error(exc.message)
            return None
        return chargeable

    async def _setup_for_future_charges_without_charging(
        self,
        purchases: list[Purchase],
        charge: Charge,
        merchant_account: MerchantAccount,
        chargeable: Optional[Chargeable],
        card_already_saved: bool,
        run: _SellerRun,
    ) -> None:
        if not self.dispatcher.supports_intents(merchant_account.charge_processor_id) or card_already_saved:
            for purchase in purchases:
                self._mark_setup_future_charges_successful(purchase)
            return

        if chargeable is None:
            return

        mandate_options = None
        if chargeable.requires_mandate():
            mandate_options = self.mandate_options(purchases, with_currency=True)
        setup_intent = await self.dispatcher.setup_future_charges(merchant_account, chargeable, mandate_options)
        run.setup_intent = setup_intent
        if setup_intent is None:
            return

        charge.record_setup_intent(setup_intent)
        await self.charges.update(charge)
        for purchase in purchases:
            purchase.processor_setup_intent_id = setup_intent.id
            if setup_intent.succeeded:
                self._mark_setup_future_charges_successful(purchase)
            elif not setup_intent.requires_action and not purchase.errors:
                purchase.add_error(GENERIC_CHARGE_ERROR)

    @staticmethod
    def _mark_setup_future_charges_successful(purchase: Purchase) -> None:
        if purchase.in_progress and not purchase.errors:
            purchase.mark_successful()

    async def _create_charge_for_seller_purchases(
        self,
        purchases: list[Purchase],
        charge: Charge,
        merchant_account: MerchantAccount,
        chargeable: Optional[Chargeable],
        off_session: bool,
        setup_future_charges: bool,
        statement_description: Optional[str],
        run: _SellerRun,
    ) -> None:
        purchases_to_charge = [
            p for p in purchases
            if not (p.is_free_trial_purchase or p.is_preorder_authorization or p.is_test_purchase
                    or p.errors or not p.in_progress)
        ]
        if not purchases_to_charge or chargeable is None:
            return

        amount_cents = sum(p.total_transaction_cents for p in purchases_to_charge)
        amount_for_gumroad_cents = sum(p.amount_for_gumroad_cents for p in purchases_to_charge)
        mandate_options = None
        if setup_future_charges and chargeable.requires_mandate():
            mandate_options = self.mandate_options(purchases_to_charge)

        try:
            charge_intent = await self.charge_creator.create(
                charge=charge,
                merchant_account=merchant_account,
                chargeable=chargeable,
                purchases=purchases_to_charge,
                amount_cents=amount_cents,
                amount_for_gumroad_cents=amount_for_gumroad_cents,
                setup_future_charges=setup_future_charges,
                off_session=off_session,
                statement_description=statement_description,
                mandate_options=mandate_options,
            )
        except (ChargeProcessorCardError, ChargeProcessorInvalidRequestError) as exc:
            logger.info(
                "order_charge_declined",
                order_id=charge.order_id,
                charge_id=charge.id,
                error_code=exc.error_code,
                error=exc.message,
            )
            for purchase in purchases_to_charge:
                purchase.add_error(exc.message)
            return

        run.charge_intent = charge_intent
        if charge_intent.succeeded:
            charged = {id(p) for p in purchases_to_charge}
            for purchase in purchases:
                if id(purchase) in charged:
                    if charge_intent.id:
                        purchase.processor_payment_intent_id = charge_intent.id
                    if charge_intent.charge is not None:
                        purchase.save_charge_data(charge_intent.charge, chargeable.fingerprint)
                if purchase.in_progress and not purchase.errors:
                    purchase.mark_successful()
        elif charge_intent.requires_action:
            for purchase in purchases_to_charge:
                purchase.processor_payment_intent_id = charge_intent.id
        else:
            for purchase in purchases:
                if purchase.in_progress and not purchase.errors:
                    purchase.add_error(GENERIC_CHARGE_ERROR)

    async def _ensure_all_purchases_processed(
        self,
        order: Order,
        purchases: Sequence[Purchase],
        run: _SellerRun,
        result: OrderChargeResult,
    ) -> None:
        for purchase in purchases:
            uid = purchase.line_item_uid
            if uid not in result.responses:
                # Still in progress: either an SCA challenge is pending, or nothing resolved it.
                if purchase.in_progress:
                    if run.requires_action and not purchase.errors:
                        self._schedule_abandoned_purchase_check(purchase)
                    else:
                        purchase.mark_failed()
                result.responses[uid] = self._response_for(order, purchase, run)
            await self.purchases.update(purchase)

    def _response_for(self, order: Order, purchase: Purchase, run: _SellerRun) -> LineItemResponse:
        if purchase.errors or purchase.failed:
            message = purchase.errors[0] if purchase.errors else DEFAULT_PURCHASE_ERROR
            return LineItemResponse.error(message, purchase=purchase.response())

        merchant_account = run.merchant_account
        connect_account_id = None
        if merchant_account is not None and merchant_account.is_stripe_connect:
            connect_account_id = merchant_account.charge_processor_merchant_id
        order_ref = OrderRef(id=order.id, stripe_connect_account_id=connect_account_id)

        if run.charge_intent is not None and run.charge_intent.requires_action:
            return LineItemResponse(
                success=True,
                requires_card_action=True,
                client_secret=run.charge_intent.client_secret,
                order=order_ref,
            )
        if run.setup_intent is not None and run.setup_intent.requires_action:
            return LineItemResponse(
                success=True,
                requires_card_setup=True,
                client_secret=run.setup_intent.client_secret,
                order=order_ref,
            )
        return LineItemResponse(success=purchase.successful, purchase=purchase.response())

    def _schedule_abandoned_purchase_check(self, purchase: Purchase) -> None:
        self.scheduler.schedule(
            FAIL_ABANDONED_PURCHASE,
            kwargs={"purchase_id": purchase.id},
            delay_seconds=TIME_TO_COMPLETE_SCA.total_seconds(),
        )
        logger.info("abandoned_purchase_check_scheduled", purchase_id=purchase.id)

    @staticmethod
    def mandate_options(purchases: Sequence[Purchase], with_currency: bool = False) -> dict:
        """e-mandate options for cards that need one (India)."""
        if len(purchases) == 1 and purchases[0].is_recurring_billing:
            options = {
                "reference": MANDATE_PREFIX + uuid.uuid4().hex,
                "amount_type": "maximum",
                "amount": purchases[0].total_transaction_cents,
                "start_date": int(time.time()),
                "interval": "month",
                "interval_count": 1,
                "supported_types": ["india"],
            }
        else:
            options = {
                "reference": MANDATE_PREFIX + uuid.uuid4().hex,
                "amount_type": "maximum",
                "amount": max(p.total_transaction_cents for p in purchases),
                "start_date": int(time.time()),
                "interval": "sporadic",
                "supported_types": ["india"],
            }
        if with_currency:
            options["currency"] = "usd"
        return {"payment_method_options": {"card": {"mandate_options": options}}}
