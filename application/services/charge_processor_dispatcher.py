"""
Charge processor registry and dispatcher.

Processors are registered once at startup under their identifier. The
dispatcher routes every charging operation to the processor selected by a
merchant account or an explicit identifier, and funnels webhook deliveries
into the single ``charge_event`` channel.
"""
from __future__ import annotations

from typing import Any, Iterable, Iterator, Mapping, Optional, Sequence

from application.dtos.charging import StoredPaymentMethod
from application.ports.charge_processor import ChargeProcessor
from application.ports.notifications import EventPublisher
from core.logging_config import get_logger
from domain.charging.chargeable import Chargeable
from domain.charging.entity import HolderOfFunds, MerchantAccount, Purchase
from domain.charging.events import CHARGE_EVENT_TOPIC, ChargeEvent
from domain.charging.exceptions import ChargeProcessorInvalidRequestError, UnknownChargeProcessorError
from domain.charging.intents import ChargeIntent, ProcessorCharge, ProcessorRefund, SetupIntent


logger = get_logger(__name__)


class ChargeProcessorRegistry:
    def __init__(self, processors: Iterable[ChargeProcessor] = ()) -> None:
        self._processors: dict[str, ChargeProcessor] = {}
        for processor in processors:
            self.register(processor)

    def register(self, processor: ChargeProcessor) -> None:
        key = str(processor.charge_processor_id)
        if key in self._processors:
            raise ValueError(f"Charge processor already registered: {key}")
        self._processors[key] = processor

    def get(self, charge_processor_id: Optional[str]) -> Optional[ChargeProcessor]:
        if not charge_processor_id:
            return None
        return self._processors.get(str(charge_processor_id))

    def ids(self) -> list[str]:
        return list(self._processors)

    def __iter__(self) -> Iterator[ChargeProcessor]:
        return iter(self._processors.values())

    def __contains__(self, charge_processor_id: object) -> bool:
        return str(charge_processor_id) in self._processors


class ChargeProcessorDispatcher:
    def __init__(self, registry: ChargeProcessorRegistry, publisher: EventPublisher) -> None:
        self.registry = registry
        self.publisher = publisher

    def _require(self, charge_processor_id: Optional[str]) -> ChargeProcessor:
        processor = self.registry.get(charge_processor_id)
        if processor is None:
            raise UnknownChargeProcessorError(charge_processor_id)
        return processor

    def get_processor(self, charge_processor_id: Optional[str]) -> Optional[ChargeProcessor]:
        return self.registry.get(charge_processor_id)

    def supports_intents(self, charge_processor_id: Optional[str]) -> bool:
        processor = self.registry.get(charge_processor_id)
        return bool(processor and processor.supports_intents)

    def display_name(self, charge_processor_id: Optional[str]) -> Optional[str]:
        processor = self.registry.get(charge_processor_id)
        return processor.display_name if processor else None

    def charge_processor_success_statuses(self, charge_processor_id: Optional[str]) -> Sequence[str]:
        processor = self.registry.get(charge_processor_id)
        return tuple(processor.valid_transaction_statuses) if processor else ()

    # Chargeables

    def get_chargeable_for_params(
        self, params: Mapping[str, Any], gumroad_guid: Optional[str] = None
    ) -> Optional[Chargeable]:
        tokens = []
        for processor in self.registry:
            token = processor.get_chargeable_for_params(params, gumroad_guid)
            if token is not None:
                tokens.append(token)
        return Chargeable(tokens) if tokens else None

    def get_chargeable_for_data(
        self,
        stored: StoredPaymentMethod,
        merchant_account: Optional[MerchantAccount] = None,
    ) -> Optional[Chargeable]:
        tokens = []
        card_data = stored.card_data()
        for processor in self.registry:
            reusable_token = stored.reusable_tokens.get(str(processor.charge_processor_id))
            if not reusable_token:
                continue
            token = processor.get_chargeable_for_data(reusable_token, card_data, merchant_account)
            if token is not None:
                tokens.append(token)
        return Chargeable(tokens) if tokens else None

    # Charges

    async def get_charge(
        self,
        charge_processor_id: str,
        charge_id: str,
        merchant_account: Optional[MerchantAccount] = None,
    ) -> ProcessorCharge:
        return await self._require(charge_processor_id).get_charge(charge_id, merchant_account)

    async def search_charge(
        self,
        charge_processor_id: str,
        reference: str,
        merchant_account: Optional[MerchantAccount] = None,
    ) -> Optional[ProcessorCharge]:
        return await self._require(charge_processor_id).search_charge(reference, merchant_account)

    async def get_or_search_charge(
        self,
        purchase: Purchase,
        merchant_account: Optional[MerchantAccount] = None,
        reference: Optional[str] = None,
    ) -> Optional[ProcessorCharge]:
        if not purchase.charge_processor_id:
            return None
        if purchase.processor_charge_id:
            return await self.get_charge(
                purchase.charge_processor_id, purchase.processor_charge_id, merchant_account
            )
        return await self.search_charge(
            purchase.charge_processor_id, reference or str(purchase.id), merchant_account
        )

    async def create_payment_intent_or_charge(
        self,
        merchant_account: MerchantAccount,
        chargeable: Chargeable,
        amount_cents: int,
        amount_for_gumroad_cents: int,
        reference: str,
        description: str,
        **options: Any,
    ) -> ChargeIntent:
        processor = self._require(merchant_account.charge_processor_id)
        token = chargeable.get_chargeable_for(processor.charge_processor_id)
        if token is None:
            raise ChargeProcessorInvalidRequestError(
                "Payment method cannot be charged by this processor",
                processor=processor.charge_processor_id,
            )
        logger.info(
            "charge_create_request",
            processor=processor.charge_processor_id,
            merchant_account_id=merchant_account.id,
            reference=reference,
            amount_cents=amount_cents,
            amount_for_gumroad_cents=amount_for_gumroad_cents,
            off_session=options.get("off_session", True),
        )
        intent = await processor.create_payment_intent_or_charge(
            merchant_account,
            token,
            amount_cents,
            amount_for_gumroad_cents,
            reference,
            description,
            **options,
        )
        logger.info(
            "charge_create_response",
            processor=processor.charge_processor_id,
            reference=reference,
            intent_id=intent.id,
            state=intent.state.value,
        )
        return intent

    async def refund(
        self,
        charge_processor_id: str,
        charge_id: str,
        *,
        amount_cents: Optional[int] = None,
        merchant_account: Optional[MerchantAccount] = None,
        reverse_transfer: bool = True,
        is_for_fraud: bool = False,
    ) -> ProcessorRefund:
        logger.info(
            "charge_refund_request",
            processor=charge_processor_id,
            charge_id=charge_id,
            amount_cents=amount_cents,
        )
        return await self._require(charge_processor_id).refund(
            charge_id,
            amount_cents=amount_cents,
            merchant_account=merchant_account,
            reverse_transfer=reverse_transfer,
            is_for_fraud=is_for_fraud,
        )

    async def fight_chargeback(
        self, charge_processor_id: str, charge_id: str, dispute_evidence: Mapping[str, Any]
    ) -> None:
        await self._require(charge_processor_id).fight_chargeback(charge_id, dispute_evidence)

    # Intents. Processors without intent support answer None.

    async def get_charge_intent(
        self, merchant_account: MerchantAccount, payment_intent_id: Optional[str]
    ) -> Optional[ChargeIntent]:
        if not payment_intent_id:
            return None
        processor = self._require(merchant_account.charge_processor_id)
        return await processor.get_charge_intent(payment_intent_id, merchant_account)

    async def get_setup_intent(
        self, merchant_account: MerchantAccount, setup_intent_id: Optional[str]
    ) -> Optional[SetupIntent]:
        if not setup_intent_id:
            return None
        processor = self._require(merchant_account.charge_processor_id)
        return await processor.get_setup_intent(setup_intent_id, merchant_account)

    async def setup_future_charges(
        self,
        merchant_account: MerchantAccount,
        chargeable: Chargeable,
        mandate_options: Optional[dict] = None,
    ) -> Optional[SetupIntent]:
        processor = self._require(merchant_account.charge_processor_id)
        token = chargeable.get_chargeable_for(processor.charge_processor_id)
        if token is None:
            raise ChargeProcessorInvalidRequestError(
                "Payment method cannot be saved with this processor",
                processor=processor.charge_processor_id,
            )
        return await processor.setup_future_charges(merchant_account, token, mandate_options)

    async def confirm_payment_intent(
        self, merchant_account: MerchantAccount, payment_intent_id: str
    ) -> Optional[ChargeIntent]:
        processor = self._require(merchant_account.charge_processor_id)
        return await processor.confirm_payment_intent(merchant_account, payment_intent_id)

    async def cancel_payment_intent(self, merchant_account: MerchantAccount, payment_intent_id: str) -> None:
        processor = self._require(merchant_account.charge_processor_id)
        await processor.cancel_payment_intent(merchant_account, payment_intent_id)

    async def cancel_setup_intent(self, merchant_account: MerchantAccount, setup_intent_id: str) -> None:
        processor = self._require(merchant_account.charge_processor_id)
        await processor.cancel_setup_intent(merchant_account, setup_intent_id)

    # Funds / links

    def holder_of_funds(self, merchant_account: MerchantAccount) -> HolderOfFunds:
        return self._require(merchant_account.charge_processor_id).holder_of_funds(merchant_account)

    def transaction_url(self, charge_processor_id: str, charge_id: str) -> str:
        return self._require(charge_processor_id).transaction_url(charge_id)

    def transaction_url_for_seller(
        self, charge_processor_id: Optional[str], charge_id: Optional[str], charged_using_gumroad_account: bool
    ) -> Optional[str]:
        if not charge_processor_id or not charge_id or charged_using_gumroad_account:
            return None
        return self.transaction_url(charge_processor_id, charge_id)

    def transaction_url_for_admin(
        self, charge_processor_id: Optional[str], charge_id: Optional[str], charged_using_gumroad_account: bool
    ) -> Optional[str]:
        if not charge_processor_id or not charge_id or not charged_using_gumroad_account:
            return None
        return self.transaction_url(charge_processor_id, charge_id)

    # Events

    async def handle_event(self, event: ChargeEvent) -> None:
        logger.info(
            "charge_event_published",
            processor=event.charge_processor_id,
            event_id=event.charge_event_id,
            event_type=event.type.value,
            charge_id=event.charge_id,
        )
        await self.publisher.publish(CHARGE_EVENT_TOPIC, event)

    async def receive_webhook(
        self, charge_processor_id: str, headers: Mapping[str, Any], body: bytes
    ) -> list[ChargeEvent]:
        events = self._require(charge_processor_id).parse_webhook(headers, body)
        for event in events:
            await self.handle_event(event)
        if not events:
            logger.info("charge_webhook_ignored", processor=charge_processor_id)
        return events
