"""
Charge processor port: the plugin contract every processor implements.

A processor is added by implementing this Protocol and registering it under
its identifier; nothing else in the application changes.
"""
from __future__ import annotations

from typing import Any, Mapping, Optional, Protocol, Sequence, runtime_checkable

from domain.charging.chargeable import ChargeableToken
from domain.charging.entity import HolderOfFunds, MerchantAccount
from domain.charging.events import ChargeEvent
from domain.charging.intents import ChargeIntent, ProcessorCharge, ProcessorRefund, SetupIntent


@runtime_checkable
class ChargeProcessor(Protocol):
    charge_processor_id: str
    display_name: str
    valid_transaction_statuses: Sequence[str]
    supports_intents: bool

    def get_chargeable_for_params(
        self, params: Mapping[str, Any], gumroad_guid: Optional[str] = None
    ) -> Optional[ChargeableToken]: ...

    def get_chargeable_for_data(
        self,
        reusable_token: str,
        card_data: Mapping[str, Any],
        merchant_account: Optional[MerchantAccount] = None,
    ) -> Optional[ChargeableToken]: ...

    async def get_charge(
        self, charge_id: str, merchant_account: Optional[MerchantAccount] = None
    ) -> ProcessorCharge: ...

    async def search_charge(
        self, reference: str, merchant_account: Optional[MerchantAccount] = None
    ) -> Optional[ProcessorCharge]: ...

    async def get_charge_intent(
        self, payment_intent_id: str, merchant_account: Optional[MerchantAccount] = None
    ) -> Optional[ChargeIntent]: ...

    async def get_setup_intent(
        self, setup_intent_id: str, merchant_account: Optional[MerchantAccount] = None
    ) -> Optional[SetupIntent]: ...

    async def setup_future_charges(
        self,
        merchant_account: MerchantAccount,
        chargeable: ChargeableToken,
        mandate_options: Optional[dict] = None,
    ) -> Optional[SetupIntent]: ...

    async def create_payment_intent_or_charge(
        self,
        merchant_account: MerchantAccount,
        chargeable: ChargeableToken,
        amount_cents: int,
        amount_for_gumroad_cents: int,
        reference: str,
        description: str,
        *,
        metadata: Optional[dict] = None,
        statement_description: Optional[str] = None,
        transfer_group: Optional[str] = None,
        off_session: bool = True,
        setup_future_charges: bool = False,
        mandate_options: Optional[dict] = None,
    ) -> ChargeIntent: ...

    async def confirm_payment_intent(
        self, merchant_account: MerchantAccount, payment_intent_id: str
    ) -> Optional[ChargeIntent]: ...

    async def cancel_payment_intent(
        self, merchant_account: MerchantAccount, payment_intent_id: str
    ) -> None: ...

    async def cancel_setup_intent(
        self, merchant_account: MerchantAccount, setup_intent_id: str
    ) -> None: ...

    async def refund(
        self,
        charge_id: str,
        *,
        amount_cents: Optional[int] = None,
        merchant_account: Optional[MerchantAccount] = None,
        reverse_transfer: bool = True,
        is_for_fraud: bool = False,
    ) -> ProcessorRefund: ...

    async def fight_chargeback(self, charge_id: str, dispute_evidence: Mapping[str, Any]) -> None: ...

    def holder_of_funds(self, merchant_account: MerchantAccount) -> HolderOfFunds: ...

    def transaction_url(self, charge_id: str) -> str: ...

    def parse_webhook(self, headers: Mapping[str, Any], body: bytes) -> list[ChargeEvent]: ...
