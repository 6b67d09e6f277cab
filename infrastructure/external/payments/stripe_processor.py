"""
Stripe charge processor (PaymentIntents / SetupIntents, Connect aware).

Three merchant account shapes are supported:
- platform account: the charge lands on the platform balance
- Stripe Connect account: the charge is created on the connected account and
  the platform takes ``application_fee_amount``
- custom account owned by a creator: destination charge via ``transfer_data``
"""
from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

import stripe

from core.logging_config import get_logger
from core.settings import StripeSettings
from domain.charging.chargeable import ChargeableToken
from domain.charging.entity import ChargeProcessorId, HolderOfFunds, MerchantAccount
from domain.charging.events import ChargeEvent, ChargeEventType
from domain.charging.exceptions import (
    ChargeProcessorInvalidRequestError,
    ChargeProcessorSignatureError,
)
from domain.charging.flow_of_funds import FlowOfFunds
from domain.charging.intents import (
    ChargeIntent,
    IntentState,
    ProcessorCharge,
    ProcessorRefund,
    SetupIntent,
)
from shared.codes.payment_codes import PROVIDER_STATUS_TO_INTERNAL

from .stripe_chargeables import (
    INDIA,
    StripeChargeableCreditCard,
    StripeChargeablePaymentMethod,
    StripeChargeableToken,
)
from .stripe_client import PROCESSOR, call_stripe, configure_stripe, field


logger = get_logger(__name__)

REFUND_REASON_FRAUDULENT = "fraudulent"
REQUIRES_CONFIRMATION = "requires_confirmation"
COMBINED_CHARGE_PREFIX = "CH-"
STATEMENT_DESCRIPTOR_MAX_LENGTH = 22
_STATEMENT_DESCRIPTOR_INVALID = re.compile(r"[^A-Z0-9./\s]", re.IGNORECASE)

# Stripe requests 3DS on every Indian card when preparing future charges.
REQUEST_MANUAL_3DS_PARAMS = {"payment_method_options": {"card": {"request_three_d_secure": "any"}}}

WEBHOOK_TOLERANCE_SECONDS = 300


def _deep_merge(target: dict, extra: Mapping[str, Any]) -> dict:
    for key, value in extra.items():
        if isinstance(value, Mapping) and isinstance(target.get(key), dict):
            _deep_merge(target[key], value)
        else:
            target[key] = _deep_merge({}, value) if isinstance(value, Mapping) else value
    return target


def sanitize_statement_descriptor(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    cleaned = _STATEMENT_DESCRIPTOR_INVALID.sub("", value).strip()[:STATEMENT_DESCRIPTOR_MAX_LENGTH]
    return cleaned or None


def _header(headers: Mapping[str, Any], name: str) -> Optional[str]:
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


def _timestamp(value: Any) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def get_charge_reference(stripe_object: Any) -> Optional[str]:
    transfer_group = field(stripe_object, "transfer_group") or ""
    if str(transfer_group).startswith(COMBINED_CHARGE_PREFIX):
        return transfer_group
    return field(field(stripe_object, "metadata"), "purchase")


class StripeChargeProcessor:
    charge_processor_id = ChargeProcessorId.STRIPE.value
    display_name = "Stripe"
    valid_transaction_statuses = ("succeeded", "pending")
    supports_intents = True

    def __init__(self, settings: StripeSettings, *, configure: bool = True) -> None:
        self.settings = settings
        if configure:
            configure_stripe(settings)

    # Merchant accounts

    @staticmethod
    def merchant_migrated(merchant_account: Optional[MerchantAccount]) -> bool:
        return bool(merchant_account and merchant_account.is_stripe_connect)

    def _connect_account(self, merchant_account: Optional[MerchantAccount]) -> Optional[str]:
        if not self.merchant_migrated(merchant_account):
            return None
        if not merchant_account.charge_processor_merchant_id:
            raise ChargeProcessorInvalidRequestError(
                f"Merchant account {merchant_account.id} has no charge processor merchant id",
                processor=PROCESSOR,
            )
        return merchant_account.charge_processor_merchant_id

    def holder_of_funds(self, merchant_account: MerchantAccount) -> HolderOfFunds:
        if merchant_account.is_stripe_connect:
            return HolderOfFunds.CREATOR
        if merchant_account.user_id is not None:
            return HolderOfFunds.STRIPE
        return HolderOfFunds.GUMROAD

    def transaction_url(self, charge_id: str) -> str:
        if self.settings.live_mode:
            return f"https://manage.stripe.com/payments/{charge_id}"
        return f"https://manage.stripe.com/test/payments/{charge_id}"

    # Chargeables

    def get_chargeable_for_params(
        self, params: Mapping[str, Any], gumroad_guid: Optional[str] = None
    ) -> Optional[ChargeableToken]:
        zip_code = params.get("cc_zipcode") if params.get("cc_zipcode_required") else None
        product_permalink = params.get("product_permalink")
        if params.get("stripe_token"):
            return StripeChargeableToken(params["stripe_token"], zip_code, product_permalink=product_permalink)
        if params.get("stripe_payment_method_id"):
            return StripeChargeablePaymentMethod(
                params["stripe_payment_method_id"],
                customer_id=params.get("stripe_customer_id"),
                stripe_setup_intent_id=params.get("stripe_setup_intent_id"),
                zip_code=zip_code,
                product_permalink=product_permalink,
            )
        return None

    def get_chargeable_for_data(
        self,
        reusable_token: str,
        card_data: Mapping[str, Any],
        merchant_account: Optional[MerchantAccount] = None,
    ) -> Optional[ChargeableToken]:
        return StripeChargeableCreditCard(
            reusable_token,
            card_data.get("payment_method_id"),
            fingerprint=card_data.get("fingerprint"),
            stripe_setup_intent_id=card_data.get("stripe_setup_intent_id"),
            stripe_payment_intent_id=card_data.get("stripe_payment_intent_id"),
            last4=card_data.get("last4"),
            number_length=card_data.get("number_length"),
            visual=card_data.get("visual"),
            expiry_month=card_data.get("expiry_month"),
            expiry_year=card_data.get("expiry_year"),
            card_type=card_data.get("card_type"),
            country=card_data.get("country"),
            zip_code=card_data.get("zip_code"),
            merchant_account=merchant_account,
        )

    # Mapping

    def _processor_charge(self, charge: Any) -> ProcessorCharge:
        balance_transaction = field(charge, "balance_transaction")
        if isinstance(balance_transaction, str):
            balance_transaction = None
        card = field(field(charge, "payment_method_details"), "card")
        currency = field(charge, "currency")
        return ProcessorCharge(
            charge_processor_id=self.charge_processor_id,
            id=field(charge, "id"),
            status=field(charge, "status"),
            refunded=bool(field(charge, "refunded", False)),
            disputed=bool(field(charge, "disputed", False)),
            fee_cents=field(balance_transaction, "fee"),
            fee_currency=field(balance_transaction, "currency"),
            payment_intent_id=field(charge, "payment_intent"),
            card_fingerprint=field(card, "fingerprint"),
            flow_of_funds=FlowOfFunds.build_simple(currency, field(charge, "amount", 0)) if currency else None,
            extras={"reference": get_charge_reference(charge)},
        )

    @staticmethod
    def _intent_state(status: Optional[str]) -> IntentState:
        return IntentState(PROVIDER_STATUS_TO_INTERNAL[PROCESSOR].get(status or "", IntentState.IN_PROGRESS.value))

    def _charge_intent(self, payment_intent: Any) -> ChargeIntent:
        state = self._intent_state(field(payment_intent, "status"))
        charge = None
        latest_charge = field(payment_intent, "latest_charge")
        if state == IntentState.SUCCEEDED and latest_charge is not None:
            if isinstance(latest_charge, str):
                charge = ProcessorCharge(
                    charge_processor_id=self.charge_processor_id,
                    id=latest_charge,
                    status="succeeded",
                    payment_intent_id=field(payment_intent, "id"),
                )
            else:
                charge = self._processor_charge(latest_charge)
        return ChargeIntent(
            id=field(payment_intent, "id"),
            state=state,
            client_secret=field(payment_intent, "client_secret"),
            charge=charge,
            payment_method_id=field(payment_intent, "payment_method"),
        )

    def _setup_intent(self, setup_intent: Any) -> SetupIntent:
        return SetupIntent(
            id=field(setup_intent, "id"),
            state=self._intent_state(field(setup_intent, "status")),
            client_secret=field(setup_intent, "client_secret"),
            payment_method_id=field(setup_intent, "payment_method"),
        )

    # Charges

    async def get_charge(self, charge_id: str, merchant_account: Optional[MerchantAccount] = None) -> ProcessorCharge:
        charge = await call_stripe(
            stripe.Charge.retrieve,
            charge_id,
            expand=["balance_transaction"],
            stripe_account=self._connect_account(merchant_account),
        )
        return self._processor_charge(charge)

    async def search_charge(
        self, reference: str, merchant_account: Optional[MerchantAccount] = None
    ) -> Optional[ProcessorCharge]:
        charges = await call_stripe(
            stripe.Charge.list,
            transfer_group=reference,
            limit=1,
            stripe_account=self._connect_account(merchant_account),
        )
        data = field(charges, "data", [])
        if not data:
            return None
        return self._processor_charge(data[0])

    async def get_charge_intent(
        self, payment_intent_id: str, merchant_account: Optional[MerchantAccount] = None
    ) -> Optional[ChargeIntent]:
        payment_intent = await call_stripe(
            stripe.PaymentIntent.retrieve,
            payment_intent_id,
            stripe_account=self._connect_account(merchant_account),
        )
        return self._charge_intent(payment_intent)

    async def get_setup_intent(
        self, setup_intent_id: str, merchant_account: Optional[MerchantAccount] = None
    ) -> Optional[SetupIntent]:
        setup_intent = await call_stripe(
            stripe.SetupIntent.retrieve,
            setup_intent_id,
            stripe_account=self._connect_account(merchant_account),
        )
        return self._setup_intent(setup_intent)

    async def setup_future_charges(
        self,
        merchant_account: MerchantAccount,
        chargeable: ChargeableToken,
        mandate_options: Optional[dict] = None,
    ) -> Optional[SetupIntent]:
        # loads the card country among other things
        await chargeable.prepare()
        params: dict[str, Any] = {"payment_method_types": ["card"], "usage": "off_session"}
        params.update(chargeable.stripe_charge_params())
        if mandate_options:
            _deep_merge(params, mandate_options)
        if chargeable.country == INDIA:
            _deep_merge(params, REQUEST_MANUAL_3DS_PARAMS)

        account = self._connect_account(merchant_account)
        setup_intent = await call_stripe(stripe.SetupIntent.create, **params, stripe_account=account)
        if field(setup_intent, "status") == REQUIRES_CONFIRMATION:
            setup_intent = await call_stripe(stripe.SetupIntent.confirm, field(setup_intent, "id"), stripe_account=account)
        logger.info(
            "stripe_setup_intent_created",
            setup_intent_id=field(setup_intent, "id"),
            status=field(setup_intent, "status"),
        )
        return self._setup_intent(setup_intent)

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
    ) -> ChargeIntent:
        # setting up future usage during an off-session charge is an invalid request
        should_setup_future_usage = setup_future_charges and not off_session

        params: dict[str, Any] = {
            "amount": amount_cents,
            "currency": "usd",
            "description": description,
            "metadata": metadata or {"purchase": reference},
            "payment_method_types": ["card"],
            "off_session": off_session,
            "expand": ["latest_charge.balance_transaction"],
        }
        if transfer_group:
            params["transfer_group"] = transfer_group
        if should_setup_future_usage:
            params["setup_future_usage"] = "off_session"
        if off_session:
            params["confirm"] = True
        if mandate_options:
            _deep_merge(params, mandate_options)
        params.update(chargeable.stripe_charge_params())

        if off_session and getattr(chargeable, "requires_mandate", lambda: False)():
            mandate = await self._mandate_id_for(chargeable, merchant_account)
            if mandate:
                params["mandate"] = mandate
        if should_setup_future_usage and chargeable.country == INDIA:
            _deep_merge(params, REQUEST_MANUAL_3DS_PARAMS)

        descriptor = sanitize_statement_descriptor(statement_description)
        if descriptor:
            params["statement_descriptor_suffix"] = descriptor

        account = self._connect_account(merchant_account)
        if account:
            params["application_fee_amount"] = amount_for_gumroad_cents
        elif merchant_account.user_id is not None:
            if not merchant_account.charge_processor_merchant_id:
                raise ChargeProcessorInvalidRequestError(
                    f"Merchant account {merchant_account.id} has no charge processor merchant id",
                    processor=PROCESSOR,
                )
            params["transfer_data"] = {
                "destination": merchant_account.charge_processor_merchant_id,
                "amount": amount_cents - amount_for_gumroad_cents,
            }

        payment_intent = await call_stripe(stripe.PaymentIntent.create, **params, stripe_account=account)
        if field(payment_intent, "status") == REQUIRES_CONFIRMATION:
            payment_intent = await call_stripe(
                stripe.PaymentIntent.confirm,
                field(payment_intent, "id"),
                expand=["latest_charge.balance_transaction"],
                stripe_account=account,
            )
        return self._charge_intent(payment_intent)

    async def _mandate_id_for(self, chargeable: ChargeableToken, merchant_account: MerchantAccount) -> Optional[str]:
        account = self._connect_account(merchant_account)
        setup_intent_id = getattr(chargeable, "stripe_setup_intent_id", None)
        payment_intent_id = getattr(chargeable, "stripe_payment_intent_id", None)
        if setup_intent_id:
            setup_intent = await call_stripe(stripe.SetupIntent.retrieve, setup_intent_id, stripe_account=account)
            return field(setup_intent, "mandate")
        if payment_intent_id:
            payment_intent = await call_stripe(
                stripe.PaymentIntent.retrieve, payment_intent_id, expand=["latest_charge"], stripe_account=account
            )
            card = field(field(field(payment_intent, "latest_charge"), "payment_method_details"), "card")
            return field(card, "mandate")
        return None

    async def confirm_payment_intent(
        self, merchant_account: MerchantAccount, payment_intent_id: str
    ) -> Optional[ChargeIntent]:
        account = self._connect_account(merchant_account)
        payment_intent = await call_stripe(stripe.PaymentIntent.retrieve, payment_intent_id, stripe_account=account)
        if field(payment_intent, "status") != "succeeded":
            payment_intent = await call_stripe(
                stripe.PaymentIntent.confirm,
                payment_intent_id,
                expand=["latest_charge.balance_transaction"],
                stripe_account=account,
            )
        return self._charge_intent(payment_intent)

    async def cancel_payment_intent(self, merchant_account: MerchantAccount, payment_intent_id: str) -> None:
        """Raises a ChargeProcessorError when the intent is no longer cancelable."""
        await call_stripe(
            stripe.PaymentIntent.cancel, payment_intent_id, stripe_account=self._connect_account(merchant_account)
        )

    async def cancel_setup_intent(self, merchant_account: MerchantAccount, setup_intent_id: str) -> None:
        await call_stripe(
            stripe.SetupIntent.cancel, setup_intent_id, stripe_account=self._connect_account(merchant_account)
        )

    async def refund(
        self,
        charge_id: str,
        *,
        amount_cents: Optional[int] = None,
        merchant_account: Optional[MerchantAccount] = None,
        reverse_transfer: bool = True,
        is_for_fraud: bool = False,
    ) -> ProcessorRefund:
        account = self._connect_account(merchant_account)
        charge = await call_stripe(stripe.Charge.retrieve, charge_id, stripe_account=account)

        params: dict[str, Any] = {"charge": charge_id}
        if amount_cents is not None:
            params["amount"] = amount_cents
        if is_for_fraud:
            params["reason"] = REFUND_REASON_FRAUDULENT
        # destination charges: pull the money back from the creator and refund the platform fee
        if field(charge, "destination") and reverse_transfer:
            params["reverse_transfer"] = True
            params["refund_application_fee"] = True
        if account:
            params["refund_application_fee"] = False

        refund = await call_stripe(stripe.Refund.create, **params, stripe_account=account)
        currency = field(refund, "currency") or field(charge, "currency") or "usd"
        amount = field(refund, "amount", 0)
        logger.info("stripe_refund_created", charge_id=charge_id, refund_id=field(refund, "id"), amount_cents=amount)
        return ProcessorRefund(
            charge_processor_id=self.charge_processor_id,
            id=field(refund, "id"),
            charge_id=charge_id,
            amount_cents=amount,
            status=field(refund, "status"),
            flow_of_funds=FlowOfFunds.build_simple(currency, -amount),
        )

    async def fight_chargeback(self, charge_id: str, dispute_evidence: Mapping[str, Any]) -> None:
        charge = await call_stripe(stripe.Charge.retrieve, charge_id)
        dispute_id = field(charge, "dispute")
        if not dispute_id:
            raise ChargeProcessorInvalidRequestError(f"Charge {charge_id} has no dispute", processor=PROCESSOR)
        evidence = {k: v for k, v in dict(dispute_evidence).items() if v is not None}
        if evidence.get("reason_for_winning"):
            evidence["uncategorized_text"] = "\n\n".join(
                filter(None, [
                    f"The merchant should win the dispute because:\n{evidence.pop('reason_for_winning')}",
                    evidence.get("uncategorized_text"),
                ])
            )
        await call_stripe(stripe.Dispute.modify, dispute_id, evidence=evidence)

    # Webhooks

    def parse_webhook(self, headers: Mapping[str, Any], body: bytes) -> list[ChargeEvent]:
        secret = self.settings.webhook_secret
        if not secret:
            raise ChargeProcessorSignatureError("Missing PAYMENT__STRIPE__WEBHOOK_SECRET", processor=PROCESSOR)
        signature = _header(headers, "stripe-signature")
        if not signature:
            raise ChargeProcessorSignatureError("Missing Stripe-Signature header", processor=PROCESSOR)
        payload = body.decode("utf-8") if isinstance(body, bytes) else body
        try:
            stripe.WebhookSignature.verify_header(payload, signature, secret, WEBHOOK_TOLERANCE_SECONDS)
        except stripe.SignatureVerificationError as exc:
            raise ChargeProcessorSignatureError(str(exc), processor=PROCESSOR) from exc

        event = self.event_from_payload(json.loads(payload))
        return [event] if event is not None else []

    def event_from_payload(self, stripe_event: Mapping[str, Any]) -> Optional[ChargeEvent]:
        """Normalise one Stripe event; ``None`` for events nobody downstream needs."""
        event_type = stripe_event.get("type") or ""
        obj = (stripe_event.get("data") or {}).get("object") or {}

        if event_type == "charge.failed":
            # failed charges are never stored on a purchase, so nothing can be looked up
            return None

        if event_type.startswith("charge.dispute."):
            if obj.get("object") != "dispute":
                raise ChargeProcessorInvalidRequestError(
                    f"Stripe event {stripe_event.get('id')} does not contain a dispute", processor=PROCESSOR
                )
            if not obj.get("charge"):
                raise ChargeProcessorInvalidRequestError(
                    f"Stripe event {stripe_event.get('id')} has no charge id", processor=PROCESSOR
                )
            if event_type == "charge.dispute.closed" and obj.get("status") == "charge_refunded":
                return None
            event = self._event(stripe_event, charge_id=obj["charge"])
            event.extras = {"charge_processor_dispute_id": obj.get("id"), "reason": obj.get("reason") or None}
            currency, amount = obj.get("currency"), obj.get("amount")
            if event_type == "charge.dispute.created":
                event.type = ChargeEventType.DISPUTE_FORMALIZED
                if currency and amount is not None:
                    event.flow_of_funds = FlowOfFunds.build_simple(currency, -amount)
            elif event_type == "charge.dispute.closed" and obj.get("status") in ("won", "warning_closed"):
                event.type = ChargeEventType.DISPUTE_WON
                if currency and amount is not None:
                    event.flow_of_funds = FlowOfFunds.build_simple(currency, amount)
            elif event_type == "charge.dispute.closed" and obj.get("status") == "lost":
                event.type = ChargeEventType.DISPUTE_LOST
            return event

        if event_type == "charge.refund.updated":
            event = self._event(
                stripe_event,
                charge_id=obj.get("charge"),
                type=ChargeEventType.CHARGE_REFUND_UPDATED,
                refund_id=obj.get("id"),
                processor_payment_intent_id=obj.get("payment_intent"),
            )
            event.extras = {
                "refund_status": obj.get("status"),
                "refunded_amount_cents": obj.get("amount"),
                "refund_reason": obj.get("reason"),
            }
            return event

        if event_type.startswith("charge."):
            if obj.get("object") != "charge":
                raise ChargeProcessorInvalidRequestError(
                    f"Stripe event {stripe_event.get('id')} does not contain a charge", processor=PROCESSOR
                )
            if event_type == "charge.succeeded" and (obj.get("metadata") or {}).get("twitter_username"):
                return None
            if not obj.get("id"):
                raise ChargeProcessorInvalidRequestError(
                    f"Stripe event {stripe_event.get('id')} has no charge id", processor=PROCESSOR
                )
            # Recurring charges on Indian cards stay processing for up to 26 hours;
            # the purchase is settled on charge.succeeded.
            return self._event(
                stripe_event,
                charge_id=obj["id"],
                type=ChargeEventType.CHARGE_SUCCEEDED if event_type == "charge.succeeded" else ChargeEventType.INFO,
                charge_reference=get_charge_reference(obj),
                processor_payment_intent_id=obj.get("payment_intent"),
            )

        if event_type.startswith("payment_intent.payment_failed"):
            if obj.get("object") != "payment_intent":
                raise ChargeProcessorInvalidRequestError(
                    f"Stripe event {stripe_event.get('id')} does not contain a payment intent", processor=PROCESSOR
                )
            return self._event(
                stripe_event,
                type=ChargeEventType.PAYMENT_INTENT_FAILED,
                charge_reference=get_charge_reference(obj),
                processor_payment_intent_id=obj.get("id"),
            )

        return None

    def _event(self, stripe_event: Mapping[str, Any], **kwargs: Any) -> ChargeEvent:
        kwargs.setdefault("type", ChargeEventType.INFO)
        return ChargeEvent(
            charge_processor_id=self.charge_processor_id,
            charge_event_id=stripe_event.get("id"),
            created_at=_timestamp(stripe_event.get("created")),
            comment=stripe_event.get("type"),
            **kwargs,
        )
