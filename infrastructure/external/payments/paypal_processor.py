"""
PayPal charge processor on the REST Orders / Payments API (httpx).

PayPal charges synchronously: a captured order is the charge, so the intent
operations collapse to immediate intents or ``None``. Funds are always held
by the platform.
"""
from __future__ import annotations

import base64
import json
import re
import time
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional
from urllib.parse import parse_qsl

import httpx

from core.logging_config import get_logger
from core.settings import PaymentRetry, PaymentTimeouts, PaypalSettings
from domain.charging.chargeable import ChargeableToken
from domain.charging.entity import ChargeProcessorId, HolderOfFunds, MerchantAccount
from domain.charging.events import ChargeEvent, ChargeEventType
from domain.charging.exceptions import (
    ChargeProcessorAlreadyRefundedError,
    ChargeProcessorCardError,
    ChargeProcessorError,
    ChargeProcessorInvalidRequestError,
    ChargeProcessorUnavailableError,
)
from domain.charging.flow_of_funds import FlowOfFunds
from domain.charging.intents import ChargeIntent, ProcessorCharge, ProcessorRefund, SetupIntent

from .base import BaseProcessorClient
from .paypal_chargeables import PaypalApprovedOrderChargeable, PaypalChargeable


logger = get_logger(__name__)

PROCESSOR = ChargeProcessorId.PAYPAL.value

MAXIMUM_DESCRIPTOR_LENGTH = 22
_PAYPAL_INVALID_CHARACTERS = re.compile(r"[^A-Z0-9. ]", re.IGNORECASE)
ZERO_DECIMAL_CURRENCIES = ("TWD", "HUF", "JPY")

CAPTURE_COMPLETED = "COMPLETED"
CAPTURE_PENDING = "PENDING"
PENDING_REVIEW = "PENDING_REVIEW"
PENDING_ECHECK = "ECHECK"

DISPUTE_OUTCOME_SELLER_FAVOUR = ("RESOLVED_SELLER_FAVOUR", "CANCELED_BY_BUYER", "DENIED")

# IPN payment_status -> event type; anything else is ignored
IPN_EVENT_TYPES = {
    "Reversed": ChargeEventType.DISPUTE_FORMALIZED,
    "Canceled_Reversal": ChargeEventType.DISPUTE_WON,
    "Completed": ChargeEventType.INFO,
}

_TOKEN_EXPIRY_MARGIN_SECONDS = 60


def sanitize_for_paypal(value: Optional[str], max_length: int) -> str:
    return _PAYPAL_INVALID_CHARACTERS.sub("", value or "").strip()[:max_length]


def format_amount(cents: int, currency: str) -> str:
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return str(round(cents / 100))
    return "%.2f" % (cents / 100)


def _cents(value: Optional[str]) -> Optional[int]:
    if value in (None, ""):
        return None
    return round(float(value) * 100)


def _parse_ipn_date(value: Optional[str]) -> datetime:
    # e.g. "12:34:56 Jan 02, 2024 PST"; the zone abbreviation is dropped
    if value:
        parts = value.rsplit(" ", 1)
        try:
            return datetime.strptime(parts[0], "%H:%M:%S %b %d, %Y").replace(tzinfo=timezone.utc)
        except ValueError:
            logger.warning("paypal_ipn_date_unparsed", payment_date=value)
    return datetime.now(timezone.utc)


def _parse_iso(value: Optional[str]) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _first_issue(body: Mapping[str, Any]) -> Optional[str]:
    details = body.get("details") or []
    return details[0].get("issue") if details else None


def _first_description(body: Mapping[str, Any]) -> Optional[str]:
    details = body.get("details") or []
    return details[0].get("description") if details else body.get("message")


class PaypalChargeProcessor(BaseProcessorClient):
    provider = PROCESSOR
    charge_processor_id = PROCESSOR
    display_name = "PayPal"
    valid_transaction_statuses = ("created", "approved", "completed")
    supports_intents = False

    def __init__(
        self,
        settings: PaypalSettings,
        *,
        timeouts: Optional[PaymentTimeouts] = None,
        retry: Optional[PaymentRetry] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        currency: str = "usd",
    ) -> None:
        super().__init__(timeouts=timeouts, retry=retry, transport=transport)
        self.settings = settings
        self.currency = currency.upper()
        self._access_token: Optional[str] = None
        self._access_token_expires_at = 0.0

    # REST plumbing

    async def _token(self) -> str:
        if self._access_token and time.monotonic() < self._access_token_expires_at:
            return self._access_token
        if not (self.settings.client_id and self.settings.client_secret):
            raise ChargeProcessorInvalidRequestError("PayPal REST credentials not configured", processor=PROCESSOR)

        async def _do():
            async with self.client() as c:
                return await c.post(
                    f"{self.settings.api_base}/v1/oauth2/token",
                    data={"grant_type": "client_credentials"},
                    auth=(self.settings.client_id, self.settings.client_secret),
                )

        try:
            resp = await self._retry(_do)
        except httpx.HTTPError as exc:
            raise ChargeProcessorUnavailableError(f"PayPal OAuth failed: {exc}", processor=PROCESSOR) from exc
        if resp.status_code >= 400:
            raise ChargeProcessorUnavailableError(
                f"PayPal OAuth failed with HTTP {resp.status_code}", processor=PROCESSOR
            )
        data = resp.json()
        self._access_token = data["access_token"]
        self._access_token_expires_at = time.monotonic() + int(data.get("expires_in", 0)) - _TOKEN_EXPIRY_MARGIN_SECONDS
        return self._access_token

    def _auth_assertion(self, merchant_id: str) -> str:
        """Unsigned JWT that lets the platform act on behalf of a merchant."""

        def _b64(payload: dict) -> str:
            return base64.urlsafe_b64encode(json.dumps(payload).encode()).decode().rstrip("=")

        return f"{_b64({'alg': 'none'})}.{_b64({'iss': self.settings.client_id, 'payer_id': merchant_id})}."

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Any = None,
        merchant_id: Optional[str] = None,
    ) -> tuple[int, dict]:
        token = await self._token()
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json", "Prefer": "return=representation"}
        if merchant_id:
            headers["PayPal-Auth-Assertion"] = self._auth_assertion(merchant_id)

        async def _do():
            async with self.client() as c:
                return await c.request(method, f"{self.settings.api_base}{path}", json=json_body, headers=headers)

        try:
            resp = await self._retry(_do)
        except httpx.HTTPError as exc:
            self._log("paypal_request_failed", method=method, path=path, error=str(exc))
            raise ChargeProcessorUnavailableError(f"PayPal request failed: {exc}", processor=PROCESSOR) from exc

        body = resp.json() if resp.content else {}
        self._log(
            "paypal_response",
            method=method,
            path=path,
            status_code=resp.status_code,
            debug_id=resp.headers.get("paypal-debug-id"),
        )
        return resp.status_code, body

    @staticmethod
    def _error(
        label: str,
        status_code: int,
        body: Mapping[str, Any],
        **issue_errors: Callable[..., ChargeProcessorError],
    ) -> ChargeProcessorError:
        message = f"{label}|{_first_description(body)}"
        if status_code >= 500 or body.get("name") == "INTERNAL_ERROR":
            return ChargeProcessorUnavailableError(message, processor=PROCESSOR)
        issue = _first_issue(body)
        if body.get("name") == "UNPROCESSABLE_ENTITY" and issue in issue_errors:
            return issue_errors[issue](message, processor=PROCESSOR, error_code=issue)
        return ChargeProcessorInvalidRequestError(message, processor=PROCESSOR, error_code=issue)

    # Chargeables

    def get_chargeable_for_params(
        self, params: Mapping[str, Any], gumroad_guid: Optional[str] = None
    ) -> Optional[ChargeableToken]:
        if params.get("billing_agreement_id"):
            return PaypalChargeable(params["billing_agreement_id"], params.get("visual"), params.get("card_country"))
        if params.get("paypal_order_id"):
            return PaypalApprovedOrderChargeable(params["paypal_order_id"], params.get("visual"), params.get("card_country"))
        return None

    def get_chargeable_for_data(
        self,
        reusable_token: str,
        card_data: Mapping[str, Any],
        merchant_account: Optional[MerchantAccount] = None,
    ) -> Optional[ChargeableToken]:
        return PaypalChargeable(reusable_token, card_data.get("visual"), card_data.get("country"))

    # Charges

    def _processor_charge(self, capture: Mapping[str, Any]) -> ProcessorCharge:
        breakdown = capture.get("seller_receivable_breakdown") or {}
        paypal_fee = breakdown.get("paypal_fee") or {}
        amount = capture.get("amount") or {}
        currency = (amount.get("currency_code") or self.currency).lower()
        gross_cents = _cents(amount.get("value"))
        return ProcessorCharge(
            charge_processor_id=self.charge_processor_id,
            id=capture["id"],
            status=(capture.get("status") or "").lower(),
            refunded=(capture.get("status") or "").upper() in ("REFUNDED", "PARTIALLY_REFUNDED"),
            fee_cents=_cents(paypal_fee.get("value")),
            fee_currency=(paypal_fee.get("currency_code") or "").lower() or None,
            flow_of_funds=FlowOfFunds.build_simple(currency, gross_cents) if gross_cents is not None else None,
            extras={"invoice_id": capture.get("invoice_id")},
        )

    async def get_charge(self, charge_id: str, merchant_account: Optional[MerchantAccount] = None) -> ProcessorCharge:
        status_code, body = await self._request("GET", f"/v2/payments/captures/{charge_id}")
        if status_code >= 400:
            raise self._error("Failed paypal fetch capture", status_code, body)
        return self._processor_charge(body)

    async def search_charge(
        self, reference: str, merchant_account: Optional[MerchantAccount] = None
    ) -> Optional[ProcessorCharge]:
        # captures can only be found through the order id stored with the purchase
        return None

    async def get_charge_intent(
        self, payment_intent_id: str, merchant_account: Optional[MerchantAccount] = None
    ) -> Optional[ChargeIntent]:
        return None

    async def get_setup_intent(
        self, setup_intent_id: str, merchant_account: Optional[MerchantAccount] = None
    ) -> Optional[SetupIntent]:
        return None

    async def setup_future_charges(
        self,
        merchant_account: MerchantAccount,
        chargeable: ChargeableToken,
        mandate_options: Optional[dict] = None,
    ) -> Optional[SetupIntent]:
        # a billing agreement is already reusable
        return SetupIntent.immediate()

    def _purchase_unit(
        self,
        merchant_account: MerchantAccount,
        amount_cents: int,
        amount_for_gumroad_cents: int,
        reference: str,
        description: str,
        statement_description: Optional[str],
    ) -> dict:
        unit: dict[str, Any] = {
            "invoice_id": reference,
            "description": sanitize_for_paypal(description, 127) or reference,
            "amount": {"currency_code": self.currency, "value": format_amount(amount_cents, self.currency)},
            "payment_instruction": {
                "platform_fees": [
                    {
                        "amount": {
                            "currency_code": self.currency,
                            "value": format_amount(amount_for_gumroad_cents, self.currency),
                        }
                    }
                ]
            },
        }
        if merchant_account.charge_processor_merchant_id:
            unit["payee"] = {"merchant_id": merchant_account.charge_processor_merchant_id}
        descriptor = sanitize_for_paypal(statement_description, MAXIMUM_DESCRIPTOR_LENGTH)
        if descriptor:
            unit["soft_descriptor"] = descriptor
        return unit

    async def _create_order(self, purchase_unit: dict) -> str:
        status_code, body = await self._request(
            "POST", "/v2/checkout/orders", json_body={"intent": "CAPTURE", "purchase_units": [purchase_unit]}
        )
        if status_code >= 400 or not body.get("id"):
            raise self._error("Failed paypal create order", status_code, body)
        return body["id"]

    async def _update_invoice_id(self, order_id: str, invoice_id: str) -> None:
        patch = [{"op": "add", "path": "/purchase_units/@reference_id=='default'/invoice_id", "value": invoice_id}]
        status_code, body = await self._request("PATCH", f"/v2/checkout/orders/{order_id}", json_body=patch)
        if status_code >= 400:
            raise self._error("Failed paypal update order", status_code, body)

    async def _capture_order(
        self, order_id: str, merchant_account: MerchantAccount, billing_agreement_id: Optional[str] = None
    ) -> ChargeIntent:
        payload: dict[str, Any] = {}
        if billing_agreement_id:
            payload["payment_source"] = {"token": {"id": billing_agreement_id, "type": "BILLING_AGREEMENT"}}
        status_code, body = await self._request("POST", f"/v2/checkout/orders/{order_id}/capture", json_body=payload)
        if status_code >= 400 or not body.get("id"):
            raise self._error(
                "Failed paypal capture order",
                status_code,
                body,
                AGREEMENT_ALREADY_CANCELLED=ChargeProcessorInvalidRequestError,
                PAYEE_ACCOUNT_RESTRICTED=ChargeProcessorInvalidRequestError,
                TRANSACTION_REFUSED=lambda message, **kw: ChargeProcessorCardError(
                    kw.get("error_code"), message, processor=PROCESSOR
                ),
                PAYER_CANNOT_PAY=lambda message, **kw: ChargeProcessorCardError(
                    kw.get("error_code"), message, processor=PROCESSOR
                ),
            )

        capture = body["purchase_units"][0]["payments"]["captures"][0]
        status = (capture.get("status") or "").upper()
        reason = ((capture.get("status_details") or {}).get("reason") or "").upper()
        if status == CAPTURE_COMPLETED or (status == CAPTURE_PENDING and reason == PENDING_REVIEW):
            return ChargeIntent.immediate(self._processor_charge(capture))

        if status == CAPTURE_PENDING and reason == PENDING_ECHECK:
            # eChecks clear days later; hand the money back instead of waiting
            await self.refund(capture["id"], merchant_account=merchant_account)
        raise ChargeProcessorCardError(
            "paypal_capture_failure",
            f"PayPal transaction failed with status {capture.get('status')}",
            charge_id=capture["id"],
            processor=PROCESSOR,
        )

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
        if isinstance(chargeable, PaypalApprovedOrderChargeable):
            await self._update_invoice_id(chargeable.order_id, reference)
            return await self._capture_order(chargeable.order_id, merchant_account)

        if not isinstance(chargeable, PaypalChargeable):
            raise ChargeProcessorInvalidRequestError("Not a PayPal payment method", processor=PROCESSOR)
        order_id = await self._create_order(
            self._purchase_unit(
                merchant_account, amount_cents, amount_for_gumroad_cents, reference, description, statement_description
            )
        )
        return await self._capture_order(order_id, merchant_account, billing_agreement_id=chargeable.billing_agreement_id)

    async def confirm_payment_intent(
        self, merchant_account: MerchantAccount, payment_intent_id: str
    ) -> Optional[ChargeIntent]:
        return None

    async def cancel_payment_intent(self, merchant_account: MerchantAccount, payment_intent_id: str) -> None:
        return None

    async def cancel_setup_intent(self, merchant_account: MerchantAccount, setup_intent_id: str) -> None:
        return None

    async def refund(
        self,
        charge_id: str,
        *,
        amount_cents: Optional[int] = None,
        merchant_account: Optional[MerchantAccount] = None,
        reverse_transfer: bool = True,
        is_for_fraud: bool = False,
    ) -> ProcessorRefund:
        payload: dict[str, Any] = {}
        if amount_cents is not None:
            payload["amount"] = {"currency_code": self.currency, "value": format_amount(amount_cents, self.currency)}
        merchant_id = merchant_account.charge_processor_merchant_id if merchant_account else None
        status_code, body = await self._request(
            "POST", f"/v2/payments/captures/{charge_id}/refund", json_body=payload, merchant_id=merchant_id
        )
        if status_code >= 400:
            raise self._error(
                f"Failed refund capture id - {charge_id}",
                status_code,
                body,
                CAPTURE_FULLY_REFUNDED=ChargeProcessorAlreadyRefundedError,
                REFUND_FAILED_INSUFFICIENT_FUNDS=lambda message, **kw: ChargeProcessorCardError(
                    kw.get("error_code"), message, charge_id=charge_id, processor=PROCESSOR
                ),
            )
        amount = body.get("amount") or {}
        refunded_cents = _cents(amount.get("value")) or amount_cents or 0
        currency = (amount.get("currency_code") or self.currency).lower()
        return ProcessorRefund(
            charge_processor_id=self.charge_processor_id,
            id=body.get("id"),
            charge_id=charge_id,
            amount_cents=refunded_cents,
            status=(body.get("status") or "").lower() or None,
            flow_of_funds=FlowOfFunds.build_simple(currency, -refunded_cents),
        )

    async def fight_chargeback(self, charge_id: str, dispute_evidence: Mapping[str, Any]) -> None:
        logger.info("paypal_chargeback_evidence_not_submitted", charge_id=charge_id)

    def holder_of_funds(self, merchant_account: MerchantAccount) -> HolderOfFunds:
        return HolderOfFunds.GUMROAD

    def transaction_url(self, charge_id: str) -> str:
        sub_domain = "history" if self.settings.live_mode else "sandbox"
        return f"https://{sub_domain}.paypal.com/us/cgi-bin/webscr?cmd=_history-details-from-hub&id={charge_id}"

    # Webhooks

    def parse_webhook(self, headers: Mapping[str, Any], body: bytes) -> list[ChargeEvent]:
        text = body.decode("utf-8") if isinstance(body, bytes) else body
        if text.lstrip().startswith("{"):
            event = self.event_from_rest_payload(json.loads(text))
        else:
            event = self.event_from_ipn(dict(parse_qsl(text, keep_blank_values=True)))
        return [event] if event is not None else []

    def event_from_ipn(self, paypal_event: Mapping[str, str]) -> Optional[ChargeEvent]:
        if paypal_event.get("invoice") is None:
            raise ChargeProcessorInvalidRequestError(
                f"Event for transaction {paypal_event.get('txn_id')} does not have an invoice field",
                processor=PROCESSOR,
            )
        event_type = IPN_EVENT_TYPES.get(paypal_event.get("payment_status") or "")
        if event_type is None:
            return None

        extras: dict[str, Any] = {}
        fee_cents = _cents(paypal_event.get("mc_fee"))
        if fee_cents is not None:
            extras["fee_cents"] = fee_cents
        parent_txn_id = paypal_event.get("parent_txn_id")
        if parent_txn_id:
            extras["parent_txn_id"] = parent_txn_id

        return ChargeEvent(
            charge_processor_id=self.charge_processor_id,
            charge_event_id=paypal_event.get("txn_id"),
            type=event_type,
            charge_id=parent_txn_id or paypal_event.get("txn_id"),
            charge_reference=paypal_event["invoice"],
            created_at=_parse_ipn_date(paypal_event.get("payment_date")),
            comment=paypal_event.get("reason_code") or paypal_event.get("payment_status"),
            extras=extras,
        )

    def event_from_rest_payload(self, event_info: Mapping[str, Any]) -> Optional[ChargeEvent]:
        event_type = event_info.get("event_type")
        resource = event_info.get("resource") or {}

        if event_type in ("CUSTOMER.DISPUTE.CREATED", "CUSTOMER.DISPUTE.RESOLVED"):
            if event_type == "CUSTOMER.DISPUTE.CREATED":
                charge_event_type = ChargeEventType.DISPUTE_FORMALIZED
            else:
                outcome = ((resource.get("dispute_outcome") or {}).get("outcome_code") or "").upper()
                charge_event_type = (
                    ChargeEventType.DISPUTE_WON if outcome in DISPUTE_OUTCOME_SELLER_FAVOUR else ChargeEventType.DISPUTE_LOST
                )
            transactions = resource.get("disputed_transactions") or []
            if not transactions:
                raise ChargeProcessorInvalidRequestError(
                    f"PayPal dispute {resource.get('dispute_id')} has no disputed transaction", processor=PROCESSOR
                )
            reason = resource.get("reason") or resource.get("status")
            return ChargeEvent(
                charge_processor_id=self.charge_processor_id,
                charge_event_id=resource.get("dispute_id"),
                type=charge_event_type,
                charge_id=transactions[0].get("seller_transaction_id"),
                created_at=_parse_iso(resource.get("create_time")),
                comment=reason,
                extras={"reason": reason, "charge_processor_dispute_id": resource.get("dispute_id")},
            )

        if event_type == "PAYMENT.CAPTURE.COMPLETED":
            paypal_fee = (resource.get("seller_receivable_breakdown") or {}).get("paypal_fee")
            if not paypal_fee:
                return None
            return ChargeEvent(
                charge_processor_id=self.charge_processor_id,
                charge_event_id=event_info.get("id"),
                type=ChargeEventType.INFO,
                charge_id=resource.get("id"),
                charge_reference=resource.get("invoice_id"),
                created_at=_parse_iso(resource.get("create_time")),
                comment=event_type,
                extras={
                    "fee_cents": _cents(paypal_fee.get("value")),
                    "fee_currency": (paypal_fee.get("currency_code") or "").lower(),
                },
            )

        if event_type == "PAYMENT.CAPTURE.DENIED":
            return ChargeEvent(
                charge_processor_id=self.charge_processor_id,
                charge_event_id=event_info.get("id"),
                type=ChargeEventType.SETTLEMENT_DECLINED,
                charge_id=resource.get("id"),
                charge_reference=resource.get("invoice_id"),
                created_at=_parse_iso(resource.get("create_time")),
                comment=event_type,
            )

        if event_type in ("PAYMENT.CAPTURE.REFUNDED", "PAYMENT.CAPTURE.REVERSED"):
            capture_id = None
            for link in resource.get("links") or []:
                if "/v2/payments/captures/" in (link.get("href") or ""):
                    capture_id = link["href"].rstrip("/").split("/")[-1]
                    break
            if not capture_id:
                raise ChargeProcessorInvalidRequestError(
                    "No paypal transaction id found in refund webhook", processor=PROCESSOR
                )
            refunded = (resource.get("seller_payable_breakdown") or {}).get("total_refunded_amount") or {}
            return ChargeEvent(
                charge_processor_id=self.charge_processor_id,
                charge_event_id=event_info.get("id"),
                type=ChargeEventType.CHARGE_REFUND_UPDATED,
                charge_id=capture_id,
                refund_id=resource.get("id"),
                created_at=_parse_iso(resource.get("create_time")),
                comment=event_type,
                extras={
                    "refund_status": (resource.get("status") or "").lower(),
                    "refunded_amount_cents": _cents(refunded.get("value")),
                    "refund_currency": (refunded.get("currency_code") or "").lower() or None,
                },
            )

        return None
