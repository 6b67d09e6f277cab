import json
from datetime import datetime, timezone

import httpx
import pytest

from core.settings import PaymentRetry, PaypalSettings
from domain.charging.entity import HolderOfFunds, MerchantAccount
from domain.charging.events import ChargeEventType
from domain.charging.exceptions import (
    ChargeProcessorAlreadyRefundedError,
    ChargeProcessorCardError,
    ChargeProcessorInvalidRequestError,
    ChargeProcessorUnavailableError,
)
from infrastructure.external.payments.paypal_chargeables import PaypalApprovedOrderChargeable, PaypalChargeable
from infrastructure.external.payments.paypal_processor import (
    PaypalChargeProcessor,
    format_amount,
    sanitize_for_paypal,
)


MERCHANT = MerchantAccount(id=5, charge_processor_id="paypal", charge_processor_merchant_id="MERCHANT1", user_id=3)


class _PaypalApi:
    """MockTransport handler: OAuth always succeeds, other routes answer from a table."""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "A21-token", "expires_in": 32400})
        status, body = self.routes[(request.method, request.url.path)]
        if body is None:
            return httpx.Response(status)
        return httpx.Response(status, json=body)

    def sent(self, method, path):
        return [r for r in self.requests if r.method == method and r.url.path == path]


def _processor(api):
    return PaypalChargeProcessor(
        PaypalSettings(client_id="client", client_secret="secret"),
        retry=PaymentRetry(max=0),
        transport=httpx.MockTransport(api),
    )


def _capture_response(status="COMPLETED", reason=None, capture_id="CAP-1"):
    capture = {
        "id": capture_id,
        "status": status,
        "invoice_id": "CH-1",
        "amount": {"currency_code": "USD", "value": "10.00"},
        "seller_receivable_breakdown": {"paypal_fee": {"currency_code": "USD", "value": "0.59"}},
    }
    if reason:
        capture["status_details"] = {"reason": reason}
    return {"id": "ORDER-1", "status": "COMPLETED", "purchase_units": [{"payments": {"captures": [capture]}}]}


def test_amount_and_descriptor_formatting():
    assert format_amount(1000, "USD") == "10.00"
    assert format_amount(1050, "JPY") == "10"
    assert sanitize_for_paypal("Gumroad* Shop!", 22) == "Gumroad Shop"
    assert sanitize_for_paypal(None, 22) == ""


@pytest.mark.asyncio
async def test_billing_agreement_is_charged_through_order_and_capture():
    api = _PaypalApi({
        ("POST", "/v2/checkout/orders"): (201, {"id": "ORDER-1", "status": "CREATED"}),
        ("POST", "/v2/checkout/orders/ORDER-1/capture"): (201, _capture_response()),
    })
    processor = _processor(api)

    intent = await processor.create_payment_intent_or_charge(
        MERCHANT, PaypalChargeable("B-123"), 1000, 100, "CH-1", "Order o-1", statement_description="Gumroad* Shop!"
    )

    assert intent.succeeded and intent.id is None
    assert intent.charge.id == "CAP-1"
    assert intent.charge.fee_cents == 59
    assert intent.charge.flow_of_funds.issued_amount.cents == 1000

    order = json.loads(api.sent("POST", "/v2/checkout/orders")[0].content)
    unit = order["purchase_units"][0]
    assert order["intent"] == "CAPTURE"
    assert unit["invoice_id"] == "CH-1"
    assert unit["amount"] == {"currency_code": "USD", "value": "10.00"}
    assert unit["payment_instruction"]["platform_fees"][0]["amount"]["value"] == "1.00"
    assert unit["payee"] == {"merchant_id": "MERCHANT1"}
    assert unit["soft_descriptor"] == "Gumroad Shop"

    capture_request = api.sent("POST", "/v2/checkout/orders/ORDER-1/capture")[0]
    assert json.loads(capture_request.content)["payment_source"]["token"] == {"id": "B-123", "type": "BILLING_AGREEMENT"}
    assert capture_request.headers["Authorization"] == "Bearer A21-token"
    await processor.aclose()


@pytest.mark.asyncio
async def test_approved_order_gets_invoice_id_then_capture():
    api = _PaypalApi({
        ("PATCH", "/v2/checkout/orders/ORDER-1"): (204, None),
        ("POST", "/v2/checkout/orders/ORDER-1/capture"): (201, _capture_response()),
    })

    intent = await _processor(api).create_payment_intent_or_charge(
        MERCHANT, PaypalApprovedOrderChargeable("ORDER-1"), 1000, 100, "CH-2", "Order o-2"
    )

    assert intent.succeeded
    patch = json.loads(api.sent("PATCH", "/v2/checkout/orders/ORDER-1")[0].content)
    assert patch[0]["value"] == "CH-2"
    assert api.sent("POST", "/v2/checkout/orders") == []


@pytest.mark.asyncio
async def test_pending_review_capture_counts_as_success():
    api = _PaypalApi({
        ("PATCH", "/v2/checkout/orders/ORDER-1"): (204, None),
        ("POST", "/v2/checkout/orders/ORDER-1/capture"): (201, _capture_response("PENDING", "PENDING_REVIEW")),
    })
    intent = await _processor(api).create_payment_intent_or_charge(
        MERCHANT, PaypalApprovedOrderChargeable("ORDER-1"), 1000, 100, "CH-3", "Order o-3"
    )
    assert intent.succeeded
    assert intent.charge.status == "pending"


@pytest.mark.asyncio
async def test_echeck_capture_is_refunded_and_fails():
    api = _PaypalApi({
        ("PATCH", "/v2/checkout/orders/ORDER-1"): (204, None),
        ("POST", "/v2/checkout/orders/ORDER-1/capture"): (201, _capture_response("PENDING", "ECHECK", "CAP-2")),
        ("POST", "/v2/payments/captures/CAP-2/refund"): (
            201, {"id": "REF-1", "status": "COMPLETED", "amount": {"value": "10.00", "currency_code": "USD"}}
        ),
    })

    with pytest.raises(ChargeProcessorCardError) as excinfo:
        await _processor(api).create_payment_intent_or_charge(
            MERCHANT, PaypalApprovedOrderChargeable("ORDER-1"), 1000, 100, "CH-4", "Order o-4"
        )

    assert excinfo.value.error_code == "paypal_capture_failure"
    assert excinfo.value.charge_id == "CAP-2"
    assert len(api.sent("POST", "/v2/payments/captures/CAP-2/refund")) == 1


@pytest.mark.asyncio
async def test_refused_capture_is_a_card_error():
    refused = {
        "name": "UNPROCESSABLE_ENTITY",
        "details": [{"issue": "TRANSACTION_REFUSED", "description": "The request was refused"}],
    }
    api = _PaypalApi({
        ("POST", "/v2/checkout/orders"): (201, {"id": "ORDER-1"}),
        ("POST", "/v2/checkout/orders/ORDER-1/capture"): (422, refused),
    })

    with pytest.raises(ChargeProcessorCardError) as excinfo:
        await _processor(api).create_payment_intent_or_charge(
            MERCHANT, PaypalChargeable("B-1"), 1000, 100, "CH-5", "Order o-5"
        )
    assert excinfo.value.error_code == "TRANSACTION_REFUSED"
    assert excinfo.value.message == "Failed paypal capture order|The request was refused"


@pytest.mark.asyncio
async def test_refund_errors_are_translated():
    fully_refunded = {"name": "UNPROCESSABLE_ENTITY", "details": [{"issue": "CAPTURE_FULLY_REFUNDED"}]}
    api = _PaypalApi({
        ("POST", "/v2/payments/captures/CAP-1/refund"): (422, fully_refunded),
        ("POST", "/v2/payments/captures/CAP-2/refund"): (503, {"name": "SERVICE_UNAVAILABLE"}),
        ("POST", "/v2/payments/captures/CAP-3/refund"): (400, {"name": "INVALID_REQUEST", "message": "bad"}),
    })
    processor = _processor(api)

    with pytest.raises(ChargeProcessorAlreadyRefundedError):
        await processor.refund("CAP-1", merchant_account=MERCHANT)
    with pytest.raises(ChargeProcessorUnavailableError):
        await processor.refund("CAP-2")
    with pytest.raises(ChargeProcessorInvalidRequestError):
        await processor.refund("CAP-3")

    assert "PayPal-Auth-Assertion" in api.sent("POST", "/v2/payments/captures/CAP-1/refund")[0].headers
    assert "PayPal-Auth-Assertion" not in api.sent("POST", "/v2/payments/captures/CAP-2/refund")[0].headers


@pytest.mark.asyncio
async def test_partial_refund_and_cached_token():
    api = _PaypalApi({
        ("POST", "/v2/payments/captures/CAP-1/refund"): (
            201, {"id": "REF-1", "status": "COMPLETED", "amount": {"value": "2.50", "currency_code": "USD"}}
        ),
    })
    processor = _processor(api)

    first = await processor.refund("CAP-1", amount_cents=250)
    await processor.refund("CAP-1", amount_cents=250)

    assert first.amount_cents == 250
    assert first.status == "completed"
    assert first.flow_of_funds.issued_amount.cents == -250
    assert json.loads(api.sent("POST", "/v2/payments/captures/CAP-1/refund")[0].content) == {
        "amount": {"currency_code": "USD", "value": "2.50"}
    }
    assert len(api.sent("POST", "/v1/oauth2/token")) == 1


@pytest.mark.asyncio
async def test_network_failure_is_unavailable():
    def _down(request):
        raise httpx.ConnectError("connection refused", request=request)

    processor = PaypalChargeProcessor(
        PaypalSettings(client_id="client", client_secret="secret"),
        retry=PaymentRetry(max=0),
        transport=httpx.MockTransport(_down),
    )
    with pytest.raises(ChargeProcessorUnavailableError):
        await processor.get_charge("CAP-1")


@pytest.mark.asyncio
async def test_synchronous_processor_answers_without_intents():
    processor = _processor(_PaypalApi({}))
    assert await processor.get_charge_intent("anything") is None
    assert await processor.search_charge("CH-1") is None
    assert (await processor.setup_future_charges(MERCHANT, PaypalChargeable("B-1"))).succeeded
    assert processor.holder_of_funds(MERCHANT) == HolderOfFunds.GUMROAD
    assert processor.transaction_url("T1").startswith("https://sandbox.paypal.com/")


def test_chargeables_for_params_and_data():
    processor = _processor(_PaypalApi({}))
    agreement = processor.get_chargeable_for_params({"billing_agreement_id": "B-1", "visual": "buyer@example.com"})
    assert isinstance(agreement, PaypalChargeable)
    assert agreement.reusable_token == "B-1" and agreement.can_be_saved()

    order = processor.get_chargeable_for_params({"paypal_order_id": "O-1"})
    assert isinstance(order, PaypalApprovedOrderChargeable)
    assert order.reusable_token is None and not order.can_be_saved()

    assert processor.get_chargeable_for_params({"stripe_token": "tok"}) is None
    assert processor.get_chargeable_for_data("B-9", {"country": "US"}).billing_agreement_id == "B-9"


def test_ipn_reversal_becomes_dispute_on_parent_transaction():
    event = _processor(_PaypalApi({})).event_from_ipn({
        "txn_id": "T2",
        "parent_txn_id": "T1",
        "payment_status": "Reversed",
        "reason_code": "chargeback",
        "invoice": "CH-1",
        "mc_fee": "-0.30",
        "payment_date": "12:34:56 Jan 02, 2024 PST",
    })

    assert event.type == ChargeEventType.DISPUTE_FORMALIZED
    assert event.charge_event_id == "T2"
    assert event.charge_id == "T1"
    assert event.charge_reference == "CH-1"
    assert event.comment == "chargeback"
    assert event.extras == {"fee_cents": -30, "parent_txn_id": "T1"}
    assert event.created_at == datetime(2024, 1, 2, 12, 34, 56, tzinfo=timezone.utc)


def test_ipn_statuses():
    processor = _processor(_PaypalApi({}))
    base = {"txn_id": "T3", "invoice": "CH-3"}
    assert processor.event_from_ipn({**base, "payment_status": "Canceled_Reversal"}).type == ChargeEventType.DISPUTE_WON
    assert processor.event_from_ipn({**base, "payment_status": "Pending"}) is None
    with pytest.raises(ChargeProcessorInvalidRequestError):
        processor.event_from_ipn({"txn_id": "T3", "payment_status": "Completed"})


def test_form_encoded_webhook_is_parsed_as_ipn():
    events = _processor(_PaypalApi({})).parse_webhook(
        {}, b"txn_id=T4&payment_status=Completed&invoice=CH-4&mc_fee=0.59"
    )
    assert len(events) == 1
    assert events[0].type == ChargeEventType.INFO
    assert events[0].charge_id == "T4"
    assert events[0].extras == {"fee_cents": 59}


def _dispute(event_type, outcome=None):
    resource = {
        "dispute_id": "PP-D-1",
        "create_time": "2024-03-01T10:00:00Z",
        "reason": "MERCHANDISE_OR_SERVICE_NOT_RECEIVED",
        "disputed_transactions": [{"seller_transaction_id": "CAP-7"}],
    }
    if outcome:
        resource["dispute_outcome"] = {"outcome_code": outcome}
    return {"id": "WH-1", "event_type": event_type, "resource": resource}


def test_rest_dispute_events():
    processor = _processor(_PaypalApi({}))

    created = processor.event_from_rest_payload(_dispute("CUSTOMER.DISPUTE.CREATED"))
    assert created.type == ChargeEventType.DISPUTE_FORMALIZED
    assert created.charge_id == "CAP-7"
    assert created.extras["charge_processor_dispute_id"] == "PP-D-1"

    won = processor.event_from_rest_payload(_dispute("CUSTOMER.DISPUTE.RESOLVED", "RESOLVED_SELLER_FAVOUR"))
    assert won.type == ChargeEventType.DISPUTE_WON
    lost = processor.event_from_rest_payload(_dispute("CUSTOMER.DISPUTE.RESOLVED", "RESOLVED_BUYER_FAVOUR"))
    assert lost.type == ChargeEventType.DISPUTE_LOST

    broken = _dispute("CUSTOMER.DISPUTE.CREATED")
    broken["resource"]["disputed_transactions"] = []
    with pytest.raises(ChargeProcessorInvalidRequestError):
        processor.event_from_rest_payload(broken)


def test_rest_capture_events():
    processor = _processor(_PaypalApi({}))

    completed = processor.parse_webhook({}, json.dumps({
        "id": "WH-2",
        "event_type": "PAYMENT.CAPTURE.COMPLETED",
        "resource": {
            "id": "CAP-8",
            "invoice_id": "CH-8",
            "seller_receivable_breakdown": {"paypal_fee": {"value": "0.59", "currency_code": "USD"}},
        },
    }).encode())[0]
    assert completed.type == ChargeEventType.INFO
    assert completed.extras == {"fee_cents": 59, "fee_currency": "usd"}

    denied = processor.event_from_rest_payload({
        "id": "WH-3", "event_type": "PAYMENT.CAPTURE.DENIED", "resource": {"id": "CAP-9", "invoice_id": "CH-9"},
    })
    assert denied.type == ChargeEventType.SETTLEMENT_DECLINED
    assert denied.charge_reference == "CH-9"

    refunded = processor.event_from_rest_payload({
        "id": "WH-4",
        "event_type": "PAYMENT.CAPTURE.REFUNDED",
        "resource": {
            "id": "REF-2",
            "status": "COMPLETED",
            "links": [{"href": "https://api.paypal.com/v2/payments/captures/CAP-10", "rel": "up"}],
            "seller_payable_breakdown": {"total_refunded_amount": {"value": "5.00", "currency_code": "USD"}},
        },
    })
    assert refunded.type == ChargeEventType.CHARGE_REFUND_UPDATED
    assert refunded.charge_id == "CAP-10"
    assert refunded.refund_id == "REF-2"
    assert refunded.extras["refunded_amount_cents"] == 500

    assert processor.event_from_rest_payload({"event_type": "BILLING.PLAN.CREATED", "resource": {}}) is None
