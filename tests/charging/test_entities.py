import pytest

from domain.charging.entity import Charge, ChargeState, MerchantAccount, Purchase
from domain.charging.events import ChargeEvent, ChargeEventType
from domain.charging.flow_of_funds import Amount, FlowOfFunds
from domain.charging.intents import ChargeIntent, IntentState, ProcessorCharge, SetupIntent
from domain.common.exceptions import DomainValidationException


def test_charge_reference_uses_combined_charge_prefix():
    assert Charge(id=42, order_id="o", seller_id=1).reference == "CH-42"


def test_charge_amounts_are_immutable_once_set():
    charge = Charge(id=1, order_id="o", seller_id=1)
    charge.set_amounts(1000, 100)
    charge.set_amounts(1000, 100)
    with pytest.raises(DomainValidationException):
        charge.set_amounts(1200, 100)


@pytest.mark.parametrize("amount, cut", [(-1, 0), (100, 101)])
def test_charge_amounts_are_validated(amount, cut):
    with pytest.raises(DomainValidationException):
        Charge(id=1, order_id="o", seller_id=1).set_amounts(amount, cut)


def test_charge_owns_a_single_payment_intent():
    charge = Charge(id=1, order_id="o", seller_id=1)
    charge.record_charge_intent(ChargeIntent(id="pi_1", state=IntentState.REQUIRES_ACTION))
    assert charge.state == ChargeState.REQUIRES_ACTION

    with pytest.raises(DomainValidationException):
        charge.record_charge_intent(ChargeIntent(id="pi_2", state=IntentState.SUCCEEDED))

    processor_charge = ProcessorCharge("stripe", "ch_1", "succeeded", fee_cents=59)
    charge.record_charge_intent(ChargeIntent(id="pi_1", state=IntentState.SUCCEEDED, charge=processor_charge))
    assert charge.state == ChargeState.SUCCEEDED
    assert charge.processor_charge_id == "ch_1"
    assert charge.processor_fee_cents == 59


def test_charge_owns_a_single_setup_intent():
    charge = Charge(id=1, order_id="o", seller_id=1)
    charge.record_setup_intent(SetupIntent(id="seti_1", state=IntentState.SUCCEEDED))
    with pytest.raises(DomainValidationException):
        charge.record_setup_intent(SetupIntent(id="seti_2", state=IntentState.SUCCEEDED))


def test_purchase_transitions_only_from_in_progress():
    purchase = Purchase(id=1, order_id="o", seller_id=1, line_item_uid="a", total_transaction_cents=100)
    purchase.mark_failed()
    with pytest.raises(DomainValidationException):
        purchase.mark_successful()
    with pytest.raises(DomainValidationException):
        purchase.mark_failed()


def test_immediate_intents_succeed():
    charge = ProcessorCharge("paypal", "cap_1", "completed")
    intent = ChargeIntent.immediate(charge)
    assert intent.succeeded and intent.id is None and intent.charge is charge
    assert SetupIntent.immediate().succeeded


def test_merchant_account_without_user_is_platform_account():
    assert MerchantAccount(id=1, charge_processor_id="stripe").is_platform_account
    assert not MerchantAccount(id=2, charge_processor_id="stripe", user_id=3).is_platform_account


def test_flow_of_funds_simple_and_serialized():
    flow = FlowOfFunds.build_simple("USD", -500)
    assert flow.issued_amount == flow.settled_amount == flow.gumroad_amount == Amount("USD", -500)
    assert flow.merchant_account_gross_amount is None
    assert flow.to_dict() == {
        "issued_amount": {"currency": "USD", "cents": -500},
        "settled_amount": {"currency": "USD", "cents": -500},
        "gumroad_amount": {"currency": "USD", "cents": -500},
    }
    assert Amount("usd", 10).negate() == Amount("usd", -10)


def test_charge_event_serializes_type_and_flow_of_funds():
    event = ChargeEvent(
        charge_processor_id="stripe",
        charge_event_id="evt_1",
        type=ChargeEventType.DISPUTE_WON,
        charge_id="ch_1",
        flow_of_funds=FlowOfFunds.build_simple("usd", 100),
    )
    data = event.to_dict()
    assert data["type"] == "dispute_won"
    assert data["flow_of_funds"]["settled_amount"] == {"currency": "usd", "cents": 100}
    assert data["created_at"]
