import pytest

from application.dtos.charging import OrderChargeRequest, StoredPaymentMethod
from application.ports.jobs import FAIL_ABANDONED_PURCHASE
from application.services.order_charge_service import CARD_NOT_CHARGEABLE_ERROR, OrderChargeService
from domain.charging.entity import (
    DEFAULT_PURCHASE_ERROR,
    GENERIC_CHARGE_ERROR,
    Charge,
    ChargeState,
    Order,
    PurchaseState,
)
from domain.charging.exceptions import ChargeProcessorCardError
from domain.charging.intents import ChargeIntent, IntentState, SetupIntent
from tests.fakes import ChargingWorld, FakeChargeProcessor, InMemoryPurchaseRepository, make_purchase


def _world(publisher, scheduler, *purchases, processor=None):
    return ChargingWorld(
        processor=processor or FakeChargeProcessor(),
        publisher=publisher,
        scheduler=scheduler,
        purchases=InMemoryPurchaseRepository(*purchases),
    )


def _service(world):
    return OrderChargeService(
        dispatcher=world.dispatcher,
        charges=world.charges,
        purchases=world.purchases,
        merchant_accounts=world.merchant_accounts,
        scheduler=world.scheduler,
    )


def _card(token="tok_1", **extra):
    return OrderChargeRequest(order_id="order-1", card_params={"fake_token": token, **extra})


@pytest.mark.asyncio
async def test_single_seller_purchases_share_one_charge(publisher, scheduler):
    p1 = make_purchase(1, total_transaction_cents=1000, amount_for_gumroad_cents=100)
    p2 = make_purchase(2, total_transaction_cents=500, amount_for_gumroad_cents=50)
    world = _world(publisher, scheduler, p1, p2)

    result = await _service(world).perform(Order(id="order-1", purchases=[p1, p2]), _card())

    assert len(world.processor.created) == 1
    call = world.processor.created[0]
    assert call["amount_cents"] == 1500
    assert call["amount_for_gumroad_cents"] == 150
    assert call["reference"] == "CH-1"
    assert call["transfer_group"] == "CH-1"
    assert call["metadata"] == {"purchases": "1,2"}
    assert call["off_session"] is False
    assert call["setup_future_charges"] is False

    assert result.charge_ids == [1]
    assert set(result.responses) == {"item-1", "item-2"}
    assert all(r.success and not r.requires_action for r in result.responses.values())

    charge = world.charges.items[1]
    assert charge.state == ChargeState.SUCCEEDED
    assert charge.processor_charge_id == "ch_1"
    assert charge.amount_cents == 1500
    for purchase in (p1, p2):
        assert purchase.state == PurchaseState.SUCCESSFUL
        assert purchase.charge_id == 1
        assert purchase.processor_charge_id == "ch_1"
        assert purchase.processor_payment_intent_id == "pi_1"
        assert purchase.processor_fee_cents == 30
        assert purchase.card_fingerprint == "fp_1"
    assert sorted(world.purchases.updates) == [1, 2]


@pytest.mark.asyncio
async def test_purchase_with_quantity_gets_one_charge(publisher, scheduler):
    purchase = make_purchase(1, quantity=3, total_transaction_cents=3000, amount_for_gumroad_cents=300)
    world = _world(publisher, scheduler, purchase)

    result = await _service(world).perform(Order(id="order-1", purchases=[purchase]), _card())

    assert result.charge_ids == [1]
    assert len(world.charges.items) == 1
    assert world.processor.created[0]["amount_cents"] == 3000


@pytest.mark.asyncio
async def test_free_and_test_purchases_succeed_without_charging(publisher, scheduler):
    free = make_purchase(1, total_transaction_cents=0, amount_for_gumroad_cents=0)
    test = make_purchase(2, is_test_purchase=True)
    world = _world(publisher, scheduler, free, test)

    result = await _service(world).perform(Order(id="order-1", purchases=[free, test]), _card())

    assert world.processor.created == []
    assert free.successful and test.successful
    assert result.responses["item-1"].success
    assert result.responses["item-2"].success


@pytest.mark.asyncio
async def test_declined_card_fails_purchases_with_processor_message(publisher, scheduler):
    purchase = make_purchase(1)
    processor = FakeChargeProcessor()
    processor.charge_intents = [ChargeProcessorCardError("card_declined", "Your card was declined.")]
    world = _world(publisher, scheduler, purchase, processor=processor)

    result = await _service(world).perform(Order(id="order-1", purchases=[purchase]), _card())

    response = result.responses["item-1"]
    assert response.success is False
    assert response.error_message == "Your card was declined."
    assert purchase.state == PurchaseState.FAILED
    assert world.charges.items[1].state == ChargeState.FAILED
    assert scheduler.jobs == []


@pytest.mark.asyncio
async def test_sca_challenge_schedules_one_abandoned_purchase_check(publisher, scheduler):
    purchase = make_purchase(1)
    processor = FakeChargeProcessor()
    processor.charge_intents = [
        ChargeIntent(id="pi_sca", state=IntentState.REQUIRES_ACTION, client_secret="pi_sca_secret")
    ]
    world = _world(publisher, scheduler, purchase, processor=processor)

    result = await _service(world).perform(Order(id="order-1", purchases=[purchase]), _card())

    response = result.responses["item-1"]
    assert response.success is True
    assert response.requires_card_action is True
    assert response.client_secret == "pi_sca_secret"
    assert response.order.id == "order-1"
    assert purchase.in_progress
    assert purchase.processor_payment_intent_id == "pi_sca"
    assert world.charges.items[1].state == ChargeState.REQUIRES_ACTION
    assert scheduler.jobs == [(FAIL_ABANDONED_PURCHASE, {"purchase_id": 1}, 900.0)]


@pytest.mark.asyncio
async def test_multi_seller_order_is_charged_off_session_with_saved_card(publisher, scheduler):
    p1 = make_purchase(1, seller_id=1, merchant_account_id=10)
    p2 = make_purchase(2, seller_id=2, merchant_account_id=20, total_transaction_cents=700)
    world = _world(publisher, scheduler, p1, p2)
    request = OrderChargeRequest(
        order_id="order-1",
        stored_payment_method=StoredPaymentMethod(reusable_tokens={"fake": "cus_1"}, fingerprint="fp_saved"),
    )

    result = await _service(world).perform(Order(id="order-1", purchases=[p1, p2]), request)

    assert result.charge_ids == [1, 2]
    assert [c["reference"] for c in world.processor.created] == ["CH-1", "CH-2"]
    assert all(c["off_session"] is True for c in world.processor.created)
    assert [c["merchant_account"].id for c in world.processor.created] == [10, 20]
    assert [c["amount_cents"] for c in world.processor.created] == [1000, 700]
    assert p1.successful and p2.successful


@pytest.mark.asyncio
async def test_existing_active_charge_is_reused(publisher, scheduler):
    purchase = make_purchase(1)
    world = _world(publisher, scheduler, purchase)
    existing = await world.charges.create(Charge(id=None, order_id="order-1", seller_id=1))

    result = await _service(world).perform(Order(id="order-1", purchases=[purchase]), _card())

    assert result.charge_ids == [existing.id]
    assert len(world.charges.items) == 1
    assert purchase.charge_id == existing.id


@pytest.mark.asyncio
async def test_retried_order_resumes_the_existing_intent(publisher, scheduler):
    purchase = make_purchase(1)
    processor = FakeChargeProcessor()
    processor.charge_intents = [
        ChargeIntent(id="pi_sca", state=IntentState.REQUIRES_ACTION, client_secret="pi_sca_secret")
    ]
    world = _world(publisher, scheduler, purchase, processor=processor)
    service = _service(world)
    order = Order(id="order-1", purchases=[purchase])

    await service.perform(order, _card())
    processor.intents["pi_sca"] = processor.succeeded_intent()
    processor.intents["pi_sca"].id = "pi_sca"
    result = await service.perform(order, _card())

    assert len(processor.created) == 1
    assert result.charge_ids == [1]
    assert result.responses["item-1"].success is True
    assert purchase.state == PurchaseState.SUCCESSFUL
    assert purchase.processor_payment_intent_id == "pi_sca"
    charge = world.charges.items[1]
    assert charge.state == ChargeState.SUCCEEDED
    assert charge.payment_intent_id == "pi_sca"


@pytest.mark.asyncio
async def test_retried_order_with_pending_challenge_returns_it_again(publisher, scheduler):
    purchase = make_purchase(1)
    processor = FakeChargeProcessor()
    pending = ChargeIntent(id="pi_sca", state=IntentState.REQUIRES_ACTION, client_secret="pi_sca_secret")
    processor.charge_intents = [pending]
    processor.intents["pi_sca"] = pending
    world = _world(publisher, scheduler, purchase, processor=processor)
    service = _service(world)
    order = Order(id="order-1", purchases=[purchase])

    await service.perform(order, _card())
    result = await service.perform(order, _card())

    assert len(processor.created) == 1
    assert result.responses["item-1"].requires_card_action is True
    assert result.responses["item-1"].client_secret == "pi_sca_secret"
    assert purchase.in_progress


@pytest.mark.asyncio
async def test_missing_intent_on_retry_fails_without_charging_again(publisher, scheduler):
    purchase = make_purchase(1)
    world = _world(publisher, scheduler, purchase)
    await world.charges.create(Charge(id=None, order_id="order-1", seller_id=1, payment_intent_id="pi_gone"))

    result = await _service(world).perform(Order(id="order-1", purchases=[purchase]), _card())

    assert world.processor.created == []
    assert result.responses["item-1"].success is False
    assert purchase.state == PurchaseState.FAILED
    assert purchase.errors == [GENERIC_CHARGE_ERROR]


@pytest.mark.asyncio
async def test_mismatched_merchant_accounts_fail_the_seller_group(publisher, scheduler):
    p1 = make_purchase(1, merchant_account_id=10)
    p2 = make_purchase(2, merchant_account_id=20)
    world = _world(publisher, scheduler, p1, p2)

    result = await _service(world).perform(Order(id="order-1", purchases=[p1, p2]), _card())

    assert world.processor.created == []
    for uid in ("item-1", "item-2"):
        assert result.responses[uid].success is False
        assert result.responses[uid].error_message == DEFAULT_PURCHASE_ERROR
    assert p1.failed and p2.failed


@pytest.mark.asyncio
async def test_missing_payment_method_fails_with_not_chargeable_message(publisher, scheduler):
    purchase = make_purchase(1)
    world = _world(publisher, scheduler, purchase)

    result = await _service(world).perform(
        Order(id="order-1", purchases=[purchase]), OrderChargeRequest(order_id="order-1")
    )

    assert result.responses["item-1"].error_message == CARD_NOT_CHARGEABLE_ERROR
    assert purchase.failed
    assert world.processor.created == []


@pytest.mark.asyncio
async def test_prepare_failure_message_is_returned(publisher, scheduler):
    purchase = make_purchase(1)
    processor = FakeChargeProcessor()
    processor.prepare_error = ChargeProcessorCardError("incorrect_cvc", "Your card's security code is incorrect.")
    world = _world(publisher, scheduler, purchase, processor=processor)

    result = await _service(world).perform(Order(id="order-1", purchases=[purchase]), _card())

    assert result.responses["item-1"].error_message == "Your card's security code is incorrect."
    assert purchase.errors == ["Your card's security code is incorrect."]
    assert purchase.failed


@pytest.mark.asyncio
async def test_unsuccessful_intent_fails_with_generic_error(publisher, scheduler):
    purchase = make_purchase(1)
    processor = FakeChargeProcessor()
    processor.charge_intents = [ChargeIntent(id="pi_gone", state=IntentState.CANCELED)]
    world = _world(publisher, scheduler, purchase, processor=processor)

    result = await _service(world).perform(Order(id="order-1", purchases=[purchase]), _card())

    assert result.responses["item-1"].error_message == GENERIC_CHARGE_ERROR
    assert purchase.failed


@pytest.mark.asyncio
async def test_free_trial_only_sets_up_future_charges(publisher, scheduler):
    purchase = make_purchase(1, is_free_trial_purchase=True, purchaser_id=7, save_card=True)
    world = _world(publisher, scheduler, purchase)

    result = await _service(world).perform(Order(id="order-1", purchases=[purchase]), _card())

    assert world.processor.created == []
    assert len(world.processor.setups) == 1
    assert world.processor.setups[0]["mandate_options"] is None
    assert purchase.successful
    assert purchase.processor_setup_intent_id == "seti_1"
    assert world.charges.items[1].setup_intent_id == "seti_1"
    assert result.responses["item-1"].success


@pytest.mark.asyncio
async def test_setup_requiring_authentication_returns_card_setup_response(publisher, scheduler):
    purchase = make_purchase(1, is_preorder_authorization=True)
    processor = FakeChargeProcessor()
    processor.setup_intents = [
        SetupIntent(id="seti_sca", state=IntentState.REQUIRES_ACTION, client_secret="seti_secret")
    ]
    world = _world(publisher, scheduler, purchase, processor=processor)

    result = await _service(world).perform(Order(id="order-1", purchases=[purchase]), _card())

    response = result.responses["item-1"]
    assert response.requires_card_setup is True
    assert response.client_secret == "seti_secret"
    assert purchase.in_progress
    assert scheduler.jobs == [(FAIL_ABANDONED_PURCHASE, {"purchase_id": 1}, 900.0)]


@pytest.mark.asyncio
async def test_free_trial_on_processor_without_intents_succeeds_directly(publisher, scheduler):
    purchase = make_purchase(1, is_free_trial_purchase=True)
    processor = FakeChargeProcessor(supports_intents=False)
    world = _world(publisher, scheduler, purchase, processor=processor)

    await _service(world).perform(Order(id="order-1", purchases=[purchase]), _card())

    assert processor.setups == []
    assert purchase.successful


@pytest.mark.asyncio
async def test_recurring_charge_on_indian_card_carries_monthly_mandate(publisher, scheduler):
    purchase = make_purchase(1, is_recurring_billing=True, purchaser_id=5)
    world = _world(publisher, scheduler, purchase)

    await _service(world).perform(Order(id="order-1", purchases=[purchase]), _card(card_country="IN"))

    call = world.processor.created[0]
    assert call["setup_future_charges"] is True
    options = call["mandate_options"]["payment_method_options"]["card"]["mandate_options"]
    assert options["reference"].startswith("Mandate-")
    assert options["interval"] == "month"
    assert options["amount"] == 1000
    assert options["supported_types"] == ["india"]
    assert "currency" not in options


def test_mandate_options_for_several_purchases_are_sporadic():
    purchases = [make_purchase(1, total_transaction_cents=1000), make_purchase(2, total_transaction_cents=2500)]

    options = OrderChargeService.mandate_options(purchases, with_currency=True)

    mandate = options["payment_method_options"]["card"]["mandate_options"]
    assert mandate["interval"] == "sporadic"
    assert mandate["amount"] == 2500
    assert mandate["currency"] == "usd"
    assert "interval_count" not in mandate
