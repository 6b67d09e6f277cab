"""In-memory stand-ins for repositories, processors and outbound ports."""
import itertools
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Optional

from application.services.charge_processor_dispatcher import ChargeProcessorDispatcher, ChargeProcessorRegistry
from application.services.paypal_payout_processor import PaypalPayoutProcessor
from core.settings import PaypalSettings, PayoutSettings
from domain.charging.entity import Charge, ChargeState, HolderOfFunds, MerchantAccount, Purchase
from domain.charging.intents import ChargeIntent, IntentState, ProcessorCharge, ProcessorRefund, SetupIntent
from domain.charging.repository import ChargeRepository, MerchantAccountRepository, PurchaseRepository
from domain.payout.entity import Balance, BalanceState, Payment, PayoutRecipient, PayoutState
from domain.payout.repository import PayoutPaymentRepository, PayoutRecipientRepository


class RecordingPublisher:
    def __init__(self):
        self.published = []

    async def publish(self, topic, payload):
        self.published.append((topic, payload))


class RecordingScheduler:
    def __init__(self):
        self.jobs = []

    def schedule(self, name, *, kwargs=None, delay_seconds=None):
        self.jobs.append((name, kwargs or {}, delay_seconds))
        return f"job-{len(self.jobs)}"


class RecordingAlertSink:
    def __init__(self):
        self.alerts = []

    def alert(self, message, **context):
        self.alerts.append((message, context))


@dataclass
class FakeToken:
    charge_processor_id: str
    reusable_token: Optional[str] = None
    payment_method_id: Optional[str] = None
    fingerprint: Optional[str] = None
    last4: Optional[str] = "4242"
    number_length: Optional[int] = 16
    visual: Optional[str] = "**** **** **** 4242"
    expiry_month: Optional[int] = 12
    expiry_year: Optional[int] = 2030
    card_type: Optional[str] = "visa"
    country: Optional[str] = "US"
    zip_code: Optional[str] = None
    can_save: bool = True
    prepare_error: Optional[Exception] = None
    prepared: bool = False

    async def prepare(self):
        if self.prepare_error is not None:
            raise self.prepare_error
        self.prepared = True
        return True

    def can_be_saved(self):
        return self.can_save

    def requires_mandate(self):
        return self.country == "IN"


class FakeChargeProcessor:
    """Answers from queued intents; records every call it receives."""

    display_name = "Fake"
    valid_transaction_statuses = ("succeeded",)

    def __init__(self, charge_processor_id="fake", *, supports_intents=True):
        self.charge_processor_id = charge_processor_id
        self.supports_intents = supports_intents
        self.charge_intents = []
        self.setup_intents = []
        self.intents = {}
        self.created = []
        self.setups = []
        self.cancelled = []
        self.cancel_error = None
        self.prepare_error = None
        self.events = []
        self._ids = itertools.count(1)

    def succeeded_intent(self, fee_cents=30):
        n = next(self._ids)
        charge = ProcessorCharge(
            charge_processor_id=self.charge_processor_id,
            id=f"ch_{n}",
            status="succeeded",
            fee_cents=fee_cents,
            payment_intent_id=f"pi_{n}",
            card_fingerprint=f"fp_{n}",
        )
        return ChargeIntent(id=f"pi_{n}", state=IntentState.SUCCEEDED, charge=charge)

    def get_chargeable_for_params(self, params, gumroad_guid=None):
        token = params.get(f"{self.charge_processor_id}_token")
        if not token:
            return None
        return FakeToken(
            self.charge_processor_id,
            payment_method_id=token,
            fingerprint=f"fp_{token}",
            country=params.get("card_country", "US"),
            prepare_error=self.prepare_error,
        )

    def get_chargeable_for_data(self, reusable_token, card_data, merchant_account=None):
        return FakeToken(
            self.charge_processor_id,
            reusable_token=reusable_token,
            payment_method_id=card_data.get("payment_method_id"),
            fingerprint=card_data.get("fingerprint"),
            country=card_data.get("country"),
            can_save=False,
        )

    async def get_charge(self, charge_id, merchant_account=None):
        return ProcessorCharge(self.charge_processor_id, charge_id, "succeeded")

    async def search_charge(self, reference, merchant_account=None):
        return None

    async def get_charge_intent(self, payment_intent_id, merchant_account=None):
        return self.intents.get(payment_intent_id)

    async def get_setup_intent(self, setup_intent_id, merchant_account=None):
        return self.intents.get(setup_intent_id)

    async def setup_future_charges(self, merchant_account, chargeable, mandate_options=None):
        self.setups.append({"merchant_account": merchant_account, "chargeable": chargeable, "mandate_options": mandate_options})
        if self.setup_intents:
            return self.setup_intents.pop(0)
        return SetupIntent(id=f"seti_{next(self._ids)}", state=IntentState.SUCCEEDED)

    async def create_payment_intent_or_charge(
        self, merchant_account, chargeable, amount_cents, amount_for_gumroad_cents, reference, description, **options
    ):
        self.created.append({
            "merchant_account": merchant_account,
            "chargeable": chargeable,
            "amount_cents": amount_cents,
            "amount_for_gumroad_cents": amount_for_gumroad_cents,
            "reference": reference,
            "description": description,
            **options,
        })
        result = self.charge_intents.pop(0) if self.charge_intents else self.succeeded_intent()
        if isinstance(result, Exception):
            raise result
        return result

    async def confirm_payment_intent(self, merchant_account, payment_intent_id):
        return self.intents.get(payment_intent_id)

    async def cancel_payment_intent(self, merchant_account, payment_intent_id):
        if self.cancel_error is not None:
            raise self.cancel_error
        self.cancelled.append(payment_intent_id)

    async def cancel_setup_intent(self, merchant_account, setup_intent_id):
        if self.cancel_error is not None:
            raise self.cancel_error
        self.cancelled.append(setup_intent_id)

    async def refund(self, charge_id, *, amount_cents=None, merchant_account=None, reverse_transfer=True, is_for_fraud=False):
        return ProcessorRefund(self.charge_processor_id, f"re_{charge_id}", charge_id, amount_cents or 0)

    async def fight_chargeback(self, charge_id, dispute_evidence):
        return None

    def holder_of_funds(self, merchant_account):
        return HolderOfFunds.GUMROAD

    def transaction_url(self, charge_id):
        return f"https://fake.example/{charge_id}"

    def parse_webhook(self, headers, body):
        return list(self.events)


def build_dispatcher(publisher, *processors):
    return ChargeProcessorDispatcher(ChargeProcessorRegistry(processors), publisher)


class InMemoryChargeRepository(ChargeRepository):
    def __init__(self):
        self.items: dict[int, Charge] = {}
        self._ids = itertools.count(1)

    async def create(self, charge):
        charge.id = next(self._ids)
        self.items[charge.id] = charge
        return charge

    async def get_by_id(self, charge_id):
        return self.items.get(charge_id)

    async def find_active(self, order_id, seller_id):
        for charge in self.items.values():
            if charge.order_id == order_id and charge.seller_id == seller_id and charge.state != ChargeState.FAILED:
                return charge
        return None

    async def list_for_order(self, order_id):
        return [c for c in self.items.values() if c.order_id == order_id]

    async def update(self, charge):
        self.items[charge.id] = charge
        return charge


class InMemoryPurchaseRepository(PurchaseRepository):
    def __init__(self, *purchases: Purchase):
        self.items = {p.id: p for p in purchases}
        self.updates = []

    async def get_by_id(self, purchase_id):
        return self.items.get(purchase_id)

    async def list_for_order(self, order_id):
        return [p for p in self.items.values() if p.order_id == order_id]

    async def update(self, purchase):
        self.items[purchase.id] = purchase
        self.updates.append(purchase.id)
        return purchase

    @asynccontextmanager
    async def locked(self, purchase_id):
        yield self.items.get(purchase_id)


class InMemoryMerchantAccountRepository(MerchantAccountRepository):
    def __init__(self, *accounts: MerchantAccount):
        self.items = {a.id: a for a in accounts}

    async def get_by_id(self, merchant_account_id):
        return self.items.get(merchant_account_id)


class InMemoryPayoutPaymentRepository(PayoutPaymentRepository):
    def __init__(self, *payments: Payment):
        self.items = {p.id: p for p in payments}
        self._ids = itertools.count(max(self.items, default=0) + 1)
        self.lock_count = 0

    async def create(self, payment):
        payment.id = next(self._ids)
        self.items[payment.id] = payment
        return payment

    async def get_by_id(self, payment_id):
        return self.items.get(payment_id)

    async def list_processing_ids_for_user(self, user_id):
        return [p.id for p in self.items.values() if p.user_id == user_id and p.state == PayoutState.PROCESSING]

    async def update(self, payment):
        self.items[payment.id] = payment
        return payment

    @asynccontextmanager
    async def locked(self, payment_id):
        self.lock_count += 1
        yield self.items.get(payment_id)


class InMemoryPayoutRecipientRepository(PayoutRecipientRepository):
    def __init__(self, *recipients: PayoutRecipient, balances=None):
        self.items = {r.id: r for r in recipients}
        # user id -> [(date, cents)] or [Balance]
        ids = itertools.count(1)
        self.balances: list[Balance] = []
        for user_id, entries in (balances or {}).items():
            for entry in entries:
                if not isinstance(entry, Balance):
                    day, cents = entry
                    entry = Balance(id=None, user_id=user_id, date=day, amount_cents=cents)
                entry.id = next(ids)
                self.balances.append(entry)

    async def get_by_id(self, user_id):
        return self.items.get(user_id)

    async def update(self, recipient):
        self.items[recipient.id] = recipient
        return recipient

    async def unpaid_balances(self, user_id, payout_period_end_date):
        return [
            b for b in self.balances
            if b.user_id == user_id and b.state == BalanceState.UNPAID and b.date <= payout_period_end_date
        ]

    async def attach_balances(self, balance_ids, payment_id):
        for balance in self.balances:
            if balance.id in balance_ids:
                balance.state = BalanceState.PROCESSING
                balance.payout_id = payment_id

    async def settle_balances(self, payment_id, state):
        for balance in self.balances:
            if balance.payout_id == payment_id:
                balance.state = state
                if state == BalanceState.UNPAID:
                    balance.payout_id = None


class FakeNvpClient:
    """Replays queued NVP responses; an Exception in the queue is raised instead."""

    def __init__(self, *responses: Any):
        self.responses = list(responses)
        self.requests: list[dict] = []

    async def post(self, params):
        self.requests.append(dict(params))
        response = self.responses.pop(0) if self.responses else {"ACK": "Success", "CORRELATIONID": "corr-default"}
        if isinstance(response, Exception):
            raise response
        return dict(response)


def build_payout_processor(client, payments, recipients, scheduler, alerts, **payout_overrides):
    return PaypalPayoutProcessor(
        client=client,
        payments=payments,
        recipients=recipients,
        scheduler=scheduler,
        alerts=alerts,
        paypal_settings=PaypalSettings(nvp_user="user", nvp_password="secret", nvp_signature="sig"),
        payout_settings=PayoutSettings(**payout_overrides),
    )


def make_purchase(purchase_id, **overrides):
    values = dict(
        id=purchase_id,
        order_id="order-1",
        seller_id=1,
        line_item_uid=f"item-{purchase_id}",
        total_transaction_cents=1000,
        amount_for_gumroad_cents=100,
        merchant_account_id=10,
    )
    values.update(overrides)
    return Purchase(**values)


@dataclass
class ChargingWorld:
    """Everything an OrderChargeService needs, wired to fakes."""

    processor: FakeChargeProcessor
    publisher: RecordingPublisher
    scheduler: RecordingScheduler
    charges: InMemoryChargeRepository = field(default_factory=InMemoryChargeRepository)
    purchases: InMemoryPurchaseRepository = field(default_factory=InMemoryPurchaseRepository)
    merchant_accounts: InMemoryMerchantAccountRepository = field(
        default_factory=lambda: InMemoryMerchantAccountRepository(
            MerchantAccount(id=10, charge_processor_id="fake", charge_processor_merchant_id="acct_10", user_id=1),
            MerchantAccount(id=20, charge_processor_id="fake", charge_processor_merchant_id="acct_20", user_id=2),
        )
    )

    @property
    def dispatcher(self):
        return build_dispatcher(self.publisher, self.processor)
