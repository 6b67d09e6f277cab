import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from domain.charging.entity import Charge, ChargeState, PurchaseState
from infrastructure.adapters.event_bus import InMemoryEventBus
from infrastructure.models import Base, MerchantAccountModel, PurchaseModel
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


pytest.importorskip("aiosqlite")


@pytest.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, expire_on_commit=False)
    await engine.dispose()


@pytest.mark.asyncio
async def test_active_charge_lookup_skips_failed_charges(session_factory):
    async with SQLAlchemyUnitOfWork(session_factory) as uow:
        failed = await uow.charges.create(Charge(id=None, order_id="order-1", seller_id=1, state=ChargeState.FAILED))
        active = await uow.charges.create(Charge(id=None, order_id="order-1", seller_id=1))
        active.set_amounts(1500, 150)
        await uow.charges.update(active)
        await uow.charges.create(Charge(id=None, order_id="order-1", seller_id=2))

    async with SQLAlchemyUnitOfWork(session_factory, readonly=True) as uow:
        found = await uow.charges.find_active("order-1", 1)
        assert found.id == active.id
        assert found.reference == f"CH-{active.id}"
        assert (found.amount_cents, found.amount_for_gumroad_cents) == (1500, 150)
        assert [c.id for c in await uow.charges.list_for_order("order-1")][:2] == [failed.id, active.id]
        assert await uow.charges.find_active("order-2", 1) is None


@pytest.mark.asyncio
async def test_locked_purchase_is_written_back(session_factory):
    async with SQLAlchemyUnitOfWork(session_factory) as uow:
        uow.session.add_all([
            MerchantAccountModel(id=10, charge_processor_id="stripe", charge_processor_merchant_id="acct_10", user_id=1),
            PurchaseModel(id=1, order_id="order-1", seller_id=1, line_item_uid="item-1", total_transaction_cents=1000),
        ])

    async with SQLAlchemyUnitOfWork(session_factory) as uow:
        async with uow.purchases.locked(1) as purchase:
            purchase.add_error("Your card was declined.")
            purchase.mark_failed()

    async with SQLAlchemyUnitOfWork(session_factory, readonly=True) as uow:
        purchase = await uow.purchases.get_by_id(1)
        assert purchase.state == PurchaseState.FAILED
        assert purchase.errors == ["Your card was declined."]
        assert [p.id for p in await uow.purchases.list_for_order("order-1")] == [1]
        account = await uow.merchant_accounts.get_by_id(10)
        assert account.charge_processor_merchant_id == "acct_10"
        assert not account.is_platform_account
        async with uow.purchases.locked(2) as missing:
            assert missing is None


@pytest.mark.asyncio
async def test_event_bus_delivers_to_subscribers_in_order():
    bus = InMemoryEventBus()
    received = []

    async def first(payload):
        received.append(("first", payload))

    async def second(payload):
        received.append(("second", payload))

    await bus.subscribe("charge_event", first)
    await bus.subscribe("charge_event", second)
    await bus.publish("charge_event", "evt_1")
    await bus.publish("other", "ignored")
    await bus.aclose()
    await bus.publish("charge_event", "evt_2")

    assert received == [("first", "evt_1"), ("second", "evt_1")]
