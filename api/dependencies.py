"""
API dependencies: unit of work and engine services.
"""
from typing import AsyncIterator

from fastapi import Depends

from application.services.charge_processor_dispatcher import ChargeProcessorDispatcher
from application.services.paypal_payout_processor import PaypalPayoutProcessor
from infrastructure.container import build_payout_processor, get_charge_processor_dispatcher
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


async def get_uow() -> AsyncIterator[SQLAlchemyUnitOfWork]:
    """One transaction per request, committed when the handler returns."""
    async with SQLAlchemyUnitOfWork() as uow:
        yield uow


async def get_dispatcher() -> ChargeProcessorDispatcher:
    return get_charge_processor_dispatcher()


async def get_payout_processor(
    uow: SQLAlchemyUnitOfWork = Depends(get_uow),
) -> AsyncIterator[PaypalPayoutProcessor]:
    processor = build_payout_processor(uow)
    try:
        yield processor
    finally:
        await processor.client.aclose()
