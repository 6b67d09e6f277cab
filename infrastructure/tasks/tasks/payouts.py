"""Payout jobs: batch MassPay runs and delayed status re-checks."""
from __future__ import annotations

from typing import List

from celery import shared_task

from application.ports.jobs import PAYOUT_USERS, UPDATE_PAYOUT_STATUS
from core.logging_config import get_logger
from domain.payout.exceptions import PayoutTransportError

from ..utils.base_task import BaseTask, run_async

logger = get_logger(__name__)


@shared_task(name=PAYOUT_USERS, bind=True, base=BaseTask, acks_late=True)
def payout_users(self, date_string: str, processor: str, user_ids: List[int]) -> dict:
    # MassPay is not idempotent, so this job never retries on its own
    from infrastructure.container import build_nvp_client, build_payout_processor
    from infrastructure.unit_of_work import SQLAlchemyUnitOfWork

    if processor != "paypal":
        raise ValueError(f"Unsupported payout processor: {processor}")

    async def _run() -> dict:
        client = build_nvp_client()
        try:
            async with SQLAlchemyUnitOfWork() as uow:
                report = await build_payout_processor(uow, client=client).payout_users(date_string, user_ids)
        finally:
            await client.aclose()
        return report.summary()

    return run_async(_run)


@shared_task(
    name=UPDATE_PAYOUT_STATUS,
    bind=True,
    base=BaseTask,
    autoretry_for=(PayoutTransportError,),
    retry_backoff=True,
    retry_backoff_max=600,
    retry_kwargs={"max_retries": 5},
)
def update_payout_status(self, payment_id: int) -> None:
    """Re-check a payout PayPal reported as pending."""
    from infrastructure.container import build_nvp_client, build_payout_processor
    from infrastructure.unit_of_work import SQLAlchemyUnitOfWork

    async def _run() -> None:
        client = build_nvp_client()
        try:
            async with SQLAlchemyUnitOfWork() as uow:
                await build_payout_processor(uow, client=client).sync_with_paypal(payment_id)
        finally:
            await client.aclose()

    run_async(_run)
