"""Charging jobs."""
from __future__ import annotations

from celery import shared_task

from application.ports.jobs import FAIL_ABANDONED_PURCHASE
from core.logging_config import get_logger

from ..utils.base_task import BaseTask, run_async

logger = get_logger(__name__)


@shared_task(
    name=FAIL_ABANDONED_PURCHASE,
    bind=True,
    base=BaseTask,
    autoretry_for=(ConnectionError,),
    retry_backoff=True,
    retry_kwargs={"max_retries": 3},
)
def fail_abandoned_purchase(self, purchase_id: int) -> None:
    """Fail a purchase whose buyer never completed the SCA challenge."""
    from infrastructure.container import build_abandoned_purchase_service
    from infrastructure.unit_of_work import SQLAlchemyUnitOfWork

    async def _run() -> None:
        async with SQLAlchemyUnitOfWork() as uow:
            await build_abandoned_purchase_service(uow).perform(purchase_id)

    logger.info("fail_abandoned_purchase_started", purchase_id=purchase_id)
    run_async(_run)
