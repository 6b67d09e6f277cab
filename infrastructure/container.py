"""
Composition of the engine's services for the API and the Celery workers.

Process-wide collaborators (processor registry, event bus, alert sink, NVP
client) are built once; services are built per unit of work.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Optional

from application.ports.jobs import JobScheduler
from application.ports.notifications import AlertSink
from application.services.abandoned_purchase_service import FailAbandonedPurchaseService
from application.services.charge_processor_dispatcher import ChargeProcessorDispatcher
from application.services.order_charge_service import OrderChargeService
from application.services.paypal_payout_processor import PaypalPayoutProcessor
from core.settings import payment_settings
from domain.common.unit_of_work import AbstractUnitOfWork
from infrastructure.adapters.alerts import LoggingAlertSink
from infrastructure.adapters.event_bus import InMemoryEventBus
from infrastructure.external.payments import build_charge_processor_registry
from infrastructure.external.payouts.paypal_nvp import PaypalNvpClient


@lru_cache(maxsize=1)
def get_event_bus() -> InMemoryEventBus:
    return InMemoryEventBus()


@lru_cache(maxsize=1)
def get_alert_sink() -> AlertSink:
    return LoggingAlertSink()


@lru_cache(maxsize=1)
def get_charge_processor_dispatcher() -> ChargeProcessorDispatcher:
    return ChargeProcessorDispatcher(build_charge_processor_registry(payment_settings), get_event_bus())


def build_nvp_client() -> PaypalNvpClient:
    """A fresh client; its connection pool belongs to the running event loop."""
    return PaypalNvpClient(
        payment_settings.paypal.nvp_endpoint,
        timeouts=payment_settings.timeouts,
        retry=payment_settings.retry,
    )


def get_job_scheduler() -> JobScheduler:
    from infrastructure.tasks.utils.dispatcher import TaskDispatcher

    return TaskDispatcher()


def build_order_charge_service(
    uow: AbstractUnitOfWork, *, scheduler: Optional[JobScheduler] = None
) -> OrderChargeService:
    return OrderChargeService(
        dispatcher=get_charge_processor_dispatcher(),
        charges=uow.charges,
        purchases=uow.purchases,
        merchant_accounts=uow.merchant_accounts,
        scheduler=scheduler or get_job_scheduler(),
    )


def build_abandoned_purchase_service(uow: AbstractUnitOfWork) -> FailAbandonedPurchaseService:
    return FailAbandonedPurchaseService(
        dispatcher=get_charge_processor_dispatcher(),
        purchases=uow.purchases,
        merchant_accounts=uow.merchant_accounts,
    )


def build_payout_processor(
    uow: AbstractUnitOfWork,
    *,
    client: Optional[PaypalNvpClient] = None,
    scheduler: Optional[JobScheduler] = None,
) -> PaypalPayoutProcessor:
    return PaypalPayoutProcessor(
        client=client or build_nvp_client(),
        payments=uow.payouts,
        recipients=uow.payout_recipients,
        scheduler=scheduler or get_job_scheduler(),
        alerts=get_alert_sink(),
        paypal_settings=payment_settings.paypal,
        payout_settings=payment_settings.payouts,
    )
