"""
Charge processor webhooks.

Each delivery is parsed by the processor named in the path and every
resulting ChargeEvent is published on the charge event channel. A 2xx tells
the processor not to redeliver.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from application.services.charge_processor_dispatcher import ChargeProcessorDispatcher
from api.dependencies import get_dispatcher
from core.logging_config import get_logger
from core.response import success_response


router = APIRouter(prefix="/charging", tags=["Charging"])
logger = get_logger(__name__)


@router.post("/webhooks/{processor}", summary="Receive a charge processor webhook")
async def charge_processor_webhook(
    processor: str,
    request: Request,
    dispatcher: ChargeProcessorDispatcher = Depends(get_dispatcher),
):
    raw_body = await request.body()
    events = await dispatcher.receive_webhook(processor, request.headers, raw_body)
    logger.info("charge_webhook_received", processor=processor, events=len(events))
    return success_response(
        data={"events": [{"id": e.charge_event_id, "type": e.type.value} for e in events]},
        message="Webhook received",
    )
