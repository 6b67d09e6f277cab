"""
Normalized charge events.

Processor webhooks are translated into ChargeEvent records and published on a
single topic, so consumers never depend on the processor that produced them.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from .flow_of_funds import FlowOfFunds


CHARGE_EVENT_TOPIC = "charge_event"


class ChargeEventType(str, Enum):
    INFO = "info"
    DISPUTE_FORMALIZED = "dispute_formalized"
    DISPUTE_WON = "dispute_won"
    DISPUTE_LOST = "dispute_lost"
    SETTLEMENT_DECLINED = "settlement_declined"
    CHARGE_SUCCEEDED = "charge_succeeded"
    PAYMENT_INTENT_FAILED = "payment_intent_failed"
    CHARGE_REFUND_UPDATED = "charge_refund_updated"


@dataclass
class ChargeEvent:
    charge_processor_id: str
    charge_event_id: str
    type: ChargeEventType
    charge_id: Optional[str] = None
    charge_reference: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    comment: Optional[str] = None
    flow_of_funds: Optional[FlowOfFunds] = None
    extras: dict = field(default_factory=dict)
    processor_payment_intent_id: Optional[str] = None
    refund_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "charge_processor_id": self.charge_processor_id,
            "charge_event_id": self.charge_event_id,
            "type": self.type.value,
            "charge_id": self.charge_id,
            "charge_reference": self.charge_reference,
            "created_at": self.created_at.isoformat(),
            "comment": self.comment,
            "flow_of_funds": self.flow_of_funds.to_dict() if self.flow_of_funds else None,
            "extras": self.extras,
            "processor_payment_intent_id": self.processor_payment_intent_id,
            "refund_id": self.refund_id,
        }
