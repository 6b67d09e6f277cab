"""
Intent state machine and the processor-side charge/refund records.

Intent capable processors report asynchronous progress; synchronous processors
collapse to a constant succeeded intent.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Optional

from .flow_of_funds import FlowOfFunds


# Time a buyer has to complete Strong Customer Authentication.
TIME_TO_COMPLETE_SCA = timedelta(minutes=15)


class IntentState(str, Enum):
    IN_PROGRESS = "in_progress"
    REQUIRES_ACTION = "requires_action"
    SUCCEEDED = "succeeded"
    CANCELED = "canceled"


@dataclass
class ProcessorCharge:
    """A charge as reported by the processor."""

    charge_processor_id: str
    id: str
    status: str
    refunded: bool = False
    disputed: bool = False
    fee_cents: Optional[int] = None
    fee_currency: Optional[str] = None
    payment_intent_id: Optional[str] = None
    card_fingerprint: Optional[str] = None
    flow_of_funds: Optional[FlowOfFunds] = None
    extras: dict = field(default_factory=dict)


@dataclass
class ProcessorRefund:
    charge_processor_id: str
    id: str
    charge_id: str
    amount_cents: int
    status: Optional[str] = None
    flow_of_funds: Optional[FlowOfFunds] = None


@dataclass
class _Intent:
    id: Optional[str]
    state: IntentState
    client_secret: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.state == IntentState.SUCCEEDED

    @property
    def requires_action(self) -> bool:
        return self.state == IntentState.REQUIRES_ACTION

    @property
    def canceled(self) -> bool:
        return self.state == IntentState.CANCELED

    @property
    def in_progress(self) -> bool:
        return self.state == IntentState.IN_PROGRESS


@dataclass
class ChargeIntent(_Intent):
    charge: Optional[ProcessorCharge] = None
    payment_method_id: Optional[str] = None

    @classmethod
    def immediate(cls, charge: ProcessorCharge) -> "ChargeIntent":
        """Intent of a processor that charges synchronously."""
        return cls(id=None, state=IntentState.SUCCEEDED, charge=charge)


@dataclass
class SetupIntent(_Intent):
    payment_method_id: Optional[str] = None

    @classmethod
    def immediate(cls) -> "SetupIntent":
        return cls(id=None, state=IntentState.SUCCEEDED)
