"""
Split-mode helpers: chunking a payout and deriving its state from its chunks.
"""
from __future__ import annotations

import math
from enum import Enum
from typing import Iterable

from domain.common.exceptions import DomainValidationException

from .entity import SplitPaymentState


SPLIT_PAYMENT_TXN_ID = "split payment; see split_payments_info"
SPLIT_PAYMENT_UNIQUE_ID_PREFIX = "SPLIT_"


def split_amounts(amount_cents: int, cap_cents: int) -> list[int]:
    """ceil(amount / cap) chunks of at most ``cap_cents``; only the last one is smaller."""
    if cap_cents <= 0:
        raise DomainValidationException("Split cap must be positive", field="cap_cents")
    if amount_cents <= 0:
        return []
    chunks = []
    remaining = amount_cents
    for _ in range(math.ceil(amount_cents / cap_cents)):
        chunk = min(remaining, cap_cents)
        chunks.append(chunk)
        remaining -= chunk
    return chunks


def split_unique_id(payment_id: int, chunk_number: int) -> str:
    # PayPal limits unique ids to 30 bytes.
    return f"{SPLIT_PAYMENT_UNIQUE_ID_PREFIX}{payment_id}-{chunk_number}"


def parse_split_unique_id(unique_id: str) -> tuple[int, int]:
    """``SPLIT_<payment id>-<1-based chunk number>`` -> (payment id, chunk number)."""
    if not unique_id.startswith(SPLIT_PAYMENT_UNIQUE_ID_PREFIX):
        raise DomainValidationException("Not a split payment unique id", field="unique_id")
    payment_id, _, number = unique_id[len(SPLIT_PAYMENT_UNIQUE_ID_PREFIX):].partition("-")
    try:
        return int(payment_id), int(number)
    except ValueError:
        raise DomainValidationException(
            f"Malformed split payment unique id: {unique_id}", field="unique_id"
        ) from None


class SplitOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    IN_FLIGHT = "in_flight"
    UNDETERMINED = "undetermined"


def derive_split_outcome(states: Iterable[SplitPaymentState]) -> SplitOutcome:
    states = list(states)
    if states and all(s == SplitPaymentState.COMPLETED for s in states):
        return SplitOutcome.COMPLETED
    if states and all(s == SplitPaymentState.FAILED for s in states):
        return SplitOutcome.FAILED
    if any(s.in_flight for s in states):
        return SplitOutcome.IN_FLIGHT
    # Mixed final outcomes are left for manual reconciliation.
    return SplitOutcome.UNDETERMINED
