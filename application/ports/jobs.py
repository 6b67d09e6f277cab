"""
Delayed job scheduling port.

Implemented by the Celery dispatcher in infrastructure; tests use a recorder.
"""
from __future__ import annotations

from typing import Any, Optional, Protocol, runtime_checkable


# Job names shared by the application and the worker registry.
FAIL_ABANDONED_PURCHASE = "charging.fail_abandoned_purchase"
PAYOUT_USERS = "payouts.payout_users"
UPDATE_PAYOUT_STATUS = "payouts.update_payout_status"


@runtime_checkable
class JobScheduler(Protocol):
    def schedule(
        self,
        name: str,
        *,
        kwargs: Optional[dict[str, Any]] = None,
        delay_seconds: Optional[float] = None,
    ) -> Optional[str]: ...
