"""
Outbound notification ports: the charge event channel and operator alerts.
"""
from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class EventPublisher(Protocol):
    async def publish(self, topic: str, payload: Any) -> None: ...


@runtime_checkable
class AlertSink(Protocol):
    """Escalation path for states that need a human (reconciliation ambiguity)."""

    def alert(self, message: str, **context: Any) -> None: ...
