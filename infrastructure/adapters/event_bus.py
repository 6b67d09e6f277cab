"""In-memory implementation of EventPublisher.

Single-process only: handlers subscribed to a topic are awaited in order.
Charge events are delivered this way to whatever the host application
registers on ``charge_event``.
"""
from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any, Awaitable, Callable, DefaultDict, List

from application.ports.notifications import EventPublisher
from core.logging_config import get_logger


logger = get_logger(__name__)

Handler = Callable[[Any], Awaitable[None]]


class InMemoryEventBus(EventPublisher):
    def __init__(self) -> None:
        self._handlers: DefaultDict[str, List[Handler]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def publish(self, topic: str, payload: Any) -> None:
        async with self._lock:
            handlers = list(self._handlers.get(topic, ()))
        logger.info("event_published", topic=topic, handlers=len(handlers))
        for handler in handlers:
            await handler(payload)

    async def subscribe(self, topic: str, handler: Handler) -> None:
        async with self._lock:
            self._handlers[topic].append(handler)

    async def aclose(self) -> None:
        async with self._lock:
            self._handlers.clear()
