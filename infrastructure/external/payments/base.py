"""
Base HTTP client for processor adapters: shared httpx client, retry and logging.

Concrete adapters subclass it and translate responses into domain objects.
"""
from __future__ import annotations

from typing import Any, Callable, Optional
from contextlib import asynccontextmanager

import httpx
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from core.logging_config import get_logger
from core.settings import PaymentRetry, PaymentTimeouts


logger = get_logger(__name__)


class BaseProcessorClient:
    provider: str = "base"

    def __init__(
        self,
        *,
        timeouts: Optional[PaymentTimeouts] = None,
        retry: Optional[PaymentRetry] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._timeouts_cfg = timeouts or PaymentTimeouts()
        self._retry_cfg = retry or PaymentRetry()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def timeouts(self) -> httpx.Timeout:
        return httpx.Timeout(
            connect=self._timeouts_cfg.connect,
            read=self._timeouts_cfg.read,
            write=self._timeouts_cfg.write,
            timeout=self._timeouts_cfg.total,
        )

    @asynccontextmanager
    async def client(self):
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeouts, transport=self._transport)
        # kept open for reuse; aclose() releases it
        yield self._client

    async def aclose(self) -> None:
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    async def _retry(self, fn: Callable[[], Any]):
        """Retry ``fn`` on transport errors only; HTTP error statuses are returned to the caller."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(int(self._retry_cfg.max) + 1),
            wait=wait_exponential(multiplier=self._retry_cfg.base_backoff, min=0.1, max=2.0),
            retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError)),
            reraise=True,
        ):
            with attempt:
                return await fn()

    def _log(self, event: str, **kwargs) -> None:
        logger.info(
            event,
            provider=self.provider,
            **kwargs,
        )
