"""
PayPal classic NVP transport (MassPay, TransactionSearch).

Requests and responses are flat url-encoded name/value forms. Credentials are
redacted before anything is logged.
"""
from __future__ import annotations

from typing import Mapping, Optional
from urllib.parse import parse_qsl

import httpx

from core.logging_config import get_logger, redact
from core.settings import PaymentRetry, PaymentTimeouts
from domain.payout.exceptions import PayoutTransportError

from ..payments.base import BaseProcessorClient


logger = get_logger(__name__)


class PaypalNvpClient(BaseProcessorClient):
    provider = "paypal_nvp"

    def __init__(
        self,
        endpoint: str,
        *,
        timeouts: Optional[PaymentTimeouts] = None,
        retry: Optional[PaymentRetry] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(timeouts=timeouts, retry=retry, transport=transport)
        self.endpoint = endpoint

    async def post(self, params: Mapping[str, str]) -> dict[str, str]:
        method = params.get("METHOD")
        self._log("paypal_nvp_request", method=method, params=redact(dict(params)))

        async def _do():
            async with self.client() as c:
                return await c.post(self.endpoint, data=dict(params))

        try:
            resp = await self._retry(_do)
        except httpx.HTTPError as exc:
            logger.warning("paypal_nvp_transport_error", method=method, error=str(exc))
            raise PayoutTransportError(f"PayPal {method} request failed: {exc}") from exc

        if resp.status_code >= 500:
            raise PayoutTransportError(f"PayPal {method} request failed with HTTP {resp.status_code}")

        response = dict(parse_qsl(resp.text, keep_blank_values=True))
        self._log(
            "paypal_nvp_response",
            method=method,
            status_code=resp.status_code,
            ack=response.get("ACK"),
            correlation_id=response.get("CORRELATIONID"),
        )
        return response
