from urllib.parse import parse_qsl

import httpx
import pytest

from core.logging_config import redact
from core.settings import PaymentRetry
from domain.payout.exceptions import PayoutTransportError
from infrastructure.external.payouts.paypal_nvp import PaypalNvpClient


ENDPOINT = "https://api-3t.sandbox.paypal.com/nvp"


def _client(handler, retries=0):
    return PaypalNvpClient(
        ENDPOINT,
        retry=PaymentRetry(max=retries, base_backoff=0.0),
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_post_sends_form_and_parses_response():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(dict(parse_qsl(request.content.decode())))
        return httpx.Response(
            200,
            text="ACK=Success&CORRELATIONID=abc123&L_SHORTMESSAGE0=&TIMESTAMP=2024%2D03%2D10T15%3A00%3A00Z",
        )

    client = _client(handler)
    try:
        response = await client.post({"METHOD": "MassPay", "USER": "user", "L_AMT0": "10.0"})
    finally:
        await client.aclose()

    assert seen == [{"METHOD": "MassPay", "USER": "user", "L_AMT0": "10.0"}]
    assert response["ACK"] == "Success"
    assert response["CORRELATIONID"] == "abc123"
    assert response["L_SHORTMESSAGE0"] == ""
    assert response["TIMESTAMP"] == "2024-03-10T15:00:00Z"


@pytest.mark.asyncio
async def test_server_error_is_a_transport_error():
    client = _client(lambda request: httpx.Response(503, text="unavailable"))
    with pytest.raises(PayoutTransportError) as exc_info:
        await client.post({"METHOD": "TransactionSearch"})
    assert "HTTP 503" in exc_info.value.message


@pytest.mark.asyncio
async def test_connection_errors_are_retried_then_raised():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler, retries=1)
    with pytest.raises(PayoutTransportError):
        await client.post({"METHOD": "MassPay"})
    assert len(calls) == 2


def test_redact_masks_credentials():
    params = {"USER": "api_user", "PWD": "hunter2", "SIGNATURE": "sig", "METHOD": "MassPay", "L_EMAIL0": "a@b.co"}
    redacted = redact(params)
    assert redacted == {
        "USER": "***",
        "PWD": "***",
        "SIGNATURE": "***",
        "METHOD": "MassPay",
        "L_EMAIL0": "a@b.co",
    }
    assert params["PWD"] == "hunter2"
    assert redact({"PWD": ""}) == {"PWD": ""}
