"""
PayPal MassPay IPN endpoint.

PayPal posts one url-encoded notification per MassPay batch with indexed
``*_<n>`` fields; the payout processor reconciles every item it names.
"""
from __future__ import annotations

import codecs
from urllib.parse import parse_qsl

from fastapi import APIRouter, Depends, Request

from application.services.paypal_payout_processor import PaypalPayoutProcessor
from api.dependencies import get_payout_processor
from core.logging_config import get_logger
from core.response import success_response


logger = get_logger(__name__)

router = APIRouter(prefix="/payouts", tags=["Payouts"])

# PayPal's default IPN encoding unless the account chose another one
DEFAULT_IPN_CHARSET = "windows-1252"


def decode_ipn(raw_body: bytes) -> dict[str, str]:
    """Parse an IPN body in the charset it declares in its own ``charset`` field."""
    # latin-1 keeps every byte, so values can be re-decoded once the charset is known
    pairs = parse_qsl(raw_body.decode("latin-1"), keep_blank_values=True, encoding="latin-1")
    fields = dict(pairs)

    charset = (fields.get("charset") or DEFAULT_IPN_CHARSET).strip()
    try:
        codecs.lookup(charset)
    except LookupError:
        logger.warning("paypal_ipn_unknown_charset", charset=charset)
        charset = DEFAULT_IPN_CHARSET

    return {
        key.encode("latin-1").decode(charset, errors="replace"): value.encode("latin-1").decode(charset, errors="replace")
        for key, value in pairs
    }


@router.post("/paypal/ipn", summary="Receive a PayPal MassPay IPN")
async def paypal_payout_ipn(
    request: Request,
    processor: PaypalPayoutProcessor = Depends(get_payout_processor),
):
    paypal_event = decode_ipn(await request.body())
    await processor.handle_paypal_event(paypal_event)
    return success_response(message="IPN received")
