"""
Thin async bridge over the official stripe-python SDK.

The SDK is used through its module-level resources (``stripe.PaymentIntent``
and friends); calls are blocking, so they run in a worker thread. Every SDK
error is translated into the charge processor error taxonomy here.
"""
from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

import stripe

from core.logging_config import get_logger
from core.settings import StripeSettings
from domain.charging.exceptions import (
    ChargeProcessorAlreadyRefundedError,
    ChargeProcessorCardError,
    ChargeProcessorError,
    ChargeProcessorInvalidRequestError,
    ChargeProcessorUnavailableError,
)


logger = get_logger(__name__)

PROCESSOR = "stripe"


def configure_stripe(settings: StripeSettings) -> None:
    if not settings.secret_key:
        raise RuntimeError("PAYMENT__STRIPE__SECRET_KEY not configured")
    # module-level key, shared by every resource call
    stripe.api_key = settings.secret_key


def field(obj: Any, key: str, default: Any = None) -> Any:
    """``obj[key]`` for SDK objects and plain dicts alike; ``default`` when missing or null."""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, AttributeError):
        return default
    return default if value is None else value


def translate_stripe_error(exc: Exception) -> ChargeProcessorError:
    if isinstance(exc, stripe.CardError):
        return ChargeProcessorCardError(
            getattr(exc, "code", None),
            getattr(exc, "user_message", None) or str(exc) or "Your card was declined.",
            charge_id=field(getattr(exc, "error", None), "charge"),
            processor=PROCESSOR,
        )
    if isinstance(exc, stripe.InvalidRequestError):
        if "already been refunded" in str(exc):
            return ChargeProcessorAlreadyRefundedError(
                f"Stripe charge was already refunded. Stripe response: {exc}", processor=PROCESSOR
            )
        return ChargeProcessorInvalidRequestError(str(exc), processor=PROCESSOR, error_code=getattr(exc, "code", None))
    if isinstance(exc, (stripe.APIConnectionError, stripe.APIError, stripe.RateLimitError)):
        return ChargeProcessorUnavailableError(f"Stripe error: {exc}", processor=PROCESSOR)
    if isinstance(exc, stripe.StripeError):
        return ChargeProcessorError(str(exc), processor=PROCESSOR)
    return ChargeProcessorError(str(exc), processor=PROCESSOR)


async def call_stripe(fn: Callable[..., Any], *args: Any, stripe_account: Optional[str] = None, **kwargs: Any) -> Any:
    """Run a blocking SDK call off the event loop; ``stripe_account`` targets a Connect account."""
    if stripe_account:
        kwargs["stripe_account"] = stripe_account
    try:
        return await asyncio.to_thread(fn, *args, **kwargs)
    except stripe.StripeError as exc:
        logger.warning(
            "stripe_request_failed",
            call=getattr(fn, "__qualname__", repr(fn)),
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise translate_stripe_error(exc) from exc
