"""
Factory for the charge processor registry.
"""
from __future__ import annotations

from typing import Optional

from application.services.charge_processor_dispatcher import ChargeProcessorRegistry
from core.settings import PaymentSettings, payment_settings


def build_charge_processor_registry(settings: Optional[PaymentSettings] = None) -> ChargeProcessorRegistry:
    """Register every processor that has credentials configured."""
    settings = settings or payment_settings
    registry = ChargeProcessorRegistry()
    if settings.stripe.secret_key:
        from .stripe_processor import StripeChargeProcessor
        registry.register(StripeChargeProcessor(settings.stripe))
    if settings.paypal.client_id and settings.paypal.client_secret:
        from .paypal_processor import PaypalChargeProcessor
        registry.register(
            PaypalChargeProcessor(
                settings.paypal,
                timeouts=settings.timeouts,
                retry=settings.retry,
                currency=settings.charging.default_currency,
            )
        )
    return registry
