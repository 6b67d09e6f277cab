"""
Charging and payout settings using pydantic-settings v2 with nested env keys.

Kept apart from core.config.Settings so the engine can be configured (and
tests can build instances) without touching process-wide settings.
"""
from __future__ import annotations

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field


class PaymentTimeouts(BaseModel):
    connect: float = 1.0
    read: float = 5.0
    write: float = 5.0
    total: float = 10.0


class PaymentRetry(BaseModel):
    max: int = 2
    base_backoff: float = 0.2


class StripeSettings(BaseModel):
    secret_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    live_mode: bool = False


class PaypalSettings(BaseModel):
    # REST (orders / capture)
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    api_base: str = "https://api-m.sandbox.paypal.com"
    # Classic NVP (MassPay / TransactionSearch)
    nvp_endpoint: str = "https://api-3t.sandbox.paypal.com/nvp"
    nvp_user: Optional[str] = None
    nvp_password: Optional[str] = None
    nvp_signature: Optional[str] = None
    nvp_version: str = "90.0"
    live_mode: bool = False


class ChargingSettings(BaseModel):
    default_currency: str = "usd"


class PayoutSettings(BaseModel):
    recipients_per_job: int = 240
    max_split_payment_cents: int = 2_000_000
    batch_spacing_seconds: int = 60
    pending_recheck_delay_seconds: int = 5 * 60
    payout_fee_percent: int = 2
    fee_exempt_countries: list[str] = Field(default_factory=lambda: ["BR", "IN"])
    currency: str = "USD"


class PaymentSettings(BaseSettings):
    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)

    stripe: StripeSettings = Field(default_factory=StripeSettings)
    paypal: PaypalSettings = Field(default_factory=PaypalSettings)
    charging: ChargingSettings = Field(default_factory=ChargingSettings)
    payouts: PayoutSettings = Field(default_factory=PayoutSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PAYMENT__",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )


payment_settings = PaymentSettings()
