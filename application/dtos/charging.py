"""
Charging DTOs (Pydantic v2) used at application boundaries.
"""
from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class StoredPaymentMethod(BaseModel):
    """A previously saved, reusable payment method."""

    reusable_tokens: dict[str, str]
    payment_method_id: Optional[str] = None
    fingerprint: Optional[str] = None
    last4: Optional[str] = None
    number_length: Optional[int] = None
    visual: Optional[str] = None
    expiry_month: Optional[int] = None
    expiry_year: Optional[int] = None
    card_type: Optional[str] = None
    country: Optional[str] = None
    zip_code: Optional[str] = None

    @field_validator("reusable_tokens")
    @classmethod
    def _not_empty(cls, v: dict[str, str]) -> dict[str, str]:
        if not v:
            raise ValueError("at least one reusable token is required")
        return v

    def card_data(self) -> dict[str, Any]:
        return self.model_dump(exclude={"reusable_tokens"})


class OrderChargeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    order_id: str
    card_params: dict[str, Any] = Field(default_factory=dict)
    stored_payment_method: Optional[StoredPaymentMethod] = None
    browser_guid: Optional[str] = None
    statement_description: Optional[str] = None


class OrderRef(BaseModel):
    id: str
    stripe_connect_account_id: Optional[str] = None


class LineItemResponse(BaseModel):
    """Exactly one per submitted purchase."""

    success: bool
    requires_card_action: bool = False
    requires_card_setup: bool = False
    client_secret: Optional[str] = None
    order: Optional[OrderRef] = None
    error_message: Optional[str] = None
    purchase: Optional[dict[str, Any]] = None

    @property
    def requires_action(self) -> bool:
        return self.requires_card_action or self.requires_card_setup

    @classmethod
    def error(cls, message: str, purchase: Optional[dict[str, Any]] = None) -> "LineItemResponse":
        return cls(success=False, error_message=message, purchase=purchase)


class OrderChargeResult(BaseModel):
    order_id: str
    responses: dict[str, LineItemResponse] = Field(default_factory=dict)
    charge_ids: list[int] = Field(default_factory=list)
