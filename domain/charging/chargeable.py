"""
Chargeable - one tokenized payment method, held once per charge processor.

Every entry represents the same physical instrument, so the card metadata
accessors delegate to a single canonical entry (the first one).
"""
from __future__ import annotations

from typing import Iterable, Optional, Protocol, runtime_checkable

from domain.common.exceptions import DomainValidationException


@runtime_checkable
class ChargeableToken(Protocol):
    """What a charge processor hands back for a payment method."""

    charge_processor_id: str
    reusable_token: Optional[str]
    payment_method_id: Optional[str]
    fingerprint: Optional[str]
    last4: Optional[str]
    number_length: Optional[int]
    visual: Optional[str]
    expiry_month: Optional[int]
    expiry_year: Optional[int]
    card_type: Optional[str]
    country: Optional[str]
    zip_code: Optional[str]

    async def prepare(self) -> bool: ...

    def can_be_saved(self) -> bool: ...


@runtime_checkable
class MandateCapable(Protocol):
    """Optional capability: tokens for cards that need an e-mandate (e.g. India)."""

    def requires_mandate(self) -> bool: ...


class Chargeable:
    def __init__(self, tokens: Iterable[ChargeableToken]):
        self._tokens: dict[str, ChargeableToken] = {}
        for token in tokens:
            self._tokens.setdefault(token.charge_processor_id, token)
        if not self._tokens:
            raise DomainValidationException("A chargeable needs at least one processor token")
        self._canonical = next(iter(self._tokens.values()))

    def __repr__(self) -> str:
        return f"Chargeable(processors={self.charge_processor_ids!r}, last4={self.last4!r})"

    @property
    def charge_processor_id(self) -> str:
        return self._canonical.charge_processor_id

    @property
    def charge_processor_ids(self) -> list[str]:
        return list(self._tokens)

    def get_chargeable_for(self, charge_processor_id: str) -> Optional[ChargeableToken]:
        return self._tokens.get(charge_processor_id)

    async def prepare(self) -> bool:
        for token in self._tokens.values():
            await token.prepare()
        return True

    def can_be_saved(self) -> bool:
        return self._canonical.can_be_saved()

    def requires_mandate(self) -> bool:
        if isinstance(self._canonical, MandateCapable):
            return self._canonical.requires_mandate()
        return False

    def reusable_tokens(self) -> dict[str, str]:
        return {pid: t.reusable_token for pid, t in self._tokens.items() if t.reusable_token}

    @property
    def fingerprint(self) -> Optional[str]:
        return self._canonical.fingerprint

    @property
    def payment_method_id(self) -> Optional[str]:
        return self._canonical.payment_method_id

    @property
    def last4(self) -> Optional[str]:
        return self._canonical.last4

    @property
    def number_length(self) -> Optional[int]:
        return self._canonical.number_length

    @property
    def visual(self) -> Optional[str]:
        return self._canonical.visual

    @property
    def expiry_month(self) -> Optional[int]:
        return self._canonical.expiry_month

    @property
    def expiry_year(self) -> Optional[int]:
        return self._canonical.expiry_year

    @property
    def card_type(self) -> Optional[str]:
        return self._canonical.card_type

    @property
    def country(self) -> Optional[str]:
        return self._canonical.country

    @property
    def zip_code(self) -> Optional[str]:
        return self._canonical.zip_code
