"""Unit of Work abstraction."""
from __future__ import annotations

from abc import ABC, abstractmethod

from domain.charging.repository import (
    ChargeRepository,
    MerchantAccountRepository,
    PurchaseRepository,
)
from domain.payout.repository import PayoutPaymentRepository, PayoutRecipientRepository


class AbstractUnitOfWork(ABC):
    """Transaction boundary for application services."""

    charges: ChargeRepository
    purchases: PurchaseRepository
    merchant_accounts: MerchantAccountRepository
    payouts: PayoutPaymentRepository
    payout_recipients: PayoutRecipientRepository

    def __init__(self, *, readonly: bool = False) -> None:
        self._committed = False
        self._readonly = readonly

    async def __aenter__(self) -> "AbstractUnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc:
            await self.rollback()
        elif not self._readonly and not self._committed:
            # auto-commit unless already committed
            await self.commit()

    @abstractmethod
    async def commit(self) -> None:
        ...

    @abstractmethod
    async def rollback(self) -> None:
        ...
