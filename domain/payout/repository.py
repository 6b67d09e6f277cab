"""
Payout repository interfaces.
"""
from abc import ABC, abstractmethod
from datetime import date
from typing import AsyncContextManager, List, Optional, Sequence

from .entity import Balance, BalanceState, Payment, PayoutRecipient


class PayoutPaymentRepository(ABC):

    @abstractmethod
    async def create(self, payment: Payment) -> Payment:
        pass

    @abstractmethod
    async def get_by_id(self, payment_id: int) -> Optional[Payment]:
        pass

    @abstractmethod
    async def list_processing_ids_for_user(self, user_id: int) -> List[int]:
        pass

    @abstractmethod
    async def update(self, payment: Payment) -> Payment:
        pass

    @abstractmethod
    def locked(self, payment_id: int) -> AsyncContextManager[Optional[Payment]]:
        """Load a payment under an exclusive row lock; changes are saved on exit."""
        pass


class PayoutRecipientRepository(ABC):

    @abstractmethod
    async def get_by_id(self, user_id: int) -> Optional[PayoutRecipient]:
        pass

    @abstractmethod
    async def update(self, recipient: PayoutRecipient) -> PayoutRecipient:
        pass

    @abstractmethod
    async def unpaid_balances(self, user_id: int, payout_period_end_date: date) -> List[Balance]:
        """Unpaid balances of the user dated on or before the period end, locked for the payout run."""
        pass

    @abstractmethod
    async def attach_balances(self, balance_ids: Sequence[int], payment_id: int) -> None:
        """Move the balances to processing under ``payment_id``."""
        pass

    @abstractmethod
    async def settle_balances(self, payment_id: int, state: BalanceState) -> None:
        """Set the state of every balance attached to the payment; unpaid ones are detached."""
        pass
