"""
Charging repository interfaces.
"""
from abc import ABC, abstractmethod
from typing import AsyncContextManager, List, Optional

from .entity import Charge, MerchantAccount, Purchase


class ChargeRepository(ABC):

    @abstractmethod
    async def create(self, charge: Charge) -> Charge:
        pass

    @abstractmethod
    async def get_by_id(self, charge_id: int) -> Optional[Charge]:
        pass

    @abstractmethod
    async def find_active(self, order_id: str, seller_id: int) -> Optional[Charge]:
        """The non-failed charge of an (order, seller) pair, if any."""
        pass

    @abstractmethod
    async def list_for_order(self, order_id: str) -> List[Charge]:
        pass

    @abstractmethod
    async def update(self, charge: Charge) -> Charge:
        pass


class PurchaseRepository(ABC):

    @abstractmethod
    async def get_by_id(self, purchase_id: int) -> Optional[Purchase]:
        pass

    @abstractmethod
    async def list_for_order(self, order_id: str) -> List[Purchase]:
        pass

    @abstractmethod
    async def update(self, purchase: Purchase) -> Purchase:
        pass

    @abstractmethod
    def locked(self, purchase_id: int) -> AsyncContextManager[Optional[Purchase]]:
        """Load a purchase under an exclusive row lock; changes are saved on exit."""
        pass


class MerchantAccountRepository(ABC):

    @abstractmethod
    async def get_by_id(self, merchant_account_id: int) -> Optional[MerchantAccount]:
        pass
