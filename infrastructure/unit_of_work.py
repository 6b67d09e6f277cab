"""SQLAlchemy Unit of Work."""
from __future__ import annotations

from typing import Optional, Callable
import inspect

from sqlalchemy.ext.asyncio import AsyncSession

from domain.common.unit_of_work import AbstractUnitOfWork
from infrastructure.database import AsyncSessionLocal
from infrastructure.repositories.charging_repository import (
    SQLAlchemyChargeRepository,
    SQLAlchemyMerchantAccountRepository,
    SQLAlchemyPurchaseRepository,
)
from infrastructure.repositories.payout_repository import (
    SQLAlchemyPayoutPaymentRepository,
    SQLAlchemyPayoutRecipientRepository,
)


class SQLAlchemyUnitOfWork(AbstractUnitOfWork):

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
        session: Optional[AsyncSession] = None,
        *,
        readonly: bool = False,
    ) -> None:
        super().__init__(readonly=readonly)
        self._session_factory = session_factory
        self._external_session = session
        self.session: Optional[AsyncSession] = session

    async def __aenter__(self) -> "SQLAlchemyUnitOfWork":
        if self.session is None:
            self.session = self._session_factory()
        self.charges = SQLAlchemyChargeRepository(self.session)
        self.purchases = SQLAlchemyPurchaseRepository(self.session)
        self.merchant_accounts = SQLAlchemyMerchantAccountRepository(self.session)
        self.payouts = SQLAlchemyPayoutPaymentRepository(self.session)
        self.payout_recipients = SQLAlchemyPayoutRecipientRepository(self.session)
        if not self._readonly:
            self._transaction = await self.session.begin()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            await super().__aexit__(exc_type, exc, tb)
        finally:
            # close a transaction left open by neither commit nor rollback
            tx = getattr(self, "_transaction", None)
            if tx is not None and getattr(tx, "is_active", False):
                close = getattr(tx, "close", None)
                if callable(close):
                    res = close()
                    if inspect.isawaitable(res):
                        await res
            if self._external_session is None and self.session is not None:
                await self.session.close()
                self.session = None

    async def commit(self) -> None:
        if self._readonly:
            self._committed = True
            return
        if self.session and self.session.in_transaction():
            await self.session.commit()
        self._committed = True

    async def rollback(self) -> None:
        if self.session and self.session.in_transaction():
            await self.session.rollback()
        self._committed = False
