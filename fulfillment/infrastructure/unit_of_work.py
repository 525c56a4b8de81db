from contextlib import asynccontextmanager
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.infrastructure.repositories import (
    SQLAlchemyOfferRepository,
    SQLAlchemyOrderLedger,
    SQLAlchemyOutboxRepository,
    SQLAlchemyProductRepository,
    SQLAlchemySubscriptionRepository
)


class UnitOfWork:
    """Транзакция магазина: заказ с позициями и историей, счетчики склада, подписки и события outbox
    фиксируются одним commit или не фиксируются вовсе"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def __call__(self):
        async with self._session_factory() as session:
            try:
                uow_impl = _UnitOfWorkImpl(session)
                yield uow_impl
                # Use case не вызвал commit: резерв и смена статуса откатываются
                await session.rollback()
            except Exception:
                # Исключение внутри блока: откат резерва, статуса и событий outbox
                await session.rollback()
                raise


class _UnitOfWorkImpl:
    """Репозитории поверх одной сессии, чтобы блокировка заказа и списание склада шли в одной транзакции"""

    def __init__(self, session: AsyncSession):
        self._session = session
        self.offers = SQLAlchemyOfferRepository(session)
        self.products = SQLAlchemyProductRepository(session)
        self.orders = SQLAlchemyOrderLedger(session)
        self.subscriptions = SQLAlchemySubscriptionRepository(session)
        self.outbox = SQLAlchemyOutboxRepository(session)

    async def commit(self):
        await self._session.commit()

    async def rollback(self):
        await self._session.rollback()
