from functools import lru_cache

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from fulfillment.config import settings


@lru_cache
def get_engine():
    return create_async_engine(settings.DATABASE_URL, pool_pre_ping=True)


@lru_cache
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Фабрика сессий создается один раз на процесс"""
    return async_sessionmaker(get_engine(), expire_on_commit=False)
