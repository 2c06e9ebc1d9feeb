from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from ledgermatch.config import settings


def create_db_engine(database_url: str | None = None) -> AsyncEngine:
    url = database_url or settings.database_url
    if url.startswith("sqlite"):
        # single in-process connection, used by local runs and tests
        return create_async_engine(url, echo=False, poolclass=StaticPool, connect_args={"check_same_thread": False})
    return create_async_engine(url, echo=False, pool_pre_ping=True)


def create_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
