from __future__ import annotations

from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from wikiupload.core.config import settings

if settings.database_url.startswith("sqlite"):
    # aiosqlite connections cannot be shared across event loops (celery tasks run their own).
    engine = create_async_engine(settings.database_url, future=True, echo=False, poolclass=NullPool)
else:
    engine = create_async_engine(settings.database_url, future=True, echo=False, pool_pre_ping=True)

async_session_factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def get_db_session() -> AsyncIterator[AsyncSession]:
    async with async_session_factory() as session:
        yield session
