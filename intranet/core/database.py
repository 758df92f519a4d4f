"""Database engine, session factory and transaction helpers."""
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

from intranet.core.config import settings
from intranet.core.exceptions import ConflictError


def _engine_options(url: str) -> dict:
    """Pool options only apply to server databases."""
    if make_url(url).get_backend_name() == "sqlite":
        return {}
    return {
        "pool_size": settings.DB_POOL_SIZE,
        "pool_timeout": settings.DB_POOL_TIMEOUT,
        "pool_pre_ping": True,
    }


engine = create_async_engine(
    settings.database_url,
    echo=False,
    future=True,
    **_engine_options(settings.database_url),
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

Base = declarative_base()


async def get_db() -> AsyncIterator[AsyncSession]:
    """Dependency for getting async database sessions."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


@asynccontextmanager
async def transaction(db: AsyncSession) -> AsyncIterator[AsyncSession]:
    """
    Run a unit of work atomically.

    Commits when the block exits normally. Any exception rolls back every
    write made inside the block. Constraint violations surface as
    `ConflictError`; everything else is re-raised unchanged.
    """
    try:
        yield db
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        raise ConflictError(str(e.orig)) from e
    except BaseException:
        await db.rollback()
        raise
