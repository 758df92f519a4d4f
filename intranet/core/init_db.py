"""Database initialization utilities."""
from sqlalchemy.ext.asyncio import AsyncEngine

from .database import Base, engine


async def create_tables(engine_instance: AsyncEngine = None):
    """Create all database tables if they don't exist."""
    if engine_instance is None:
        engine_instance = engine

    # Import models so every table is registered on the metadata
    import intranet.modules.directory.models  # noqa: F401
    import intranet.modules.settings.models  # noqa: F401
    import intranet.modules.expenses.models  # noqa: F401

    async with engine_instance.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_tables(engine_instance: AsyncEngine = None):
    """Drop all database tables. USE WITH CAUTION!"""
    if engine_instance is None:
        engine_instance = engine

    async with engine_instance.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
