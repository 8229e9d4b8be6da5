from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession

from escrow_engine.database.engine import async_session


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields a database session.

    Commits when the request handler returns and rolls back on any exception,
    so a rejected command never leaves partial writes behind.
    """
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
