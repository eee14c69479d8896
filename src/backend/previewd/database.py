"""Async SQLAlchemy database setup for previewd.

Exports:
  async_engine      -- the shared AsyncEngine instance
  AsyncSessionLocal -- sessionmaker bound to async_engine
  get_db            -- FastAPI dependency yielding an AsyncSession
  session_scope     -- one transaction for background work (reconciles, sweeps)
"""

from collections.abc import AsyncGenerator, AsyncIterator, Callable
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from previewd.config import settings

SessionFactory = Callable[[], AsyncSession]

async_engine: AsyncEngine = create_async_engine(
    settings.DB_URL,
    echo=False,
    pool_pre_ping=True,
)

AsyncSessionLocal: sessionmaker[AsyncSession] = sessionmaker(  # type: ignore[type-arg]
    async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields an async database session.

    Rolls back the active transaction on any unhandled exception,
    then re-raises so the global error handler can produce a response.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def session_scope(
    session_factory: SessionFactory | None = None,
) -> AsyncIterator[AsyncSession]:
    """Open a session with a transaction that commits when the block exits.

    Background jobs have no request to hang a session on; they pass the
    factory they were built with so tests can substitute their own.
    """
    factory = session_factory or AsyncSessionLocal
    async with factory() as session:
        async with session.begin():
            yield session
