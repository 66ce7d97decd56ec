"""
Database Session Management - Async SQLAlchemy engines and sessions.

Writes go to the primary. Reads (history, usage, admin listings) go to the
replica when DATABASE_READ_URL is set and share the primary pool otherwise.
Closing a session rolls back whatever the request did not commit.
"""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from pageassist.config import settings


class _Database:
    """Lazily created engine plus session factory for one URL."""

    def __init__(self, url: str):
        self.url = url
        self._engine: AsyncEngine | None = None
        self._factory: async_sessionmaker[AsyncSession] | None = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_async_engine(
                self.url,
                pool_size=settings.database_pool_size,
                max_overflow=settings.database_max_overflow,
                pool_timeout=settings.database_pool_timeout,
                pool_recycle=settings.database_pool_recycle,
                pool_pre_ping=True,
                echo=settings.log_level.upper() == "DEBUG",
            )
        return self._engine

    @property
    def factory(self) -> async_sessionmaker[AsyncSession]:
        if self._factory is None:
            # Balances and ids are read back after commit
            self._factory = async_sessionmaker(self.engine, expire_on_commit=False)
        return self._factory

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
        self._factory = None


_primary = _Database(settings.database_url)
_replica = _Database(settings.database_read_url) if settings.database_read_url else None


def get_write_engine() -> AsyncEngine:
    return _primary.engine


def get_read_engine() -> AsyncEngine:
    return (_replica or _primary).engine


async def get_write_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency for a primary session.

    Usage:
        @router.post("/endpoint")
        async def endpoint(db: AsyncSession = Depends(get_write_db)):
            ...
    """
    async with _primary.factory() as session:
        yield session


async def get_read_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for a read-only session (replica when configured)."""
    async with (_replica or _primary).factory() as session:
        yield session


async def close_engines() -> None:
    """Dispose every pool (graceful shutdown)."""
    await _primary.dispose()
    if _replica is not None:
        await _replica.dispose()
