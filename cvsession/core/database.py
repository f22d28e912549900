"""Async database engine and session factory for the SQL document store."""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from cvsession.core.config import settings


def create_db_engine(url: str | None = None) -> AsyncEngine:
    """Create the async engine. Defaults to the configured PostgreSQL URL.

    No connection is opened until the engine is first used.
    """
    return create_async_engine(
        url or settings.database_url,
        echo=settings.environment == "development",
        pool_pre_ping=True,
    )


def create_session_factory(
    engine: AsyncEngine | None = None,
) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the given (or a new default) engine."""
    return async_sessionmaker(
        engine or create_db_engine(),
        class_=AsyncSession,
        expire_on_commit=False,
    )
