"""Async SQLAlchemy engine and session factory.

One engine per process. Each HTTP request and each handled realtime
event opens its own AsyncSession from the factory and closes it when
done, so a slow query only ever stalls the connection that issued it.
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from tatu.config import settings


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create an engine suited to the backend behind `url`.

    Postgres gets a real pool (5 kept, up to 20 under load). SQLite is
    used for tests and throwaway local runs; an in-memory database only
    survives on a single shared connection.
    """
    if url.startswith("sqlite"):
        return create_async_engine(
            url,
            echo=echo,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    return create_async_engine(url, echo=echo, pool_size=5, max_overflow=15)


engine = build_engine(settings.database_url, echo=settings.debug)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncSession:
    """FastAPI dependency: one session per request."""
    async with async_session_factory() as session:
        yield session
