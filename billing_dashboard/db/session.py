"""Database session management with async SQLAlchemy."""

import logging
from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from billing_dashboard.core.config import settings

logger = logging.getLogger(__name__)

_database_url = str(settings.DATABASE_URL)

# Pool sizing only applies to server databases
_engine_options: dict[str, Any] = {}
if not _database_url.startswith("sqlite"):
    _engine_options = {
        "pool_size": 10,
        "max_overflow": 20,
        "pool_recycle": 1800,  # Recycle every 30 min
        "pool_timeout": 30,  # Timeout for getting connection from pool
        "pool_use_lifo": True,  # Keeps hot connections in use
    }

# Create async engine
engine = create_async_engine(
    _database_url,
    echo=False,  # SQL echo is too verbose even in debug mode
    future=True,
    pool_pre_ping=True,
    **_engine_options,
)

# Create async session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for getting async database sessions."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            logger.exception("Database session error")
            raise
        finally:
            await session.close()
