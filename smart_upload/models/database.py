"""
Async SQLAlchemy engine, session factory and declarative base.
The Database object is constructed explicitly and closed on shutdown.
"""

from datetime import datetime, timezone
from typing import AsyncIterator, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from smart_upload.config import settings

logger = structlog.get_logger(__name__)


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Database:
    """Owns the async engine and hands out sessions."""

    def __init__(self, url: Optional[str] = None, echo: Optional[bool] = None):
        self.url = url or settings.DATABASE_URL
        kwargs = {"echo": settings.DB_ECHO if echo is None else echo}
        if self.url.startswith("sqlite"):
            # One connection per session; SQLite serialises writers itself
            kwargs["poolclass"] = NullPool
        else:
            kwargs["pool_size"] = settings.DB_POOL_SIZE
            kwargs["max_overflow"] = settings.DB_MAX_OVERFLOW
            kwargs["pool_pre_ping"] = True
        self.engine: AsyncEngine = create_async_engine(self.url, **kwargs)
        self.session_factory = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False,
        )

    def session(self) -> AsyncSession:
        return self.session_factory()

    async def get_session(self) -> AsyncIterator[AsyncSession]:
        """FastAPI dependency: one session per request."""
        async with self.session_factory() as session:
            yield session

    async def create_all(self) -> None:
        """Create tables that do not exist yet (dev/test; production uses migrations)."""
        # Import registers the mapped classes on Base.metadata
        from smart_upload.models import tables  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("db_schema_ready", url=self.engine.url.render_as_string(hide_password=True))

    async def ping(self) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            return result.scalar() == 1

    async def close(self) -> None:
        await self.engine.dispose()
        logger.info("db_closed")
