from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import text
from typing import AsyncIterator
import asyncio
import logging
from .config import settings

logger = logging.getLogger(__name__)

engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_size=settings.database_pool_size,
    max_overflow=settings.database_max_overflow,
    pool_pre_ping=True,
    pool_recycle=3600,
    pool_timeout=settings.database_pool_timeout_seconds,
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


class Base(DeclarativeBase):
    """Declarative base for trips and drivers"""
    pass


async def get_db() -> AsyncIterator[AsyncSession]:
    """Request-scoped session; services commit their own writes"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error(f"Database error: {e}")
            raise


async def check_database_health(timeout_seconds: float = 2.0) -> bool:
    """SELECT 1 within timeout_seconds"""
    async def ping():
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))

    try:
        await asyncio.wait_for(ping(), timeout_seconds)
        return True
    except (SQLAlchemyError, OSError, asyncio.TimeoutError) as e:
        logger.error(f"Database health check failed: {e!r}")
        return False


async def dispose_engine() -> None:
    await engine.dispose()
    logger.info("Database connections closed")
