from typing import Optional

from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import inspect, text
import logging

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create the async engine. Pool sizing only applies to server databases."""
    kwargs = {
        "echo": echo,
        "pool_pre_ping": True,
    }
    if not database_url.startswith("sqlite"):
        kwargs["pool_size"] = 5
        kwargs["max_overflow"] = 10

    engine = create_async_engine(database_url, **kwargs)
    logger.info(f"Database engine created: {database_url.split('@')[-1]}")
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Create the async session factory bound to ``engine``"""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


async def init_db(engine: AsyncEngine, create_tables: bool = True) -> Optional[list]:
    """Verify the connection and make sure the discrepancy tables exist"""
    # Register models with Base.metadata
    from vaultaudit.database import discrepancy_models  # noqa: F401

    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
            logger.info(f"{engine.dialect.name} connection successful")

            if create_tables:
                await conn.run_sync(Base.metadata.create_all)

            tables = await conn.run_sync(
                lambda sync_conn: inspect(sync_conn).get_table_names()
            )
            logger.info(f"Available tables: {tables}")
            return tables
    except Exception as e:
        logger.error(f"Database initialization error: {e}")
        raise
