from __future__ import annotations

import logging

from sqlalchemy import text
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlmodel import SQLModel

from app.config import Settings
from app.models import subscription  # noqa: F401 - ensure tables are registered

logger = logging.getLogger(__name__)


def build_engine(config: Settings) -> AsyncEngine | None:
    """Create the async engine when DATABASE_URL is provided."""
    if not config.database_url:
        logger.info("No DATABASE_URL provided, running with the in-memory entitlement store")
        return None

    url = make_url(config.database_url)
    engine_kwargs: dict[str, object] = {"echo": config.debug}
    if not url.drivername.startswith("sqlite"):
        pool_min = max(config.db_pool_min_size, 1)
        pool_max = max(config.db_pool_max_size, pool_min)
        engine_kwargs.update(
            pool_pre_ping=True,
            pool_recycle=300,
            pool_size=pool_min,
            max_overflow=pool_max - pool_min,
        )
    engine = create_async_engine(url, **engine_kwargs)
    logger.info(
        "Database engine initialized",
        extra={"driver": url.drivername, "url": url.render_as_string(hide_password=True)},
    )
    return engine


async def create_schema(engine: AsyncEngine) -> None:
    """Create all tables directly; deployments use Alembic migrations instead."""
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


async def check_database_health(engine: AsyncEngine | None) -> bool:
    """Check if database is accessible."""
    if engine is None:
        return True  # No database configured, consider healthy

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as exc:
        logger.error("Database health check failed", extra={"error": type(exc).__name__})
        return False
