"""Async database engine and session management for SQLAlchemy 2.0+.

PostgreSQL with asyncpg in production; SQLite with aiosqlite is accepted
for tests and local development.
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from sheetgate.app.core.config import settings
from sheetgate.app.core.logging import get_logger
from sheetgate.app.db.base import Base

logger = get_logger(__name__)

# One engine (and pool) per database URL
_engines: dict[str, AsyncEngine] = {}


def is_sqlite_url(url: str) -> bool:
    return "sqlite" in url.lower()


def get_async_engine(database_url: str | None = None) -> AsyncEngine:
    """Get or create the async database engine for a URL.

    Args:
        database_url: Optional database URL. Uses settings if not provided.

    Returns:
        AsyncEngine instance
    """
    url = database_url or settings.database_url
    engine = _engines.get(url)
    if engine is not None:
        return engine

    if is_sqlite_url(url):
        engine = create_async_engine(url, echo=False)
        logger.info("Created SQLite async engine")
    else:
        # Reference: https://magicstack.github.io/asyncpg/current/api/index.html
        connect_args = {"command_timeout": settings.db_command_timeout}

        engine = create_async_engine(
            url,
            echo=False,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=settings.db_pool_timeout,
            pool_recycle=settings.db_pool_recycle,
            pool_pre_ping=settings.db_pool_pre_ping,
            connect_args=connect_args,
        )
        logger.info(
            f"Created PostgreSQL async engine (pool_size={settings.db_pool_size}, "
            f"max_overflow={settings.db_max_overflow}, "
            f"pool_timeout={settings.db_pool_timeout}s)"
        )
    _engines[url] = engine
    return engine


def get_async_session_maker(database_url: str | None = None) -> async_sessionmaker[AsyncSession]:
    """Build a session maker bound to the engine for ``database_url``."""
    return async_sessionmaker(
        bind=get_async_engine(database_url),
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_async_db(database_url: str | None = None) -> None:
    """Create all tables. Called during application startup."""
    engine = get_async_engine(database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_async_engine() -> None:
    """Dispose every engine.

    Call this on application shutdown to release database connections.
    """
    for url, engine in list(_engines.items()):
        try:
            await engine.dispose()
        except RuntimeError:
            # Event loop mismatch in test scenarios; connection already gone
            logger.debug(f"Engine dispose for {url} hit an event loop mismatch")
    _engines.clear()
