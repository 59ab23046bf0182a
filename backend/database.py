import logging

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from core.settings import get_settings

logger = logging.getLogger(__name__)

Base = declarative_base()


def create_engine_for_url(database_url: str) -> AsyncEngine:
    """
    Create an async engine for the given URL.

    PostgreSQL gets connection pooling; SQLite (local runs and tests) uses the
    driver defaults since it does not accept pool sizing arguments.
    """
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=False, connect_args={"timeout": 30})

    return create_async_engine(
        database_url,
        echo=False,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=3600,  # Recycle connections after 1 hour
    )


def create_session_maker(bind: AsyncEngine) -> async_sessionmaker:
    """Session factory with the defaults every store operation expects."""
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


_engine: AsyncEngine | None = None
_session_maker: async_sessionmaker | None = None


def get_engine() -> AsyncEngine:
    """Lazily create the process-wide engine from DATABASE_URL."""
    global _engine
    if _engine is None:
        _engine = create_engine_for_url(get_settings().database_url)
    return _engine


def get_session_maker() -> async_sessionmaker:
    global _session_maker
    if _session_maker is None:
        _session_maker = create_session_maker(get_engine())
    return _session_maker


async def get_db():
    """Yield a database session."""
    async with get_session_maker()() as session:
        yield session


async def init_db(engine: AsyncEngine | None = None):
    """
    Initialize the coordination schema.

    Creates all tables if they don't exist. The unique constraints created here
    are what every lease and lock relies on, so this must run before the
    scheduler starts.
    """
    import models  # noqa: F401  (registers tables on Base.metadata)

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Coordination schema ready")


async def dispose_engine() -> None:
    global _engine, _session_maker
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_maker = None
