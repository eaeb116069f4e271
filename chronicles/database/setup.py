import logging
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool
from .base import Base
from . import models  # noqa: F401  registra las tablas
from chronicles.utils.config import Config

logger = logging.getLogger(__name__)

_engine = None
_sessionmaker = None


def _engine_options(url: str) -> dict:
    options = {"echo": Config.DATABASE_ECHO}
    if url.startswith("sqlite") and ":memory:" in url:
        # Una sola conexión compartida para que la base en memoria sobreviva
        options["poolclass"] = StaticPool
        options["connect_args"] = {"check_same_thread": False}
    return options


async def init_db(database_url: str | None = None):
    global _engine, _sessionmaker
    url = database_url or Config.DATABASE_URL
    try:
        logger.info(f"Initializing database connection ({url.split(':', 1)[0]})...")

        _engine = create_async_engine(url, **_engine_options(url))

        # Create tables
        async with _engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            logger.info("Tables created successfully")

        _sessionmaker = async_sessionmaker(
            bind=_engine,
            expire_on_commit=False,
            class_=AsyncSession,
            autoflush=False  # Prevent premature flushes
        )

        return _engine
    except Exception as e:
        logger.critical(f"SQLAlchemy connection failed: {str(e)}")
        raise


def get_session_factory():
    if not _sessionmaker:
        raise RuntimeError("Call init_db() first")
    return _sessionmaker


async def close_db():
    global _engine, _sessionmaker
    if _engine:
        await _engine.dispose()
        _engine = None
        _sessionmaker = None
        logger.info("Database connection closed")
