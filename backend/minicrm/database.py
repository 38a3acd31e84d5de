"""
SQLAlchemy Async Database Configuration.
"""

from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from minicrm.config import get_settings
from minicrm.models.base import Base  # Import from models package

settings = get_settings()


def _engine_options(url: str) -> dict:
    """Pool options per backend. SQLite serializes writers, so wait instead of failing."""
    if url.startswith("sqlite"):
        return {"connect_args": {"timeout": 30}}
    return {
        "pool_size": 20,
        "max_overflow": 80,
        "pool_timeout": 10,     # Fail fast instead of blocking for 30s
        "pool_recycle": 900,
        "pool_pre_ping": True,  # Verify connections before use
    }


# Async Engine with connection pool configuration
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    future=True,
    **_engine_options(settings.DATABASE_URL),
)


def _unicode_lower(value):
    return value.lower() if isinstance(value, str) else value


if settings.DATABASE_URL.startswith("sqlite"):
    # SQLite's built-in lower() only folds ASCII; ILIKE-style segment filters need full case folding.
    @event.listens_for(engine.sync_engine, "connect")
    def _register_sqlite_functions(dbapi_connection, connection_record):
        dbapi_connection.create_function("lower", 1, _unicode_lower)


# Async Session Factory
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def create_tables():
    """Create all tables (used at startup and by tests)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

