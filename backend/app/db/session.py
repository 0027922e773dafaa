"""
Database session configuration.

Builds the async engine for the ledger database. PostgreSQL (asyncpg) is the
production target; SQLite (aiosqlite) URLs are accepted for local runs and
tests, with foreign keys switched on and one connection per checkout.
"""

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool
from backend.app.core.config import settings


def _enable_sqlite_foreign_keys(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """
    Create an async engine for ``database_url``.

    SQLite gets a busy timeout instead of pool sizing, since concurrent
    units of work must each hold their own connection.
    """
    if make_url(database_url).get_backend_name() == "sqlite":
        sqlite_engine = create_async_engine(
            database_url,
            echo=echo,
            connect_args={"timeout": 30},
            poolclass=NullPool,
        )
        event.listen(sqlite_engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
        return sqlite_engine

    return create_async_engine(
        database_url,
        echo=echo,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,
    )


engine = build_engine(settings.database_url, echo=settings.db_echo)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

Base = declarative_base()


async def get_db():
    """
    FastAPI dependency for database sessions.

    Transaction boundaries belong to UnitOfWork; this only scopes the session
    to the request.
    """
    async with AsyncSessionLocal() as session:
        yield session
