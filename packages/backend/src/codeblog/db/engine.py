"""Async SQLAlchemy engine and session factory.

Learn: SQLAlchemy 2.0 async mode — create_async_engine for connection pooling,
AsyncSession for per-request database access, dependency injection via FastAPI.

Works against PostgreSQL (asyncpg) in production and SQLite (aiosqlite)
for local development and tests. Key repair relies on SAVEPOINT, which
the sqlite3 driver mishandles by default, so SQLite engines get
SQLAlchemy's recipe: no implicit transactions, an explicit BEGIN instead.
"""

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from codeblog.config import settings


def _pool_options(url: str) -> dict:
    """Connection pool sizing. SQLite manages its own pool."""
    if url.startswith("sqlite"):
        return {}
    return {"pool_size": 5, "max_overflow": 15}


def enable_sqlite_savepoints(engine: AsyncEngine) -> None:
    """Let SQLAlchemy drive BEGIN so SAVEPOINT / ROLLBACK TO work on SQLite."""

    @event.listens_for(engine.sync_engine, "connect")
    def _no_implicit_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _explicit_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine for url, with the SQLite fixes where needed."""
    engine = create_async_engine(url, echo=echo, **_pool_options(url))
    if url.startswith("sqlite"):
        enable_sqlite_savepoints(engine)
    return engine


# echo=True in dev to see SQL queries.
engine = build_engine(settings.database_url, echo=settings.debug)

# Session factory — each request gets its own session.
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncSession:
    """FastAPI dependency — yields a session per request, auto-closes."""
    async with async_session_factory() as session:
        try:
            yield session
        finally:
            await session.close()
