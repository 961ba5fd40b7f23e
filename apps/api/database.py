"""
Database engine, session factory and FastAPI session dependencies.
"""

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from config import settings


Base = declarative_base()


def _async_url(url: str) -> str:
    if url.startswith("postgresql://"):
        return "postgresql+asyncpg://" + url[len("postgresql://"):]
    if url.startswith("sqlite:///"):
        return "sqlite+aiosqlite:///" + url[len("sqlite:///"):]
    return url


def build_engine(url: str, **kwargs) -> AsyncEngine:
    """Create an async engine; SQLite connections take the write lock at BEGIN."""
    async_url = _async_url(url)
    engine = create_async_engine(async_url, **kwargs)
    if engine.dialect.name == "sqlite":
        # aiosqlite's implicit BEGIN is deferred, which lets two writers deadlock on
        # lock promotion. Emit BEGIN IMMEDIATE ourselves so writers queue on the busy timeout.
        @event.listens_for(engine.sync_engine, "connect")
        def _disable_implicit_begin(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine.sync_engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def build_session_maker(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = build_engine(settings.DATABASE_URL, pool_pre_ping=True)
async_session_maker = build_session_maker(engine)


def get_session_maker() -> async_sessionmaker:
    """Session factory used by ledger/report/queue services; overridden in tests."""
    return async_session_maker
