"""
Async engine and sessions. PostgreSQL (asyncpg) in deployment, SQLite
(aiosqlite) for local runs and tests.
"""

import logging
from typing import Any, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from .config import get_settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


_engine: Optional[AsyncEngine] = None
_sessions: Optional[async_sessionmaker[AsyncSession]] = None


def _async_url(url: str) -> str:
    if url.startswith("postgresql://"):
        return "postgresql+asyncpg://" + url[len("postgresql://"):]
    return url


def _engine_options(url: str, echo: bool) -> dict[str, Any]:
    if url.startswith("sqlite"):
        return {"echo": echo, "connect_args": {"timeout": 30}}
    return {"echo": echo, "pool_size": 20, "max_overflow": 10, "pool_pre_ping": True}


def _begin_immediate(engine: AsyncEngine) -> None:
    """SQLite: every transaction takes the write lock up front (BEGIN IMMEDIATE)."""

    @event.listens_for(engine.sync_engine, "connect")
    def _autocommit_driver(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        settings = get_settings()
        url = _async_url(settings.database_url)
        _engine = create_async_engine(url, **_engine_options(url, settings.debug))
        if _engine.dialect.name == "sqlite":
            _begin_immediate(_engine)
        logger.info("Database engine ready (%s)", _engine.dialect.name)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _sessions
    if _sessions is None:
        _sessions = async_sessionmaker(bind=get_engine(), class_=AsyncSession, expire_on_commit=False)
    return _sessions


async def get_db() -> AsyncSession:
    """Request-scoped session: commit on success, roll back on any error."""
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def insert_ignore(session: AsyncSession, model, values: dict, index_elements: list[str]):
    """
    INSERT ... ON CONFLICT DO NOTHING on the session's dialect.
    After execute(), rowcount == 1 means this caller created the row.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"insert_ignore has no {dialect} form")

    return insert(model).values(**values).on_conflict_do_nothing(index_elements=index_elements)


def _register_models() -> None:
    from ..models import document, organization, tender, upload, usage  # noqa: F401


async def init_db():
    _register_models()
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Schema created or already present")


async def close_db():
    global _engine, _sessions
    if _engine is not None:
        await _engine.dispose()
        logger.info("Database engine disposed")
    _engine = None
    _sessions = None
