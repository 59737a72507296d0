import logging
from typing import Any, AsyncGenerator

import sqlalchemy as sa
from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.exc import TimeoutError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from clutterscore.infra.tenant_context import get_current_tenant_id
from clutterscore.settings import settings

# Defined ahead of Base so model modules can import it without a cycle.
UUID_TYPE = sa.Uuid(as_uuid=True)

Base = declarative_base()

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None

logger = logging.getLogger(__name__)


def _engine_options(database_url: str) -> dict[str, Any]:
    backend = make_url(database_url).get_backend_name()
    if backend == "postgresql":
        return {
            "pool_pre_ping": True,
            "pool_size": settings.database_pool_size,
            "max_overflow": settings.database_max_overflow,
            "pool_timeout": settings.database_pool_timeout_seconds,
            "connect_args": {
                "options": f"-c statement_timeout={int(settings.database_statement_timeout_ms)}",
            },
        }
    if backend == "sqlite":
        return {"connect_args": {"timeout": settings.database_pool_timeout_seconds}}
    return {"pool_pre_ping": True}


def build_engine(database_url: str) -> AsyncEngine:
    engine = create_async_engine(database_url, **_engine_options(database_url))
    _configure_logging(engine)
    if engine.dialect.name == "sqlite":
        _enable_sqlite_foreign_keys(engine)
    return engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _engine, _session_factory
    if _session_factory is None:
        _engine = build_engine(settings.database_url)
        _session_factory = async_sessionmaker(_engine, expire_on_commit=False, class_=AsyncSession)
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    try:
        async with get_session_factory()() as session:
            yield session
    except TimeoutError as exc:
        logger.warning("db_pool_timeout", exc_info=exc)
        raise


async def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


def _enable_sqlite_foreign_keys(engine: AsyncEngine) -> None:
    # Tenant deletes rely on ON DELETE CASCADE, which SQLite ignores unless asked.
    @event.listens_for(engine.sync_engine, "connect")
    def set_foreign_keys(dbapi_connection, connection_record):  # noqa: ANN001
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def _configure_logging(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "handle_error")
    def receive_error(context):  # noqa: ANN001
        exc = context.original_exception or context.sqlalchemy_exception
        if isinstance(exc, TimeoutError):
            tenant_id = get_current_tenant_id()
            logger.warning(
                "db_pool_timeout",
                extra={
                    "extra": {
                        "operation": str(context.statement) if context.statement else None,
                        "tenant_id": str(tenant_id) if tenant_id else None,
                    }
                },
            )
