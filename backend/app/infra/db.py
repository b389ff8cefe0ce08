import logging
from typing import Any, AsyncGenerator

import sqlalchemy as sa
from sqlalchemy import event
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import make_url
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from app.settings import settings

logger = logging.getLogger(__name__)

# Column types shared by every model module; defined ahead of Base so model imports never cycle.
UUID_TYPE = sa.Uuid(as_uuid=True)
JSON_TYPE = sa.JSON().with_variant(JSONB, "postgresql")

Base = declarative_base()

import app.infra.models  # noqa: F401,E402  (populates Base.metadata)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def engine_options(database_url: str) -> dict[str, Any]:
    """Pool and driver options; Postgres gets a bounded pool and a server-side statement timeout."""
    options: dict[str, Any] = {"pool_pre_ping": True}
    if make_url(database_url).get_backend_name() == "postgresql":
        options.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_timeout=settings.database_pool_timeout_seconds,
            connect_args={"options": f"-c statement_timeout={int(settings.database_statement_timeout_ms)}"},
        )
    return options


def _log_pool_timeouts(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "handle_error")
    def _on_error(context) -> None:  # noqa: ANN001
        error = context.original_exception or context.sqlalchemy_exception
        if isinstance(error, PoolTimeoutError):
            logger.warning(
                "db_pool_timeout",
                extra={"extra": {"statement": str(context.statement) if context.statement else None}},
            )


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _engine, _session_factory
    if _session_factory is None:
        _engine = create_async_engine(settings.database_url, **engine_options(settings.database_url))
        _log_pool_timeouts(_engine)
        _session_factory = async_sessionmaker(_engine, expire_on_commit=False, class_=AsyncSession)
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    async with get_session_factory()() as session:
        yield session


async def dispose_engine() -> None:
    global _engine, _session_factory
    engine, _engine, _session_factory = _engine, None, None
    if engine is not None:
        await engine.dispose()


def dialect_name(session: AsyncSession) -> str:
    bind = session.get_bind()
    return bind.dialect.name if bind is not None else ""
