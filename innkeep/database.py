"""Async SQLAlchemy engine, session factory, and declarative base."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import event, func
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from innkeep.config import settings

# PostgreSQL "lock_not_available", raised by FOR UPDATE NOWAIT.
_PG_LOCK_NOT_AVAILABLE = "55P03"
_SQLITE_BUSY = 5
_SQLITE_LOCKED = 6


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        # A busy database fails the statement at once instead of waiting for the lock.
        return {"connect_args": {"timeout": 0}}
    return {"pool_pre_ping": True, "pool_size": 10, "max_overflow": 20}


def _enable_sqlite_wal(dbapi_connection, connection_record) -> None:
    # WAL lets readers run beside the single writer, so only writers contend.
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


def make_engine(url: str | None = None, *, echo: bool | None = None) -> AsyncEngine:
    """Create an async engine for ``url`` (defaults to the configured database)."""
    url = url or settings.async_database_url
    async_engine = create_async_engine(
        url,
        echo=settings.debug if echo is None else echo,
        **_engine_options(url),
    )
    if url.startswith("sqlite") and ":memory:" not in url:
        event.listen(async_engine.sync_engine, "connect", _enable_sqlite_wal)
    return async_engine


def is_lock_conflict(exc: DBAPIError) -> bool:
    """True when ``exc`` means another transaction holds the lock we asked for."""
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate == _PG_LOCK_NOT_AVAILABLE:
        return True
    code = getattr(orig, "sqlite_errorcode", None)
    if code is not None:
        return (code & 0xFF) in (_SQLITE_BUSY, _SQLITE_LOCKED)
    return "database is locked" in str(orig)


def make_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory used by the reservation service, one session per use case."""
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = make_engine()

async_session_factory = make_session_factory(engine)


def utcnow() -> datetime:
    """Current time as a naive UTC datetime, the form every timestamp column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class TimestampMixin:
    """Mixin that adds created_at and updated_at columns."""

    created_at: Mapped[datetime] = mapped_column(default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
    )


class UUIDPrimaryKeyMixin:
    """Mixin that adds a UUID primary key column."""

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
