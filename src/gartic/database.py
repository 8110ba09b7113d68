"""Async SQLAlchemy engine, session management and serializable transactions."""

from __future__ import annotations

import asyncio
import random
from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import Any, TypeVar

import structlog
from sqlalchemy import event
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from gartic.config import get_settings
from gartic.sessions.errors import StateConflict, StoreTransient

logger = structlog.get_logger()

T = TypeVar("T")

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None

# serialization_failure, deadlock_detected, unique_violation
RETRYABLE_SQLSTATES = frozenset({"40001", "40P01", "23505"})
RETRYABLE_SQLITE_MESSAGES = ("database is locked", "database is busy", "unique constraint failed")


def _install_sqlite_begin(engine: AsyncEngine) -> None:
    """Make every SQLite transaction take the write lock up front.

    The driver would otherwise start the transaction lazily at the first
    write, letting two allocations read the same spare capacity.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, _record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


async def init_db(url: str) -> None:
    """Initialize the database engine and session factory."""
    global _engine, _session_factory  # noqa: PLW0603
    if url.startswith("sqlite"):
        _engine = create_async_engine(url, echo=False, connect_args={"timeout": 15})
        _install_sqlite_begin(_engine)
    else:
        _engine = create_async_engine(
            url,
            pool_size=20,
            max_overflow=10,
            pool_pre_ping=True,
            echo=False,
            isolation_level="SERIALIZABLE",
            connect_args={"statement_cache_size": 0},
        )
    _session_factory = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def close_db() -> None:
    """Dispose of the database engine."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_engine() -> AsyncEngine:
    """Get the async engine instance."""
    if _engine is None:
        msg = "Database not initialized. Call init_db() first."
        raise RuntimeError(msg)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        msg = "Database not initialized. Call init_db() first."
        raise RuntimeError(msg)
    return _session_factory


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session (FastAPI dependency)."""
    async with get_session_factory()() as session:
        yield session


def is_retryable(exc: BaseException) -> bool:
    """True if the store rejected the transaction because of a concurrent one."""
    if not isinstance(exc, DBAPIError):
        return False
    orig = exc.orig
    candidates = [orig, getattr(orig, "__cause__", None)]
    for candidate in candidates:
        if candidate is None:
            continue
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if code in RETRYABLE_SQLSTATES:
            return True
    message = str(orig).lower()
    return any(fragment in message for fragment in RETRYABLE_SQLITE_MESSAGES)


def _backoff_seconds(attempt: int) -> float:
    """Exponential backoff with jitter and an upper cap."""
    settings = get_settings()
    delay = settings.store_retry_backoff_seconds * (2 ** (attempt - 1))
    delay = min(settings.store_retry_backoff_max_seconds, delay)
    return delay * (0.5 + random.random() / 2)  # noqa: S311


async def run_in_transaction(
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    max_retries: int | None = None,
    conflict_retries: int | None = None,
    **kwargs: Any,
) -> T:
    """Run ``fn(session, *args, **kwargs)`` in one all-or-nothing transaction.

    Store conflicts are retried with backoff up to ``max_retries`` times and
    then raised as StoreTransient. StateConflict is retried up to
    ``conflict_retries`` times and then re-raised unchanged. Any other
    exception rolls back and propagates.
    """
    settings = get_settings()
    if max_retries is None:
        max_retries = settings.store_max_retries
    if conflict_retries is None:
        conflict_retries = settings.state_conflict_retries

    name = getattr(fn, "__name__", repr(fn))
    factory = get_session_factory()
    store_failures = 0
    conflicts = 0
    while True:
        try:
            async with factory() as session:
                async with session.begin():
                    return await fn(session, *args, **kwargs)
        except StateConflict:
            conflicts += 1
            if conflicts > conflict_retries:
                raise
            logger.info("state_conflict_retry", operation=name, attempt=conflicts)
        except DBAPIError as exc:
            if not is_retryable(exc):
                raise
            store_failures += 1
            if store_failures > max_retries:
                logger.error("store_retries_exhausted", operation=name, error=str(exc.orig))
                msg = f"{name} could not commit after {max_retries} retries"
                raise StoreTransient(msg) from exc
            delay = _backoff_seconds(store_failures)
            logger.warning(
                "store_conflict_retry",
                operation=name,
                attempt=store_failures,
                delay=round(delay, 3),
                integrity=isinstance(exc, IntegrityError),
            )
            await asyncio.sleep(delay)
