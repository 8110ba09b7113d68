"""Shared test fixtures.

Every test gets its own SQLite database file, created from the ORM metadata
and driven through the same serializable transaction runner the service
uses in production. Redis is not initialized, so activity publishing is a
no-op unless a test installs a mock.
"""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime
from pathlib import Path
from typing import Any

os.environ.setdefault("GARTIC_LOG_FORMAT", "console")
os.environ["GARTIC_STORE_RETRY_BACKOFF_SECONDS"] = "0.001"
os.environ["GARTIC_STORE_RETRY_BACKOFF_MAX_SECONDS"] = "0.01"

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import select, update  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession  # noqa: E402

from gartic.config import get_settings  # noqa: E402
from gartic.database import close_db, get_engine, init_db, run_in_transaction  # noqa: E402
from gartic.db.base import Base  # noqa: E402
from gartic.db.models import Attempt, User  # noqa: E402
from gartic.sessions import users  # noqa: E402

get_settings.cache_clear()


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """A fresh SQLite store with the schema created."""
    await init_db(f"sqlite+aiosqlite:///{tmp_path / 'gartic.db'}")
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield get_engine()
    await close_db()


@pytest_asyncio.fixture
async def client(engine: AsyncEngine) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client bound to the test store."""
    from gartic.main import create_app

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def _tx(fn: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
    """Run ``fn(db, ...)`` in its own committed transaction."""
    return await run_in_transaction(fn, *args, **kwargs)


async def _make_user(external_id: int, name: str = "") -> User:
    return await _tx(users.get_or_create_user, external_id, name or f"player{external_id}")


async def _load_attempt(attempt_id: int) -> Attempt:
    async def _load(db: AsyncSession) -> Attempt:
        return (await db.execute(select(Attempt).where(Attempt.id == attempt_id))).scalar_one()

    return await _tx(_load)


async def _set_deadline(attempt_id: int, until: datetime) -> None:
    async def _set(db: AsyncSession) -> None:
        await db.execute(update(Attempt).where(Attempt.id == attempt_id).values(active_until=until))

    await _tx(_set)


@pytest.fixture
def tx(engine: AsyncEngine) -> Callable[..., Awaitable[Any]]:
    """``await tx(fn, *args)`` runs ``fn(db, *args)`` in a committed transaction."""
    return _tx


@pytest.fixture
def make_user(engine: AsyncEngine) -> Callable[..., Awaitable[User]]:
    return _make_user


@pytest.fixture
def load_attempt(engine: AsyncEngine) -> Callable[[int], Awaitable[Attempt]]:
    return _load_attempt


@pytest.fixture
def set_deadline(engine: AsyncEngine) -> Callable[[int, datetime], Awaitable[None]]:
    """Overwrite an attempt's ``active_until``, e.g. to put it in the past."""
    return _set_deadline
