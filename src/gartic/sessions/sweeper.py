"""Expiry sweep: bulk Active -> Expired for attempts past their deadline."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import select, update

from gartic.db.models import Attempt, User
from gartic.sessions.states import Expired, StateType, state_columns

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()


async def sweep(db: AsyncSession, now: datetime | None = None) -> int:
    """Expire every Active attempt whose deadline has passed. Returns the count."""
    now = now or datetime.now(timezone.utc)
    result = await db.execute(
        update(Attempt)
        .where(
            Attempt.state_type == StateType.ACTIVE.value,
            Attempt.active_until < now,
        )
        .values(**state_columns(Expired(when=now)))
        .execution_options(synchronize_session=False)
    )
    count = result.rowcount or 0
    if count:
        logger.info("attempts_expired", count=count)
    return count


async def get_expiring(
    db: AsyncSession,
    after: datetime,
    until: datetime,
) -> list[tuple[Attempt, User]]:
    """Active attempts whose deadline falls in ``(after, until]``."""
    result = await db.execute(
        select(Attempt, User)
        .join(User, User.id == Attempt.user_id)
        .where(
            Attempt.state_type == StateType.ACTIVE.value,
            Attempt.active_until > after,
            Attempt.active_until <= until,
        )
        .order_by(Attempt.active_until)
    )
    return [(attempt, user) for attempt, user in result.all()]
