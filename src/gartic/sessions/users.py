"""User directory: maps a chat platform identity to an internal user row."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import select

from gartic.db.models import User
from gartic.sessions.errors import UserNotFound

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()

NOTIFY_PREFERENCES = ("disabled", "once", "always")


async def get_user(db: AsyncSession, external_id: int) -> User:
    """Get a user by external id. Raises UserNotFound."""
    result = await db.execute(select(User).where(User.external_id == external_id))
    user = result.scalar_one_or_none()
    if user is None:
        raise UserNotFound(external_id)
    return user


async def get_or_create_user(db: AsyncSession, external_id: int, name: str) -> User:
    """Idempotent upsert: create the user, or refresh the display name."""
    now = datetime.now(timezone.utc)
    result = await db.execute(select(User).where(User.external_id == external_id))
    user = result.scalar_one_or_none()
    if user is not None:
        if user.name != name:
            user.name = name
            user.updated_at = now
            await db.flush()
        return user

    user = User(
        external_id=external_id,
        name=name,
        notify="disabled",
        created_at=now,
        updated_at=now,
    )
    db.add(user)
    await db.flush()
    logger.info("user_created", user_id=user.id, external_id=external_id)
    return user


async def set_notification_preference(db: AsyncSession, user: User, notify: str) -> User:
    """Set how the user wants to hear about newly opened rounds."""
    if notify not in NOTIFY_PREFERENCES:
        msg = f"Unknown notification preference: {notify}"
        raise ValueError(msg)
    if user.notify != notify:
        user.notify = notify
        user.updated_at = datetime.now(timezone.utc)
        await db.flush()
    return user


async def take_users_to_notify(db: AsyncSession) -> list[User]:
    """Users to tell about a newly opened round.

    Returns everyone with ``always`` plus everyone with ``once``; the
    ``once`` users are reset to ``disabled`` in the same transaction, so
    the returned rows already show their new preference.
    """
    result = await db.execute(
        select(User)
        .where(User.notify.in_(("once", "always")))
        .order_by(User.id)
    )
    users = list(result.scalars().all())
    now = datetime.now(timezone.utc)
    for user in users:
        if user.notify == "once":
            user.notify = "disabled"
            user.updated_at = now
    await db.flush()
    return users
