"""Attempt lifecycle operations.

Every transition is a compare-and-set on ``state_type``: the UPDATE only
matches a row still in the expected prior state, so a concurrent operation
on the same attempt turns into a StateConflict instead of a lost update.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import select, update

from gartic.db.models import Attempt, Round, User
from gartic.gamemodes import get_mode
from gartic.sessions.errors import AttemptNotFound, NoActiveSession, StateConflict
from gartic.sessions.states import (
    Active,
    Approved,
    AttemptState,
    Cancelled,
    Pending,
    Rejected,
    StateType,
    Uploading,
    state_columns,
    validate_transition,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()


async def get_attempt(db: AsyncSession, attempt_id: int) -> Attempt:
    """Get an attempt by id. Raises AttemptNotFound."""
    attempt = await db.get(Attempt, attempt_id)
    if attempt is None:
        raise AttemptNotFound(attempt_id)
    return attempt


async def get_round_of(db: AsyncSession, attempt: Attempt) -> Round:
    round_ = await db.get(Round, attempt.round_id)
    if round_ is None:  # pragma: no cover - guarded by the foreign key
        raise AttemptNotFound(attempt.id)
    return round_


async def get_current(db: AsyncSession, user: User) -> Attempt | None:
    """The user's Active attempt, if any."""
    result = await db.execute(
        select(Attempt)
        .where(Attempt.user_id == user.id, Attempt.state_type == StateType.ACTIVE.value)
        .order_by(Attempt.created_at.desc(), Attempt.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_pending_by_image(db: AsyncSession, image_ref: str) -> Attempt:
    """Find the Pending attempt awaiting moderation of ``image_ref``."""
    result = await db.execute(
        select(Attempt)
        .where(Attempt.image_ref == image_ref, Attempt.state_type == StateType.PENDING.value)
        .limit(1)
    )
    attempt = result.scalar_one_or_none()
    if attempt is None:
        raise AttemptNotFound(image_ref)
    return attempt


async def _find_user_attempt(db: AsyncSession, user: User, kind: StateType) -> Attempt:
    result = await db.execute(
        select(Attempt)
        .where(Attempt.user_id == user.id, Attempt.state_type == kind.value)
        .order_by(Attempt.created_at.desc(), Attempt.id.desc())
        .limit(1)
    )
    attempt = result.scalar_one_or_none()
    if attempt is None:
        raise NoActiveSession
    return attempt


async def transition(db: AsyncSession, attempt: Attempt, new_state: AttemptState) -> Attempt:
    """Move ``attempt`` from its loaded state to ``new_state``.

    Raises StateConflict if the move is illegal or if another transaction
    changed the attempt since it was read.
    """
    expected = attempt.kind
    validate_transition(expected, new_state.kind)
    result = await db.execute(
        update(Attempt)
        .where(Attempt.id == attempt.id, Attempt.state_type == expected.value)
        .values(**state_columns(new_state))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        msg = f"Attempt {attempt.id} is no longer {expected.value}"
        raise StateConflict(msg)
    await db.refresh(attempt)
    logger.info(
        "attempt_transition",
        attempt_id=attempt.id,
        user_id=attempt.user_id,
        from_state=expected.value,
        to_state=new_state.kind.value,
    )
    return attempt


async def extend(db: AsyncSession, user: User) -> Attempt:
    """Refresh the deadline of the user's Active attempt."""
    attempt = await _find_user_attempt(db, user, StateType.ACTIVE)
    round_ = await get_round_of(db, attempt)
    until = datetime.now(timezone.utc) + get_mode(round_.mode).time_limit(round_.round_no)
    return await transition(db, attempt, Active(until=until))


async def cancel(db: AsyncSession, user: User) -> Attempt:
    """Give up the user's Active attempt, freeing its slot."""
    attempt = await _find_user_attempt(db, user, StateType.ACTIVE)
    return await transition(db, attempt, Cancelled(when=datetime.now(timezone.utc)))


async def start_upload(db: AsyncSession, user: User) -> Attempt:
    """Lock the user's Active attempt for submission."""
    attempt = await _find_user_attempt(db, user, StateType.ACTIVE)
    return await transition(db, attempt, Uploading(since=datetime.now(timezone.utc)))


async def finish_upload(db: AsyncSession, user: User, image_ref: str, *, trusted: bool) -> Attempt:
    """Record the submitted image.

    Trusted submitters approve their own work; everyone else waits in
    Pending for a moderator.
    """
    attempt = await _find_user_attempt(db, user, StateType.UPLOADING)
    now = datetime.now(timezone.utc)
    if trusted:
        state: AttemptState = Approved(when=now, moderator_id=user.id, image_ref=image_ref)
    else:
        state = Pending(since=now, image_ref=image_ref)
    return await transition(db, attempt, state)


async def approve(
    db: AsyncSession,
    attempt_id: int,
    moderator: User,
    image_ref: str | None = None,
) -> Attempt:
    """Accept a Pending attempt.

    ``image_ref`` replaces the submitted reference when the moderator
    re-hosted the image; otherwise the submitted one is kept.
    """
    attempt = await get_attempt(db, attempt_id)
    if attempt.kind is not StateType.PENDING:
        validate_transition(attempt.kind, StateType.APPROVED)
        msg = f"Attempt {attempt_id} is {attempt.state_type}, not pending"
        raise StateConflict(msg)
    final_ref = image_ref or attempt.image_ref
    state = Approved(when=datetime.now(timezone.utc), moderator_id=moderator.id, image_ref=final_ref)
    return await transition(db, attempt, state)


async def reject(
    db: AsyncSession,
    attempt_id: int,
    moderator: User,
    image_ref: str | None = None,
) -> Attempt:
    """Decline a Pending attempt."""
    attempt = await get_attempt(db, attempt_id)
    if attempt.kind is not StateType.PENDING:
        validate_transition(attempt.kind, StateType.REJECTED)
        msg = f"Attempt {attempt_id} is {attempt.state_type}, not pending"
        raise StateConflict(msg)
    final_ref = image_ref or attempt.image_ref
    state = Rejected(when=datetime.now(timezone.utc), moderator_id=moderator.id, image_ref=final_ref)
    return await transition(db, attempt, state)
