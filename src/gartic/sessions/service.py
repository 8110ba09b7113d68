"""Session service: one store transaction per player or moderator action.

Each public coroutine wraps the engine operations it needs in
``run_in_transaction`` so candidate reads and writes commit together or
not at all, then publishes activity once the transaction has committed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

import structlog

from gartic.database import run_in_transaction
from gartic.gamemodes import get_mode
from gartic.redis_client import get_redis_or_none
from gartic.sessions import allocator, attempts, events, lineage, stats, sweeper, users
from gartic.sessions.errors import NoActiveSession

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from gartic.db.models import Attempt, Round, User
    from gartic.sessions.lineage import LineageStep

logger = structlog.get_logger()


@dataclass(frozen=True)
class SessionView:
    """An attempt together with the round it occupies and that round's history."""

    user: User
    attempt: Attempt
    round: Round
    lineage: list[LineageStep]
    prompt: str
    resumed: bool = False


@dataclass(frozen=True)
class Submission:
    attempt: Attempt
    forwarded: Round | None = None
    notified: list[int] = field(default_factory=list)


async def _register(external_id: int, name: str) -> User:
    """Upsert the caller in its own transaction, ahead of the action itself."""
    return await run_in_transaction(users.get_or_create_user, external_id, name)


async def _view(db: AsyncSession, user: User, attempt: Attempt, *, resumed: bool = False) -> SessionView:
    round_ = await attempts.get_round_of(db, attempt)
    return SessionView(
        user=user,
        attempt=attempt,
        round=round_,
        lineage=await lineage.get_lineage(db, round_.id),
        prompt=get_mode(round_.mode).prompt(round_.round_no),
        resumed=resumed,
    )


async def _approve_and_forward(db: AsyncSession, attempt: Attempt) -> Submission:
    forwarded = await lineage.forward(db, attempt)
    notified: list[int] = []
    if forwarded is not None:
        notified = [u.external_id for u in await users.take_users_to_notify(db)]
    return Submission(attempt=attempt, forwarded=forwarded, notified=notified)


async def _announce(submission: Submission) -> None:
    redis = get_redis_or_none()
    attempt = submission.attempt
    await events.publish_activity(
        redis,
        f"attempt_{attempt.state_type}",
        attempt_id=attempt.id,
        user_id=attempt.user_id,
        round_id=attempt.round_id,
    )
    round_ = submission.forwarded
    if round_ is None:
        return
    await events.publish_activity(
        redis,
        "round_opened",
        round_id=round_.id,
        mode=round_.mode,
        nsfw=round_.nsfw,
        round_no=round_.round_no,
    )
    for external_id in submission.notified:
        await events.push_to_user(
            redis,
            external_id,
            "round_opened",
            mode=round_.mode,
            nsfw=round_.nsfw,
            round_no=round_.round_no,
        )


# ---------------------------------------------------------------------------
# Player actions
# ---------------------------------------------------------------------------


async def start_session(
    external_id: int,
    name: str,
    mode: str,
    nsfw: bool = False,
    round_no: int = 0,
) -> SessionView:
    """Resume the player's Active attempt, or allocate a new one.

    The user upsert commits first, so the player is recorded even when
    no round is available.
    """
    await _register(external_id, name)
    get_mode(mode).check_round(round_no)
    await run_in_transaction(sweeper.sweep)

    async def _start(db: AsyncSession) -> SessionView:
        user = await users.get_user(db, external_id)
        current = await attempts.get_current(db, user)
        if current is not None:
            return await _view(db, user, current, resumed=True)
        attempt = await allocator.allocate(db, user, mode, nsfw, round_no)
        return await _view(db, user, attempt)

    view = await run_in_transaction(_start)
    if not view.resumed:
        await events.publish_activity(
            get_redis_or_none(),
            "session_started",
            user_id=view.user.id,
            attempt_id=view.attempt.id,
            round_id=view.round.id,
            mode=view.round.mode,
            nsfw=view.round.nsfw,
            round_no=view.round.round_no,
        )
    return view


async def reroll_session(external_id: int) -> SessionView:
    """Trade the player's Active attempt for a slot on another existing round."""

    async def _reroll(db: AsyncSession) -> SessionView:
        await sweeper.sweep(db)
        user = await users.get_user(db, external_id)
        attempt = await allocator.reroll(db, user)
        return await _view(db, user, attempt)

    view = await run_in_transaction(_reroll)
    await events.publish_activity(
        get_redis_or_none(),
        "session_rerolled",
        user_id=view.user.id,
        attempt_id=view.attempt.id,
        round_id=view.round.id,
        mode=view.round.mode,
        nsfw=view.round.nsfw,
        round_no=view.round.round_no,
    )
    return view


async def current_session(external_id: int) -> SessionView:
    """The player's Active attempt. Raises NoActiveSession."""

    async def _current(db: AsyncSession) -> SessionView:
        await sweeper.sweep(db)
        user = await users.get_user(db, external_id)
        attempt = await attempts.get_current(db, user)
        if attempt is None:
            raise NoActiveSession
        return await _view(db, user, attempt, resumed=True)

    return await run_in_transaction(_current)


async def _user_transition(external_id: int, operation) -> Attempt:
    async def _apply(db: AsyncSession) -> Attempt:
        await sweeper.sweep(db)
        user = await users.get_user(db, external_id)
        return await operation(db, user)

    _apply.__name__ = operation.__name__
    attempt = await run_in_transaction(_apply)
    await events.publish_activity(
        get_redis_or_none(),
        f"attempt_{attempt.state_type}",
        attempt_id=attempt.id,
        user_id=attempt.user_id,
        round_id=attempt.round_id,
    )
    return attempt


async def extend_session(external_id: int) -> Attempt:
    return await _user_transition(external_id, attempts.extend)


async def cancel_session(external_id: int) -> Attempt:
    return await _user_transition(external_id, attempts.cancel)


async def begin_upload(external_id: int) -> Attempt:
    return await _user_transition(external_id, attempts.start_upload)


async def finish_upload(external_id: int, image_ref: str, *, trusted: bool) -> Submission:
    """Record a submission; trusted submissions are approved and forwarded at once."""

    async def _finish(db: AsyncSession) -> Submission:
        user = await users.get_user(db, external_id)
        attempt = await attempts.finish_upload(db, user, image_ref, trusted=trusted)
        if trusted:
            return await _approve_and_forward(db, attempt)
        return Submission(attempt=attempt)

    submission = await run_in_transaction(_finish)
    await _announce(submission)
    return submission


# ---------------------------------------------------------------------------
# Moderation
# ---------------------------------------------------------------------------


async def get_submission(image_ref: str) -> Attempt:
    return await run_in_transaction(attempts.get_pending_by_image, image_ref)


async def approve_submission(
    attempt_id: int,
    moderator_external_id: int,
    moderator_name: str,
    image_ref: str | None = None,
) -> Submission:
    """Accept a Pending attempt and forward its branch."""

    await _register(moderator_external_id, moderator_name)

    async def _approve(db: AsyncSession) -> Submission:
        moderator = await users.get_user(db, moderator_external_id)
        attempt = await attempts.approve(db, attempt_id, moderator, image_ref)
        return await _approve_and_forward(db, attempt)

    submission = await run_in_transaction(_approve)
    logger.info(
        "submission_approved",
        attempt_id=attempt_id,
        moderator=moderator_external_id,
        forwarded_round_id=submission.forwarded.id if submission.forwarded else None,
    )
    await _announce(submission)
    return submission


async def reject_submission(
    attempt_id: int,
    moderator_external_id: int,
    moderator_name: str,
    image_ref: str | None = None,
) -> Attempt:
    """Decline a Pending attempt."""

    await _register(moderator_external_id, moderator_name)

    async def _reject(db: AsyncSession) -> Attempt:
        moderator = await users.get_user(db, moderator_external_id)
        return await attempts.reject(db, attempt_id, moderator, image_ref)

    attempt = await run_in_transaction(_reject)
    logger.info("submission_rejected", attempt_id=attempt_id, moderator=moderator_external_id)
    await _announce(Submission(attempt=attempt))
    return attempt


async def forward_attempt(attempt_id: int) -> Round | None:
    """Forward an Approved attempt; returns the existing round if already forwarded."""

    async def _forward(db: AsyncSession) -> Round | None:
        attempt = await attempts.get_attempt(db, attempt_id)
        return await lineage.forward(db, attempt)

    return await run_in_transaction(_forward)


# ---------------------------------------------------------------------------
# Maintenance, preferences and queries
# ---------------------------------------------------------------------------


async def sweep_expired() -> int:
    return await run_in_transaction(sweeper.sweep)


async def expiring_attempts(after: datetime, until: datetime) -> list[tuple[Attempt, User]]:
    return await run_in_transaction(sweeper.get_expiring, after, until)


async def set_notify(external_id: int, name: str, notify: str) -> User:
    """Upsert the user and store their notification preference."""

    async def _set(db: AsyncSession) -> User:
        user = await users.get_or_create_user(db, external_id, name)
        return await users.set_notification_preference(db, user, notify)

    return await run_in_transaction(_set)


async def active_users() -> list[stats.ActiveUser]:
    return await run_in_transaction(stats.active_users)


async def unallocated_capacity() -> list[stats.UnallocatedRounds]:
    return await run_in_transaction(stats.unallocated_capacity)


async def round_lineage(round_id: int) -> list[LineageStep]:
    return await run_in_transaction(lineage.get_lineage, round_id)
