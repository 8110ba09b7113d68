"""Round allocator.

Assigns a user to a round slot with spare capacity, or opens a fresh
round 0. Candidate search and attempt insert must run inside the same
serializable transaction (see ``gartic.database.run_in_transaction``);
nothing in here locks in-process.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import func, select

from gartic.db.models import Attempt, LineageEdge, Round, User
from gartic.gamemodes import GameMode, get_mode
from gartic.sessions import attempts
from gartic.sessions.errors import NoActiveSession, NoSessionAvailable
from gartic.sessions.states import OCCUPYING_STATES, Active, state_columns

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()

_OCCUPYING = sorted(s.value for s in OCCUPYING_STATES)


def occupied_count():
    """Correlated count of slot-occupying attempts on the enclosing Round."""
    return (
        select(func.count(Attempt.id))
        .where(Attempt.round_id == Round.id, Attempt.state_type.in_(_OCCUPYING))
        .correlate(Round)
        .scalar_subquery()
    )


def _user_occupies(user_id: int):
    return (
        select(Attempt.id)
        .where(
            Attempt.round_id == Round.id,
            Attempt.user_id == user_id,
            Attempt.state_type.in_(_OCCUPYING),
        )
        .correlate(Round)
        .exists()
    )


def _prior_appearances(user_id: int):
    """How many of the enclosing Round's ancestor attempts belong to the user."""
    return (
        select(func.count())
        .select_from(LineageEdge)
        .join(Attempt, Attempt.id == LineageEdge.attempt_id)
        .where(LineageEdge.round_id == Round.id, Attempt.user_id == user_id)
        .correlate(Round)
        .scalar_subquery()
    )


async def find_candidate(
    db: AsyncSession,
    user: User,
    mode: str,
    nsfw: bool,
    round_no: int,
    exclude_round_id: int | None = None,
) -> Round | None:
    """Pick an eligible round, least familiar to the user first, ties at random."""
    query = select(Round).where(
        Round.mode == mode,
        Round.nsfw == nsfw,
        Round.round_no == round_no,
        occupied_count() < Round.multiplex,
        ~_user_occupies(user.id),
    )
    if exclude_round_id is not None:
        query = query.where(Round.id != exclude_round_id)
    result = await db.execute(
        query.order_by(_prior_appearances(user.id), func.random())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def create_round(
    db: AsyncSession,
    mode: GameMode,
    nsfw: bool,
    round_no: int,
    origin_attempt_id: int | None = None,
) -> Round:
    """Insert a new round sized by the mode's capacity for ``round_no``."""
    round_ = Round(
        mode=mode.name,
        nsfw=nsfw,
        round_no=round_no,
        multiplex=mode.capacity(round_no),
        created_at=datetime.now(timezone.utc),
        origin_attempt_id=origin_attempt_id,
    )
    db.add(round_)
    await db.flush()
    return round_


async def _add_attempt(db: AsyncSession, user: User, round_: Round, policy: GameMode) -> Attempt:
    now = datetime.now(timezone.utc)
    attempt = Attempt(
        user_id=user.id,
        round_id=round_.id,
        created_at=now,
        **state_columns(Active(until=now + policy.time_limit(round_.round_no))),
    )
    db.add(attempt)
    await db.flush()
    return attempt


async def allocate(
    db: AsyncSession,
    user: User,
    mode: str,
    nsfw: bool,
    round_no: int,
) -> Attempt:
    """Give ``user`` an Active attempt on a round of (mode, nsfw, round_no).

    Round 0 opens a new round when none is joinable. Later rounds are only
    ever created by forwarding, so running out of them raises
    NoSessionAvailable.
    """
    policy = get_mode(mode)
    policy.check_round(round_no)

    round_ = await find_candidate(db, user, policy.name, nsfw, round_no)
    created = False
    if round_ is None:
        if round_no != 0:
            logger.info("allocation_not_found", user_id=user.id, mode=policy.name, nsfw=nsfw, round_no=round_no)
            raise NoSessionAvailable
        round_ = await create_round(db, policy, nsfw, 0)
        created = True

    attempt = await _add_attempt(db, user, round_, policy)

    logger.info(
        "attempt_allocated",
        user_id=user.id,
        attempt_id=attempt.id,
        round_id=round_.id,
        mode=policy.name,
        nsfw=nsfw,
        round_no=round_no,
        new_round=created,
    )
    return attempt


async def reroll(db: AsyncSession, user: User) -> Attempt:
    """Swap the user's Active attempt for one on another round of the same kind.

    Only joins existing rounds, never opens one. When nothing else is
    joinable this raises NoSessionAvailable and the enclosing transaction
    rolls the cancel back, leaving the original attempt in place.
    """
    current = await attempts.get_current(db, user)
    if current is None:
        raise NoActiveSession
    previous = await attempts.get_round_of(db, current)
    await attempts.cancel(db, user)

    policy = get_mode(previous.mode)
    round_ = await find_candidate(
        db,
        user,
        previous.mode,
        previous.nsfw,
        previous.round_no,
        exclude_round_id=previous.id,
    )
    if round_ is None:
        logger.info("reroll_not_found", user_id=user.id, round_id=previous.id)
        raise NoSessionAvailable

    attempt = await _add_attempt(db, user, round_, policy)
    logger.info(
        "attempt_rerolled",
        user_id=user.id,
        cancelled_attempt_id=current.id,
        attempt_id=attempt.id,
        from_round_id=previous.id,
        round_id=round_.id,
    )
    return attempt
