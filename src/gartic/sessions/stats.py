"""Read-only aggregations over rounds and attempts."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy import func, select

from gartic.db.models import Attempt, Round, User
from gartic.sessions.allocator import occupied_count
from gartic.sessions.states import OCCUPYING_STATES

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession


@dataclass(frozen=True)
class ActiveUser:
    user: User
    attempt: Attempt
    round: Round


@dataclass(frozen=True)
class UnallocatedRounds:
    mode: str
    nsfw: bool
    round_no: int
    unallocated: int


async def active_users(db: AsyncSession) -> list[ActiveUser]:
    """Users currently holding a slot, with the attempt and round they hold."""
    result = await db.execute(
        select(User, Attempt, Round)
        .join(Attempt, Attempt.user_id == User.id)
        .join(Round, Round.id == Attempt.round_id)
        .where(Attempt.state_type.in_([s.value for s in OCCUPYING_STATES]))
        .order_by(Attempt.created_at, Attempt.id)
    )
    return [ActiveUser(user=u, attempt=a, round=r) for u, a, r in result.all()]


async def unallocated_capacity(db: AsyncSession) -> list[UnallocatedRounds]:
    """Spare slots summed per (mode, nsfw, round_no)."""
    per_round = select(
        Round.mode,
        Round.nsfw,
        Round.round_no,
        (Round.multiplex - occupied_count()).label("free"),
    ).subquery()
    result = await db.execute(
        select(
            per_round.c.mode,
            per_round.c.nsfw,
            per_round.c.round_no,
            func.sum(per_round.c.free),
        )
        .group_by(per_round.c.mode, per_round.c.nsfw, per_round.c.round_no)
        .order_by(per_round.c.nsfw, per_round.c.mode, per_round.c.round_no)
    )
    return [
        UnallocatedRounds(mode=mode, nsfw=bool(nsfw), round_no=round_no, unallocated=int(free or 0))
        for mode, nsfw, round_no, free in result.all()
    ]
