"""Lineage forwarding.

An approved attempt spawns the next round of its branch. The new round
inherits every ancestor edge of the predecessor plus one edge for the
approved attempt itself, so each round can show its full history.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import BigInteger, insert, literal, select

from gartic.db.models import Attempt, LineageEdge, Round
from gartic.gamemodes import get_mode
from gartic.sessions.allocator import create_round
from gartic.sessions.errors import RoundNotFound, StateConflict
from gartic.sessions.states import StateType

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()


@dataclass(frozen=True)
class LineageStep:
    attempt_id: int
    round_id: int
    round_no: int
    user_id: int
    image_ref: str


async def forward(db: AsyncSession, attempt: Attempt) -> Round | None:
    """Create the continuation round for an Approved attempt.

    Returns the existing continuation when the attempt was already
    forwarded, and None when the attempt finished the mode's last round.
    """
    if attempt.kind is not StateType.APPROVED:
        msg = f"Attempt {attempt.id} is {attempt.state_type}, only approved attempts forward"
        raise StateConflict(msg)

    existing = await db.execute(select(Round).where(Round.origin_attempt_id == attempt.id))
    round_ = existing.scalar_one_or_none()
    if round_ is not None:
        logger.info("forward_already_done", attempt_id=attempt.id, round_id=round_.id)
        return round_

    predecessor = await db.get(Round, attempt.round_id)
    if predecessor is None:  # pragma: no cover - guarded by the foreign key
        raise RoundNotFound(attempt.round_id)
    mode = get_mode(predecessor.mode)
    if mode.is_last(predecessor.round_no):
        logger.info("chain_complete", attempt_id=attempt.id, round_id=predecessor.id)
        return None

    round_ = await create_round(
        db,
        mode,
        predecessor.nsfw,
        predecessor.round_no + 1,
        origin_attempt_id=attempt.id,
    )
    inherited = select(
        literal(round_.id, BigInteger()),
        LineageEdge.attempt_id,
    ).where(LineageEdge.round_id == predecessor.id)
    await db.execute(
        insert(LineageEdge).from_select(["round_id", "attempt_id"], inherited)
    )
    await db.execute(insert(LineageEdge).values(round_id=round_.id, attempt_id=attempt.id))

    logger.info(
        "round_forwarded",
        attempt_id=attempt.id,
        from_round_id=predecessor.id,
        round_id=round_.id,
        round_no=round_.round_no,
    )
    return round_


async def get_ancestor_ids(db: AsyncSession, round_id: int) -> set[int]:
    result = await db.execute(
        select(LineageEdge.attempt_id).where(LineageEdge.round_id == round_id)
    )
    return set(result.scalars().all())


async def get_lineage(db: AsyncSession, round_id: int) -> list[LineageStep]:
    """Approved ancestor attempts of a round, oldest round first."""
    if await db.get(Round, round_id) is None:
        raise RoundNotFound(round_id)
    result = await db.execute(
        select(Attempt, Round.round_no)
        .join(LineageEdge, LineageEdge.attempt_id == Attempt.id)
        .join(Round, Round.id == Attempt.round_id)
        .where(LineageEdge.round_id == round_id)
        .order_by(Round.round_no, Attempt.id)
    )
    return [
        LineageStep(
            attempt_id=attempt.id,
            round_id=attempt.round_id,
            round_no=round_no,
            user_id=attempt.user_id,
            image_ref=attempt.image_ref or "",
        )
        for attempt, round_no in result.all()
    ]
