"""End-to-end session flows through the transactional service, including
the concurrent allocation scenarios."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from gartic.db.models import Attempt, Round
from gartic.sessions import service, users
from gartic.sessions.errors import NoActiveSession, NoSessionAvailable, StateConflict, UnknownMode
from gartic.sessions.events import ACTIVITY_CHANNEL, user_channel
from gartic.sessions.states import StateType


async def _occupancy(db) -> list[tuple[int, int, int]]:
    rows = await db.execute(
        select(Round.id, Round.multiplex, func.count(Attempt.id))
        .join(Attempt, Attempt.round_id == Round.id)
        .where(Attempt.state_type.in_(["active", "uploading", "pending"]))
        .group_by(Round.id, Round.multiplex)
    )
    return [tuple(r) for r in rows.all()]


class TestStartSession:
    async def test_allocates_round_zero(self, engine):
        view = await service.start_session(1, "alice", "evolution")
        assert view.resumed is False
        assert view.attempt.state_type == "active"
        assert view.round.round_no == 0
        assert view.lineage == []
        assert view.prompt == "Draw the first, base evolution."

    async def test_resumes_active_attempt(self, engine):
        first = await service.start_session(1, "alice", "ross")
        again = await service.start_session(1, "alice", "ross")
        assert again.resumed is True
        assert again.attempt.id == first.attempt.id

    async def test_unknown_mode(self, engine):
        with pytest.raises(UnknownMode):
            await service.start_session(1, "alice", "chess")

    async def test_later_round_without_branches(self, engine):
        with pytest.raises(NoSessionAvailable):
            await service.start_session(1, "alice", "evolution", round_no=1)

    async def test_user_recorded_when_no_round_available(self, engine, tx):
        with pytest.raises(NoSessionAvailable):
            await service.start_session(42, "zed", "evolution", round_no=1)

        user = await tx(users.get_user, 42)
        assert user.name == "zed"

    async def test_rename_survives_failed_allocation(self, engine, tx, make_user):
        await make_user(42, "old")
        with pytest.raises(NoSessionAvailable):
            await service.start_session(42, "new", "ross", round_no=3)

        assert (await tx(users.get_user, 42)).name == "new"

    async def test_expired_attempt_is_not_resumed(self, engine, set_deadline):
        first = await service.start_session(1, "alice", "evolution")
        await set_deadline(first.attempt.id, datetime.now(timezone.utc) - timedelta(seconds=1))

        second = await service.start_session(1, "alice", "evolution")
        assert second.resumed is False
        assert second.attempt.id != first.attempt.id
        assert second.round.id == first.round.id


class TestConcurrentAllocation:
    async def test_round_zero_capacity_one(self, engine, tx):
        """Two simultaneous starts never share a single-slot round."""
        a, b = await asyncio.gather(
            service.start_session(1, "alice", "evolution"),
            service.start_session(2, "bob", "evolution"),
        )
        assert a.round.id != b.round.id
        occupancy = await tx(_occupancy)
        assert len(occupancy) == 2
        assert all(count <= multiplex for _, multiplex, count in occupancy)

    async def test_many_players_respect_capacity(self, engine, tx):
        views = await asyncio.gather(
            *(service.start_session(n, f"p{n}", "ross") for n in range(1, 9))
        )
        assert len({v.attempt.id for v in views}) == 8
        occupancy = await tx(_occupancy)
        assert sum(count for _, _, count in occupancy) == 8
        assert all(count <= multiplex for _, multiplex, count in occupancy)

    async def test_competing_for_last_slot(self, engine, tx):
        await service.start_session(1, "alice", "evolution")
        await service.begin_upload(1)
        await service.finish_upload(1, "a0", trusted=True)

        results = await asyncio.gather(
            service.start_session(2, "bob", "evolution", round_no=1),
            service.start_session(3, "carol", "evolution", round_no=1),
            return_exceptions=True,
        )
        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], NoSessionAvailable)


class TestReroll:
    async def test_swaps_to_another_round(self, engine, load_attempt):
        first = await service.start_session(1, "alice", "evolution")
        await service.start_session(2, "bob", "evolution")
        await service.cancel_session(2)

        view = await service.reroll_session(1)
        assert view.attempt.id != first.attempt.id
        assert view.round.id != first.round.id
        assert view.prompt == "Draw the first, base evolution."
        assert (await load_attempt(first.attempt.id)).state_type == "cancelled"

    async def test_nothing_open_keeps_current_attempt(self, engine):
        first = await service.start_session(1, "alice", "evolution")

        with pytest.raises(NoSessionAvailable):
            await service.reroll_session(1)

        current = await service.current_session(1)
        assert current.attempt.id == first.attempt.id

    async def test_without_session(self, engine, make_user):
        await make_user(1)
        with pytest.raises(NoActiveSession):
            await service.reroll_session(1)


class TestSubmissionFlow:
    async def test_pending_then_moderator_rehosts(self, engine):
        await service.start_session(1, "alice", "ross")
        await service.begin_upload(1)
        submitted = await service.finish_upload(1, "X", trusted=False)
        assert submitted.attempt.state_type == "pending"
        assert submitted.forwarded is None

        found = await service.get_submission("X")
        assert found.id == submitted.attempt.id

        approved = await service.approve_submission(found.id, 99, "mod", image_ref="Y")
        assert approved.attempt.kind is StateType.APPROVED
        assert approved.attempt.image_ref == "Y"
        assert approved.attempt.moderator_id != approved.attempt.user_id
        assert approved.forwarded is not None
        assert approved.forwarded.round_no == 1

    async def test_replayed_approval_conflicts(self, engine):
        await service.start_session(1, "alice", "ross")
        await service.begin_upload(1)
        submitted = await service.finish_upload(1, "X", trusted=False)
        await service.approve_submission(submitted.attempt.id, 99, "mod")

        with pytest.raises(StateConflict):
            await service.approve_submission(submitted.attempt.id, 99, "mod")

    async def test_moderator_recorded_on_replayed_approval(self, engine, tx):
        await service.start_session(1, "alice", "ross")
        await service.begin_upload(1)
        submitted = await service.finish_upload(1, "X", trusted=False)
        await service.approve_submission(submitted.attempt.id, 99, "mod")

        with pytest.raises(StateConflict):
            await service.approve_submission(submitted.attempt.id, 98, "second-mod")
        assert (await tx(users.get_user, 98)).name == "second-mod"

    async def test_reject(self, engine):
        await service.start_session(1, "alice", "ross")
        await service.begin_upload(1)
        submitted = await service.finish_upload(1, "X", trusted=False)
        rejected = await service.reject_submission(submitted.attempt.id, 99, "mod")
        assert rejected.state_type == "rejected"

    async def test_trusted_upload_forwards(self, engine):
        await service.start_session(1, "alice", "evolution")
        await service.begin_upload(1)
        submission = await service.finish_upload(1, "a0", trusted=True)
        assert submission.attempt.state_type == "approved"
        assert submission.forwarded.round_no == 1

        view = await service.start_session(2, "bob", "evolution", round_no=1)
        assert view.round.id == submission.forwarded.id
        assert [s.image_ref for s in view.lineage] == ["a0"]
        assert view.prompt == "Draw the second evolution."

    async def test_forward_endpoint_is_idempotent(self, engine):
        await service.start_session(1, "alice", "evolution")
        await service.begin_upload(1)
        submission = await service.finish_upload(1, "a0", trusted=True)

        again = await service.forward_attempt(submission.attempt.id)
        assert again.id == submission.forwarded.id

    async def test_transitions_without_session(self, engine, make_user):
        await make_user(1)
        with pytest.raises(NoActiveSession):
            await service.extend_session(1)
        with pytest.raises(NoActiveSession):
            await service.begin_upload(1)
        with pytest.raises(NoActiveSession):
            await service.current_session(1)

    async def test_extend_on_lapsed_attempt_fails(self, engine, set_deadline):
        view = await service.start_session(1, "alice", "evolution")
        await set_deadline(view.attempt.id, datetime.now(timezone.utc) - timedelta(seconds=1))

        with pytest.raises(NoActiveSession):
            await service.extend_session(1)


class TestNotifications:
    async def test_forwarded_round_notifies_subscribers(self, engine, monkeypatch):
        redis = AsyncMock()
        monkeypatch.setattr("gartic.sessions.service.get_redis_or_none", lambda: redis)

        await service.set_notify(10, "watcher", "once")
        await service.set_notify(11, "fan", "always")
        await service.start_session(1, "alice", "evolution")
        await service.begin_upload(1)
        submission = await service.finish_upload(1, "a0", trusted=True)

        assert sorted(submission.notified) == [10, 11]
        channels = [call.args[0] for call in redis.publish.await_args_list]
        assert ACTIVITY_CHANNEL in channels
        assert user_channel(10) in channels
        assert user_channel(11) in channels

        await service.start_session(2, "bob", "evolution", round_no=1)
        await service.begin_upload(2)
        second = await service.finish_upload(2, "b1", trusted=True)
        assert second.notified == [11]

    async def test_publish_failure_does_not_fail_operation(self, engine, monkeypatch):
        redis = AsyncMock()
        redis.publish.side_effect = ConnectionError("redis down")
        monkeypatch.setattr("gartic.sessions.service.get_redis_or_none", lambda: redis)

        view = await service.start_session(1, "alice", "ross")
        assert view.attempt.state_type == "active"
        assert redis.publish.await_count == 1

    async def test_chain_completion_notifies_nobody(self, engine):
        for n, round_no in [(1, 0), (2, 1), (3, 2)]:
            await service.start_session(n, f"p{n}", "evolution", round_no=round_no)
            await service.begin_upload(n)
            last = await service.finish_upload(n, f"img{n}", trusted=True)
        assert last.forwarded is None
        assert last.notified == []
