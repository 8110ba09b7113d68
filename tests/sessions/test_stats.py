"""Tests for the stats queries."""

from __future__ import annotations

from gartic.sessions import attempts, stats
from gartic.sessions.allocator import allocate


class TestActiveUsers:
    async def test_empty(self, tx):
        assert await tx(stats.active_users) == []

    async def test_lists_slot_holders(self, tx, make_user):
        alice, bob, carol = await make_user(1), await make_user(2), await make_user(3)
        await tx(allocate, alice, "ross", False, 0)
        await tx(allocate, bob, "ross", False, 0)
        await tx(attempts.start_upload, bob)
        await tx(allocate, carol, "evolution", True, 0)
        await tx(attempts.cancel, carol)

        rows = await tx(stats.active_users)
        assert [(r.user.external_id, r.attempt.state_type, r.round.mode) for r in rows] == [
            (1, "active", "ross"),
            (2, "uploading", "ross"),
        ]


class TestUnallocated:
    async def test_empty(self, tx):
        assert await tx(stats.unallocated_capacity) == []

    async def test_spare_slots_per_round_number(self, tx, make_user):
        alice, bob, carol = await make_user(1), await make_user(2), await make_user(3)
        await tx(allocate, alice, "ross", False, 0)  # round A: 1 of 2
        await tx(allocate, bob, "evolution", False, 0)  # round B: 1 of 1
        await tx(allocate, carol, "ross", True, 0)  # round C: 1 of 2

        rows = await tx(stats.unallocated_capacity)
        assert [(r.mode, r.nsfw, r.round_no, r.unallocated) for r in rows] == [
            ("evolution", False, 0, 0),
            ("ross", False, 0, 1),
            ("ross", True, 0, 1),
        ]

    async def test_freed_slot_counts_again(self, tx, make_user):
        alice = await make_user(1)
        await tx(allocate, alice, "evolution", False, 0)
        await tx(attempts.cancel, alice)

        rows = await tx(stats.unallocated_capacity)
        assert [(r.mode, r.unallocated) for r in rows] == [("evolution", 1)]
