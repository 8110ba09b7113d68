"""Tests for the session maintenance worker tasks."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

from arq.cron import CronJob

from gartic.sessions import service
from gartic.sessions.events import user_channel
from gartic.workers.sweeper_worker import (
    WorkerSettings,
    _schedule,
    notify_expiring_attempts,
    sweep_expired_attempts,
)


class TestSweepTask:
    async def test_expires_lapsed_attempts(self, engine, set_deadline, load_attempt):
        view = await service.start_session(1, "alice", "ross")
        await set_deadline(view.attempt.id, datetime.now(timezone.utc) - timedelta(seconds=1))

        assert await sweep_expired_attempts({}) == 1
        assert (await load_attempt(view.attempt.id)).state_type == "expired"
        assert await sweep_expired_attempts({}) == 0


class TestExpiryNotices:
    async def test_warns_once(self, engine, set_deadline):
        view = await service.start_session(1, "alice", "ross")
        now = datetime.now(timezone.utc)
        await set_deadline(view.attempt.id, now + timedelta(seconds=100))

        redis = AsyncMock()
        ctx = {"redis": redis, "last_expiry_check": now - timedelta(seconds=300)}

        assert await notify_expiring_attempts(ctx) == 1
        channel, raw = redis.publish.await_args.args
        assert channel == user_channel(1)
        payload = json.loads(raw)
        assert payload["event"] == "attempt_expiring"
        assert payload["data"]["attempt_id"] == view.attempt.id

        assert await notify_expiring_attempts(ctx) == 0
        assert redis.publish.await_count == 1

    async def test_far_deadline_not_warned(self, engine):
        await service.start_session(1, "alice", "ross")
        redis = AsyncMock()
        ctx = {"redis": redis, "last_expiry_check": datetime.now(timezone.utc)}

        assert await notify_expiring_attempts(ctx) == 0
        redis.publish.assert_not_awaited()

    async def test_without_redis_nothing_is_sent(self, engine, set_deadline):
        view = await service.start_session(1, "alice", "ross")
        now = datetime.now(timezone.utc)
        await set_deadline(view.attempt.id, now + timedelta(seconds=10))

        ctx = {"last_expiry_check": now - timedelta(seconds=300)}
        assert await notify_expiring_attempts(ctx) == 0
        assert ctx["last_expiry_check"] > now


class TestSchedule:
    def test_sub_minute_interval(self):
        assert _schedule(30) == {"second": {0, 30}}

    def test_minute_interval(self):
        assert _schedule(300) == {"minute": {0, 5, 10, 15, 20, 25, 30, 35, 40, 45, 50, 55}, "second": 0}

    def test_worker_settings(self):
        assert sweep_expired_attempts in WorkerSettings.functions
        assert notify_expiring_attempts in WorkerSettings.functions
        assert all(isinstance(job, CronJob) for job in WorkerSettings.cron_jobs)
