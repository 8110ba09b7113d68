"""arq worker for session maintenance.

Runs as a separate process: expires attempts whose deadline has passed and
warns players whose Active attempt is about to run out.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from arq import cron
from arq.connections import RedisSettings

from gartic.config import get_settings
from gartic.database import close_db, init_db
from gartic.redis_client import close_redis, init_redis
from gartic.sessions import events, service

logger = logging.getLogger(__name__)


async def startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Initialize the database and Redis pool on worker startup."""
    settings = get_settings()
    await init_db(settings.database_url)
    await init_redis(settings.redis_url)
    ctx["last_expiry_check"] = datetime.now(timezone.utc)
    logger.info("Session worker started (sweep every %ss)", settings.sweep_interval_seconds)


async def shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    """Clean up on worker shutdown."""
    await close_db()
    await close_redis()
    logger.info("Session worker shut down")


async def sweep_expired_attempts(ctx: dict) -> int:  # type: ignore[type-arg]
    """Periodic task: Active attempts past their deadline become Expired."""
    count = await service.sweep_expired()
    if count > 0:
        logger.info("Expired %d attempts", count)
    return count


async def notify_expiring_attempts(ctx: dict) -> int:  # type: ignore[type-arg]
    """Periodic task: warn players whose attempt expires within the notice window.

    Each run covers deadlines in ``(last_check + notice, now + notice]`` so
    consecutive runs never warn about the same attempt twice.
    """
    notice = timedelta(seconds=get_settings().expiry_notice_seconds)
    now = datetime.now(timezone.utc)
    last_check: datetime = ctx.get("last_expiry_check") or now
    expiring = await service.expiring_attempts(last_check + notice, now + notice)
    ctx["last_expiry_check"] = now

    redis = ctx.get("redis")
    sent = 0
    for attempt, user in expiring:
        delivered = await events.push_to_user(
            redis,
            user.external_id,
            "attempt_expiring",
            attempt_id=attempt.id,
            round_id=attempt.round_id,
            until=attempt.active_until.isoformat() if attempt.active_until else None,
        )
        if delivered:
            sent += 1
    if expiring:
        logger.info("Sent %d/%d expiry notices", sent, len(expiring))
    return sent


def _schedule(interval_seconds: int) -> dict[str, Any]:
    """arq cron fields that fire every ``interval_seconds``.

    Settings only admit intervals that divide a minute or an hour.
    """
    if interval_seconds < 60:
        step = max(1, interval_seconds)
        return {"second": set(range(0, 60, step))}
    step = max(1, interval_seconds // 60)
    return {"minute": set(range(0, 60, step)), "second": 0}


class WorkerSettings:
    """arq worker settings for session maintenance."""

    functions = [sweep_expired_attempts, notify_expiring_attempts]
    cron_jobs = [
        cron(sweep_expired_attempts, run_at_startup=True, **_schedule(get_settings().sweep_interval_seconds)),
        cron(notify_expiring_attempts, **_schedule(get_settings().sweep_interval_seconds)),
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = RedisSettings.from_dsn(get_settings().redis_url)
    max_jobs = 4
