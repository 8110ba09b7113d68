"""Publish game activity over Redis pub/sub.

Presentation collaborators (the chat bot, dashboards) subscribe to
``gartic:activity`` for the global feed and to ``gartic:user:{external_id}``
for notices addressed to one player. Publishing is best-effort: a Redis
failure is logged and never fails the operation that produced the event.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

ACTIVITY_CHANNEL = "gartic:activity"


def user_channel(external_id: int) -> str:
    return f"gartic:user:{external_id}"


async def _publish(redis: object | None, channel: str, payload: dict[str, Any]) -> bool:
    if redis is None:
        return False
    try:
        await redis.publish(channel, json.dumps(payload, default=str))  # type: ignore[attr-defined]
    except Exception:
        logger.warning("Failed to publish event to %s", channel, exc_info=True)
        return False
    return True


async def publish_activity(redis: object | None, event: str, **data: Any) -> bool:
    """Publish ``{"event": ..., "data": ..., "timestamp": ...}`` to the activity feed."""
    payload = {
        "event": event,
        "data": data,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return await _publish(redis, ACTIVITY_CHANNEL, payload)


async def push_to_user(redis: object | None, external_id: int, event: str, **data: Any) -> bool:
    """Publish a notice addressed to a single player."""
    payload = {
        "event": event,
        "data": data,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return await _publish(redis, user_channel(external_id), payload)
