"""Redis connection and change-event helpers.

Every row write the tracking service makes is followed by a JSON change
event on a pub/sub channel (see ``Settings.channel``).  Subscribers treat
these events as "something changed, re-read" hints, never as data.
"""

from __future__ import annotations

import json

import redis.asyncio as redis
import structlog

from shared.config import get_settings

logger = structlog.get_logger()

_redis_client: redis.Redis | None = None


async def get_redis() -> redis.Redis:
    """Get or create a Redis client."""
    global _redis_client
    if _redis_client is None:
        settings = get_settings()
        _redis_client = redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
    return _redis_client


async def close_redis() -> None:
    """Close the Redis connection."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None


async def publish_change(redis_client, channel: str, payload: dict) -> bool:
    """Publish a change event. Best-effort: returns False instead of raising.

    A failed publish only delays consumers until their next poll, so it must
    never fail the write that preceded it.
    """
    if redis_client is None:
        return False
    try:
        await redis_client.publish(channel, json.dumps(payload, default=str))
        return True
    except Exception as e:
        logger.warning("change_publish_failed", channel=channel, error=str(e))
        return False


def decode_change(message: dict | None) -> dict | None:
    """Decode a pub/sub ``message`` dict into its JSON payload.

    Returns None for subscribe confirmations and malformed payloads.
    """
    if not message or message.get("type") != "message":
        return None
    data = message.get("data")
    if isinstance(data, bytes):
        data = data.decode("utf-8")
    try:
        payload = json.loads(data)
    except (TypeError, ValueError):
        logger.warning("change_event_malformed", channel=message.get("channel"))
        return None
    return payload if isinstance(payload, dict) else None
