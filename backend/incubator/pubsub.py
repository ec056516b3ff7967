from __future__ import annotations

import json
import os
from datetime import datetime
from typing import Any
from uuid import UUID

import redis.asyncio as redis

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
_redis = None

async def get_redis():
    global _redis
    if _redis is None:
        if os.getenv("TESTING") == "1":
            import fakeredis
            _redis = fakeredis.FakeAsyncRedis()
        else:
            _redis = redis.from_url(REDIS_URL)
    return _redis

def _json_default(value: Any) -> Any:
    # purpose: convert datetime and UUID values for event payloads
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    return value


def _serialize_event(event: dict[str, Any]) -> str:
    # purpose: normalise event dictionaries into JSON strings for redis pub/sub
    return json.dumps(event, default=_json_default)


async def publish(channel: str, event: str, payload: dict[str, Any]) -> None:
    """Broadcast an event on the supplied channel."""

    # purpose: real-time broadcaster used by the effect dispatcher
    r = await get_redis()
    await r.publish(
        channel,
        _serialize_event({"type": event, "data": payload, "timestamp": datetime.now().isoformat()}),
    )
