from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Awaitable, Callable, Optional

from redis import asyncio as aioredis

from ..core.config import REDIS_URL, settings
from ..utils.json import dumps, loads

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "ws-user:"
INSTANCE_ID = os.getenv("INSTANCE_ID", "inst-" + os.urandom(4).hex())

Handler = Callable[[int, dict[str, Any]], Awaitable[None]]

_client: Any = None


def bus_enabled() -> bool:
    url = (REDIS_URL or "").strip().lower()
    return bool(settings.WS_BUS_ENABLED) and url.startswith(("redis://", "rediss://"))


def get_client() -> Any:
    global _client
    if _client is None:
        _client = aioredis.from_url(
            REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=5,
            health_check_interval=30,
            retry_on_timeout=True,
        )
    return _client


async def publish_user_event(user_id: int, envelope: dict[str, Any]) -> None:
    """Publish an envelope to ws-user:<user_id> tagged with this instance.

    Safe to call even when the bus is disabled; becomes a no-op.
    """
    if not bus_enabled():
        return
    data = dict(envelope)
    data.setdefault("v", 1)
    data["origin"] = INSTANCE_ID
    try:
        await get_client().publish(f"{CHANNEL_PREFIX}{int(user_id)}", dumps(data))
    except Exception as exc:
        # Local delivery already happened; remote instances miss this event
        logger.warning("ws.bus.publish_failed", extra={"user_id": user_id, "error": repr(exc)})


async def dispatch(msg: Any, handler: Handler) -> bool:
    """Route one pubsub message to ``handler``; returns True when dispatched.

    Messages from this instance and anything that is not a user-channel JSON
    object are skipped.
    """
    if not isinstance(msg, dict) or msg.get("type") != "pmessage":
        return False
    channel = str(msg.get("channel") or "")
    if not channel.startswith(CHANNEL_PREFIX):
        return False
    try:
        user_id = int(channel[len(CHANNEL_PREFIX):])
        payload = loads(msg.get("data") or b"")
    except ValueError:
        logger.debug("ws.bus.malformed", extra={"channel": channel})
        return False
    if not isinstance(payload, dict) or payload.get("origin") == INSTANCE_ID:
        return False
    await handler(user_id, payload)
    return True


async def start_user_consumer(handler: Handler) -> Optional[asyncio.Task]:
    """PSUBSCRIBE to every user channel and dispatch in a background task."""
    if not bus_enabled():
        return None
    pubsub = get_client().pubsub()
    try:
        await pubsub.psubscribe(f"{CHANNEL_PREFIX}*")
    except Exception as exc:
        logger.error("ws.bus.subscribe_failed", extra={"error": repr(exc)})
        return None

    async def _loop() -> None:
        try:
            async for msg in pubsub.listen():
                try:
                    await dispatch(msg, handler)
                except Exception as exc:
                    # Keep the stream alive
                    logger.warning("ws.bus.handler_failed", extra={"error": repr(exc)})
        finally:
            await pubsub.aclose()

    logger.info("ws.bus.consumer_started", extra={"instance_id": INSTANCE_ID})
    return asyncio.create_task(_loop())


__all__ = [
    "INSTANCE_ID",
    "bus_enabled",
    "dispatch",
    "publish_user_event",
    "start_user_consumer",
]
