"""In-memory registry of live connections per user.

One registry instance is created at startup and handed to the gateway.
Registration is serialized with an ``asyncio.Lock``; fan-out iterates a
snapshot so connections can come and go while events are being delivered.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from ..core.config import settings
from ..utils.metrics import gauge, incr
from .envelope import Envelope

logger = logging.getLogger(__name__)

SendFn = Callable[[Envelope], Any]
Publisher = Callable[[int, Dict[str, Any]], Awaitable[None]]


class TooManyConnections(Exception):
    def __init__(self, user_id: int, limit: int) -> None:
        self.user_id = user_id
        self.limit = limit
        super().__init__(f"user {user_id} already has {limit} live connections")


class PresenceRegistry:
    def __init__(
        self,
        per_user_limit: Optional[int] = None,
        send_timeout: Optional[float] = None,
        publisher: Optional[Publisher] = None,
    ) -> None:
        self.per_user_limit = per_user_limit or settings.WS_PER_USER_LIMIT
        self.send_timeout = send_timeout or settings.WS_SEND_TIMEOUT
        # Cross-instance relay; only local fan-outs are published
        self.publisher = publisher
        self._conns: Dict[int, Dict[str, SendFn]] = {}
        self._lock = asyncio.Lock()

    async def register(self, user_id: int, connection_id: str, send_fn: SendFn) -> None:
        async with self._lock:
            conns = self._conns.setdefault(int(user_id), {})
            if connection_id not in conns and len(conns) >= self.per_user_limit:
                if not conns:
                    self._conns.pop(int(user_id), None)
                raise TooManyConnections(int(user_id), self.per_user_limit)
            conns[connection_id] = send_fn
            gauge("ws.connections", self.total_connections())
        logger.debug(
            "presence.register",
            extra={"user_id": user_id, "connection_id": connection_id},
        )

    async def unregister(self, user_id: int, connection_id: str) -> bool:
        async with self._lock:
            conns = self._conns.get(int(user_id))
            if not conns or connection_id not in conns:
                return False
            del conns[connection_id]
            if not conns:
                self._conns.pop(int(user_id), None)
            gauge("ws.connections", self.total_connections())
        logger.debug(
            "presence.unregister",
            extra={"user_id": user_id, "connection_id": connection_id},
        )
        return True

    def is_online(self, user_id: int) -> bool:
        return bool(self._conns.get(int(user_id)))

    def connection_count(self, user_id: int) -> int:
        return len(self._conns.get(int(user_id), {}))

    def total_connections(self) -> int:
        return sum(len(c) for c in self._conns.values())

    def snapshot(self, user_ids: Iterable[int]) -> List[Tuple[int, str, SendFn]]:
        targets: List[Tuple[int, str, SendFn]] = []
        for uid in dict.fromkeys(int(u) for u in user_ids):
            for conn_id, fn in list(self._conns.get(uid, {}).items()):
                targets.append((uid, conn_id, fn))
        return targets

    async def fan_out(self, user_ids: Iterable[int], event: Envelope, publish: bool = True) -> int:
        """Deliver ``event`` to every live connection of ``user_ids``.

        Each connection receives the event at most once per call. Returns the
        number of connections that accepted it. Failures are isolated per
        connection and never raised.
        """
        user_ids = list(dict.fromkeys(int(u) for u in user_ids))
        delivered = 0
        for uid, conn_id, send_fn in self.snapshot(user_ids):
            try:
                result = send_fn(event)
                if inspect.isawaitable(result):
                    result = await asyncio.wait_for(result, timeout=self.send_timeout)
            except Exception as exc:
                logger.warning(
                    "presence.send_failed",
                    extra={"user_id": uid, "connection_id": conn_id, "event": event.type, "error": repr(exc)},
                )
                incr("ws.fanout.error", tags={"event": event.type})
                continue
            if result is False:
                continue
            delivered += 1
        if publish and self.publisher is not None:
            data = event.to_dict()
            for uid in user_ids:
                try:
                    await self.publisher(uid, data)
                except Exception as exc:
                    logger.warning("presence.publish_failed", extra={"user_id": uid, "error": repr(exc)})
        return delivered
