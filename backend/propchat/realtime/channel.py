from __future__ import annotations

import asyncio
import logging
from typing import Optional

from fastapi import WebSocket

from ..core.config import settings
from ..utils.metrics import incr
from .envelope import Envelope

logger = logging.getLogger(__name__)

_CLOSE = object()


class OutboundChannel:
    """Bounded per-connection send queue drained by a single writer task.

    ``offer`` never blocks: producers (fan-out, replies) enqueue and move on.
    When the queue is full the event is dropped for this connection only.
    """

    def __init__(
        self,
        websocket: WebSocket,
        connection_id: str,
        user_id: int,
        maxsize: Optional[int] = None,
        send_timeout: Optional[float] = None,
    ) -> None:
        self.websocket = websocket
        self.connection_id = connection_id
        self.user_id = user_id
        self.send_timeout = send_timeout or settings.WS_SEND_TIMEOUT
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize or settings.WS_SEND_QUEUE_SIZE)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, env: Envelope) -> bool:
        if self._closed:
            return False
        try:
            self._queue.put_nowait(env)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "presence.drop",
                extra={
                    "user_id": self.user_id,
                    "connection_id": self.connection_id,
                    "event": env.type,
                    "dropped": self.dropped,
                },
            )
            incr("ws.send.dropped", tags={"event": env.type})
            return False
        return True

    async def run(self) -> None:
        while True:
            item = await self._queue.get()
            if item is _CLOSE:
                return
            try:
                await asyncio.wait_for(
                    self.websocket.send_text(item.to_json()),
                    timeout=self.send_timeout,
                )
            except Exception as exc:
                # Socket is gone or stuck; the receive loop tears the session down
                self._closed = True
                logger.info(
                    "ws.send_failed",
                    extra={"user_id": self.user_id, "connection_id": self.connection_id, "error": repr(exc)},
                )
                return

    def close(self) -> None:
        """Stop accepting events and let the writer exit after what is queued."""
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(_CLOSE)
        except asyncio.QueueFull:
            # Writer is stuck behind a full queue; the caller cancels it
            pass
