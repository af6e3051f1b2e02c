from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Tuple

from ..core.config import settings

logger = logging.getLogger(__name__)

ExpireFn = Callable[[int, int], Awaitable[None]]


class TypingTracker:
    """Most-recent-wins typing state per ``(thread_id, user_id)``.

    A true signal schedules an expiry after ``ttl`` seconds; a renewed true
    signal restarts the timer and a false signal cancels it.
    """

    def __init__(self, on_expire: ExpireFn, ttl: Optional[float] = None) -> None:
        self.on_expire = on_expire
        self.ttl = ttl if ttl is not None else settings.TYPING_TTL_SECONDS
        self._timers: Dict[Tuple[int, int], asyncio.Task] = {}

    def is_typing(self, thread_id: int, user_id: int) -> bool:
        task = self._timers.get((int(thread_id), int(user_id)))
        return task is not None and not task.done()

    def update(self, thread_id: int, user_id: int, is_typing: bool) -> None:
        key = (int(thread_id), int(user_id))
        previous = self._timers.pop(key, None)
        if previous is not None and not previous.done():
            previous.cancel()
        if is_typing:
            self._timers[key] = asyncio.create_task(self._expire_later(key))

    async def _expire_later(self, key: Tuple[int, int]) -> None:
        await asyncio.sleep(self.ttl)
        if self._timers.get(key) is asyncio.current_task():
            self._timers.pop(key, None)
        try:
            await self.on_expire(*key)
        except Exception as exc:
            logger.warning(
                "ws.typing.expire_failed",
                extra={"thread_id": key[0], "user_id": key[1], "error": repr(exc)},
            )

    def cancel_all(self) -> None:
        for task in self._timers.values():
            task.cancel()
        self._timers.clear()
