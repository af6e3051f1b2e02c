"""Realtime gateway: per-connection session state and event fan-out.

The gateway owns no persistent state. It runs inbound frames through
``ChatService`` on short-lived sessions in the threadpool, then fans the
stored result out through the ``PresenceRegistry``. HTTP handlers reuse the
same ``publish_*`` helpers so both transports emit identical events.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from fastapi import WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.errors import MessagingError
from ..database import SessionLocal
from ..models import MAX_ROW_ID
from ..services.chat_service import ChatService, MarkReadResult, SentMessage
from ..services.collaborators import JwtIdentityProvider, SqlUserDirectory, UserRef
from ..utils.metrics import Timer, incr
from .channel import OutboundChannel
from .envelope import Envelope
from .presence import PresenceRegistry, TooManyConnections
from .typing_signals import TypingTracker

logger = logging.getLogger(__name__)

WS_4401_UNAUTHORIZED = 4401
WS_4403_FORBIDDEN = 4403
WS_1001_GOING_AWAY = 1001


class ConnectionState(str, enum.Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass
class Connection:
    websocket: WebSocket
    user_id: int
    connection_id: str
    channel: OutboundChannel
    state: ConnectionState = ConnectionState.CONNECTING
    last_seen: float = field(default_factory=time.monotonic)
    # thread_id -> (buyer_id, seller_id); roles never change
    participants: Dict[int, Tuple[int, int]] = field(default_factory=dict)


class MalformedFrame(ValueError):
    pass


def _thread_id(payload: Dict[str, Any]) -> int:
    raw = payload.get("thread_id")
    if isinstance(raw, bool):
        raise MalformedFrame("thread_id")
    try:
        thread_id = int(raw)
    except (TypeError, ValueError):
        raise MalformedFrame("thread_id") from None
    if not 1 <= thread_id <= MAX_ROW_ID:
        raise MalformedFrame("thread_id")
    return thread_id


def _client_token(payload: Dict[str, Any]) -> Optional[str]:
    token = payload.get("client_token")
    if isinstance(token, str) and token.strip():
        return token
    return None


# Session-bound units of work run in the threadpool

def _authenticate(db: Session, token: Optional[str]) -> Tuple[Optional[UserRef], Optional[str]]:
    return JwtIdentityProvider(SqlUserDirectory(db)).authenticate(token)


def _send_message(db: Session, thread_id: int, sender_id: int, content: str, client_token: Optional[str]) -> SentMessage:
    return ChatService(db).send_message(thread_id, sender_id, content, client_token)


def _mark_read(db: Session, thread_id: int, user_id: int) -> MarkReadResult:
    return ChatService(db).mark_read(thread_id, user_id)


def _participants(db: Session, thread_id: int, user_id: int) -> Tuple[int, int]:
    return ChatService(db).participants(thread_id, user_id)


class RealtimeGateway:
    def __init__(
        self,
        registry: PresenceRegistry,
        session_factory: Optional[Callable[[], Session]] = None,
        typing_ttl: Optional[float] = None,
        db_concurrency: Optional[int] = None,
        ping_interval: Optional[float] = None,
        pong_timeout: Optional[float] = None,
        auth_timeout: Optional[float] = None,
        queue_size: Optional[int] = None,
    ) -> None:
        self.registry = registry
        self.session_factory = session_factory or SessionLocal
        self.typing = TypingTracker(self._typing_expired, ttl=typing_ttl)
        self.db_concurrency = db_concurrency or settings.WS_DB_CONCURRENCY
        self.ping_interval = ping_interval or settings.WS_PING_INTERVAL
        self.pong_timeout = pong_timeout or settings.WS_PONG_TIMEOUT
        self.auth_timeout = auth_timeout or settings.WS_AUTH_TIMEOUT
        self.queue_size = queue_size or settings.WS_SEND_QUEUE_SIZE
        self._db_sem: Optional[asyncio.Semaphore] = None
        # (thread_id, typist_id) -> recipient of the pending expiry
        self._typing_targets: Dict[Tuple[int, int], int] = {}
        self._handlers: Dict[str, Callable[[Connection, Dict[str, Any]], Awaitable[None]]] = {
            "chat_message": self._on_chat_message,
            "typing": self._on_typing,
            "mark_read": self._on_mark_read,
        }

    # ── DB access ────────────────────────────────────────────────────────

    def _call_with_session(self, fn, *args, **kwargs):
        """Run a DB function with a short-lived session (sync)."""
        with self.session_factory() as db:
            return fn(db, *args, **kwargs)

    async def db_call(self, fn, *args, **kwargs):
        """Guard DB calls behind a semaphore and offload to the threadpool."""
        if self._db_sem is None:
            self._db_sem = asyncio.Semaphore(self.db_concurrency)
        async with self._db_sem:
            return await run_in_threadpool(self._call_with_session, fn, *args, **kwargs)

    # ── outbound events ──────────────────────────────────────────────────

    async def publish_new_message(self, sent: SentMessage) -> int:
        message = sent.message
        env = Envelope(
            type="new_message",
            payload={
                "thread_id": message.thread_id,
                "message": message.model_dump(mode="json"),
                "client_token": message.client_token,
            },
        )
        with Timer("ws.fanout.ms", tags={"event": "new_message"}):
            return await self.registry.fan_out(sent.participants, env)

    async def publish_messages_read(self, result: MarkReadResult) -> int:
        env = Envelope(
            type="messages_read",
            payload={"thread_id": result.thread_id, "user_id": result.user_id},
        )
        return await self.registry.fan_out([result.other_user_id, result.user_id], env)

    async def publish_typing(self, thread_id: int, user_id: int, recipient_id: int, is_typing: bool) -> int:
        env = Envelope(
            type="user_typing",
            payload={"thread_id": thread_id, "user_id": user_id, "is_typing": is_typing},
        )
        return await self.registry.fan_out([recipient_id], env)

    async def _typing_expired(self, thread_id: int, user_id: int) -> None:
        recipient = self._typing_targets.pop((thread_id, user_id), None)
        if recipient is None:
            return
        logger.debug("ws.typing.expired", extra={"thread_id": thread_id, "user_id": user_id})
        await self.publish_typing(thread_id, user_id, recipient, False)

    def send_error(self, conn: Connection, exc: MessagingError, client_token: Optional[str] = None) -> None:
        payload = exc.as_dict()
        payload["client_token"] = client_token
        conn.channel.offer(Envelope(type="error", payload=payload))

    # ── inbound frames ───────────────────────────────────────────────────

    async def handle_frame(self, conn: Connection, env: Envelope) -> None:
        conn.last_seen = time.monotonic()
        if env.type == "ping":
            conn.channel.offer(Envelope(type="pong"))
            return
        if env.type == "pong":
            return
        handler = self._handlers.get(env.type)
        if handler is None:
            # Unknown types (including a repeated auth) are ignored
            logger.debug("ws.frame.ignored", extra={"type": env.type, "connection_id": conn.connection_id})
            return
        payload = env.payload or {}
        try:
            await handler(conn, payload)
        except MalformedFrame as exc:
            logger.debug(
                "ws.frame.malformed",
                extra={"type": env.type, "field": str(exc), "connection_id": conn.connection_id},
            )
        except MessagingError as exc:
            logger.info(
                "ws.frame.rejected",
                extra={"type": env.type, "code": exc.code, "user_id": conn.user_id},
            )
            self.send_error(conn, exc, _client_token(payload))

    async def _on_chat_message(self, conn: Connection, payload: Dict[str, Any]) -> None:
        thread_id = _thread_id(payload)
        content = payload.get("content")
        if not isinstance(content, str):
            content = ""
        sent = await self.db_call(_send_message, thread_id, conn.user_id, content, _client_token(payload))
        conn.participants[thread_id] = sent.participants
        incr("ws.message.sent")
        await self.publish_new_message(sent)

    async def _on_typing(self, conn: Connection, payload: Dict[str, Any]) -> None:
        thread_id = _thread_id(payload)
        is_typing = bool(payload.get("is_typing", True))
        participants = conn.participants.get(thread_id)
        if participants is None:
            participants = await self.db_call(_participants, thread_id, conn.user_id)
            conn.participants[thread_id] = participants
        buyer_id, seller_id = participants
        recipient = seller_id if conn.user_id == buyer_id else buyer_id
        key = (thread_id, conn.user_id)
        if is_typing:
            self._typing_targets[key] = recipient
        else:
            self._typing_targets.pop(key, None)
        self.typing.update(thread_id, conn.user_id, is_typing)
        await self.publish_typing(thread_id, conn.user_id, recipient, is_typing)

    async def _on_mark_read(self, conn: Connection, payload: Dict[str, Any]) -> None:
        thread_id = _thread_id(payload)
        result = await self.db_call(_mark_read, thread_id, conn.user_id)
        await self.publish_messages_read(result)

    # ── connection lifecycle ─────────────────────────────────────────────

    async def authenticate(self, token: Optional[str]) -> Tuple[Optional[UserRef], Optional[str]]:
        return await self.db_call(_authenticate, token)

    async def authenticate_in_band(self, websocket: WebSocket) -> Tuple[Optional[UserRef], Optional[str]]:
        """Wait for the first frame to be ``auth`` and verify its token."""
        try:
            env = await asyncio.wait_for(self.receive(websocket), timeout=self.auth_timeout)
        except asyncio.TimeoutError:
            return None, "auth_timeout"
        if env.type != "auth":
            return None, "expected_auth"
        token = (env.payload or {}).get("token")
        if not isinstance(token, str):
            return None, "missing"
        return await self.authenticate(token)

    async def receive(self, websocket: WebSocket) -> Envelope:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            raise WebSocketDisconnect(code=message.get("code", 1000))
        text = message.get("text")
        if text is None:
            text = message.get("bytes") or b""
        return Envelope.from_text(text)

    async def run_connection(self, websocket: WebSocket, user: UserRef) -> None:
        """Serve an accepted, authenticated socket until it closes."""
        connection_id = uuid.uuid4().hex
        conn = Connection(
            websocket=websocket,
            user_id=int(user.id),
            connection_id=connection_id,
            channel=OutboundChannel(websocket, connection_id, int(user.id), maxsize=self.queue_size),
        )
        try:
            await self.registry.register(conn.user_id, connection_id, conn.channel.offer)
        except TooManyConnections:
            logger.warning("ws.connect.limit", extra={"user_id": conn.user_id})
            incr("ws.connect.rejected", tags={"reason": "limit"})
            await websocket.close(code=WS_4403_FORBIDDEN, reason="Too many websocket connections")
            return
        conn.state = ConnectionState.AUTHENTICATED
        writer = asyncio.create_task(conn.channel.run())
        conn.channel.offer(
            Envelope(type="auth_success", payload={"user_id": conn.user_id, "connection_id": connection_id})
        )
        conn.state = ConnectionState.ACTIVE
        pinger = asyncio.create_task(self._ping_loop(conn))
        logger.info("ws.connect", extra={"user_id": conn.user_id, "connection_id": connection_id})
        incr("ws.connect")
        try:
            while True:
                env = await self.receive(websocket)
                await self.handle_frame(conn, env)
        except WebSocketDisconnect as exc:
            logger.info(
                "ws.closed",
                extra={"user_id": conn.user_id, "connection_id": connection_id, "code": exc.code},
            )
        finally:
            conn.state = ConnectionState.CLOSED
            await self.registry.unregister(conn.user_id, connection_id)
            conn.channel.close()
            pinger.cancel()
            writer.cancel()
            await asyncio.gather(pinger, writer, return_exceptions=True)

    async def _ping_loop(self, conn: Connection) -> None:
        while conn.state is ConnectionState.ACTIVE:
            await asyncio.sleep(self.ping_interval)
            if (time.monotonic() - conn.last_seen) > self.pong_timeout:
                logger.info(
                    "ws.idle_timeout",
                    extra={"user_id": conn.user_id, "connection_id": conn.connection_id},
                )
                try:
                    await conn.websocket.close(code=WS_1001_GOING_AWAY)
                except RuntimeError:
                    # Already closed by the peer
                    pass
                return
            conn.channel.offer(Envelope(type="ping"))

    def shutdown(self) -> None:
        self.typing.cancel_all()
        self._typing_targets.clear()
