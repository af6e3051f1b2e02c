"""Client-side view reconciliation for the messaging socket.

Delivery is at-least-once and a sender sees its own message twice: once as
the HTTP/WS echo and once as the ``new_message`` fan-out. The reconciler
keeps one entry per server id and swaps optimistic entries for confirmed
ones using the correlation ``client_token``.
"""

from __future__ import annotations

import itertools
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

PENDING = "pending"
SENT = "sent"
FAILED = "failed"


@dataclass
class LocalMessage:
    thread_id: int
    sender_id: int
    content: str
    status: str = SENT
    id: Optional[int] = None
    created_at: Optional[str] = None
    client_token: Optional[str] = None
    # Temporary id shown while the message is pending
    temp_id: Optional[str] = None


@dataclass
class ThreadView:
    thread_id: int
    messages: List[LocalMessage] = field(default_factory=list)
    unread_count: int = 0
    typing: Dict[int, bool] = field(default_factory=dict)
    # Highest server id the other participant has read up to
    peer_read_up_to: Optional[int] = None

    def find_by_id(self, message_id: int) -> Optional[LocalMessage]:
        for m in self.messages:
            if m.id == message_id:
                return m
        return None

    def find_by_token(self, client_token: str) -> Optional[LocalMessage]:
        for m in self.messages:
            if m.client_token == client_token and m.status != SENT:
                return m
        return None

    def last_server_id(self) -> Optional[int]:
        ids = [m.id for m in self.messages if m.id is not None]
        return max(ids) if ids else None


def _as_dict(message: Any) -> Dict[str, Any]:
    if isinstance(message, Mapping):
        return dict(message)
    if hasattr(message, "model_dump"):
        return message.model_dump(mode="json")
    raise TypeError(f"unsupported message payload: {type(message).__name__}")


def _event_parts(event: Any) -> tuple[str, Dict[str, Any]]:
    if isinstance(event, Mapping):
        return str(event.get("type") or ""), dict(event.get("payload") or {})
    return str(getattr(event, "type", "") or ""), dict(getattr(event, "payload", None) or {})


class ClientReconciler:
    def __init__(self, user_id: int) -> None:
        self.user_id = int(user_id)
        self.threads: Dict[int, ThreadView] = {}
        self._temp_ids = itertools.count(1)

    def view(self, thread_id: int) -> ThreadView:
        thread_id = int(thread_id)
        if thread_id not in self.threads:
            self.threads[thread_id] = ThreadView(thread_id=thread_id)
        return self.threads[thread_id]

    def messages(self, thread_id: int) -> List[LocalMessage]:
        return list(self.view(thread_id).messages)

    # ── optimistic sends ─────────────────────────────────────────────────

    def add_optimistic(self, thread_id: int, content: str) -> str:
        """Show a pending message immediately; returns its correlation token."""
        token = uuid.uuid4().hex
        view = self.view(thread_id)
        view.messages.append(
            LocalMessage(
                thread_id=view.thread_id,
                sender_id=self.user_id,
                content=content,
                status=PENDING,
                client_token=token,
                temp_id=f"tmp-{next(self._temp_ids)}",
            )
        )
        return token

    def confirm(self, client_token: Optional[str], message: Any) -> LocalMessage:
        """Apply the server's copy of a message sent from this client."""
        data = _as_dict(message)
        view = self.view(data["thread_id"])
        message_id = int(data["id"])
        pending = view.find_by_token(client_token) if client_token else None
        existing = view.find_by_id(message_id)
        if existing is not None:
            # Fan-out beat the echo (or a duplicate); drop the placeholder
            if pending is not None:
                view.messages.remove(pending)
            return existing
        if pending is not None:
            pending.id = message_id
            pending.status = SENT
            pending.content = data.get("content", pending.content)
            pending.created_at = data.get("created_at")
            pending.sender_id = int(data.get("sender_id", pending.sender_id))
            self._sort(view)
            return pending
        return self._insert(view, data)

    def fail(self, client_token: str) -> bool:
        for view in self.threads.values():
            pending = view.find_by_token(client_token)
            if pending is not None:
                pending.status = FAILED
                return True
        return False

    # ── server events ────────────────────────────────────────────────────

    def apply_event(self, event: Any) -> bool:
        """Apply one gateway event; returns True when local state changed."""
        etype, payload = _event_parts(event)
        if etype == "new_message":
            message = payload.get("message")
            if not message:
                return False
            data = _as_dict(message)
            view = self.view(data["thread_id"])
            if view.find_by_id(int(data["id"])) is not None:
                return False
            token = payload.get("client_token")
            if token and int(data.get("sender_id", -1)) == self.user_id:
                self.confirm(token, data)
                return True
            self._insert(view, data)
            if int(data.get("sender_id", -1)) != self.user_id:
                view.unread_count += 1
            return True
        if etype == "user_typing":
            view = self.view(payload["thread_id"])
            user_id = int(payload["user_id"])
            is_typing = bool(payload.get("is_typing"))
            if view.typing.get(user_id, False) == is_typing:
                return False
            view.typing[user_id] = is_typing
            return True
        if etype == "messages_read":
            view = self.view(payload["thread_id"])
            if int(payload["user_id"]) == self.user_id:
                changed = view.unread_count != 0
                view.unread_count = 0
                return changed
            last = view.last_server_id()
            if last is None or last == view.peer_read_up_to:
                return False
            view.peer_read_up_to = last
            return True
        if etype == "error":
            token = payload.get("client_token")
            return bool(token) and self.fail(token)
        return False

    def replace_history(self, thread_id: int, messages: List[Any]) -> None:
        """Resync a thread from the HTTP read path, keeping unsent entries."""
        view = self.view(thread_id)
        unsent = [m for m in view.messages if m.status != SENT]
        view.messages = []
        seen: set[int] = set()
        for raw in messages:
            data = _as_dict(raw)
            if int(data["id"]) in seen:
                continue
            seen.add(int(data["id"]))
            view.messages.append(self._from_server(data))
        view.messages.extend(unsent)
        self._sort(view)

    # ── helpers ──────────────────────────────────────────────────────────

    def _from_server(self, data: Dict[str, Any]) -> LocalMessage:
        return LocalMessage(
            thread_id=int(data["thread_id"]),
            sender_id=int(data["sender_id"]),
            content=data.get("content", ""),
            status=SENT,
            id=int(data["id"]),
            created_at=data.get("created_at"),
        )

    def _insert(self, view: ThreadView, data: Dict[str, Any]) -> LocalMessage:
        msg = self._from_server(data)
        view.messages.append(msg)
        self._sort(view)
        return msg

    @staticmethod
    def _sort(view: ThreadView) -> None:
        # Server-ordered entries by id, then unsent ones in creation order
        confirmed = sorted((m for m in view.messages if m.id is not None), key=lambda m: m.id)
        unsent = [m for m in view.messages if m.id is None]
        view.messages = confirmed + unsent
