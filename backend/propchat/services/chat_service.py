"""Thread resolution, the send path and the read path.

``ChatService`` is bound to one SQLAlchemy session. Every public method
returns plain schema objects so results stay valid after the session closes
(websocket handlers run each call on a short-lived session in the
threadpool).
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from .. import crud, models, schemas
from ..core.config import settings
from ..core.errors import (
    ContentTooLong,
    EmptyContent,
    InvalidClientToken,
    InvalidParticipants,
    MessagingError,
    NotAParticipant,
    StoreUnavailable,
    ThreadNotFound,
)
from ..utils.metrics import incr
from .collaborators import (
    PropertyCatalog,
    PropertyRef,
    SqlPropertyCatalog,
    SqlUserDirectory,
    UserDirectory,
    UserRef,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SentMessage:
    message: schemas.MessageResponse
    buyer_id: int
    seller_id: int

    @property
    def participants(self) -> Tuple[int, int]:
        return (self.buyer_id, self.seller_id)


@dataclass(frozen=True)
class MarkReadResult:
    thread_id: int
    user_id: int
    other_user_id: int
    unread_count: int = 0


def _store_op(fn):
    """Translate driver failures into ``StoreUnavailable`` after rollback."""

    @functools.wraps(fn)
    def wrapper(self: "ChatService", *args, **kwargs):
        try:
            return fn(self, *args, **kwargs)
        except MessagingError:
            raise
        except DBAPIError as exc:
            self.db.rollback()
            logger.error(
                "chat.store.unavailable",
                extra={"operation": fn.__name__, "error": str(exc.orig or exc)},
            )
            incr("chat.store.unavailable", tags={"op": fn.__name__})
            raise StoreUnavailable() from exc

    return wrapper


class ChatService:
    def __init__(
        self,
        db: Session,
        users: Optional[UserDirectory] = None,
        properties: Optional[PropertyCatalog] = None,
    ) -> None:
        self.db = db
        self.users = users or SqlUserDirectory(db)
        self.properties = properties or SqlPropertyCatalog(db)

    # ── thread resolution ────────────────────────────────────────────────

    @_store_op
    def resolve_thread(
        self,
        buyer_id: int,
        seller_id: int,
        property_id: Optional[str] = None,
    ) -> schemas.ThreadResponse:
        """Return the single thread for ``(buyer, seller, property)``.

        Creates it on first use. An existing thread is returned as-is; its
        counters are not touched.
        """
        self._validate_participants(buyer_id, seller_id, property_id)
        thread, created = crud.create_or_get_thread(self.db, buyer_id, seller_id, property_id)
        if created:
            logger.info(
                "chat.thread.created",
                extra={
                    "thread_id": thread.id,
                    "buyer_id": buyer_id,
                    "seller_id": seller_id,
                    "property_id": property_id,
                },
            )
            incr("chat.thread.created")
        return schemas.ThreadResponse.model_validate(thread)

    def _validate_participants(self, buyer_id: int, seller_id: int, property_id: Optional[str]) -> None:
        if int(buyer_id) == int(seller_id):
            raise InvalidParticipants(
                "Buyer and seller must be different users",
                {"seller_id": "must differ from buyer_id"},
            )
        buyer = self.users.get_user(buyer_id)
        if buyer is None or not buyer.is_active:
            raise InvalidParticipants("Unknown buyer", {"buyer_id": "unknown or inactive user"})
        seller = self.users.get_user(seller_id)
        if seller is None or not seller.is_active:
            raise InvalidParticipants("Unknown seller", {"seller_id": "unknown or inactive user"})
        if not seller.is_seller:
            raise InvalidParticipants("Seller cannot receive inquiries", {"seller_id": "user is not a seller"})
        if property_id is not None:
            prop = self.properties.get_property(property_id)
            if prop is None:
                raise InvalidParticipants("Unknown property", {"property_id": "not found"})
            if int(prop.owner_id) != int(seller_id):
                raise InvalidParticipants(
                    "Property does not belong to seller",
                    {"property_id": "not owned by seller_id"},
                )

    # ── send path ────────────────────────────────────────────────────────

    @_store_op
    def send_message(
        self,
        thread_id: int,
        sender_id: int,
        content: Optional[str],
        client_token: Optional[str] = None,
    ) -> SentMessage:
        thread = self._participant_thread(thread_id, sender_id)
        text = (content or "").strip()
        if not text:
            raise EmptyContent(field_errors={"content": "required"})
        if len(text) > settings.MAX_MESSAGE_LENGTH:
            raise ContentTooLong(
                field_errors={"content": f"at most {settings.MAX_MESSAGE_LENGTH} characters"}
            )
        if client_token is not None and len(client_token) > settings.MAX_CLIENT_TOKEN_LENGTH:
            raise InvalidClientToken(
                field_errors={"client_token": f"at most {settings.MAX_CLIENT_TOKEN_LENGTH} characters"}
            )
        buyer_id, seller_id = int(thread.buyer_id), int(thread.seller_id)

        msg = crud.append_message(self.db, thread, sender_id, text)
        response = schemas.MessageResponse.model_validate(msg)
        if client_token:
            response = response.model_copy(update={"client_token": client_token})
        logger.info(
            "chat.send",
            extra={"thread_id": thread_id, "message_id": msg.id, "sender_id": sender_id},
        )
        incr("chat.message.sent")
        return SentMessage(message=response, buyer_id=buyer_id, seller_id=seller_id)

    # ── read path ────────────────────────────────────────────────────────

    @_store_op
    def mark_read(self, thread_id: int, user_id: int) -> MarkReadResult:
        thread = self._participant_thread(thread_id, user_id)
        other = thread.other_participant(user_id)
        crud.reset_unread(self.db, thread, user_id)
        return MarkReadResult(thread_id=int(thread_id), user_id=int(user_id), other_user_id=other)

    @_store_op
    def list_threads(
        self,
        user_id: int,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[schemas.ThreadListItem]:
        limit = min(int(limit or settings.THREAD_LIST_LIMIT), settings.THREAD_LIST_LIMIT)
        threads = crud.list_threads_for_user(self.db, user_id, limit=limit, offset=offset)
        user_cache: Dict[int, Optional[UserRef]] = {}
        prop_cache: Dict[str, Optional[PropertyRef]] = {}
        items: List[schemas.ThreadListItem] = []
        for t in threads:
            other_id = t.other_participant(user_id)
            if other_id not in user_cache:
                user_cache[other_id] = self._lookup_user(other_id)
            other = user_cache[other_id]
            prop = None
            if t.property_id:
                if t.property_id not in prop_cache:
                    prop_cache[t.property_id] = self._lookup_property(t.property_id)
                prop = prop_cache[t.property_id]
            items.append(
                schemas.ThreadListItem(
                    thread_id=t.id,
                    role=t.role_of(user_id),
                    other_participant_id=other_id,
                    other_participant_name=other.display_name if other else None,
                    other_participant_avatar_url=other.avatar_url if other else None,
                    property_id=t.property_id,
                    property_title=prop.title if prop else None,
                    unread_count=t.unread_count_for(user_id),
                    last_message_at=t.last_message_at,
                    is_active=bool(t.is_active),
                    created_at=t.created_at,
                )
            )
        return items

    @_store_op
    def get_messages(
        self,
        thread_id: int,
        user_id: int,
        after_id: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[schemas.MessageResponse]:
        self._participant_thread(thread_id, user_id)
        limit = min(int(limit or settings.MESSAGE_PAGE_LIMIT), settings.MESSAGE_PAGE_LIMIT)
        rows = crud.get_messages_for_thread(self.db, thread_id, after_id=after_id, limit=limit)
        return [schemas.MessageResponse.model_validate(m) for m in rows]

    @_store_op
    def get_thread(self, thread_id: int, user_id: int) -> schemas.ThreadDetailResponse:
        thread = self._participant_thread(thread_id, user_id)
        # Full history, never truncated
        rows = crud.get_messages_for_thread(self.db, thread_id, limit=None)
        return schemas.ThreadDetailResponse(
            thread=schemas.ThreadResponse.model_validate(thread),
            messages=[schemas.MessageResponse.model_validate(m) for m in rows],
        )

    @_store_op
    def unread_total(self, user_id: int) -> int:
        return crud.unread_total_for_user(self.db, user_id)

    @_store_op
    def participants(self, thread_id: int, user_id: int) -> Tuple[int, int]:
        """Return ``(buyer_id, seller_id)`` after checking membership."""
        thread = self._participant_thread(thread_id, user_id)
        return int(thread.buyer_id), int(thread.seller_id)

    # ── helpers ──────────────────────────────────────────────────────────

    def _participant_thread(self, thread_id: int, user_id: int) -> models.Thread:
        thread = crud.get_thread(self.db, thread_id)
        if thread is None:
            raise ThreadNotFound(field_errors={"thread_id": "not found"})
        if thread.role_of(user_id) is None:
            raise NotAParticipant()
        return thread

    def _lookup_user(self, user_id: int) -> Optional[UserRef]:
        try:
            return self.users.get_user(user_id)
        except Exception as exc:  # enrichment must never fail the listing
            logger.warning("chat.enrich.user_failed", extra={"user_id": user_id, "error": str(exc)})
            return None

    def _lookup_property(self, property_id: str) -> Optional[PropertyRef]:
        try:
            return self.properties.get_property(property_id)
        except Exception as exc:
            logger.warning("chat.enrich.property_failed", extra={"property_id": property_id, "error": str(exc)})
            return None
