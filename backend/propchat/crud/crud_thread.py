import logging
from typing import List, Optional

from sqlalchemy import case, func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import models
from ..core.errors import StoreUnavailable

logger = logging.getLogger(__name__)

# A losing creator re-reads the winner's row; one retry covers every
# interleaving, the extra attempt covers a replica that lags a beat.
_CREATE_ATTEMPTS = 3


def property_key_for(property_id: Optional[str]) -> str:
    return property_id or ""


def get_thread(db: Session, thread_id: int) -> Optional[models.Thread]:
    return db.query(models.Thread).filter(models.Thread.id == thread_id).first()


def get_thread_by_key(
    db: Session,
    buyer_id: int,
    seller_id: int,
    property_id: Optional[str] = None,
) -> Optional[models.Thread]:
    return (
        db.query(models.Thread)
        .filter(
            models.Thread.buyer_id == buyer_id,
            models.Thread.seller_id == seller_id,
            models.Thread.property_key == property_key_for(property_id),
        )
        .first()
    )


def create_or_get_thread(
    db: Session,
    buyer_id: int,
    seller_id: int,
    property_id: Optional[str] = None,
) -> tuple[models.Thread, bool]:
    """Return ``(thread, created)`` for the participant/property key.

    Existing threads are returned untouched. Concurrent creators race on the
    unique constraint; the loser rolls back and returns the winner's row.
    """
    for _ in range(_CREATE_ATTEMPTS):
        existing = get_thread_by_key(db, buyer_id, seller_id, property_id)
        if existing is not None:
            return existing, False
        thread = models.Thread(
            buyer_id=buyer_id,
            seller_id=seller_id,
            property_id=property_id,
            property_key=property_key_for(property_id),
            buyer_unread_count=0,
            seller_unread_count=0,
            last_message_at=None,
            is_active=True,
        )
        db.add(thread)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info(
                "chat.thread.create_race",
                extra={"buyer_id": buyer_id, "seller_id": seller_id, "property_id": property_id},
            )
            continue
        db.refresh(thread)
        return thread, True
    # The constraint fired on every attempt yet no row is visible
    raise StoreUnavailable("Thread could not be created, retry")


def list_threads_for_user(
    db: Session,
    user_id: int,
    limit: int = 50,
    offset: int = 0,
) -> List[models.Thread]:
    return (
        db.query(models.Thread)
        .filter(or_(models.Thread.buyer_id == user_id, models.Thread.seller_id == user_id))
        .order_by(
            # Threads without messages sort after every thread with one
            models.Thread.last_message_at.is_(None),
            models.Thread.last_message_at.desc(),
            models.Thread.created_at.desc(),
            models.Thread.id.desc(),
        )
        .offset(max(0, int(offset)))
        .limit(max(1, int(limit)))
        .all()
    )


def reset_unread(db: Session, thread: models.Thread, user_id: int) -> None:
    """Zero the caller's own counter. Idempotent."""
    role = thread.role_of(user_id)
    if role == "buyer":
        column = models.Thread.buyer_unread_count
    elif role == "seller":
        column = models.Thread.seller_unread_count
    else:
        raise ValueError(f"user {user_id} is not a participant of thread {thread.id}")
    db.execute(
        update(models.Thread)
        .where(models.Thread.id == thread.id, column != 0)
        .values({column: 0})
    )
    db.commit()


def unread_total_for_user(db: Session, user_id: int) -> int:
    total = (
        db.query(
            func.coalesce(
                func.sum(
                    case(
                        (models.Thread.buyer_id == user_id, models.Thread.buyer_unread_count),
                        else_=models.Thread.seller_unread_count,
                    )
                ),
                0,
            )
        )
        .filter(or_(models.Thread.buyer_id == user_id, models.Thread.seller_id == user_id))
        .scalar()
    )
    return int(total or 0)
