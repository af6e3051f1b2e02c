from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .. import models


def append_message(
    db: Session,
    thread: models.Thread,
    sender_id: int,
    content: str,
) -> models.Message:
    """Insert a message and bump the recipient's unread counter atomically.

    The counter UPDATE is the first statement of the transaction so the
    thread row is write-locked before ``last_message_at`` is read; the new
    ``created_at`` is clamped to it, keeping id order and time order aligned.
    """
    thread_id = int(thread.id)
    if int(sender_id) == int(thread.buyer_id):
        counter = models.Thread.seller_unread_count
    else:
        counter = models.Thread.buyer_unread_count

    db.execute(
        update(models.Thread)
        .where(models.Thread.id == thread_id)
        .values({counter: counter + 1})
    )
    previous = db.execute(
        select(models.Thread.last_message_at).where(models.Thread.id == thread_id)
    ).scalar_one()

    created_at = models.utcnow()
    if previous is not None and previous > created_at:
        created_at = previous

    db_msg = models.Message(
        thread_id=thread_id,
        sender_id=sender_id,
        content=content,
        created_at=created_at,
    )
    db.add(db_msg)
    db.execute(
        update(models.Thread)
        .where(models.Thread.id == thread_id)
        .values(last_message_at=created_at)
    )
    db.commit()
    db.refresh(db_msg)
    return db_msg


def get_messages_for_thread(
    db: Session,
    thread_id: int,
    after_id: Optional[int] = None,
    limit: Optional[int] = 200,
) -> List[models.Message]:
    """Ascending by id. ``limit=None`` returns the whole history."""
    query = db.query(models.Message).filter(models.Message.thread_id == thread_id)
    if after_id is not None:
        query = query.filter(models.Message.id > after_id)
    query = query.order_by(models.Message.id.asc())
    if limit is not None:
        query = query.limit(max(1, int(limit)))
    return query.all()
