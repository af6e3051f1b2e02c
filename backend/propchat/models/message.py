from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Text

from ..database import Base
from .base import utcnow


class Message(Base):
    """Append-only chat message. Rows are never updated after insert."""

    __tablename__ = "chat_messages"
    __table_args__ = (
        Index("ix_chat_messages_thread_id_id", "thread_id", "id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    thread_id = Column(Integer, ForeignKey("chat_threads.id"), nullable=False)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    content = Column(Text, nullable=False)
    # Assigned by the send path; never taken from the client
    created_at = Column(DateTime, nullable=False, default=utcnow)
