from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)

from .base import BaseModel


class Thread(BaseModel):
    """A buyer–seller conversation, optionally about one property.

    ``property_key`` mirrors ``property_id`` with ``""`` for general
    inquiries so the uniqueness constraint also covers the no-property case
    (NULLs never collide in a unique index).
    """

    __tablename__ = "chat_threads"
    __table_args__ = (
        UniqueConstraint(
            "buyer_id",
            "seller_id",
            "property_key",
            name="uq_chat_threads_participants_property",
        ),
        CheckConstraint("buyer_id <> seller_id", name="ck_chat_threads_distinct_participants"),
        CheckConstraint("buyer_unread_count >= 0", name="ck_chat_threads_buyer_unread"),
        CheckConstraint("seller_unread_count >= 0", name="ck_chat_threads_seller_unread"),
        Index("ix_chat_threads_buyer_last", "buyer_id", "last_message_at"),
        Index("ix_chat_threads_seller_last", "seller_id", "last_message_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    buyer_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    seller_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    property_id = Column(String, ForeignKey("properties.id"), nullable=True)
    property_key = Column(String, nullable=False, default="")
    buyer_unread_count = Column(Integer, nullable=False, default=0)
    seller_unread_count = Column(Integer, nullable=False, default=0)
    last_message_at = Column(DateTime, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    def role_of(self, user_id: int) -> str | None:
        if int(user_id) == int(self.buyer_id):
            return "buyer"
        if int(user_id) == int(self.seller_id):
            return "seller"
        return None

    def other_participant(self, user_id: int) -> int:
        return int(self.seller_id) if int(user_id) == int(self.buyer_id) else int(self.buyer_id)

    def unread_count_for(self, user_id: int) -> int:
        role = self.role_of(user_id)
        if role == "buyer":
            return int(self.buyer_unread_count or 0)
        if role == "seller":
            return int(self.seller_unread_count or 0)
        return 0
