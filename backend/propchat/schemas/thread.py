from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..models.base import MAX_ROW_ID
from .message import MessageResponse


class ThreadResolveIn(BaseModel):
    buyer_id: int = Field(..., ge=1, le=MAX_ROW_ID)
    seller_id: int = Field(..., ge=1, le=MAX_ROW_ID)
    property_id: Optional[str] = None

    @field_validator("property_id", mode="before")
    @classmethod
    def blank_property_is_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v


class ThreadResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    buyer_id: int
    seller_id: int
    property_id: Optional[str] = None
    buyer_unread_count: int = 0
    seller_unread_count: int = 0
    last_message_at: Optional[datetime] = None
    is_active: bool = True
    created_at: datetime


class ThreadResolveResponse(BaseModel):
    thread_id: int
    thread: ThreadResponse


class ThreadListItem(BaseModel):
    """A thread as seen by one participant."""

    thread_id: int
    role: Literal["buyer", "seller"]
    other_participant_id: int
    other_participant_name: Optional[str] = None
    other_participant_avatar_url: Optional[str] = None
    property_id: Optional[str] = None
    property_title: Optional[str] = None
    unread_count: int = 0
    last_message_at: Optional[datetime] = None
    is_active: bool = True
    created_at: datetime


class ThreadDetailResponse(BaseModel):
    thread: ThreadResponse
    messages: List[MessageResponse] = Field(default_factory=list)


class MarkReadResponse(BaseModel):
    thread_id: int
    unread_count: int = 0


class UnreadTotalResponse(BaseModel):
    total: int = 0
