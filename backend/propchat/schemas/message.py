from typing import Optional
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, field_validator


class MessageCreate(BaseModel):
    # Emptiness and length are enforced by the send path so HTTP and
    # websocket senders get the same error codes.
    content: str = ""
    client_token: Optional[str] = Field(default=None, max_length=128)

    @field_validator("client_token", mode="before")
    @classmethod
    def blank_token_is_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v


class MessageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    thread_id: int
    sender_id: int
    content: str
    created_at: datetime
    # Echo of the sender's correlation token; never stored
    client_token: Optional[str] = None
