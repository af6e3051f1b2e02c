from .message import MessageCreate, MessageResponse
from .thread import (
    ThreadResolveIn,
    ThreadResponse,
    ThreadResolveResponse,
    ThreadListItem,
    ThreadDetailResponse,
    MarkReadResponse,
    UnreadTotalResponse,
)

__all__ = [
    "MessageCreate",
    "MessageResponse",
    "ThreadResolveIn",
    "ThreadResponse",
    "ThreadResolveResponse",
    "ThreadListItem",
    "ThreadDetailResponse",
    "MarkReadResponse",
    "UnreadTotalResponse",
]
