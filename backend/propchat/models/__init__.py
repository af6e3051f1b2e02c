from .base import MAX_ROW_ID, BaseModel, utcnow
from .user import User, UserType
from .property import Property
from .thread import Thread
from .message import Message

__all__ = [
    "MAX_ROW_ID",
    "BaseModel",
    "utcnow",
    "User",
    "UserType",
    "Property",
    "Thread",
    "Message",
]
