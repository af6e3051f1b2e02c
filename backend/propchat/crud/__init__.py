from . import crud_thread
from . import crud_message
from .crud_thread import (
    get_thread,
    get_thread_by_key,
    create_or_get_thread,
    list_threads_for_user,
    reset_unread,
    unread_total_for_user,
)
from .crud_message import append_message, get_messages_for_thread

__all__ = [
    "crud_thread",
    "crud_message",
    "get_thread",
    "get_thread_by_key",
    "create_or_get_thread",
    "list_threads_for_user",
    "reset_unread",
    "unread_total_for_user",
    "append_message",
    "get_messages_for_thread",
]
