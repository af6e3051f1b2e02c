"""Domain errors raised by the messaging core.

Every error carries a stable ``code`` (surfaced to HTTP and websocket
clients), the HTTP status it maps to and optional field-level details.
"""

from __future__ import annotations

from typing import Dict, Optional

from fastapi import status


class MessagingError(Exception):
    code: str = "messaging_error"
    status_code: int = status.HTTP_400_BAD_REQUEST
    default_message: str = "Messaging request failed"
    retryable: bool = False

    def __init__(
        self,
        message: Optional[str] = None,
        field_errors: Optional[Dict[str, str]] = None,
    ) -> None:
        self.message = message or self.default_message
        self.field_errors = dict(field_errors or {})
        super().__init__(self.message)

    def as_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "field_errors": self.field_errors,
        }


class InvalidParticipants(MessagingError):
    code = "invalid_participants"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_message = "Invalid thread participants"


class NotAParticipant(MessagingError):
    code = "not_a_participant"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "User is not a participant of this thread"


class EmptyContent(MessagingError):
    code = "empty_content"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_message = "Message content cannot be empty"


class ContentTooLong(MessagingError):
    code = "content_too_long"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_message = "Message content is too long"


class ThreadNotFound(MessagingError):
    code = "thread_not_found"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Thread not found"


class InvalidClientToken(MessagingError):
    code = "invalid_client_token"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_message = "Client token is too long"


class StoreUnavailable(MessagingError):
    code = "store_unavailable"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Message store is temporarily unavailable"
    retryable = True


class Unauthenticated(MessagingError):
    code = "unauthenticated"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Could not validate credentials"


ERRORS_BY_CODE: Dict[str, type[MessagingError]] = {
    cls.code: cls
    for cls in (
        InvalidParticipants,
        NotAParticipant,
        EmptyContent,
        ContentTooLong,
        ThreadNotFound,
        InvalidClientToken,
        StoreUnavailable,
        Unauthenticated,
    )
}


def error_from_code(code: str, message: Optional[str] = None, field_errors: Optional[Dict[str, str]] = None) -> MessagingError:
    """Rebuild a domain error from its wire ``code`` (used by clients)."""
    cls = ERRORS_BY_CODE.get(code, MessagingError)
    return cls(message, field_errors)
