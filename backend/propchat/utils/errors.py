from typing import Dict, Optional
from fastapi import HTTPException, status
import logging

from propchat.core.errors import MessagingError

logger = logging.getLogger(__name__)


def error_response(
    message: str,
    field_errors: Dict[str, str],
    code: int = status.HTTP_422_UNPROCESSABLE_ENTITY,
    error_code: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> HTTPException:
    """Return an HTTPException with a consistent structure and log details."""
    logger.error("%s %s", message, field_errors)
    detail = {"message": message, "field_errors": field_errors}
    if error_code:
        detail["code"] = error_code
    return HTTPException(status_code=code, detail=detail, headers=headers)


def http_error_from(exc: MessagingError) -> HTTPException:
    """Map a domain error onto the HTTP error shape used by every endpoint."""
    headers = {"Retry-After": "1"} if exc.retryable else None
    return error_response(
        exc.message,
        exc.field_errors,
        exc.status_code,
        error_code=exc.code,
        headers=headers,
    )
