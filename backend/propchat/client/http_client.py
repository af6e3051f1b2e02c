from __future__ import annotations

import logging
from typing import Any, List, Optional

import httpx

from .. import schemas
from ..core.config import settings
from ..core.errors import MessagingError, Unauthenticated, error_from_code

logger = logging.getLogger(__name__)


class MessagingClient:
    """Thin synchronous client for the messaging HTTP API.

    Used by scripts and as the polling fallback when the socket is down.
    Pass ``client`` to reuse an existing ``httpx.Client`` (for example a
    FastAPI ``TestClient``).
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        token: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        timeout: float = 10.0,
        api_prefix: Optional[str] = None,
    ) -> None:
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout)
        self._owns_client = client is None
        self.token = token
        self.api_prefix = api_prefix if api_prefix is not None else settings.API_V1_STR
        self._unread_etag: Optional[str] = None
        self._unread_total = 0

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "MessagingClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        resp = self._client.request(method, f"{self.api_prefix}{path}", headers=headers, **kwargs)
        if resp.status_code >= 400:
            raise self._error(resp)
        return resp

    @staticmethod
    def _error(resp: httpx.Response) -> MessagingError:
        try:
            detail = resp.json().get("detail")
        except ValueError:
            detail = None
        if isinstance(detail, dict) and detail.get("code"):
            return error_from_code(detail["code"], detail.get("message"), detail.get("field_errors"))
        if resp.status_code == 401:
            return Unauthenticated()
        logger.warning("messaging.client.error", extra={"status": resp.status_code})
        message = detail.get("message") if isinstance(detail, dict) else (str(detail) if detail else resp.text)
        return MessagingError(message or f"HTTP {resp.status_code}")

    def resolve_thread(
        self,
        buyer_id: int,
        seller_id: int,
        property_id: Optional[str] = None,
    ) -> schemas.ThreadResolveResponse:
        body = {"buyer_id": buyer_id, "seller_id": seller_id, "property_id": property_id}
        resp = self._request("POST", "/threads", json=body)
        return schemas.ThreadResolveResponse.model_validate(resp.json())

    def list_threads(self, limit: int = 50, offset: int = 0) -> List[schemas.ThreadListItem]:
        resp = self._request("GET", "/threads", params={"limit": limit, "offset": offset})
        return [schemas.ThreadListItem.model_validate(item) for item in resp.json()]

    def get_thread(self, thread_id: int) -> schemas.ThreadDetailResponse:
        resp = self._request("GET", f"/threads/{thread_id}")
        return schemas.ThreadDetailResponse.model_validate(resp.json())

    def get_messages(
        self,
        thread_id: int,
        after_id: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[schemas.MessageResponse]:
        params = {}
        if after_id is not None:
            params["after_id"] = after_id
        if limit is not None:
            params["limit"] = limit
        resp = self._request("GET", f"/threads/{thread_id}/messages", params=params)
        return [schemas.MessageResponse.model_validate(m) for m in resp.json()]

    def send_message(
        self,
        thread_id: int,
        content: str,
        client_token: Optional[str] = None,
    ) -> schemas.MessageResponse:
        body = {"content": content}
        if client_token:
            body["client_token"] = client_token
        resp = self._request("POST", f"/threads/{thread_id}/messages", json=body)
        return schemas.MessageResponse.model_validate(resp.json())

    def mark_read(self, thread_id: int) -> schemas.MarkReadResponse:
        resp = self._request("POST", f"/threads/{thread_id}/read")
        return schemas.MarkReadResponse.model_validate(resp.json())

    def unread_total(self) -> int:
        """Poll the unread badge, reusing the last value on 304."""
        headers = {"If-None-Match": self._unread_etag} if self._unread_etag else None
        resp = self._request("GET", "/inbox/unread", headers=headers)
        if resp.status_code == 304:
            return self._unread_total
        self._unread_etag = resp.headers.get("etag")
        self._unread_total = int(resp.json().get("total", 0))
        return self._unread_total
