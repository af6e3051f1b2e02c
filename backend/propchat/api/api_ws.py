# WebSocket transport for messaging: a single multiplexed socket per tab at
# /api/v1/ws. Auth at handshake (bearer subprotocol, ?token=, Authorization,
# cookie) or via a first in-band ``auth`` frame; then typed envelopes.

from __future__ import annotations

import logging
import os
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.exceptions import WebSocketException

from ..realtime.envelope import Envelope
from ..realtime.gateway import WS_4401_UNAUTHORIZED, RealtimeGateway
from ..utils.metrics import incr as metrics_incr

logger = logging.getLogger(__name__)
router = APIRouter()

MAX_BEARER_LEN = int(os.getenv("WS_MAX_BEARER_LEN", "4096") or 4096)
MAX_PROTOCOL_HEADER_LEN = int(os.getenv("WS_MAX_PROTOCOL_HEADER_LEN", "8192") or 8192)


def _extract_bearer_token(ws: WebSocket) -> tuple[Optional[str], str]:
    """Return (token, source). Source is one of protocol/query/authorization/cookie/none."""
    proto = ws.headers.get("sec-websocket-protocol", "") or ""
    if proto and len(proto) > MAX_PROTOCOL_HEADER_LEN:
        return None, "protocol_oversize"
    if proto:
        parts = [p.strip() for p in proto.split(",")]
        if len(parts) == 2 and parts[0].lower() == "bearer" and parts[1]:
            token = parts[1]
            if len(token) > MAX_BEARER_LEN:
                return None, "protocol_oversize"
            return token, "protocol"
        for p in parts:
            if p.lower().startswith("bearer ") and len(p.split(" ", 1)) == 2:
                token = p.split(" ", 1)[1].strip()
                if len(token) > MAX_BEARER_LEN:
                    return None, "protocol_oversize"
                return token, "protocol"
    qtok = ws.query_params.get("token")
    if qtok:
        if len(qtok) > MAX_BEARER_LEN:
            return None, "query_oversize"
        return qtok, "query"
    auth = ws.headers.get("authorization")
    if auth and auth.lower().startswith("bearer "):
        token = auth.split(" ", 1)[1].strip()
        if len(token) > MAX_BEARER_LEN:
            return None, "authorization_oversize"
        return token, "authorization"
    tok = ws.cookies.get("access_token")
    if tok:
        if len(tok) > MAX_BEARER_LEN:
            return None, "cookie_oversize"
        return tok, "cookie"
    return None, "none"


def _chosen_subprotocol(ws: WebSocket) -> Optional[str]:
    proto = ws.headers.get("sec-websocket-protocol", "") or ""
    for p in (p.strip() for p in proto.split(",")):
        if p.lower() == "bearer":
            return p
    return None


def _log_ws_auth_failure(reason: str, websocket: WebSocket, source: str) -> None:
    metrics_incr("ws.auth.fail", tags={"reason": reason, "source": source})
    logger.warning(
        "WS auth failed: %s",
        reason,
        extra={"path": str(websocket.url.path), "source": source},
    )


@router.websocket("/ws")
async def messaging_ws(websocket: WebSocket):
    gateway: RealtimeGateway = websocket.app.state.gateway
    token, token_src = _extract_bearer_token(websocket)

    if token_src.endswith("_oversize"):
        _log_ws_auth_failure(token_src, websocket, token_src)
        raise WebSocketException(code=WS_4401_UNAUTHORIZED, reason="Invalid token")

    if token:
        user, fail_reason = await gateway.authenticate(token)
        if user is None:
            _log_ws_auth_failure(fail_reason or "invalid_token", websocket, token_src)
            reason = "Expired token" if fail_reason == "expired" else "Invalid token"
            raise WebSocketException(code=WS_4401_UNAUTHORIZED, reason=reason)
        await websocket.accept(subprotocol=_chosen_subprotocol(websocket))
    else:
        await websocket.accept(subprotocol=_chosen_subprotocol(websocket))
        try:
            user, fail_reason = await gateway.authenticate_in_band(websocket)
        except WebSocketDisconnect:
            return
        if user is None:
            _log_ws_auth_failure(fail_reason or "invalid_token", websocket, "frame")
            await websocket.send_text(
                Envelope(
                    type="error",
                    payload={"code": "unauthenticated", "message": "Authentication required"},
                ).to_json()
            )
            await websocket.close(code=WS_4401_UNAUTHORIZED, reason="Unauthenticated")
            return

    await gateway.run_connection(websocket, user)
