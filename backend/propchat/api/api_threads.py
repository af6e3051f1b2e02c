from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    Path,
    Query,
    Request,
    Response,
    status,
)
from typing import List, Optional
import logging

from .. import schemas
from ..core.config import settings
from ..core.errors import NotAParticipant
from ..models import MAX_ROW_ID
from ..realtime.gateway import RealtimeGateway
from ..services.chat_service import ChatService
from ..services.collaborators import UserRef
from .auth import get_current_user
from .dependencies import get_chat_service, get_gateway

logger = logging.getLogger(__name__)

router = APIRouter(tags=["threads"])


@router.post(
    "/threads",
    response_model=schemas.ThreadResolveResponse,
    status_code=status.HTTP_200_OK,
)
def resolve_thread(
    body: schemas.ThreadResolveIn,
    current_user: UserRef = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    """Get or create the thread for a buyer, a seller and an optional property."""
    if current_user.id not in (body.buyer_id, body.seller_id):
        raise NotAParticipant("Caller must be the buyer or the seller of the thread")
    thread = service.resolve_thread(body.buyer_id, body.seller_id, body.property_id)
    return schemas.ThreadResolveResponse(thread_id=thread.id, thread=thread)


@router.get("/threads", response_model=List[schemas.ThreadListItem])
def list_threads(
    limit: int = Query(settings.THREAD_LIST_LIMIT, ge=1, le=settings.THREAD_LIST_LIMIT),
    offset: int = Query(0, ge=0, le=MAX_ROW_ID),
    current_user: UserRef = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    return service.list_threads(current_user.id, limit=limit, offset=offset)


@router.get("/threads/{thread_id}", response_model=schemas.ThreadDetailResponse)
def get_thread(
    thread_id: int = Path(..., ge=1, le=MAX_ROW_ID),
    current_user: UserRef = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    return service.get_thread(thread_id, current_user.id)


@router.get("/threads/{thread_id}/messages", response_model=List[schemas.MessageResponse])
def get_messages(
    thread_id: int = Path(..., ge=1, le=MAX_ROW_ID),
    after_id: Optional[int] = Query(None, ge=0, le=MAX_ROW_ID),
    limit: int = Query(settings.MESSAGE_PAGE_LIMIT, ge=1, le=settings.MESSAGE_PAGE_LIMIT),
    current_user: UserRef = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    """Ascending history; ``after_id`` returns only newer messages (polling)."""
    return service.get_messages(thread_id, current_user.id, after_id=after_id, limit=limit)


@router.post(
    "/threads/{thread_id}/messages",
    response_model=schemas.MessageResponse,
    status_code=status.HTTP_201_CREATED,
)
def send_message(
    body: schemas.MessageCreate,
    background_tasks: BackgroundTasks,
    thread_id: int = Path(..., ge=1, le=MAX_ROW_ID),
    current_user: UserRef = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
    gateway: RealtimeGateway = Depends(get_gateway),
):
    sent = service.send_message(thread_id, current_user.id, body.content, body.client_token)
    # Fan out after the response is produced (post-commit, non-blocking)
    background_tasks.add_task(gateway.publish_new_message, sent)
    return sent.message


@router.post("/threads/{thread_id}/read", response_model=schemas.MarkReadResponse)
def mark_read(
    background_tasks: BackgroundTasks,
    thread_id: int = Path(..., ge=1, le=MAX_ROW_ID),
    current_user: UserRef = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
    gateway: RealtimeGateway = Depends(get_gateway),
):
    result = service.mark_read(thread_id, current_user.id)
    background_tasks.add_task(gateway.publish_messages_read, result)
    return schemas.MarkReadResponse(thread_id=result.thread_id, unread_count=result.unread_count)


@router.get("/inbox/unread", response_model=schemas.UnreadTotalResponse)
def unread_total(
    request: Request,
    response: Response,
    current_user: UserRef = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    """Total unread across the caller's threads; cheap to poll via ETag."""
    total = service.unread_total(current_user.id)
    etag = f'W/"unread:{current_user.id}:{total}"'
    if request.headers.get("if-none-match") == etag:
        return Response(status_code=status.HTTP_304_NOT_MODIFIED, headers={"ETag": etag})
    response.headers["ETag"] = etag
    response.headers["Cache-Control"] = "no-cache"
    return schemas.UnreadTotalResponse(total=total)
