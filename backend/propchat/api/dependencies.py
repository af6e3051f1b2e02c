from fastapi import Depends, Request
from sqlalchemy.orm import Session

from ..database import get_db
from ..realtime.gateway import RealtimeGateway
from ..services.chat_service import ChatService


def get_chat_service(db: Session = Depends(get_db)) -> ChatService:
    return ChatService(db)


def get_gateway(request: Request) -> RealtimeGateway:
    return request.app.state.gateway
