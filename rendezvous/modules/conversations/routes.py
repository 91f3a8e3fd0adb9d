from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.orm import Session

from rendezvous.core.auth import get_current_user_id
from rendezvous.core.db import get_db
from rendezvous.modules.realtime.gateway import RealtimeGateway, get_gateway
from rendezvous.schemas.chat import ConversationIn, SendMessageIn
from rendezvous.services.directory import UserDirectory, get_user_directory
from .service import (
    get_messages,
    get_user_conversations,
    mark_conversation_read,
    open_conversation,
    send_message,
)

router = APIRouter(prefix="/v1/chat", tags=["chat"])


@router.get("/conversations")
def list_conversations(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    directory: UserDirectory = Depends(get_user_directory),
):
    return {"conversations": get_user_conversations(db, user_id, directory)}


@router.post("/conversations")
def start_conversation(
    payload: ConversationIn,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    directory: UserDirectory = Depends(get_user_directory),
):
    convo = open_conversation(db, user_id, payload.other_user_id, directory)
    return {"conversationId": convo.id, "createdAt": convo.created_at}


@router.get("/conversations/{conversation_id}/messages")
def list_messages(
    conversation_id: int,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return {"messages": get_messages(db, conversation_id, user_id)}


@router.post("/messages")
def post_message(
    payload: SendMessageIn,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    gateway: RealtimeGateway = Depends(get_gateway),
):
    message = send_message(
        db,
        payload.conversation_id,
        user_id,
        payload.content,
        payload.message_type.value,
        payload.metadata,
    )
    # relay after the response; the row is already committed
    background_tasks.add_task(gateway.relay_message, payload.conversation_id, message)
    return {"message": "Message sent successfully", "data": message}


@router.post("/conversations/{conversation_id}/read")
def read_conversation(
    conversation_id: int,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    count = mark_conversation_read(db, conversation_id, user_id)
    return {"message": "Messages marked as read", "updated": count}
