from fastapi import APIRouter, Depends, Path
from sqlalchemy.orm import Session

from rendezvous.core.auth import USER_ID_PATTERN, get_current_user_id
from rendezvous.core.db import get_db
from rendezvous.core.errors import SelfBlock
from rendezvous.modules.notifications.service import NotificationEmitter, get_notification_emitter
from rendezvous.schemas.connections import (
    BlockUserIn,
    ContactRequestIn,
    ContactRequestOut,
    RespondIn,
    ServiceInquiryIn,
    ServiceInquiryOut,
)
from rendezvous.services.directory import (
    ServiceCatalog,
    UserDirectory,
    get_service_catalog,
    get_user_directory,
)
from .service import (
    block_user,
    check_connection_status,
    delete_connection,
    get_pending_requests,
    get_user_connections,
    respond_to_contact_request,
    send_contact_request,
    send_service_inquiry,
)

router = APIRouter(prefix="/v1/connections", tags=["connections"])


@router.get("/status/{other_user_id}")
def connection_status(
    other_user_id: str = Path(..., pattern=USER_ID_PATTERN.pattern),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return check_connection_status(db, user_id, other_user_id)


@router.post("/contact-request", response_model=ContactRequestOut)
def contact_request(
    payload: ContactRequestIn,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    directory: UserDirectory = Depends(get_user_directory),
    emitter: NotificationEmitter = Depends(get_notification_emitter),
):
    connection_id = send_contact_request(
        db,
        user_id,
        payload.to_user_id,
        directory,
        emitter,
        message=payload.message or "",
        connection_type=payload.connection_type.value,
    )
    return ContactRequestOut(connection_id=connection_id)


@router.post("/respond")
def respond(
    payload: RespondIn,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    emitter: NotificationEmitter = Depends(get_notification_emitter),
):
    return respond_to_contact_request(
        db,
        payload.connection_id,
        user_id,
        payload.action.value,
        emitter,
    )


@router.get("")
def user_connections(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    directory: UserDirectory = Depends(get_user_directory),
):
    return {"success": True, "connections": get_user_connections(db, user_id, directory)}


@router.post("/service-inquiry", response_model=ServiceInquiryOut)
def service_inquiry(
    payload: ServiceInquiryIn,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    catalog: ServiceCatalog = Depends(get_service_catalog),
    emitter: NotificationEmitter = Depends(get_notification_emitter),
):
    conversation_id = send_service_inquiry(
        db,
        user_id,
        payload.to_user_id,
        payload.service_id,
        payload.message,
        catalog,
        emitter,
    )
    return ServiceInquiryOut(conversation_id=conversation_id)


@router.get("/pending")
def pending_requests(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    directory: UserDirectory = Depends(get_user_directory),
):
    return {"success": True, "requests": get_pending_requests(db, user_id, directory)}


@router.post("/block")
def block(
    payload: BlockUserIn,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    if payload.user_id == user_id:
        raise SelfBlock()
    return block_user(db, user_id, payload.user_id, payload.reason)


@router.delete("/{connection_id}")
def remove_connection(
    connection_id: int,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    delete_connection(db, connection_id, user_id)
    return {"success": True, "message": "Connection deleted successfully"}
