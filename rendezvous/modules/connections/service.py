from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rendezvous.core.auth import is_valid_user_id
from rendezvous.core.config import INQUIRY_MESSAGE_MAX_LENGTH, REQUEST_MESSAGE_MAX_LENGTH
from rendezvous.core.db import transaction
from rendezvous.core.errors import (
    AlreadyConnected,
    Blocked,
    NotFound,
    ServiceMismatch,
    UserNotFound,
    ValidationError,
)
from rendezvous.modules.conversations import service as conversations
from rendezvous.modules.notifications.service import NotificationEmitter
from rendezvous.schemas.enums import (
    ConnectionStatus,
    ConnectionType,
    MessageType,
    NotificationType,
    RespondAction,
)
from rendezvous.services.directory import ServiceCatalog, UserDirectory, unknown_user
from .models import Connection, pair_low_high

WELCOME_MESSAGE = "Hi! Thanks for accepting my contact request. How can I help you today?"


# ---------- HELPERS ----------

def _require_user_id(value: Any, field: str) -> str:
    if not is_valid_user_id(value):
        raise ValidationError(f"Invalid {field}", field=field)
    return value


def _find_pair(db: Session, user_a: str, user_b: str) -> Optional[Connection]:
    low, high = pair_low_high(user_a, user_b)
    return db.execute(
        select(Connection).where(Connection.user_low == low, Connection.user_high == high)
    ).scalars().first()


def _get_pending_for(db: Session, connection_id: int, responding_user: str) -> Connection:
    conn = db.execute(
        select(Connection).where(
            Connection.id == connection_id,
            Connection.to_user_id == responding_user,
            Connection.status == ConnectionStatus.pending,
        )
    ).scalars().first()
    if not conn:
        # covers "already responded" and "not addressed to you" alike
        raise NotFound("connection", "Contact request not found or already processed")
    return conn


def _set_status(db: Session, conn: Connection, target: ConnectionStatus) -> None:
    if not conn.status.can_transition(target):
        raise ValidationError(f"Illegal transition {conn.status.value} -> {target.value}")

    result = db.execute(
        update(Connection)
        .where(Connection.id == conn.id, Connection.status == conn.status)
        .values(status=target, updated_at=conversations.utcnow())
    )
    if result.rowcount == 0:
        # someone else (a block, a parallel respond) moved it first
        raise NotFound("connection", "Contact request not found or already processed")


# ---------- CONNECTION LOGIC ----------

def check_connection_status(db: Session, user_a: str, user_b: str) -> Dict[str, Any]:
    conn = _find_pair(db, user_a, user_b)
    if not conn:
        return {
            "exists": False,
            "status": None,
            "connectionType": None,
            "createdAt": None,
            "connectionId": None,
        }

    return {
        "exists": True,
        "status": conn.status.value,
        "connectionType": conn.connection_type.value,
        "createdAt": conn.created_at,
        "connectionId": conn.id,
    }


def send_contact_request(
    db: Session,
    from_user: str,
    to_user: str,
    directory: UserDirectory,
    emitter: NotificationEmitter,
    message: str = "",
    connection_type: str = ConnectionType.contact_request.value,
) -> int:
    _require_user_id(from_user, "fromUserId")
    _require_user_id(to_user, "toUserId")
    if from_user == to_user:
        raise ValidationError("Cannot send a contact request to yourself")

    message = message or ""
    if len(message) > REQUEST_MESSAGE_MAX_LENGTH:
        raise ValidationError(f"Message exceeds {REQUEST_MESSAGE_MAX_LENGTH} characters")
    try:
        ctype = ConnectionType(connection_type)
    except ValueError:
        raise ValidationError(f"Unsupported connection type: {connection_type}")

    users = directory.get_users(db, [from_user, to_user])
    if from_user not in users or to_user not in users:
        raise UserNotFound()

    # block first: a blocked pair usually also has a (rejected) connection row
    if conversations.is_blocked_between(db, from_user, to_user):
        raise Blocked("Cannot connect with blocked user")

    if _find_pair(db, from_user, to_user):
        raise AlreadyConnected("Users are already connected")

    low, high = pair_low_high(from_user, to_user)
    conn = Connection(
        from_user_id=from_user,
        to_user_id=to_user,
        user_low=low,
        user_high=high,
        connection_type=ctype,
        message=message,
        status=ConnectionStatus.pending,
    )
    try:
        with transaction(db):
            db.add(conn)
    except IntegrityError:
        # the concurrent request for the same pair committed first
        raise AlreadyConnected("Users are already connected")

    logger.info(f"Contact request sent | id={conn.id} from={from_user} to={to_user} type={ctype.value}")

    sender = users[from_user]
    emitter.notify(
        db,
        to_user,
        NotificationType.contact_request.value,
        "New Contact Request",
        f"You have a new contact request from {sender.username}",
        {
            "connectionId": conn.id,
            "fromUserId": from_user,
            "fromUsername": sender.username,
            "message": message,
            "connectionType": ctype.value,
        },
    )
    return conn.id


def respond_to_contact_request(
    db: Session,
    connection_id: int,
    responding_user: str,
    action: str,
    emitter: NotificationEmitter,
) -> Dict[str, Any]:
    try:
        act = RespondAction(action)
    except ValueError:
        raise ValidationError("Invalid action. Must be accept or reject")

    conn = _get_pending_for(db, connection_id, responding_user)
    from_user, to_user = conn.from_user_id, conn.to_user_id
    new_status = act.resulting_status
    conversation_id = None

    if act is RespondAction.accept:
        if conversations.is_blocked_between(db, from_user, to_user):
            raise Blocked("Cannot accept a request from a blocked user")

        convo = conversations.create_or_get_conversation(db, from_user, to_user)
        conversation_id = convo.id

        # status flip and welcome message land together; a block committed
        # in between makes either the update or the insert fail -> rollback
        with transaction(db) as tx:
            _set_status(tx, conn, new_status)
            conversations.insert_message_tx(
                db,
                conversation_id,
                from_user,
                WELCOME_MESSAGE,
                MessageType.text.value,
                {"system": True, "connectionId": connection_id},
                tx=tx,
            )
    else:
        with transaction(db) as tx:
            _set_status(tx, conn, new_status)

    logger.info(f"Contact request {new_status.value} | id={connection_id} by={responding_user}")

    emitter.notify(
        db,
        from_user,
        NotificationType.contact_response.value,
        "Contact Request Response",
        f"Your contact request was {new_status.value}",
        {
            "connectionId": connection_id,
            "action": act.value,
            "toUserId": to_user,
            "conversationId": conversation_id,
        },
    )

    return {
        "success": True,
        "message": f"Contact request {new_status.value} successfully",
        "status": new_status.value,
        "conversationId": conversation_id,
    }


def get_user_connections(db: Session, user_id: str, directory: UserDirectory) -> List[Dict[str, Any]]:
    rows = db.execute(
        select(Connection)
        .where(or_(Connection.from_user_id == user_id, Connection.to_user_id == user_id))
        .order_by(Connection.created_at.desc(), Connection.id.desc())
    ).scalars().all()

    profiles = directory.get_users(db, (c.other_user(user_id) for c in rows))

    out = []
    for c in rows:
        other_id = c.other_user(user_id)
        profile = profiles.get(other_id)
        out.append({
            "id": c.id,
            "connectionType": c.connection_type.value,
            "message": c.message,
            "status": c.status.value,
            "direction": "outgoing" if c.from_user_id == user_id else "incoming",
            "createdAt": c.created_at,
            "otherUser": profile.public() if profile else unknown_user(other_id),
        })
    return out


def get_pending_requests(db: Session, user_id: str, directory: UserDirectory) -> List[Dict[str, Any]]:
    rows = db.execute(
        select(Connection)
        .where(Connection.to_user_id == user_id, Connection.status == ConnectionStatus.pending)
        .order_by(Connection.created_at.desc(), Connection.id.desc())
    ).scalars().all()

    profiles = directory.get_users(db, (c.from_user_id for c in rows))

    return [
        {
            "id": c.id,
            "connectionType": c.connection_type.value,
            "message": c.message,
            "createdAt": c.created_at,
            "fromUser": (
                profiles[c.from_user_id].public()
                if c.from_user_id in profiles
                else unknown_user(c.from_user_id)
            ),
        }
        for c in rows
    ]


def send_service_inquiry(
    db: Session,
    from_user: str,
    to_user: str,
    service_id: str,
    message: str,
    catalog: ServiceCatalog,
    emitter: NotificationEmitter,
) -> int:
    _require_user_id(from_user, "fromUserId")
    _require_user_id(to_user, "toUserId")
    if not message or not message.strip():
        raise ValidationError("Inquiry message is required")
    if len(message) > INQUIRY_MESSAGE_MAX_LENGTH:
        raise ValidationError(f"Message exceeds {INQUIRY_MESSAGE_MAX_LENGTH} characters")

    service = catalog.get_service(db, service_id)
    if not service:
        raise NotFound("service")
    if service.owner_id != to_user:
        raise ServiceMismatch()
    if from_user == to_user:
        raise ValidationError("Cannot send an inquiry about your own service")

    if conversations.is_blocked_between(db, from_user, to_user):
        raise Blocked("Cannot contact a blocked user")

    # no accepted connection needed: inquiries open a conversation directly
    convo = conversations.create_or_get_conversation(db, from_user, to_user)
    content = f"Service Inquiry: {service.title}\n\n{message}"

    with transaction(db) as tx:
        conversations.insert_message_tx(
            db,
            convo.id,
            from_user,
            content,
            MessageType.service_inquiry.value,
            {"serviceId": service.id, "serviceTitle": service.title},
            tx=tx,
        )

    logger.info(f"Service inquiry sent | conversation={convo.id} from={from_user} service={service.id}")

    emitter.notify(
        db,
        to_user,
        NotificationType.service_inquiry.value,
        "New Service Inquiry",
        "You have a new service inquiry",
        {
            "conversationId": convo.id,
            "fromUserId": from_user,
            "serviceId": service.id,
            "serviceTitle": service.title,
        },
    )
    return convo.id


def block_user(db: Session, blocker_id: str, blocked_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
    # one transactional authority for the cross-entity block side effects
    return conversations.block_user(db, blocker_id, blocked_id, reason)


def delete_connection(db: Session, connection_id: int, requesting_user: str) -> None:
    with transaction(db):
        result = db.execute(
            delete(Connection).where(
                Connection.id == connection_id,
                or_(
                    Connection.from_user_id == requesting_user,
                    Connection.to_user_id == requesting_user,
                ),
            )
        )
        if result.rowcount == 0:
            raise NotFound("connection", "Connection not found or access denied")

    logger.info(f"Connection deleted | id={connection_id} by={requesting_user}")
