from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rendezvous.core.config import MESSAGE_MAX_LENGTH
from rendezvous.core.db import transaction
from rendezvous.core.errors import (
    Blocked,
    NotFound,
    PersistenceFailure,
    SelfBlock,
    UserNotFound,
    ValidationError,
)
from rendezvous.modules.connections.models import BlockedUser, Connection, pair_low_high
from rendezvous.schemas.enums import ConnectionStatus, MessageType
from rendezvous.services.directory import UserDirectory, unknown_user
from .models import Conversation, Message


def utcnow() -> datetime:
    # columns are naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def serialize_message(m: Message) -> Dict[str, Any]:
    return {
        "id": m.id,
        "conversationId": m.conversation_id,
        "senderId": m.sender_id,
        "content": m.content,
        "messageType": m.message_type,
        "metadata": m.meta or {},
        "readAt": m.read_at,
        "createdAt": m.created_at,
    }


# ---------- AUTHORIZATION ----------

def _get_conversation(db: Session, conversation_id: int) -> Optional[Conversation]:
    return db.get(Conversation, conversation_id)


def is_member(db: Session, conversation_id: int, user_id: str) -> bool:
    row = db.execute(
        select(Conversation.id).where(
            Conversation.id == conversation_id,
            or_(
                Conversation.participant_1 == user_id,
                Conversation.participant_2 == user_id,
            ),
        )
    ).first()
    return row is not None


def get_other_participant(db: Session, conversation_id: int, user_id: str) -> Optional[str]:
    convo = _get_conversation(db, conversation_id)
    if not convo:
        return None
    return convo.other_participant(user_id)


def is_blocked_between(db: Session, user_a: str, user_b: str) -> bool:
    row = db.execute(
        select(BlockedUser.id).where(
            or_(
                and_(BlockedUser.blocker_id == user_a, BlockedUser.blocked_id == user_b),
                and_(BlockedUser.blocker_id == user_b, BlockedUser.blocked_id == user_a),
            )
        )
    ).first()
    return row is not None


# ---------- CONVERSATIONS ----------

def find_conversation(db: Session, user_a: str, user_b: str) -> Optional[Conversation]:
    low, high = pair_low_high(user_a, user_b)
    return db.execute(
        select(Conversation).where(
            Conversation.participant_1 == low,
            Conversation.participant_2 == high,
        )
    ).scalars().first()


def create_or_get_conversation(db: Session, user_a: str, user_b: str) -> Conversation:
    """
    Idempotent for the unordered pair. Two concurrent creators race on
    uq_conversations_pair; the loser rolls back and reads the winner's row.
    """
    if user_a == user_b:
        raise ValidationError("Cannot create a conversation with yourself")

    existing = find_conversation(db, user_a, user_b)
    if existing:
        return existing

    low, high = pair_low_high(user_a, user_b)
    convo = Conversation(participant_1=low, participant_2=high)
    try:
        with transaction(db):
            db.add(convo)
    except IntegrityError:
        logger.info(f"Conversation insert lost race | pair=({low}, {high}), re-reading")
        existing = find_conversation(db, user_a, user_b)
        if existing:
            return existing
        raise PersistenceFailure("Conversation could not be created")

    logger.info(f"Conversation created | id={convo.id} pair=({low}, {high})")
    return convo


def open_conversation(db: Session, user_id: str, other_user_id: str, directory: UserDirectory) -> Conversation:
    # caller-facing entry point; internal flows have already vetted both users
    if user_id == other_user_id:
        raise ValidationError("Cannot create a conversation with yourself")
    if directory.get_user(db, other_user_id) is None:
        raise UserNotFound()
    if is_blocked_between(db, user_id, other_user_id):
        raise Blocked("Cannot start a conversation with this user")

    return create_or_get_conversation(db, user_id, other_user_id)


# ---------- MESSAGES ----------

def _insert_message(
    db: Session,
    conversation_id: int,
    sender_id: str,
    content: str,
    message_type: str,
    metadata: Optional[Dict[str, Any]],
) -> Message:
    # row lock serializes summary updates (no-op on sqlite)
    convo = db.execute(
        select(Conversation).where(Conversation.id == conversation_id).with_for_update()
    ).scalars().first()
    if not convo or not convo.has_member(sender_id):
        raise NotFound("conversation")

    if is_blocked_between(db, convo.participant_1, convo.participant_2):
        raise Blocked("Cannot send messages to this user")

    now = utcnow()
    message = Message(
        conversation_id=conversation_id,
        sender_id=sender_id,
        content=content,
        message_type=MessageType(message_type).value,
        meta=metadata or {},
        created_at=now,
    )
    db.add(message)

    convo.last_message = content
    convo.last_message_time = now
    convo.updated_at = now

    db.flush()
    return message


def insert_message_tx(
    db: Session,
    conversation_id: int,
    sender_id: str,
    content: str,
    message_type: str = MessageType.text.value,
    metadata: Optional[Dict[str, Any]] = None,
    tx: Optional[Session] = None,
) -> Message:
    """
    Insert a message and update the conversation summary atomically.

    Pass `tx` (a session inside the caller's `transaction(...)` block) to
    compose with other writes; the caller then owns commit/rollback.
    Without it this opens, commits or rolls back its own transaction.
    """
    if tx is not None:
        return _insert_message(tx, conversation_id, sender_id, content, message_type, metadata)

    with transaction(db):
        message = _insert_message(db, conversation_id, sender_id, content, message_type, metadata)
    return message


def _validate_message(content: Any, message_type: Any) -> MessageType:
    if not isinstance(content, str) or not content.strip():
        raise ValidationError("Message content is required")
    if len(content) > MESSAGE_MAX_LENGTH:
        raise ValidationError(f"Message content exceeds {MESSAGE_MAX_LENGTH} characters")
    try:
        return MessageType(message_type)
    except ValueError:
        raise ValidationError(f"Unsupported message type: {message_type}")


def send_message(
    db: Session,
    conversation_id: int,
    sender_id: str,
    content: str,
    message_type: str = MessageType.text.value,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    mtype = _validate_message(content, message_type)
    if mtype in (MessageType.system, MessageType.service_inquiry):
        raise ValidationError(f"Message type {mtype.value} is reserved")

    if not is_member(db, conversation_id, sender_id):
        raise NotFound("conversation")

    other = get_other_participant(db, conversation_id, sender_id)
    if other and is_blocked_between(db, sender_id, other):
        raise Blocked("Cannot send messages to this user")

    message = insert_message_tx(db, conversation_id, sender_id, content, mtype.value, metadata)
    logger.info(f"Message stored | conversation={conversation_id} sender={sender_id} id={message.id}")
    return serialize_message(message)


def get_user_conversations(db: Session, user_id: str, directory: UserDirectory) -> List[Dict[str, Any]]:
    activity = func.coalesce(Conversation.last_message_time, Conversation.created_at)
    rows = db.execute(
        select(Conversation)
        .where(or_(Conversation.participant_1 == user_id, Conversation.participant_2 == user_id))
        .order_by(activity.desc(), Conversation.id.desc())
    ).scalars().all()

    profiles = directory.get_users(db, (c.other_participant(user_id) for c in rows))

    out = []
    for c in rows:
        other_id = c.other_participant(user_id)
        profile = profiles.get(other_id)
        out.append({
            "id": c.id,
            "otherUser": profile.public() if profile else unknown_user(other_id),
            "lastMessage": c.last_message,
            "lastMessageTime": c.last_message_time,
            "createdAt": c.created_at,
            "updatedAt": c.updated_at,
        })
    return out


def get_messages(db: Session, conversation_id: int, user_id: str) -> List[Dict[str, Any]]:
    # history stays readable after a block; only membership gates it
    if not is_member(db, conversation_id, user_id):
        raise NotFound("conversation")

    rows = db.execute(
        select(Message)
        .where(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.asc(), Message.id.asc())
    ).scalars().all()

    out = []
    for m in rows:
        item = serialize_message(m)
        item["isOwn"] = m.sender_id == user_id
        out.append(item)
    return out


def mark_conversation_read(db: Session, conversation_id: int, user_id: str) -> int:
    if not is_member(db, conversation_id, user_id):
        raise NotFound("conversation")

    with transaction(db):
        result = db.execute(
            update(Message)
            .where(
                Message.conversation_id == conversation_id,
                Message.sender_id != user_id,
                Message.read_at.is_(None),
            )
            .values(read_at=utcnow())
        )
    return result.rowcount


# ---------- BLOCKING ----------

def _apply_block(db: Session, blocker_id: str, blocked_id: str, reason: Optional[str], now: datetime) -> int:
    exists = db.execute(
        select(BlockedUser.id).where(
            BlockedUser.blocker_id == blocker_id,
            BlockedUser.blocked_id == blocked_id,
        )
    ).first()
    if not exists:
        db.add(BlockedUser(blocker_id=blocker_id, blocked_id=blocked_id, reason=reason))
        db.flush()

    low, high = pair_low_high(blocker_id, blocked_id)

    # the conversation survives a block; only its activity stamp moves
    db.execute(
        update(Conversation)
        .where(Conversation.participant_1 == low, Conversation.participant_2 == high)
        .values(updated_at=now)
    )

    closable = [
        s for s in ConnectionStatus
        if s.can_transition(ConnectionStatus.rejected, forced_by_block=True)
    ]
    result = db.execute(
        update(Connection)
        .where(
            Connection.user_low == low,
            Connection.user_high == high,
            Connection.status.in_(closable),
        )
        .values(status=ConnectionStatus.rejected, updated_at=now)
    )
    return result.rowcount


def block_user(db: Session, blocker_id: str, blocked_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
    """
    Single transactional authority for blocking: block row, conversation
    touch and connection rejection commit together or not at all.
    """
    if blocker_id == blocked_id:
        raise SelfBlock()

    for attempt in (1, 2):
        try:
            with transaction(db):
                rejected = _apply_block(db, blocker_id, blocked_id, reason, utcnow())
            break
        except IntegrityError:
            # a concurrent identical block inserted the row first; redo against it
            if attempt == 2:
                raise PersistenceFailure("Block could not be recorded")
            logger.info(f"Block upsert raced | blocker={blocker_id} blocked={blocked_id}, retrying")

    logger.info(f"User blocked | blocker={blocker_id} blocked={blocked_id} connections_rejected={rejected}")
    return {"success": True, "message": "User blocked successfully"}
