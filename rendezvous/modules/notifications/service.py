from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from rendezvous.core.config import NOTIFY_MAX_ATTEMPTS
from rendezvous.core.errors import NotFound
from .models import Notification

LIST_LIMIT = 50


class NotificationEmitter:
    """
    Best-effort outbox tier.

    Called only after the triggering write has committed. Each notify() runs
    in its own transaction, retries a bounded number of times, and never
    raises: a lost notification is logged, the triggering state stays.
    """

    def __init__(self, max_attempts: int = NOTIFY_MAX_ATTEMPTS):
        self.max_attempts = max(1, max_attempts)

    def notify(
        self,
        db: Session,
        user_id: str,
        type: str,
        title: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> Optional[int]:
        for attempt in range(1, self.max_attempts + 1):
            try:
                row = Notification(
                    user_id=user_id,
                    type=type,
                    title=title,
                    message=message,
                    data=data or {},
                    read=False,
                )
                db.add(row)
                db.commit()
                logger.info(f"Notification sent | user={user_id} type={type} id={row.id}")
                return row.id
            except SQLAlchemyError:
                db.rollback()
                logger.exception(
                    f"Notification insert failed | user={user_id} type={type} "
                    f"attempt={attempt}/{self.max_attempts}"
                )

        logger.error(f"Notification dropped | user={user_id} type={type}")
        return None


emitter = NotificationEmitter()


def get_notification_emitter() -> NotificationEmitter:
    return emitter


# ---------- READ SIDE ----------

def _serialize(n: Notification) -> Dict[str, Any]:
    return {
        "id": n.id,
        "type": n.type,
        "title": n.title,
        "message": n.message,
        "data": n.data or {},
        "read": n.read,
        "createdAt": n.created_at,
    }


def list_notifications(db: Session, user_id: str, limit: int = LIST_LIMIT) -> List[Dict[str, Any]]:
    rows = db.execute(
        select(Notification)
        .where(Notification.user_id == user_id)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .limit(limit)
    ).scalars().all()
    return [_serialize(n) for n in rows]


def unread_count(db: Session, user_id: str) -> int:
    return db.execute(
        select(func.count(Notification.id)).where(
            Notification.user_id == user_id,
            Notification.read.is_(False),
        )
    ).scalar_one()


def mark_read(db: Session, user_id: str, notification_id: int) -> None:
    result = db.execute(
        update(Notification)
        .where(Notification.id == notification_id, Notification.user_id == user_id)
        .values(read=True)
    )
    if result.rowcount == 0:
        db.rollback()
        raise NotFound("notification")
    db.commit()


def mark_all_read(db: Session, user_id: str) -> int:
    result = db.execute(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.read.is_(False))
        .values(read=True)
    )
    db.commit()
    return result.rowcount


def delete_notification(db: Session, user_id: str, notification_id: int) -> None:
    result = db.execute(
        delete(Notification).where(
            Notification.id == notification_id,
            Notification.user_id == user_id,
        )
    )
    if result.rowcount == 0:
        db.rollback()
        raise NotFound("notification")
    db.commit()
