from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from rendezvous.core.auth import get_current_user_id
from rendezvous.core.db import get_db
from .service import (
    delete_notification,
    list_notifications,
    mark_all_read,
    mark_read,
    unread_count,
)

router = APIRouter(prefix="/v1/notifications", tags=["notifications"])


@router.get("")
def get_notifications(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return {"notifications": list_notifications(db, user_id)}


@router.get("/unread-count")
def get_unread_count(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return {"unread": unread_count(db, user_id)}


@router.put("/read-all")
def read_all(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    updated = mark_all_read(db, user_id)
    return {"success": True, "updated": updated}


@router.put("/{notification_id}/read")
def read_one(
    notification_id: int,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    mark_read(db, user_id, notification_id)
    return {"success": True, "message": "Notification marked as read"}


@router.delete("/{notification_id}")
def remove_notification(
    notification_id: int,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    delete_notification(db, user_id, notification_id)
    return {"success": True, "message": "Notification deleted"}
