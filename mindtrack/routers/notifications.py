# mindtrack/routers/notifications.py
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import models, schemas, security
from ..database import get_db
from ..services import notification_service

router = APIRouter(
    tags=["Notifications"],
    dependencies=[Depends(security.get_current_user)],
)


@router.get("/notifications", response_model=List[schemas.NotificationResponse])
def read_my_notifications(
    unread_only: bool = False,
    limit: int = 50,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    return notification_service.list_for_user(db, current_user.id, unread_only=unread_only, limit=limit)


@router.get("/notifications/unread-count")
def read_unread_count(db: Session = Depends(get_db), current_user: models.User = Depends(security.get_current_user)):
    return {"count": notification_service.unread_count(db, current_user.id)}


@router.post("/notifications/read-all")
def mark_all_notifications_read(db: Session = Depends(get_db),
                                 current_user: models.User = Depends(security.get_current_user)):
    return {"updated": notification_service.mark_all_read(db, current_user)}


@router.post("/notifications/{notification_id}/read", response_model=schemas.NotificationResponse)
def mark_notification_read(
    notification_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    return notification_service.mark_read(db, notification_id, current_user)
