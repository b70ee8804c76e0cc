# mindtrack/services/notification_service.py
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.orm import Session

from .. import models, storage
from ..errors import Forbidden, NotFound
from ..references import require_identifier
from ..storage import unit_of_work

logger = structlog.get_logger(__name__)


def create_notification(db: Session, user_id: Any, notification_type: models.NotificationType,
                        title: str, message: str, data: Optional[Dict[str, Any]] = None) -> models.Notification:
    """Queue an in-app notification; joins the caller's unit of work when there is one."""
    with unit_of_work(db):
        notification = storage.insert(db, models.Notification(
            user_id=require_identifier("user", user_id),
            type=models.NotificationType(notification_type).value,
            title=title,
            message=message,
            data=data,
        ))
    logger.debug("notification_created", user_id=str(notification.user_id), type=notification.type)
    return notification


def notify_admins(db: Session, notification_type: models.NotificationType, title: str, message: str,
                  data: Optional[Dict[str, Any]] = None) -> List[models.Notification]:
    admins = storage.find_many(
        db, models.User, {"role": models.UserRole.admin, "is_active": True, "deleted_at": None}
    )
    if not admins:
        logger.warning("no_admins_to_notify", type=models.NotificationType(notification_type).value)
    return [create_notification(db, admin.id, notification_type, title, message, data) for admin in admins]


def list_for_user(db: Session, user_id: Any, unread_only: bool = False, limit: int = 50) -> List[models.Notification]:
    query = db.query(models.Notification).filter(
        models.Notification.user_id == require_identifier("user", user_id)
    )
    if unread_only:
        query = query.filter(models.Notification.read.is_(False))
    return query.order_by(models.Notification.created_at.desc()).limit(limit).all()


def unread_count(db: Session, user_id: Any) -> int:
    return db.query(models.Notification).filter(
        models.Notification.user_id == require_identifier("user", user_id),
        models.Notification.read.is_(False),
    ).count()


def mark_read(db: Session, notification_id: Any, user: models.User) -> models.Notification:
    with unit_of_work(db):
        notification = storage.find_by_id(db, models.Notification, require_identifier("notification", notification_id))
        if notification is None:
            raise NotFound(f"Notification {notification_id} not found")
        if notification.user_id != user.id:
            raise Forbidden("Notifications can only be marked read by their recipient")
        notification.read = True
        db.flush()
    return notification


def mark_all_read(db: Session, user: models.User) -> int:
    with unit_of_work(db):
        unread = list_for_user(db, user.id, unread_only=True, limit=1000)
        for notification in unread:
            notification.read = True
        db.flush()
    return len(unread)
