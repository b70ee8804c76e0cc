# mindtrack/routers/logs.py
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import models, schemas, security
from ..compliance_logger import compliance_logger
from ..database import get_db

router = APIRouter(
    tags=["Logs"],
    dependencies=[Depends(security.get_current_user)],
    responses={404: {"description": "Not found"}},
)


@router.get("/logs", response_model=List[schemas.AuditLogResponse], dependencies=[Depends(security.require_admin)])
def read_audit_logs(
    skip: int = 0,
    limit: int = 100,
    user_id: Optional[str] = None,
    action: Optional[models.AuditAction] = None,
    resource_type: Optional[models.ResourceType] = None,
    resource_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: Session = Depends(get_db),
):
    """
    Retrieve audit logs with optional filtering.
    Only accessible by administrators.
    """
    filters = schemas.AuditLogFilter(
        user_id=user_id, action=action, resource_type=resource_type, resource_id=resource_id,
        start_date=start_date, end_date=end_date, limit=limit, offset=skip,
    )
    return compliance_logger.query(db, filters)


@router.get("/logs/summary", response_model=schemas.AuditSummary, dependencies=[Depends(security.require_admin)])
def read_audit_summary(days: Optional[int] = None, db: Session = Depends(get_db)):
    return compliance_logger.summary(db, days=days)


@router.get("/logs/users/{user_id}", response_model=List[schemas.AuditLogResponse])
def read_user_activity(
    user_id: str,
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
    query_context: schemas.AuditQueryContext = Depends(security.get_query_context),
):
    """
    Everything a user did. Administrators see anyone; others only themselves.
    """
    return compliance_logger.history_for_user(db, user_id, query_context=query_context, limit=limit, offset=skip)


@router.get("/logs/{resource_type}/{resource_id}", response_model=List[schemas.AuditLogResponse])
def read_resource_history(
    resource_type: models.ResourceType,
    resource_id: str,
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
    query_context: schemas.AuditQueryContext = Depends(security.get_query_context),
):
    """
    Audit history of one resource, newest first. 404 when unknown, 403 when not permitted.
    """
    return compliance_logger.history(
        db, resource_type, resource_id, query_context=query_context, limit=limit, offset=skip
    )
