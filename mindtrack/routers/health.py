# mindtrack/routers/health.py
from datetime import datetime, timezone
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session

from .. import references, schemas, security
from ..config import get_settings
from ..database import get_db

router = APIRouter(
    prefix="/health",
    tags=["Health Checks"],
    responses={404: {"description": "Not found"}},
)


@router.get("")
def liveness(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    settings = get_settings()
    return {
        "status": "ok",
        "app": settings.app_name,
        "version": settings.app_version,
        "checked_at": datetime.now(timezone.utc),
    }


@router.get("/orphaned-appointments", response_model=List[schemas.OrphanedAppointment],
            dependencies=[Depends(security.require_admin)])
def check_orphaned_appointments(db: Session = Depends(get_db)):
    """
    Report appointments whose patient or clinician no longer resolves.
    Nothing is deleted; repairs go through the relink endpoint.
    """
    return references.find_orphaned_appointments(db)
