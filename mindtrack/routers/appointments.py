# mindtrack/routers/appointments.py
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from .. import crud, models, references, schemas, security
from ..database import get_db
from ..services import appointment_status

router = APIRouter(
    tags=["Appointments"],
    dependencies=[Depends(security.get_current_user)],
    responses={404: {"description": "Not found"}},
)


@router.post("/appointments", response_model=schemas.AppointmentResponse, status_code=status.HTTP_201_CREATED)
def create_appointment(
    appointment: schemas.AppointmentCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    context: schemas.AuditContext = Depends(security.get_audit_context),
):
    """
    Schedule an appointment. Both the patient and the clinician must resolve.
    """
    return crud.create_appointment(db, appointment, actor=current_user, context=context)


@router.get("/appointments", response_model=List[schemas.AppointmentResponse])
def read_appointments(
    skip: int = 0,
    limit: int = 100,
    patient_id: Optional[str] = None,
    clinical_id: Optional[str] = None,
    appointment_status_filter: Optional[models.AppointmentStatus] = Query(None, alias="status"),
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    context: schemas.AuditContext = Depends(security.get_audit_context),
):
    return crud.get_appointments(
        db, skip=skip, limit=limit, patient_id=patient_id, clinical_id=clinical_id,
        status=appointment_status_filter, start_date=start_date, end_date=end_date,
        actor=current_user, context=context,
    )


@router.post("/appointments/status-evaluator/run", response_model=schemas.EvaluatorRunReport,
             dependencies=[Depends(security.require_admin)])
def run_status_evaluator(db: Session = Depends(get_db)):
    return appointment_status.run_status_evaluator(db)


@router.get("/appointments/{appointment_id}", response_model=schemas.AppointmentResponse)
def read_appointment(
    appointment_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    context: schemas.AuditContext = Depends(security.get_audit_context),
):
    return crud.get_appointment(db, appointment_id, actor=current_user, context=context)


@router.get("/appointments/{appointment_id}/recommendation", response_model=schemas.StatusRecommendation)
def read_status_recommendation(appointment_id: str, db: Session = Depends(get_db)):
    appointment = references.resolve_appointment(db, appointment_id)
    return appointment_status.get_status_recommendation(appointment)


@router.put("/appointments/{appointment_id}", response_model=schemas.AppointmentResponse)
def update_appointment(
    appointment_id: str,
    appointment_update: schemas.AppointmentUpdate,
    expected_version: Optional[int] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    context: schemas.AuditContext = Depends(security.get_audit_context),
):
    return crud.update_appointment(
        db, appointment_id, appointment_update, actor=current_user, context=context,
        expected_version=expected_version,
    )


@router.delete("/appointments/{appointment_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_appointment(
    appointment_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    context: schemas.AuditContext = Depends(security.get_audit_context),
):
    crud.delete_appointment(db, appointment_id, actor=current_user, context=context)


@router.post("/appointments/{appointment_id}/status", response_model=schemas.AppointmentResponse)
def change_appointment_status(
    appointment_id: str,
    change: schemas.AppointmentStatusChange,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    context: schemas.AuditContext = Depends(security.get_audit_context),
):
    """
    Manual status change (completed, cancelled, no-show). Terminal appointments answer 409.
    """
    return appointment_status.transition_appointment(
        db, appointment_id, change.status, actor=current_user, reason=change.reason,
        context=context, expected_version=change.expected_version,
    )


@router.post("/appointments/{appointment_id}/correct-status", response_model=schemas.AppointmentResponse)
def correct_appointment_status(
    appointment_id: str,
    correction: schemas.AppointmentCorrection,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin),
    context: schemas.AuditContext = Depends(security.get_audit_context),
):
    return appointment_status.correct_appointment_status(
        db, appointment_id, correction.status, actor=current_user, reason=correction.reason, context=context
    )


@router.post("/appointments/{appointment_id}/relink", response_model=schemas.AppointmentResponse)
def relink_appointment(
    appointment_id: str,
    relink: schemas.AppointmentRelink,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin),
    context: schemas.AuditContext = Depends(security.get_audit_context),
):
    """
    Explicit administrative repair of an appointment's patient reference.
    """
    return references.relink_appointment_patient(
        db, appointment_id, relink.patient_id, actor=current_user, reason=relink.reason, context=context
    )
