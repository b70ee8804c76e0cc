# mindtrack/routers/records.py
from typing import List, Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from .. import crud, models, schemas, security
from ..database import get_db

router = APIRouter(
    tags=["Treatment Records"],
    dependencies=[Depends(security.require_clinical)],
    responses={404: {"description": "Not found"}},
)


@router.post("/treatment-records", response_model=schemas.TreatmentRecordResponse,
             status_code=status.HTTP_201_CREATED)
def create_treatment_record(
    record: schemas.TreatmentRecordCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    context: schemas.AuditContext = Depends(security.get_audit_context),
):
    """
    Document a session. A linked appointment must belong to the same patient.
    """
    return crud.create_treatment_record(db, record, actor=current_user, context=context)


@router.get("/treatment-records", response_model=List[schemas.TreatmentRecordResponse])
def read_treatment_records(
    patient_id: Optional[str] = None,
    clinical_id: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    context: schemas.AuditContext = Depends(security.get_audit_context),
):
    return crud.get_treatment_records(
        db, patient_id=patient_id, clinical_id=clinical_id, skip=skip, limit=limit,
        actor=current_user, context=context,
    )


@router.get("/treatment-records/{record_id}", response_model=schemas.TreatmentRecordResponse)
def read_treatment_record(
    record_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    context: schemas.AuditContext = Depends(security.get_audit_context),
):
    return crud.get_treatment_record(db, record_id, actor=current_user, context=context)


@router.put("/treatment-records/{record_id}", response_model=schemas.TreatmentRecordResponse)
def update_treatment_record(
    record_id: str,
    record_update: schemas.TreatmentRecordUpdate,
    expected_version: Optional[int] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    context: schemas.AuditContext = Depends(security.get_audit_context),
):
    return crud.update_treatment_record(
        db, record_id, record_update, actor=current_user, context=context, expected_version=expected_version
    )


@router.delete("/treatment-records/{record_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_treatment_record(
    record_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    context: schemas.AuditContext = Depends(security.get_audit_context),
):
    crud.delete_treatment_record(db, record_id, actor=current_user, context=context)
