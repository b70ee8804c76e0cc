# mindtrack/routers/patients.py
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, status
from sqlalchemy.orm import Session

from .. import crud, models, references, schemas, security
from ..database import get_db
from ..services import treatment_completion

router = APIRouter(
    tags=["Patients"],
    dependencies=[Depends(security.get_current_user)],
    responses={404: {"description": "Not found"}},
)


@router.post("/patients", response_model=schemas.PatientResponse, status_code=status.HTTP_201_CREATED)
def create_new_patient(
    patient: schemas.PatientCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    context: schemas.AuditContext = Depends(security.get_audit_context),
):
    """
    Intake a new patient. Status starts as active.
    """
    return crud.create_patient(db, patient, actor=current_user, context=context)


@router.get("/patients", response_model=List[schemas.PatientResponse])
def read_all_patients(
    skip: int = 0,
    limit: int = 100,
    status: Optional[models.PatientStatus] = None,
    clinical_id: Optional[str] = None,
    search: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    context: schemas.AuditContext = Depends(security.get_audit_context),
):
    return crud.get_patients(
        db, skip=skip, limit=limit, status=status, clinical_id=clinical_id, search=search,
        actor=current_user, context=context,
    )


@router.get("/patients/name-matches", response_model=List[schemas.PatientNameMatch],
            dependencies=[Depends(security.require_admin)])
def diagnose_patient_name_matches(first_name: str, last_name: Optional[str] = None, db: Session = Depends(get_db)):
    """
    Diagnostic-only name search for manual reconciliation. Never links records.
    """
    return references.find_patient_name_matches(db, first_name, last_name)


@router.get("/patients/completion-rate", response_model=schemas.TreatmentCompletionRate)
def read_completion_rate(db: Session = Depends(get_db)):
    return treatment_completion.calculate_treatment_completion_rate(db)


@router.post("/patients/discharge-evaluator/run", response_model=schemas.EvaluatorRunReport,
             dependencies=[Depends(security.require_admin)])
def run_discharge_evaluator(db: Session = Depends(get_db)):
    return treatment_completion.run_discharge_evaluator(db)


@router.get("/patients/{patient_id}", response_model=schemas.PatientResponse)
def read_patient(
    patient_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    context: schemas.AuditContext = Depends(security.get_audit_context),
):
    return crud.get_patient(db, patient_id, actor=current_user, context=context)


@router.put("/patients/{patient_id}", response_model=schemas.PatientResponse)
def update_existing_patient(
    patient_id: str,
    patient_update: schemas.PatientUpdate,
    expected_version: Optional[int] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    context: schemas.AuditContext = Depends(security.get_audit_context),
):
    return crud.update_patient(
        db, patient_id, patient_update, actor=current_user, context=context, expected_version=expected_version
    )


@router.delete("/patients/{patient_id}", response_model=schemas.PatientResponse,
               dependencies=[Depends(security.require_clinical)])
def archive_patient(
    patient_id: str,
    expected_version: Optional[int] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    context: schemas.AuditContext = Depends(security.get_audit_context),
):
    """
    Soft delete: the patient becomes inactive. Records are never removed.
    """
    return crud.archive_patient(db, patient_id, actor=current_user, context=context,
                                expected_version=expected_version)


@router.post("/patients/{patient_id}/restore", response_model=schemas.PatientResponse)
def restore_archived_patient(
    patient_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin),
    context: schemas.AuditContext = Depends(security.get_audit_context),
):
    return crud.restore_patient(db, patient_id, actor=current_user, context=context)


# ==================== DISCHARGE ====================

@router.get("/patients/{patient_id}/discharge-eligibility", response_model=schemas.DischargeEligibility)
def read_discharge_eligibility(patient_id: str, db: Session = Depends(get_db)):
    return treatment_completion.check_for_auto_discharge(db, patient_id)


@router.post("/patients/{patient_id}/discharge-evaluation", response_model=schemas.DischargeEvaluation)
def evaluate_discharge(
    patient_id: str,
    override: bool = False,
    reason: Optional[str] = Body(None, embed=True),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    context: schemas.AuditContext = Depends(security.get_audit_context),
):
    return treatment_completion.evaluate_patient_discharge(
        db, patient_id, actor=current_user, override=override, reason=reason, context=context
    )


@router.post("/patients/{patient_id}/discharge-requests", response_model=schemas.DischargeRequestResponse,
             status_code=status.HTTP_201_CREATED)
def create_discharge_request(
    patient_id: str,
    request_in: schemas.DischargeRequestCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_clinical),
    context: schemas.AuditContext = Depends(security.get_audit_context),
):
    return treatment_completion.request_discharge(
        db, patient_id, actor=current_user, reason=request_in.reason, context=context
    )


@router.post("/discharge-requests/{request_id}/review", response_model=schemas.DischargeRequestResponse)
def review_discharge_request(
    request_id: str,
    review: schemas.DischargeRequestReview,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin),
    context: schemas.AuditContext = Depends(security.get_audit_context),
):
    return treatment_completion.review_discharge_request(
        db, request_id, reviewer=current_user, approve=review.approve,
        review_notes=review.review_notes, context=context,
    )


@router.post("/patients/{patient_id}/reactivate", response_model=schemas.PatientResponse)
def reactivate_discharged_patient(
    patient_id: str,
    body: schemas.ReactivationRequest,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin),
    context: schemas.AuditContext = Depends(security.get_audit_context),
):
    return treatment_completion.reactivate_patient(
        db, patient_id, actor=current_user, reason=body.reason, context=context
    )
