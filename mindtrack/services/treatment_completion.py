# mindtrack/services/treatment_completion.py
"""Patient discharge and treatment-completion tracking.

Discharge metadata lives only in ``Patient.discharge_criteria`` and is written
only by ``_apply_discharge`` (and cleared only by ``reactivate_patient``).
"""
from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from .. import models, schemas, storage
from ..compliance_logger import compliance_logger
from ..errors import ConflictError, CRUDError, Forbidden, InvalidTransition, ValidationError
from ..references import require_identifier, resolve_patient
from ..storage import unit_of_work
from . import notification_service

logger = structlog.get_logger(__name__)

PatientStatus = models.PatientStatus

# Appointments whose linked records do not count as a completed session
_NON_SESSION_APPOINTMENT_STATUSES = (models.AppointmentStatus.cancelled, models.AppointmentStatus.no_show)


def _as_utc(moment: Optional[datetime]) -> datetime:
    if moment is None:
        return models.utcnow()
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def load_criteria(patient: models.Patient) -> schemas.DischargeCriteria:
    return schemas.DischargeCriteria.model_validate(patient.discharge_criteria or {})


def count_completed_sessions(db: Session, patient_id: Any) -> int:
    """Treatment records for the patient that are not tied to a cancelled or no-show appointment."""
    return (
        db.query(func.count(models.TreatmentRecord.id))
        .outerjoin(models.Appointment, models.Appointment.id == models.TreatmentRecord.appointment_id)
        .filter(
            models.TreatmentRecord.patient_id == require_identifier("patient", patient_id),
            or_(
                models.TreatmentRecord.appointment_id.is_(None),
                models.Appointment.status.notin_(_NON_SESSION_APPOINTMENT_STATUSES),
            ),
        )
        .scalar()
    ) or 0


def check_for_auto_discharge(db: Session, patient_ref: Any,
                             now: Optional[datetime] = None) -> schemas.DischargeEligibility:
    """Eligibility report; no side effects.

    ``should_discharge`` means the session target is met. Whether that discharges
    the patient automatically depends on the ``autoDischarge`` flag. Reaching
    ``targetDate`` is reported but is not a discharge trigger on its own.
    """
    now = _as_utc(now)
    patient = resolve_patient(db, patient_ref)
    criteria = load_criteria(patient)

    if patient.status != PatientStatus.active:
        return schemas.DischargeEligibility(
            patient_id=patient.id,
            should_discharge=False,
            reason=f"Patient is {patient.status.value} - discharge evaluation on hold",
            completed_sessions=count_completed_sessions(db, patient.id),
            target_sessions=criteria.target_sessions,
            auto_discharge=criteria.auto_discharge,
        )

    completed = count_completed_sessions(db, patient.id)
    reasons = []
    should_discharge = completed >= criteria.target_sessions
    if should_discharge:
        reasons.append(f"Completed {completed} sessions (target: {criteria.target_sessions})")

    target_date_reached = criteria.target_date is not None and now.date() >= criteria.target_date
    if target_date_reached:
        reasons.append(f"Reached target date: {criteria.target_date.isoformat()}")

    if should_discharge:
        reason = "Session target reached"
    elif target_date_reached:
        reason = "Target date reached; session target not yet met"
    else:
        reason = "Discharge criteria not met"

    return schemas.DischargeEligibility(
        patient_id=patient.id,
        should_discharge=should_discharge,
        reason=reason,
        criteria=reasons,
        completed_sessions=completed,
        target_sessions=criteria.target_sessions,
        auto_discharge=criteria.auto_discharge,
        target_date_reached=target_date_reached,
    )


def _apply_discharge(db: Session, patient: models.Patient, method: models.DischargeMethod, reason: str,
                     now: datetime, expected_version: Optional[int] = None) -> models.Patient:
    """The single write path for discharge metadata."""
    criteria = load_criteria(patient).model_copy(update={
        "discharge_date": now,
        "discharge_method": method,
        "discharge_reason": reason,
    })
    if patient.status == PatientStatus.discharged:
        patient, _ = storage.update(
            db, models.Patient, patient.id, {"discharge_criteria": criteria.to_storage()},
            expected_version=expected_version,
        )
        return patient
    patient, _ = storage.status_transition(
        db, models.Patient, patient.id, PatientStatus.discharged,
        expected_version=expected_version,
        validator=models.validate_patient_transition,
        extra={"discharge_criteria": criteria.to_storage()},
    )
    return patient


# ==================== AUTOMATIC DISCHARGE ====================

def auto_discharge_patient(db: Session, patient_ref: Any, now: Optional[datetime] = None,
                           context: Optional[schemas.AuditContext] = None) -> schemas.DischargeEvaluation:
    """Discharge an active patient whose session target is met and who has autoDischarge set."""
    now = _as_utc(now)
    eligibility = check_for_auto_discharge(db, patient_ref, now=now)
    patient = resolve_patient(db, patient_ref)

    if not (eligibility.should_discharge and eligibility.auto_discharge):
        return schemas.DischargeEvaluation(
            patient_id=patient.id, status=patient.status, discharged=False, changed=False,
            eligibility=eligibility,
        )

    with unit_of_work(db):
        patient = _apply_discharge(
            db, patient, models.DischargeMethod.automatic, eligibility.reason, now,
            expected_version=patient.version,
        )
        compliance_logger.record(
            db, None, models.AuditAction.UPDATE, models.ResourceType.patient, patient.id,
            {
                "oldStatus": PatientStatus.active.value,
                "newStatus": PatientStatus.discharged.value,
                "dischargeMethod": models.DischargeMethod.automatic.value,
                "dischargeReason": eligibility.reason,
                "completedSessions": eligibility.completed_sessions,
                "targetSessions": eligibility.target_sessions,
                "automatic": True,
            },
            context,
        )
        if patient.assigned_clinical_id is not None:
            notification_service.create_notification(
                db, patient.assigned_clinical_id, models.NotificationType.treatment_completion,
                "Patient discharged",
                f"{patient.full_name} was automatically discharged: {eligibility.reason}",
                {"patientId": str(patient.id)},
            )

    logger.info("patient_auto_discharged", patient_id=str(patient.id),
                completed_sessions=eligibility.completed_sessions)
    return schemas.DischargeEvaluation(
        patient_id=patient.id, status=patient.status, discharged=True, changed=True,
        discharge_date=patient.discharge_date, eligibility=eligibility,
    )


def evaluate_patient_discharge(db: Session, patient_ref: Any, actor: Optional[models.User] = None,
                               override: bool = False, reason: Optional[str] = None,
                               context: Optional[schemas.AuditContext] = None,
                               now: Optional[datetime] = None) -> schemas.DischargeEvaluation:
    """Evaluate one patient. An existing discharge date is kept unless an admin overrides it."""
    now = _as_utc(now)
    patient = resolve_patient(db, patient_ref)

    if patient.status != PatientStatus.discharged:
        if override:
            raise ValidationError("override only applies to patients who are already discharged")
        return auto_discharge_patient(db, patient.id, now=now, context=context)

    if not override:
        return schemas.DischargeEvaluation(
            patient_id=patient.id, status=patient.status, discharged=True, changed=False,
            discharge_date=patient.discharge_date,
        )

    if actor is None or actor.role != models.UserRole.admin:
        raise Forbidden("Only administrators may override an existing discharge date")
    if not reason or not reason.strip():
        raise ValidationError("A reason is required to override a discharge date")

    previous = load_criteria(patient)
    with unit_of_work(db):
        patient = _apply_discharge(
            db, patient, previous.discharge_method or models.DischargeMethod.manual, reason, now,
            expected_version=patient.version,
        )
        compliance_logger.record(
            db, actor.id, models.AuditAction.UPDATE, models.ResourceType.patient, patient.id,
            {
                "override": True,
                "oldDischargeDate": previous.discharge_date.isoformat() if previous.discharge_date else None,
                "newDischargeDate": now.isoformat(),
                "reason": reason,
            },
            context,
        )
    logger.warning("discharge_date_overridden", patient_id=str(patient.id), admin_id=str(actor.id))
    return schemas.DischargeEvaluation(
        patient_id=patient.id, status=patient.status, discharged=True, changed=True,
        discharge_date=patient.discharge_date,
    )


def run_discharge_evaluator(db: Session, now: Optional[datetime] = None) -> schemas.EvaluatorRunReport:
    """Sweep active patients with autoDischarge set. One unit of work per patient."""
    now = _as_utc(now)
    report = schemas.EvaluatorRunReport(checked_at=now)

    candidates = [
        p.id for p in storage.find_many(db, models.Patient, {"status": PatientStatus.active})
        if (p.discharge_criteria or {}).get("autoDischarge")
    ]
    for patient_id in candidates:
        report.examined += 1
        try:
            outcome = evaluate_patient_discharge(db, patient_id, now=now)
            if outcome.changed:
                report.changed.append(str(patient_id))
        except CRUDError as e:
            logger.warning("discharge_evaluation_skipped", patient_id=str(patient_id), issue=e.message)
            report.skipped.append(schemas.SkippedRecord(resource_id=str(patient_id), issue=e.message))

    logger.info(
        "discharge_evaluator_finished",
        examined=report.examined,
        discharged=len(report.changed),
        skipped=len(report.skipped),
    )
    return report


# ==================== MANUAL DISCHARGE WORKFLOW ====================

def request_discharge(db: Session, patient_ref: Any, actor: models.User, reason: str,
                      context: Optional[schemas.AuditContext] = None,
                      now: Optional[datetime] = None) -> models.DischargeRequest:
    """A clinician asks for a patient to be discharged; administrators are notified."""
    if actor is None or actor.role not in (models.UserRole.clinical, models.UserRole.admin):
        raise Forbidden("Only clinical staff may request a discharge")
    if not reason or not reason.strip():
        raise ValidationError("A reason is required to request a discharge")

    with unit_of_work(db):
        patient = resolve_patient(db, patient_ref)
        if patient.status != PatientStatus.active:
            raise InvalidTransition("patient", patient.status.value, PatientStatus.discharged.value,
                                    f"Patient is {patient.status.value}; only active patients can be discharged")
        pending = storage.find_many(
            db, models.DischargeRequest,
            {"patient_id": patient.id, "status": models.DischargeRequestStatus.pending},
        )
        if pending:
            raise ConflictError(f"Patient {patient.id} already has a pending discharge request",
                                {"discharge_request_id": str(pending[0].id)})

        request = storage.insert(db, models.DischargeRequest(
            patient_id=patient.id,
            requested_by=actor.id,
            requested_at=_as_utc(now),
            reason=reason,
            status=models.DischargeRequestStatus.pending,
        ))
        compliance_logger.record(
            db, actor.id, models.AuditAction.CREATE, models.ResourceType.discharge_request, request.id,
            {"patientId": str(patient.id), "status": request.status.value},
            context,
        )
        notification_service.notify_admins(
            db, models.NotificationType.discharge_request_created,
            "Discharge request pending review",
            f"{actor.full_name} requested discharge for {patient.full_name}",
            {"patientId": str(patient.id), "dischargeRequestId": str(request.id)},
        )

    logger.info("discharge_requested", patient_id=str(patient.id), request_id=str(request.id))
    return request


def review_discharge_request(db: Session, request_ref: Any, reviewer: models.User, approve: bool,
                             review_notes: Optional[str] = None,
                             context: Optional[schemas.AuditContext] = None,
                             now: Optional[datetime] = None) -> models.DischargeRequest:
    """Approve (discharging the patient) or deny a pending request."""
    if reviewer is None or reviewer.role != models.UserRole.admin:
        raise Forbidden("Only administrators may review discharge requests")
    now = _as_utc(now)
    new_status = models.DischargeRequestStatus.approved if approve else models.DischargeRequestStatus.denied

    def only_pending(current, requested):
        if current != models.DischargeRequestStatus.pending:
            raise InvalidTransition("discharge_request", current.value, requested.value)

    with unit_of_work(db):
        request, old_status = storage.status_transition(
            db, models.DischargeRequest, require_identifier("discharge_request", request_ref), new_status,
            validator=only_pending,
            extra={"reviewed_by": reviewer.id, "reviewed_at": now, "review_notes": review_notes},
        )
        compliance_logger.record(
            db, reviewer.id, models.AuditAction.UPDATE, models.ResourceType.discharge_request, request.id,
            {"oldStatus": old_status.value, "newStatus": new_status.value, "patientId": str(request.patient_id)},
            context,
        )

        if approve:
            patient = resolve_patient(db, request.patient_id)
            old_patient_status = patient.status
            if old_patient_status != PatientStatus.active:
                raise InvalidTransition("patient", old_patient_status.value, PatientStatus.discharged.value)
            patient = _apply_discharge(db, patient, models.DischargeMethod.manual, request.reason, now)
            compliance_logger.record(
                db, reviewer.id, models.AuditAction.UPDATE, models.ResourceType.patient, patient.id,
                {
                    "oldStatus": old_patient_status.value,
                    "newStatus": patient.status.value,
                    "dischargeMethod": models.DischargeMethod.manual.value,
                    "dischargeReason": request.reason,
                    "dischargeRequestId": str(request.id),
                    "automatic": False,
                },
                context,
            )

        notification_service.create_notification(
            db, request.requested_by,
            models.NotificationType.discharge_request_approved if approve
            else models.NotificationType.discharge_request_denied,
            f"Discharge request {new_status.value}",
            review_notes or f"Your discharge request was {new_status.value}",
            {"patientId": str(request.patient_id), "dischargeRequestId": str(request.id)},
        )

    logger.info("discharge_request_reviewed", request_id=str(request.id), status=new_status.value)
    return request


def reactivate_patient(db: Session, patient_ref: Any, actor: models.User, reason: str,
                       context: Optional[schemas.AuditContext] = None) -> models.Patient:
    """Administrative reversal of a discharge. The cleared discharge data is kept in the audit entry."""
    if actor is None or actor.role != models.UserRole.admin:
        raise Forbidden("Only administrators may reactivate a discharged patient")
    if not reason or not reason.strip():
        raise ValidationError("A reason is required to reactivate a patient")

    def only_from_discharged(current, requested):
        if current != PatientStatus.discharged:
            raise InvalidTransition("patient", PatientStatus(current).value, requested.value)

    with unit_of_work(db):
        patient = resolve_patient(db, patient_ref)
        previous = load_criteria(patient)
        cleared = previous.model_copy(update={
            "discharge_date": None, "discharge_method": None, "discharge_reason": None,
        })
        patient, old_status = storage.status_transition(
            db, models.Patient, patient.id, PatientStatus.active,
            validator=only_from_discharged,
            extra={"discharge_criteria": cleared.to_storage()},
        )
        compliance_logger.record(
            db, actor.id, models.AuditAction.UPDATE, models.ResourceType.patient, patient.id,
            {
                "oldStatus": old_status.value,
                "newStatus": patient.status.value,
                "reactivated": True,
                "reason": reason,
                "previousDischarge": {
                    "dischargeDate": previous.discharge_date.isoformat() if previous.discharge_date else None,
                    "dischargeMethod": previous.discharge_method.value if previous.discharge_method else None,
                    "dischargeReason": previous.discharge_reason,
                },
            },
            context,
        )
    logger.info("patient_reactivated", patient_id=str(patient.id), admin_id=str(actor.id))
    return patient


# ==================== REPORTING ====================

def calculate_treatment_completion_rate(db: Session, now: Optional[datetime] = None) -> schemas.TreatmentCompletionRate:
    total = db.query(func.count(models.Patient.id)).scalar() or 0
    discharged = storage.find_many(db, models.Patient, {"status": PatientStatus.discharged})

    auto_discharged = 0
    manually_discharged = 0
    for patient in discharged:
        method = (patient.discharge_criteria or {}).get("dischargeMethod")
        if method == models.DischargeMethod.automatic.value:
            auto_discharged += 1
        else:
            manually_discharged += 1

    eligible = 0
    for patient in storage.find_many(db, models.Patient, {"status": PatientStatus.active}):
        try:
            if check_for_auto_discharge(db, patient.id, now=now).should_discharge:
                eligible += 1
        except CRUDError as e:
            logger.warning("eligibility_check_failed", patient_id=str(patient.id), issue=e.message)

    rate = round(len(discharged) / total * 100, 1) if total else 0.0
    return schemas.TreatmentCompletionRate(
        rate=rate,
        discharged_count=len(discharged),
        total_count=total,
        breakdown=schemas.CompletionBreakdown(
            manually_discharged=manually_discharged,
            auto_discharged=auto_discharged,
            eligible_for_discharge=eligible,
        ),
    )
