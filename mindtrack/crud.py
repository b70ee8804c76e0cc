# mindtrack/crud.py
import logging
from datetime import datetime, timedelta
from typing import Optional, List, Any, Type

import pydantic
from sqlalchemy import func
from sqlalchemy.orm import Session

from . import models, schemas, storage
from .compliance_logger import compliance_logger
from .config import get_settings
from .errors import (
    ConflictError, Forbidden, InvalidTransition, NotFound, ReferenceNotFound, ValidationError,
)
from .references import parse_identifier, resolve_appointment, resolve_clinician, resolve_patient
from .services import appointment_status, treatment_completion
from .storage import unit_of_work

logger = logging.getLogger(__name__)


def _parse(schema_cls: Type[pydantic.BaseModel], payload: Any) -> pydantic.BaseModel:
    """Accept a schema instance or a plain mapping; input errors become ValidationError."""
    if isinstance(payload, schema_cls):
        return payload
    try:
        return schema_cls.model_validate(payload)
    except pydantic.ValidationError as e:
        raise ValidationError(
            f"Invalid {schema_cls.__name__} payload",
            {"errors": e.errors(include_url=False, include_context=False, include_input=False)},
        ) from e


def _actor_id(actor: Optional[models.User]):
    return actor.id if actor is not None else None


def _require_actor(actor: Optional[models.User], operation: str) -> models.User:
    if actor is None:
        raise ValidationError(f"An acting user is required to {operation}")
    return actor


def _require_admin(actor: Optional[models.User], operation: str) -> models.User:
    if actor is None or actor.role != models.UserRole.admin:
        raise Forbidden(f"Only administrators may {operation}")
    return actor


def _require_id(model: Type[models.Base], raw: Any):
    identifier = parse_identifier(raw)
    if identifier is None:
        raise NotFound(f"{model.__name__} '{raw}' not found")
    return identifier


def _resolve_active_patient(db: Session, raw: Any) -> models.Patient:
    patient = resolve_patient(db, raw)
    if patient.status == models.PatientStatus.inactive:
        raise ReferenceNotFound("patient", raw, f"patient '{raw}' has been archived")
    return patient


def _log_reads(db: Session, actor: Optional[models.User], resource_type: models.ResourceType,
               entities: List[models.Base], context: Optional[schemas.AuditContext]) -> None:
    if actor is None or not entities:
        return
    with unit_of_work(db):
        for entity in entities:
            compliance_logger.log_access(db, actor.id, resource_type, entity.id, context=context)


# ==================== USER CRUD OPERATIONS ====================

def get_user(db: Session, user_id: Any) -> Optional[models.User]:
    """Get a non-deleted user by ID."""
    identifier = parse_identifier(user_id)
    if identifier is None:
        return None
    return db.query(models.User).filter(
        models.User.id == identifier, models.User.deleted_at.is_(None)
    ).first()


def get_user_by_email(db: Session, email: str) -> Optional[models.User]:
    return db.query(models.User).filter(func.lower(models.User.email) == email.strip().lower()).first()


def get_users(db: Session, skip: int = 0, limit: int = 100, role: Optional[models.UserRole] = None,
              include_deleted: bool = False) -> List[models.User]:
    query = db.query(models.User)
    if not include_deleted:
        query = query.filter(models.User.deleted_at.is_(None))
    if role is not None:
        query = query.filter(models.User.role == models.UserRole(role))
    return query.order_by(models.User.last_name, models.User.first_name).offset(skip).limit(limit).all()


def create_user(db: Session, user: Any, actor: Optional[models.User] = None,
                context: Optional[schemas.AuditContext] = None) -> models.User:
    user = _parse(schemas.UserCreate, user)
    if get_user_by_email(db, user.email):
        raise ConflictError(f"A user with email {user.email} already exists")

    with unit_of_work(db):
        db_user = storage.insert(db, models.User(
            email=user.email.lower(),
            first_name=user.first_name,
            last_name=user.last_name,
            role=user.role,
        ))
        compliance_logger.record(
            db, _actor_id(actor), models.AuditAction.CREATE, models.ResourceType.user, db_user.id,
            {"role": db_user.role.value}, context,
        )
    logger.info(f"User {db_user.id} created with role {db_user.role.value}")
    return db_user


def delete_user(db: Session, user_id: Any, actor: Optional[models.User] = None,
                context: Optional[schemas.AuditContext] = None) -> models.User:
    """Soft delete; appointments keep pointing at the row."""
    _require_admin(actor, "delete users")
    with unit_of_work(db):
        db_user = storage.soft_delete(db, models.User, _require_id(models.User, user_id))
        compliance_logger.record(
            db, actor.id, models.AuditAction.DELETE, models.ResourceType.user, db_user.id,
            {"softDelete": True}, context,
        )
    logger.info(f"User {db_user.id} soft-deleted by {actor.id}")
    return db_user


# ==================== PATIENT CRUD OPERATIONS ====================

def create_patient(db: Session, patient: Any, actor: Optional[models.User] = None,
                   context: Optional[schemas.AuditContext] = None) -> models.Patient:
    """Intake a new patient. Status always starts active and no discharge data is accepted."""
    patient = _parse(schemas.PatientCreate, patient)
    settings = get_settings()

    criteria_in = patient.discharge_criteria or schemas.DischargeCriteriaSettings()
    criteria = schemas.DischargeCriteria(
        target_sessions=criteria_in.target_sessions or settings.default_target_sessions,
        target_date=criteria_in.target_date,
        auto_discharge=bool(criteria_in.auto_discharge),
    )

    with unit_of_work(db):
        clinician = resolve_clinician(db, patient.assigned_clinical_id) \
            if patient.assigned_clinical_id is not None else None
        data = patient.model_dump(exclude={"assigned_clinical_id", "discharge_criteria"})
        db_patient = storage.insert(db, models.Patient(
            **data,
            status=models.PatientStatus.active,
            assigned_clinical_id=clinician.id if clinician else None,
            discharge_criteria=criteria.to_storage(),
            created_by=_actor_id(actor),
        ))
        compliance_logger.record(
            db, _actor_id(actor), models.AuditAction.CREATE, models.ResourceType.patient, db_patient.id,
            {"status": db_patient.status.value, "assignedClinicalId": str(db_patient.assigned_clinical_id)
             if db_patient.assigned_clinical_id else None},
            context,
        )
    logger.info(f"Patient {db_patient.id} created")
    return db_patient


def get_patient(db: Session, patient_id: Any, actor: Optional[models.User] = None,
                context: Optional[schemas.AuditContext] = None) -> models.Patient:
    db_patient = storage.find_by_id(db, models.Patient, _require_id(models.Patient, patient_id))
    if db_patient is None:
        raise NotFound(f"Patient '{patient_id}' not found")
    _log_reads(db, actor, models.ResourceType.patient, [db_patient], context)
    return db_patient


def get_patients(db: Session, skip: int = 0, limit: int = 100, status: Optional[models.PatientStatus] = None,
                 clinical_id: Any = None, search: Optional[str] = None,
                 actor: Optional[models.User] = None,
                 context: Optional[schemas.AuditContext] = None) -> List[models.Patient]:
    query = db.query(models.Patient)
    if status is not None:
        query = query.filter(models.Patient.status == models.PatientStatus(status))
    if clinical_id is not None:
        query = query.filter(models.Patient.assigned_clinical_id == parse_identifier(clinical_id))
    if search:
        term = f"%{search.strip().lower()}%"
        query = query.filter(
            func.lower(models.Patient.first_name).like(term) | func.lower(models.Patient.last_name).like(term)
        )
    patients = query.order_by(models.Patient.last_name, models.Patient.first_name).offset(skip).limit(limit).all()
    _log_reads(db, actor, models.ResourceType.patient, patients, context)
    return patients


def update_patient(db: Session, patient_id: Any, patient_update: Any, actor: Optional[models.User] = None,
                   context: Optional[schemas.AuditContext] = None,
                   expected_version: Optional[int] = None) -> models.Patient:
    """Demographic/assignment edits. Status and discharge outcome are not editable here."""
    patient_update = _parse(schemas.PatientUpdate, patient_update)
    update_data = patient_update.model_dump(exclude_unset=True)
    identifier = _require_id(models.Patient, patient_id)

    with unit_of_work(db):
        db_patient = storage.require(db, models.Patient, identifier)
        if "assigned_clinical_id" in update_data and update_data["assigned_clinical_id"] is not None:
            update_data["assigned_clinical_id"] = resolve_clinician(db, update_data["assigned_clinical_id"]).id
        if "discharge_criteria" in update_data:
            settings_in = update_data.pop("discharge_criteria") or {}
            current = schemas.DischargeCriteria.model_validate(db_patient.discharge_criteria or {})
            merged = current.model_copy(update={k: v for k, v in settings_in.items() if v is not None})
            update_data["discharge_criteria"] = schemas.DischargeCriteria.model_validate(
                merged.model_dump()
            ).to_storage()

        db_patient, changes = storage.update(
            db, models.Patient, identifier, update_data, expected_version=expected_version
        )
        compliance_logger.record(
            db, _actor_id(actor), models.AuditAction.UPDATE, models.ResourceType.patient, db_patient.id,
            {"changedFields": sorted(changes)}, context,
        )
    logger.info(f"Patient {db_patient.id} updated: {sorted(changes)}")
    return db_patient


def archive_patient(db: Session, patient_id: Any, actor: Optional[models.User] = None,
                    context: Optional[schemas.AuditContext] = None,
                    expected_version: Optional[int] = None) -> models.Patient:
    """Soft delete: active -> inactive. Patients are never removed."""
    with unit_of_work(db):
        db_patient = storage.soft_delete(
            db, models.Patient, _require_id(models.Patient, patient_id), expected_version=expected_version
        )
        compliance_logger.record(
            db, _actor_id(actor), models.AuditAction.DELETE, models.ResourceType.patient, db_patient.id,
            {"softDelete": True, "oldStatus": models.PatientStatus.active.value,
             "newStatus": db_patient.status.value},
            context,
        )
    logger.info(f"Patient {db_patient.id} archived")
    return db_patient


def restore_patient(db: Session, patient_id: Any, actor: Optional[models.User] = None,
                    context: Optional[schemas.AuditContext] = None) -> models.Patient:
    """Administrative undo of an archive: inactive -> active."""
    _require_admin(actor, "restore archived patients")

    def only_from_inactive(current, requested):
        if current != models.PatientStatus.inactive:
            raise InvalidTransition("patient", models.PatientStatus(current).value, requested.value)

    with unit_of_work(db):
        db_patient, old_status = storage.status_transition(
            db, models.Patient, _require_id(models.Patient, patient_id), models.PatientStatus.active,
            validator=only_from_inactive,
        )
        compliance_logger.record(
            db, actor.id, models.AuditAction.UPDATE, models.ResourceType.patient, db_patient.id,
            {"oldStatus": old_status.value, "newStatus": db_patient.status.value, "restored": True},
            context,
        )
    return db_patient


# ==================== APPOINTMENT CRUD OPERATIONS ====================

def create_appointment(db: Session, appointment: Any, actor: Optional[models.User] = None,
                       context: Optional[schemas.AuditContext] = None) -> models.Appointment:
    """Schedule an appointment; both references must resolve before anything is written."""
    appointment = _parse(schemas.AppointmentCreate, appointment)
    actor = _require_actor(actor, "schedule appointments")

    with unit_of_work(db):
        patient = _resolve_active_patient(db, appointment.patient_id)
        clinician = resolve_clinician(db, appointment.clinical_id)
        db_appointment = storage.insert(db, models.Appointment(
            patient_id=patient.id,
            clinical_id=clinician.id,
            created_by=actor.id,
            appointment_date=appointment.appointment_date,
            duration=appointment.duration,
            type=appointment.type,
            notes=appointment.notes,
            status=models.AppointmentStatus.scheduled,
        ))
        compliance_logger.record(
            db, actor.id, models.AuditAction.CREATE, models.ResourceType.appointment, db_appointment.id,
            {"patientId": str(patient.id), "clinicalId": str(clinician.id),
             "status": db_appointment.status.value},
            context,
        )
    logger.info(f"Appointment {db_appointment.id} scheduled for patient {patient.id}")
    return db_appointment


def get_appointment(db: Session, appointment_id: Any, actor: Optional[models.User] = None,
                    context: Optional[schemas.AuditContext] = None,
                    now: Optional[datetime] = None) -> models.Appointment:
    db_appointment = storage.find_by_id(db, models.Appointment, _require_id(models.Appointment, appointment_id))
    if db_appointment is None:
        raise NotFound(f"Appointment '{appointment_id}' not found")
    if get_settings().evaluate_status_on_read:
        db_appointment = appointment_status.evaluate_on_read(db, db_appointment, now=now)
    _log_reads(db, actor, models.ResourceType.appointment, [db_appointment], context)
    return db_appointment


def get_appointments(db: Session, skip: int = 0, limit: int = 100, patient_id: Any = None,
                     clinical_id: Any = None, status: Optional[models.AppointmentStatus] = None,
                     start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
                     actor: Optional[models.User] = None, context: Optional[schemas.AuditContext] = None,
                     now: Optional[datetime] = None) -> List[models.Appointment]:
    query = db.query(models.Appointment)
    if patient_id is not None:
        query = query.filter(models.Appointment.patient_id == parse_identifier(patient_id))
    if clinical_id is not None:
        query = query.filter(models.Appointment.clinical_id == parse_identifier(clinical_id))
    if start_date is not None:
        query = query.filter(models.Appointment.appointment_date >= start_date)
    if end_date is not None:
        query = query.filter(models.Appointment.appointment_date <= end_date)

    if get_settings().evaluate_status_on_read:
        now = now or models.utcnow()
        stale = query.filter(
            models.Appointment.status.in_(list(appointment_status.TRANSITIONS)),
            models.Appointment.appointment_date < now,
        )
        for candidate in stale.all():
            appointment_status.evaluate_on_read(db, candidate, now=now)

    if status is not None:
        query = query.filter(models.Appointment.status == models.AppointmentStatus(status))
    appointments = query.order_by(models.Appointment.appointment_date).offset(skip).limit(limit).all()
    _log_reads(db, actor, models.ResourceType.appointment, appointments, context)
    return appointments


def update_appointment(db: Session, appointment_id: Any, appointment_update: Any,
                       actor: Optional[models.User] = None, context: Optional[schemas.AuditContext] = None,
                       expected_version: Optional[int] = None,
                       now: Optional[datetime] = None) -> models.Appointment:
    """Reschedule or edit details. Terminal appointments are frozen.

    Moving an overdue appointment to a future time puts it back to scheduled.
    """
    appointment_update = _parse(schemas.AppointmentUpdate, appointment_update)
    update_data = appointment_update.model_dump(exclude_unset=True)
    identifier = _require_id(models.Appointment, appointment_id)

    with unit_of_work(db):
        db_appointment = storage.require(db, models.Appointment, identifier)
        if db_appointment.is_terminal:
            raise InvalidTransition(
                "appointment", db_appointment.status.value, "update",
                f"Appointment {db_appointment.id} is {db_appointment.status.value} and can no longer be edited",
            )
        status_patch = appointment_status.reschedule_patch(
            db_appointment, update_data.get("appointment_date"), now=now
        )
        db_appointment, changes = storage.update(
            db, models.Appointment, identifier, {**update_data, **status_patch},
            expected_version=expected_version,
        )
        details = {"changedFields": sorted(changes)}
        if status_patch:
            details.update(oldStatus=models.AppointmentStatus.overdue.value,
                           newStatus=models.AppointmentStatus.scheduled.value)
        compliance_logger.record(
            db, _actor_id(actor), models.AuditAction.UPDATE, models.ResourceType.appointment, db_appointment.id,
            details, context,
        )
    return db_appointment


def delete_appointment(db: Session, appointment_id: Any, actor: Optional[models.User] = None,
                       context: Optional[schemas.AuditContext] = None) -> bool:
    """Remove a scheduled/overdue appointment that has no session documentation."""
    identifier = _require_id(models.Appointment, appointment_id)
    with unit_of_work(db):
        db_appointment = storage.require(db, models.Appointment, identifier, for_update=True)
        if db_appointment.is_terminal:
            raise InvalidTransition("appointment", db_appointment.status.value, "delete")
        if db.query(models.TreatmentRecord).filter(models.TreatmentRecord.appointment_id == identifier).count():
            raise ValidationError(f"Appointment {identifier} has treatment records and cannot be deleted")

        snapshot = {
            "patientId": str(db_appointment.patient_id),
            "clinicalId": str(db_appointment.clinical_id),
            "appointmentDate": db_appointment.appointment_date.isoformat(),
            "status": db_appointment.status.value,
        }
        db.delete(db_appointment)
        db.flush()
        compliance_logger.record(
            db, _actor_id(actor), models.AuditAction.DELETE, models.ResourceType.appointment, identifier,
            snapshot, context,
        )
    logger.info(f"Appointment {identifier} deleted")
    return True


# ==================== TREATMENT RECORD CRUD OPERATIONS ====================

def create_treatment_record(db: Session, record: Any, actor: Optional[models.User] = None,
                            context: Optional[schemas.AuditContext] = None) -> models.TreatmentRecord:
    record = _parse(schemas.TreatmentRecordCreate, record)

    with unit_of_work(db):
        patient = _resolve_active_patient(db, record.patient_id)
        clinician = resolve_clinician(db, record.clinical_id)
        appointment = resolve_appointment(db, record.appointment_id, patient_id=patient.id) \
            if record.appointment_id is not None else None

        data = record.model_dump(exclude={"patient_id", "clinical_id", "appointment_id"})
        db_record = storage.insert(db, models.TreatmentRecord(
            **data,
            patient_id=patient.id,
            clinical_id=clinician.id,
            appointment_id=appointment.id if appointment else None,
            created_by=_actor_id(actor),
        ))
        compliance_logger.record(
            db, _actor_id(actor), models.AuditAction.CREATE, models.ResourceType.treatment_record, db_record.id,
            {"patientId": str(patient.id),
             "appointmentId": str(appointment.id) if appointment else None},
            context,
        )
    logger.info(f"Treatment record {db_record.id} created for patient {patient.id}")
    return db_record


def get_treatment_record(db: Session, record_id: Any, actor: Optional[models.User] = None,
                         context: Optional[schemas.AuditContext] = None) -> models.TreatmentRecord:
    db_record = storage.find_by_id(db, models.TreatmentRecord, _require_id(models.TreatmentRecord, record_id))
    if db_record is None:
        raise NotFound(f"Treatment record '{record_id}' not found")
    _log_reads(db, actor, models.ResourceType.treatment_record, [db_record], context)
    return db_record


def get_treatment_records(db: Session, patient_id: Any = None, clinical_id: Any = None,
                          skip: int = 0, limit: int = 100, actor: Optional[models.User] = None,
                          context: Optional[schemas.AuditContext] = None) -> List[models.TreatmentRecord]:
    filters = {}
    if patient_id is not None:
        filters["patient_id"] = parse_identifier(patient_id)
    if clinical_id is not None:
        filters["clinical_id"] = parse_identifier(clinical_id)
    records = storage.find_many(
        db, models.TreatmentRecord, filters,
        order_by=(models.TreatmentRecord.session_date.desc(),), limit=limit, offset=skip,
    )
    _log_reads(db, actor, models.ResourceType.treatment_record, records, context)
    return records


def update_treatment_record(db: Session, record_id: Any, record_update: Any,
                            actor: Optional[models.User] = None, context: Optional[schemas.AuditContext] = None,
                            expected_version: Optional[int] = None) -> models.TreatmentRecord:
    record_update = _parse(schemas.TreatmentRecordUpdate, record_update)
    update_data = record_update.model_dump(exclude_unset=True)

    with unit_of_work(db):
        db_record, changes = storage.update(
            db, models.TreatmentRecord, _require_id(models.TreatmentRecord, record_id), update_data,
            expected_version=expected_version,
        )
        compliance_logger.record(
            db, _actor_id(actor), models.AuditAction.UPDATE, models.ResourceType.treatment_record, db_record.id,
            {"changedFields": sorted(changes)}, context,
        )
    return db_record


def delete_treatment_record(db: Session, record_id: Any, actor: Optional[models.User] = None,
                            context: Optional[schemas.AuditContext] = None) -> bool:
    identifier = _require_id(models.TreatmentRecord, record_id)
    with unit_of_work(db):
        db_record = storage.require(db, models.TreatmentRecord, identifier)
        snapshot = {
            "patientId": str(db_record.patient_id),
            "sessionDate": db_record.session_date.isoformat(),
            "appointmentId": str(db_record.appointment_id) if db_record.appointment_id else None,
        }
        db.delete(db_record)
        db.flush()
        compliance_logger.record(
            db, _actor_id(actor), models.AuditAction.DELETE, models.ResourceType.treatment_record, identifier,
            snapshot, context,
        )
    logger.info(f"Treatment record {identifier} deleted")
    return True


# ==================== DASHBOARD ====================

def get_dashboard_stats(db: Session, now: Optional[datetime] = None) -> schemas.DashboardStatsResponse:
    now = now or models.utcnow()
    today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    month_start = today_start.replace(day=1)

    patients_by_status = {s.value: 0 for s in models.PatientStatus}
    for status, count in db.query(models.Patient.status, func.count(models.Patient.id)).group_by(models.Patient.status):
        patients_by_status[status.value] = count

    appointments_by_status = {s.value: 0 for s in models.AppointmentStatus}
    for status, count in db.query(models.Appointment.status, func.count(models.Appointment.id)).group_by(models.Appointment.status):
        appointments_by_status[status.value] = count

    appointments = db.query(models.Appointment)
    appointments_today = appointments.filter(
        models.Appointment.appointment_date >= today_start,
        models.Appointment.appointment_date < today_start + timedelta(days=1),
    ).count()
    appointments_this_month = appointments.filter(models.Appointment.appointment_date >= month_start).count()
    upcoming = appointments.filter(
        models.Appointment.status == models.AppointmentStatus.scheduled,
        models.Appointment.appointment_date >= now,
    ).count()
    needing_review = appointments.filter(
        models.Appointment.status == models.AppointmentStatus.completed,
        (models.Appointment.notes.is_(None)) | (func.trim(models.Appointment.notes) == ""),
    ).count()
    records_this_month = db.query(models.TreatmentRecord).filter(
        models.TreatmentRecord.created_at >= month_start
    ).count()

    return schemas.DashboardStatsResponse(
        total_patients=sum(patients_by_status.values()),
        patients_by_status=patients_by_status,
        appointments_by_status=appointments_by_status,
        appointments_today=appointments_today,
        appointments_this_month=appointments_this_month,
        completed_appointments=appointments_by_status[models.AppointmentStatus.completed.value],
        upcoming_appointments=upcoming,
        appointments_needing_review=needing_review,
        treatment_records_this_month=records_this_month,
        completion_rate=treatment_completion.calculate_treatment_completion_rate(db),
    )
