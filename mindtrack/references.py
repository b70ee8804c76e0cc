# mindtrack/references.py
"""Identifier normalization and cross-entity reference resolution.

Every patient, clinician and appointment reference passes through
``parse_identifier`` so that a ``uuid.UUID``, its string forms and the
legacy ``{"$oid": ...}`` / ``{"_id": ...}`` shapes all compare equal.
Name matching lives here too, but only as a diagnostic report: nothing in
this module links records by name.
"""
import logging
import uuid
from typing import Any, List, Mapping, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from . import models, schemas
from .compliance_logger import compliance_logger
from .errors import Forbidden, ReferenceNotFound, ValidationError
from .storage import unit_of_work

logger = logging.getLogger(__name__)

_MAPPING_KEYS = ("id", "_id", "$oid")


def parse_identifier(raw: Any) -> Optional[uuid.UUID]:
    """Return the canonical UUID for ``raw`` or None when it is not an identifier."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, uuid.UUID):
        return raw
    if isinstance(raw, models.Base):
        return parse_identifier(getattr(raw, "id", None))
    if isinstance(raw, Mapping):
        for key in _MAPPING_KEYS:
            if key in raw:
                return parse_identifier(raw[key])
        return None
    if isinstance(raw, bytes) and len(raw) == 16:
        return uuid.UUID(bytes=raw)
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return None
        try:
            # accepts canonical, hex, braced and urn:uuid: forms
            return uuid.UUID(text)
        except ValueError:
            return None
    return None


def same_reference(left: Any, right: Any) -> bool:
    left_id, right_id = parse_identifier(left), parse_identifier(right)
    return left_id is not None and left_id == right_id


def require_identifier(reference_type: str, raw: Any) -> uuid.UUID:
    identifier = parse_identifier(raw)
    if identifier is None:
        raise ReferenceNotFound(reference_type, raw)
    return identifier


# ==================== RESOLUTION ====================

def resolve_patient(db: Session, raw: Any) -> models.Patient:
    """Patients are never hard-deleted, so any stored row resolves regardless of status."""
    patient = db.get(models.Patient, require_identifier("patient", raw))
    if patient is None:
        raise ReferenceNotFound("patient", raw)
    return patient


def resolve_user(db: Session, raw: Any, roles=None) -> models.User:
    """Resolve a non-deleted user, optionally restricted to the given roles."""
    user = db.get(models.User, require_identifier("user", raw))
    if user is None or user.is_deleted:
        raise ReferenceNotFound("user", raw)
    if roles and user.role not in roles:
        raise ReferenceNotFound("user", raw, f"user '{raw}' cannot be assigned clinical work")
    return user


def resolve_clinician(db: Session, raw: Any) -> models.User:
    # administrators may also carry a caseload
    return resolve_user(db, raw, roles=(models.UserRole.clinical, models.UserRole.admin))


def resolve_appointment(db: Session, raw: Any, patient_id: Any = None) -> models.Appointment:
    """Resolve an appointment, optionally requiring it to belong to ``patient_id``."""
    appointment = db.get(models.Appointment, require_identifier("appointment", raw))
    if appointment is None:
        raise ReferenceNotFound("appointment", raw)
    if patient_id is not None and not same_reference(appointment.patient_id, patient_id):
        raise ReferenceNotFound(
            "appointment", raw,
            f"appointment '{raw}' does not belong to patient '{patient_id}'",
        )
    return appointment


# ==================== DIAGNOSTICS ====================

def find_patient_name_matches(db: Session, first_name: str, last_name: Optional[str] = None,
                              limit: int = 20) -> List[schemas.PatientNameMatch]:
    """Name-similarity candidates for an administrator to review by hand."""
    if not first_name or not first_name.strip():
        raise ValidationError("first_name is required for a name search")

    query = db.query(models.Patient).filter(
        func.lower(models.Patient.first_name).contains(first_name.strip().lower())
    )
    if last_name and last_name.strip():
        query = query.filter(func.lower(models.Patient.last_name).contains(last_name.strip().lower()))

    candidates = query.order_by(models.Patient.last_name, models.Patient.first_name).limit(limit).all()
    return [
        schemas.PatientNameMatch(
            patient_id=p.id, first_name=p.first_name, last_name=p.last_name, status=p.status
        )
        for p in candidates
    ]


def find_orphaned_appointments(db: Session) -> List[schemas.OrphanedAppointment]:
    """Report appointments whose patient or clinician cannot be resolved. Nothing is deleted."""
    orphans = []
    rows = (
        db.query(models.Appointment, models.Patient.id, models.User.id, models.User.deleted_at)
        .outerjoin(models.Patient, models.Patient.id == models.Appointment.patient_id)
        .outerjoin(models.User, models.User.id == models.Appointment.clinical_id)
        .filter(or_(
            models.Patient.id.is_(None),
            models.User.id.is_(None),
            models.User.deleted_at.isnot(None),
        ))
        .order_by(models.Appointment.appointment_date)
        .all()
    )
    for appointment, patient_id, user_id, user_deleted_at in rows:
        if patient_id is None:
            issue = "Patient reference cannot be resolved"
        elif user_id is None:
            issue = "Clinician reference cannot be resolved"
        else:
            issue = "Clinician has been deleted"
        orphans.append(schemas.OrphanedAppointment(
            appointment_id=appointment.id,
            patient_id=appointment.patient_id,
            clinical_id=appointment.clinical_id,
            status=appointment.status,
            issue=issue,
        ))

    if orphans:
        logger.warning("Found %d orphaned appointments", len(orphans))
    return orphans


# ==================== ADMINISTRATIVE REPAIR ====================

def relink_appointment_patient(db: Session, appointment_ref: Any, patient_ref: Any,
                               actor: models.User, reason: str,
                               context: Optional[schemas.AuditContext] = None) -> models.Appointment:
    """Point an appointment at a different patient. Explicit, admin-only and audited."""
    if actor is None or actor.role != models.UserRole.admin:
        raise Forbidden("Only administrators may relink appointment references")
    if not reason or not reason.strip():
        raise ValidationError("A reason is required to relink an appointment")

    with unit_of_work(db):
        appointment = resolve_appointment(db, appointment_ref)
        patient = resolve_patient(db, patient_ref)
        previous = appointment.patient_id
        appointment.patient_id = patient.id
        db.flush()
        compliance_logger.record(
            db,
            user_id=actor.id,
            action=models.AuditAction.UPDATE,
            resource_type=models.ResourceType.appointment,
            resource_id=appointment.id,
            details={
                "relink": True,
                "oldPatientId": str(previous) if previous else None,
                "newPatientId": str(patient.id),
                "reason": reason,
            },
            context=context,
        )

    logger.info("Appointment %s relinked from patient %s to %s by %s",
                appointment.id, previous, patient.id, actor.id)
    return appointment
