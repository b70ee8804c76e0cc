# mindtrack/models.py
import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, Text, Date,
    Enum as SQLAlchemyEnum, Boolean, JSON, Index, Uuid, event
)
from sqlalchemy.orm import Session, relationship
from sqlalchemy.types import TypeDecorator
from pydantic import TypeAdapter

from .database import Base
from .errors import AuditIntegrityError, InvalidTransition, ValidationError


_DATETIME = TypeAdapter(datetime)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend (SQLite drops tzinfo on its own)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


# Enum classes
class UserRole(str, enum.Enum):
    admin = "admin"
    clinical = "clinical"
    staff = "staff"

    @classmethod
    def _missing_(cls, value):
        # "therapist" was the pre-rename spelling of the clinician role
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in ("therapist", "clinician"):
                return cls.clinical
            for member in cls:
                if member.value == lowered:
                    return member
        return None


# Presentation-only labels; renaming a role never touches stored data.
ROLE_LABELS = {
    UserRole.admin: "Administrator",
    UserRole.clinical: "Clinician",
    UserRole.staff: "Front Desk",
}


class PatientStatus(str, enum.Enum):
    active = "active"
    inactive = "inactive"
    discharged = "discharged"


class Gender(str, enum.Enum):
    male = "male"
    female = "female"
    other = "other"


class AppointmentStatus(str, enum.Enum):
    scheduled = "scheduled"
    completed = "completed"
    cancelled = "cancelled"
    no_show = "no-show"
    overdue = "overdue"


TERMINAL_APPOINTMENT_STATUSES = frozenset({
    AppointmentStatus.completed,
    AppointmentStatus.cancelled,
    AppointmentStatus.no_show,
})


class DischargeMethod(str, enum.Enum):
    manual = "manual"
    automatic = "automatic"


class DischargeRequestStatus(str, enum.Enum):
    pending = "pending"
    approved = "approved"
    denied = "denied"


class AuditAction(str, enum.Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    LOGIN = "login"
    LOGOUT = "logout"
    PASSWORD_RESET = "password_reset"
    PASSWORD_CHANGE = "password_change"
    EXPORT = "export"
    IMPORT = "import"
    PRINT = "print"
    DOWNLOAD = "download"
    PERMISSION_CHANGE = "permission_change"
    ROLE_CHANGE = "role_change"
    CONSENT_GIVEN = "consent_given"
    CONSENT_REVOKED = "consent_revoked"
    EMERGENCY_ACCESS = "emergency_access"
    BREAK_GLASS = "break_glass"


class ResourceType(str, enum.Enum):
    patient = "patient"
    appointment = "appointment"
    treatment_record = "treatment_record"
    user = "user"
    session = "session"
    consent = "consent"
    discharge_request = "discharge_request"
    audit_log = "audit_log"
    system = "system"
    report = "report"


class NotificationType(str, enum.Enum):
    general = "general"
    treatment_completion = "treatment_completion"
    discharge_reminder = "discharge_reminder"
    discharge_request_created = "discharge_request_created"
    discharge_request_approved = "discharge_request_approved"
    discharge_request_denied = "discharge_request_denied"


# Routine patient status moves; reactivation from discharged is admin-only
PATIENT_TRANSITIONS = {
    PatientStatus.active: frozenset({PatientStatus.inactive, PatientStatus.discharged}),
    PatientStatus.inactive: frozenset({PatientStatus.active}),
    PatientStatus.discharged: frozenset({PatientStatus.active}),
}


def validate_patient_transition(current, requested):
    current, requested = PatientStatus(current), PatientStatus(requested)
    if requested not in PATIENT_TRANSITIONS[current]:
        raise InvalidTransition("patient", current.value, requested.value)


# Keys allowed inside Patient.discharge_criteria
DISCHARGE_CRITERIA_KEYS = frozenset({
    "targetSessions", "targetDate", "autoDischarge",
    "dischargeReason", "dischargeDate", "dischargeMethod",
})


# User Management Models
class User(Base):
    """Clinicians, administrators and front-desk staff."""
    __tablename__ = "users"
    __table_args__ = (
        Index('idx_users_role_active', 'role', 'is_active'),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String(255), unique=True, index=True, nullable=False)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    role = Column(SQLAlchemyEnum(UserRole, name='user_role', values_callable=_enum_values), default=UserRole.staff, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    # Timestamps
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)
    deleted_at = Column(UTCDateTime, nullable=True)  # Soft delete

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def display_role(self) -> str:
        return ROLE_LABELS.get(self.role, str(self.role))

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Patient(Base):
    """Patient intake record; never hard-deleted."""
    __tablename__ = "patients"
    __table_args__ = (
        Index('idx_patients_status', 'status'),
        Index('idx_patients_clinical', 'assigned_clinical_id'),
        Index('idx_patients_name', 'last_name', 'first_name'),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)

    # Identity
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    date_of_birth = Column(Date, nullable=False)
    gender = Column(SQLAlchemyEnum(Gender, name='patient_gender', values_callable=_enum_values), nullable=False)

    # Contact
    email = Column(String(255), nullable=True)
    phone = Column(String(30), nullable=True)
    address = Column(Text, nullable=True)
    emergency_contact = Column(JSON, nullable=True)  # {name, relationship, phone}
    insurance = Column(String(100), nullable=True)
    reason_for_visit = Column(Text, nullable=True)
    hipaa_consent = Column(Boolean, default=False, nullable=False)

    # Status and assignment
    status = Column(SQLAlchemyEnum(PatientStatus, name='patient_status', values_callable=_enum_values), default=PatientStatus.active, nullable=False)
    assigned_clinical_id = Column(Uuid, ForeignKey("users.id"), nullable=True)

    # Owned sub-structure; the only place a discharge date may live
    discharge_criteria = Column(JSON, nullable=False, default=dict)

    # Metadata
    created_by = Column(Uuid, ForeignKey("users.id"), nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    assigned_clinician = relationship("User", foreign_keys=[assigned_clinical_id])
    appointments = relationship("Appointment", back_populates="patient")
    treatment_records = relationship("TreatmentRecord", back_populates="patient")
    discharge_requests = relationship("DischargeRequest", back_populates="patient")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def discharge_date(self):
        """Read-only view of discharge_criteria['dischargeDate']."""
        raw = (self.discharge_criteria or {}).get("dischargeDate")
        if not raw:
            return None
        return _DATETIME.validate_python(raw)


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        Index('idx_appointments_patient_date', 'patient_id', 'appointment_date'),
        Index('idx_appointments_clinical_date', 'clinical_id', 'appointment_date'),
        Index('idx_appointments_status_date', 'status', 'appointment_date'),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    patient_id = Column(Uuid, ForeignKey("patients.id"), nullable=False)
    clinical_id = Column(Uuid, ForeignKey("users.id"), nullable=False)  # Owning clinician
    created_by = Column(Uuid, ForeignKey("users.id"), nullable=False)

    # Timing and details
    appointment_date = Column(UTCDateTime, nullable=False)
    duration = Column(Integer, nullable=False, default=60)  # minutes
    type = Column(String(50), nullable=False)
    notes = Column(Text, nullable=True)

    # Status and workflow
    status = Column(SQLAlchemyEnum(AppointmentStatus, name='appointment_status', values_callable=_enum_values), default=AppointmentStatus.scheduled, nullable=False)
    status_changed_at = Column(UTCDateTime, nullable=True)

    # Metadata
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    patient = relationship("Patient", back_populates="appointments")
    clinician = relationship("User", foreign_keys=[clinical_id])
    treatment_records = relationship("TreatmentRecord", back_populates="appointment")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_APPOINTMENT_STATUSES


class TreatmentRecord(Base):
    """Documentation of a single treatment session."""
    __tablename__ = "treatment_records"
    __table_args__ = (
        Index('idx_records_patient_date', 'patient_id', 'session_date'),
        Index('idx_records_clinical_date', 'clinical_id', 'session_date'),
        Index('idx_records_appointment', 'appointment_id'),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    patient_id = Column(Uuid, ForeignKey("patients.id"), nullable=False)
    clinical_id = Column(Uuid, ForeignKey("users.id"), nullable=False)
    appointment_id = Column(Uuid, ForeignKey("appointments.id"), nullable=True)
    created_by = Column(Uuid, ForeignKey("users.id"), nullable=True)

    session_date = Column(UTCDateTime, nullable=False)
    session_type = Column(String(50), nullable=False)
    notes = Column(Text, nullable=False)

    # Structured clinical fields
    goals = Column(Text, nullable=True)
    interventions = Column(Text, nullable=True)
    progress = Column(Text, nullable=True)
    plan_for_next_session = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    patient = relationship("Patient", back_populates="treatment_records")
    appointment = relationship("Appointment", back_populates="treatment_records")


class DischargeRequest(Base):
    """Manual discharge request awaiting an authorized reviewer."""
    __tablename__ = "discharge_requests"
    __table_args__ = (
        Index('idx_discharge_requests_patient', 'patient_id', 'status'),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    patient_id = Column(Uuid, ForeignKey("patients.id"), nullable=False)
    requested_by = Column(Uuid, ForeignKey("users.id"), nullable=False)
    requested_at = Column(UTCDateTime, default=utcnow, nullable=False)
    reason = Column(Text, nullable=False)
    status = Column(SQLAlchemyEnum(DischargeRequestStatus, name='discharge_request_status', values_callable=_enum_values), default=DischargeRequestStatus.pending, nullable=False)
    reviewed_by = Column(Uuid, ForeignKey("users.id"), nullable=True)
    reviewed_at = Column(UTCDateTime, nullable=True)
    review_notes = Column(Text, nullable=True)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    patient = relationship("Patient", back_populates="discharge_requests")


class Notification(Base):
    """In-app notification for a staff member."""
    __tablename__ = "notifications"
    __table_args__ = (
        Index('idx_notifications_user_read', 'user_id', 'read'),
        Index('idx_notifications_user_created', 'user_id', 'created_at'),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False)
    type = Column(String(50), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    data = Column(JSON, nullable=True)
    read = Column(Boolean, default=False, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    expires_at = Column(UTCDateTime, nullable=True)


class AuditLog(Base):
    """HIPAA-oriented audit entry; rows are only ever inserted."""
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index('idx_audit_user_date', 'user_id', 'timestamp'),
        Index('idx_audit_action_date', 'action', 'timestamp'),
        Index('idx_audit_resource', 'resource_type', 'resource_id', 'timestamp'),
    )

    # Integer sequence keeps append order when timestamps tie
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    action = Column(String(40), nullable=False)
    resource_type = Column(String(40), nullable=False)
    resource_id = Column(String(64), nullable=False)
    details = Column(JSON, nullable=True)
    timestamp = Column(UTCDateTime, default=utcnow, nullable=False, index=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
    session_id = Column(String(255), nullable=True)


# ==================== MODEL-LEVEL INVARIANTS ====================

@event.listens_for(Patient, "before_insert")
@event.listens_for(Patient, "before_update")
def _check_discharge_invariant(mapper, connection, target):
    criteria = target.discharge_criteria or {}
    unknown = set(criteria) - DISCHARGE_CRITERIA_KEYS
    if unknown:
        raise ValidationError(
            f"Unknown discharge criteria fields: {sorted(unknown)}",
            {"patient_id": str(target.id)},
        )
    has_date = bool(criteria.get("dischargeDate"))
    if target.status == PatientStatus.discharged and not has_date:
        raise ValidationError(
            "A discharged patient must have dischargeCriteria.dischargeDate set",
            {"patient_id": str(target.id)},
        )
    if target.status != PatientStatus.discharged and has_date:
        raise ValidationError(
            "dischargeCriteria.dischargeDate may only be set while the patient is discharged",
            {"patient_id": str(target.id)},
        )


@event.listens_for(AuditLog, "before_update")
def _reject_audit_update(mapper, connection, target):
    raise AuditIntegrityError(f"Audit entry {target.id} is append-only and cannot be updated")


@event.listens_for(AuditLog, "before_delete")
def _reject_audit_delete(mapper, connection, target):
    raise AuditIntegrityError(f"Audit entry {target.id} is append-only and cannot be deleted")


@event.listens_for(Session, "do_orm_execute")
def _reject_bulk_audit_writes(orm_execute_state):
    if not (orm_execute_state.is_update or orm_execute_state.is_delete):
        return
    mapper = orm_execute_state.bind_mapper
    if mapper is not None and mapper.class_ is AuditLog:
        raise AuditIntegrityError("Bulk UPDATE/DELETE against audit_logs is not permitted")
