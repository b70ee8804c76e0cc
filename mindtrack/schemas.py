# mindtrack/schemas.py
import uuid
from datetime import datetime, date
from typing import ClassVar, List, Optional, Dict, Any, Union

from pydantic import BaseModel, Field, EmailStr, field_validator, model_validator

from .models import (
    AppointmentStatus, AuditAction, DischargeMethod, DischargeRequestStatus,
    Gender, PatientStatus, ResourceType, UserRole,
)

# Raw cross-entity reference as it arrives from callers; normalized by mindtrack.references
Reference = Union[uuid.UUID, str]


# --- Base Schemas ---
class BaseSchema(BaseModel):
    class Config:
        from_attributes = True


class StrictInput(BaseModel):
    """Input payloads reject unknown fields instead of silently dropping them.

    Patch schemas list the fields a caller may omit but never send as null
    in ``not_clearable``.
    """

    not_clearable: ClassVar[tuple] = ()

    class Config:
        extra = "forbid"

    @model_validator(mode='after')
    def reject_cleared_fields(self):
        cleared = sorted(
            name for name in self.not_clearable
            if name in self.model_fields_set and getattr(self, name) is None
        )
        if cleared:
            raise ValueError(f"{', '.join(cleared)} cannot be cleared")
        return self


def _date_not_in_future(v: Optional[date]) -> Optional[date]:
    if v is not None and v > date.today():
        raise ValueError("date_of_birth cannot be in the future")
    return v


# --- Discharge Criteria ---
class DischargeCriteria(BaseModel):
    """The owned sub-structure stored in Patient.discharge_criteria (camelCase on disk)."""

    target_sessions: int = Field(12, ge=1, alias="targetSessions")
    target_date: Optional[date] = Field(None, alias="targetDate")
    auto_discharge: bool = Field(False, alias="autoDischarge")
    discharge_reason: Optional[str] = Field(None, alias="dischargeReason")
    discharge_date: Optional[datetime] = Field(None, alias="dischargeDate")
    discharge_method: Optional[DischargeMethod] = Field(None, alias="dischargeMethod")

    class Config:
        populate_by_name = True
        extra = "forbid"

    def to_storage(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class DischargeCriteriaSettings(StrictInput):
    """Clinician-editable part of the criteria; discharge outcome fields are not accepted here."""

    target_sessions: Optional[int] = Field(None, ge=1)
    target_date: Optional[date] = None
    auto_discharge: Optional[bool] = None


# --- User Schemas ---
class UserCreate(StrictInput):
    email: EmailStr
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    role: UserRole = UserRole.staff

    @field_validator("role", mode="before")
    @classmethod
    def parse_legacy_role(cls, v):
        return UserRole(v) if isinstance(v, str) else v


class UserResponse(BaseSchema):
    id: uuid.UUID
    email: str
    first_name: str
    last_name: str
    role: UserRole
    is_active: bool
    created_at: datetime
    deleted_at: Optional[datetime] = None


# --- Patient Schemas ---
class EmergencyContact(BaseModel):
    name: str = Field(..., min_length=1)
    relationship: Optional[str] = None
    phone: str = Field(..., min_length=1)


class PatientBase(StrictInput):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    date_of_birth: date
    gender: Gender
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, max_length=30)
    address: Optional[str] = None
    emergency_contact: Optional[EmergencyContact] = None
    insurance: Optional[str] = Field(None, max_length=100)
    reason_for_visit: Optional[str] = None
    hipaa_consent: bool = False

    @field_validator('email', mode='before')
    @classmethod
    def empty_str_to_none(cls, v):
        if v == "":
            return None
        return v

    @field_validator('date_of_birth')
    @classmethod
    def not_in_future(cls, v):
        return _date_not_in_future(v)


class PatientCreate(PatientBase):
    assigned_clinical_id: Optional[Reference] = None
    discharge_criteria: Optional[DischargeCriteriaSettings] = None


class PatientUpdate(StrictInput):
    # status and discharge fields change only through lifecycle operations
    not_clearable: ClassVar[tuple] = ("first_name", "last_name", "date_of_birth", "gender")

    first_name: Optional[str] = Field(None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, min_length=1, max_length=100)
    date_of_birth: Optional[date] = None
    gender: Optional[Gender] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, max_length=30)
    address: Optional[str] = None
    emergency_contact: Optional[EmergencyContact] = None
    insurance: Optional[str] = Field(None, max_length=100)
    reason_for_visit: Optional[str] = None
    hipaa_consent: Optional[bool] = None
    assigned_clinical_id: Optional[Reference] = None
    discharge_criteria: Optional[DischargeCriteriaSettings] = None

    @field_validator('date_of_birth')
    @classmethod
    def not_in_future(cls, v):
        return _date_not_in_future(v)


class PatientResponse(BaseSchema):
    id: uuid.UUID
    first_name: str
    last_name: str
    date_of_birth: date
    gender: Gender
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    emergency_contact: Optional[Dict[str, Any]] = None
    insurance: Optional[str] = None
    reason_for_visit: Optional[str] = None
    hipaa_consent: bool
    status: PatientStatus
    assigned_clinical_id: Optional[uuid.UUID] = None
    discharge_criteria: Dict[str, Any] = {}
    created_by: Optional[uuid.UUID] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    version: int


class PatientNameMatch(BaseModel):
    """Diagnostic candidate only; never used to link records."""

    patient_id: uuid.UUID
    first_name: str
    last_name: str
    status: PatientStatus
    diagnostic: bool = True


# --- Appointment Schemas ---
class AppointmentCreate(StrictInput):
    patient_id: Reference
    clinical_id: Reference
    appointment_date: datetime
    duration: int = Field(60, gt=0, le=480)
    type: str = Field(..., min_length=1, max_length=50)
    notes: Optional[str] = None


class AppointmentUpdate(StrictInput):
    # status goes through the status machine, not a field patch
    not_clearable: ClassVar[tuple] = ("appointment_date", "duration", "type")

    appointment_date: Optional[datetime] = None
    duration: Optional[int] = Field(None, gt=0, le=480)
    type: Optional[str] = Field(None, min_length=1, max_length=50)
    notes: Optional[str] = None


class AppointmentStatusChange(StrictInput):
    status: AppointmentStatus
    reason: Optional[str] = None
    expected_version: Optional[int] = None


class AppointmentCorrection(StrictInput):
    status: AppointmentStatus
    reason: str = Field(..., min_length=3)


class AppointmentRelink(StrictInput):
    patient_id: Reference
    reason: str = Field(..., min_length=3)


class AppointmentResponse(BaseSchema):
    id: uuid.UUID
    patient_id: uuid.UUID
    clinical_id: uuid.UUID
    created_by: uuid.UUID
    appointment_date: datetime
    duration: int
    type: str
    status: AppointmentStatus
    notes: Optional[str] = None
    status_changed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    version: int


class StatusRecommendation(BaseModel):
    current_status: AppointmentStatus
    recommended_status: AppointmentStatus
    should_update: bool
    reason: str


class OrphanedAppointment(BaseModel):
    appointment_id: uuid.UUID
    patient_id: Optional[uuid.UUID]
    clinical_id: Optional[uuid.UUID]
    status: AppointmentStatus
    issue: str  # e.g. "Clinician has been deleted"


# --- Treatment Record Schemas ---
class TreatmentRecordCreate(StrictInput):
    patient_id: Reference
    clinical_id: Reference
    appointment_id: Optional[Reference] = None
    session_date: datetime
    session_type: str = Field(..., min_length=1, max_length=50)
    notes: str = Field(..., min_length=1)
    goals: Optional[str] = None
    interventions: Optional[str] = None
    progress: Optional[str] = None
    plan_for_next_session: Optional[str] = None


class TreatmentRecordUpdate(StrictInput):
    not_clearable: ClassVar[tuple] = ("session_date", "session_type", "notes")

    session_date: Optional[datetime] = None
    session_type: Optional[str] = Field(None, min_length=1, max_length=50)
    notes: Optional[str] = Field(None, min_length=1)
    goals: Optional[str] = None
    interventions: Optional[str] = None
    progress: Optional[str] = None
    plan_for_next_session: Optional[str] = None


class TreatmentRecordResponse(BaseSchema):
    id: uuid.UUID
    patient_id: uuid.UUID
    clinical_id: uuid.UUID
    appointment_id: Optional[uuid.UUID] = None
    session_date: datetime
    session_type: str
    notes: str
    goals: Optional[str] = None
    interventions: Optional[str] = None
    progress: Optional[str] = None
    plan_for_next_session: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    version: int


# --- Discharge Workflow Schemas ---
class DischargeRequestCreate(StrictInput):
    reason: str = Field(..., min_length=3)


class DischargeRequestReview(StrictInput):
    approve: bool
    review_notes: Optional[str] = None


class DischargeRequestResponse(BaseSchema):
    id: uuid.UUID
    patient_id: uuid.UUID
    requested_by: uuid.UUID
    requested_at: datetime
    reason: str
    status: DischargeRequestStatus
    reviewed_by: Optional[uuid.UUID] = None
    reviewed_at: Optional[datetime] = None
    review_notes: Optional[str] = None


class ReactivationRequest(StrictInput):
    reason: str = Field(..., min_length=3)


class DischargeEligibility(BaseModel):
    patient_id: uuid.UUID
    should_discharge: bool
    reason: str
    criteria: List[str] = []
    completed_sessions: int
    target_sessions: int
    auto_discharge: bool
    target_date_reached: bool = False


class DischargeEvaluation(BaseModel):
    patient_id: uuid.UUID
    status: PatientStatus
    discharged: bool
    changed: bool
    discharge_date: Optional[datetime] = None
    eligibility: Optional[DischargeEligibility] = None


class CompletionBreakdown(BaseModel):
    manually_discharged: int
    auto_discharged: int
    eligible_for_discharge: int


class TreatmentCompletionRate(BaseModel):
    rate: float
    discharged_count: int
    total_count: int
    breakdown: CompletionBreakdown


# --- Evaluator Reports ---
class SkippedRecord(BaseModel):
    resource_id: str
    issue: str


class EvaluatorRunReport(BaseModel):
    checked_at: datetime
    examined: int = 0
    changed: List[str] = []
    skipped: List[SkippedRecord] = []


# --- Audit Schemas ---
class AuditContext(BaseModel):
    """Request metadata; every field may be absent outside HTTP."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None


class AuditQueryContext(BaseModel):
    """Who is asking for history; checked before any entries are returned."""

    user_id: str
    role: UserRole

    @field_validator("user_id", mode="before")
    @classmethod
    def stringify(cls, v):
        return str(v)


class AuditLogFilter(BaseModel):
    user_id: Optional[str] = None
    action: Optional[AuditAction] = None
    resource_type: Optional[ResourceType] = None
    resource_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    limit: int = Field(100, ge=1, le=1000)
    offset: int = Field(0, ge=0)

    @model_validator(mode='after')
    def check_date_range(self):
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError('start_date must not be after end_date')
        return self


class AuditLogResponse(BaseSchema):
    id: int
    user_id: str
    action: str
    resource_type: str
    resource_id: str
    details: Optional[Dict[str, Any]] = None
    timestamp: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None


class AuditSummary(BaseModel):
    days: int
    total_logs: int
    by_action: Dict[str, int]
    by_user: Dict[str, int]
    recent_activity: List[AuditLogResponse]


# --- Notification Schemas ---
class NotificationResponse(BaseSchema):
    id: uuid.UUID
    user_id: uuid.UUID
    type: str
    title: str
    message: str
    data: Optional[Dict[str, Any]] = None
    read: bool
    created_at: datetime


# --- Dashboard Schemas ---
class DashboardStatsResponse(BaseModel):
    total_patients: int
    patients_by_status: Dict[str, int]
    appointments_by_status: Dict[str, int]
    appointments_today: int
    appointments_this_month: int
    completed_appointments: int
    upcoming_appointments: int
    appointments_needing_review: int
    treatment_records_this_month: int
    completion_rate: TreatmentCompletionRate
