# mindtrack/services/appointment_status.py
"""Appointment lifecycle: legal transitions, the time-based evaluator and admin correction."""
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import structlog
from sqlalchemy.orm import Session

from .. import models, schemas, storage
from ..compliance_logger import compliance_logger
from ..config import get_settings
from ..errors import ConflictError, CRUDError, Forbidden, InvalidTransition, ValidationError
from ..references import require_identifier
from ..storage import unit_of_work

logger = structlog.get_logger(__name__)

Status = models.AppointmentStatus

TRANSITIONS = {
    Status.scheduled: frozenset({Status.completed, Status.cancelled, Status.no_show, Status.overdue}),
    Status.overdue: frozenset({Status.completed, Status.cancelled, Status.no_show}),
}


def _as_utc(moment: Optional[datetime]) -> datetime:
    if moment is None:
        return models.utcnow()
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def is_valid_status_transition(current: Any, new: Any) -> bool:
    current, new = Status(current), Status(new)
    return new in TRANSITIONS.get(current, frozenset())


def validate_transition(current: Any, new: Any) -> None:
    current, new = Status(current), Status(new)
    if current in models.TERMINAL_APPOINTMENT_STATUSES:
        raise InvalidTransition(
            "appointment", current.value, new.value,
            f"Appointment is {current.value}; terminal appointments only change through administrative correction",
        )
    if not is_valid_status_transition(current, new):
        raise InvalidTransition("appointment", current.value, new.value)


def automatic_status_for(appointment: models.Appointment, now: Optional[datetime] = None
                         ) -> Optional[Tuple[models.AppointmentStatus, str]]:
    """The status the time-based evaluator would move this appointment to, or None."""
    now = _as_utc(now)
    scheduled_for = _as_utc(appointment.appointment_date)
    if appointment.status not in TRANSITIONS or scheduled_for >= now:
        return None

    threshold = get_settings().no_show_after_hours
    hours_elapsed = (now - scheduled_for).total_seconds() / 3600
    if hours_elapsed > threshold:
        return Status.no_show, f"Automatically marked as no-show ({threshold}h after the appointment time)"
    if appointment.status == Status.scheduled:
        return Status.overdue, "Appointment is overdue (date has passed)"
    return None


def reschedule_patch(appointment: models.Appointment, new_date: Optional[datetime],
                     now: Optional[datetime] = None) -> Dict[str, Any]:
    """Status fields to apply when an overdue appointment is moved to a future time."""
    now = _as_utc(now)
    if appointment.status != Status.overdue or new_date is None or _as_utc(new_date) <= now:
        return {}
    return {"status": Status.scheduled, "status_changed_at": now}


def get_status_recommendation(appointment: models.Appointment,
                              now: Optional[datetime] = None) -> schemas.StatusRecommendation:
    """Side-effect free preview for the UI."""
    now = _as_utc(now)
    current = Status(appointment.status)
    if current in models.TERMINAL_APPOINTMENT_STATUSES:
        return schemas.StatusRecommendation(
            current_status=current, recommended_status=current, should_update=False, reason="Status is final"
        )

    automatic = automatic_status_for(appointment, now)
    if automatic is not None:
        recommended, reason = automatic
        return schemas.StatusRecommendation(
            current_status=current, recommended_status=recommended, should_update=True, reason=reason
        )

    if appointment.appointment_date.date() == now.date():
        reason = "Appointment is scheduled for today"
    elif current == Status.overdue:
        reason = "Appointment is overdue but still within the no-show window"
    else:
        reason = "Appointment is in the future"
    return schemas.StatusRecommendation(
        current_status=current, recommended_status=current, should_update=False, reason=reason
    )


# ==================== TRANSITIONS ====================

def transition_appointment(
    db: Session,
    appointment_id: Any,
    new_status: Any,
    actor: Optional[models.User] = None,
    reason: Optional[str] = None,
    context: Optional[schemas.AuditContext] = None,
    expected_version: Optional[int] = None,
    automatic: bool = False,
    now: Optional[datetime] = None,
) -> models.Appointment:
    """Apply one status change and its audit entry as a single unit of work.

    Manual changes (``automatic=False``) apply regardless of elapsed time. A concurrent
    writer that got there first is a ConflictError, whether the caller passes
    ``expected_version`` or relies on the version its session last read.
    """
    try:
        new_status = Status(new_status)
    except ValueError as e:
        raise ValidationError(f"Unknown appointment status '{new_status}'") from e
    identifier = require_identifier("appointment", appointment_id)
    now = _as_utc(now)

    with unit_of_work(db):
        appointment, old_status = storage.status_transition(
            db, models.Appointment, identifier, new_status,
            expected_version=expected_version,
            validator=validate_transition,
            extra={"status_changed_at": now},
        )
        compliance_logger.record(
            db,
            actor.id if actor is not None else None,
            models.AuditAction.UPDATE,
            models.ResourceType.appointment,
            appointment.id,
            {
                "oldStatus": Status(old_status).value,
                "newStatus": new_status.value,
                "reason": reason,
                "automatic": automatic,
            },
            context,
        )

    logger.info(
        "appointment_status_changed",
        appointment_id=str(appointment.id),
        old_status=Status(old_status).value,
        new_status=new_status.value,
        automatic=automatic,
    )
    return appointment


def correct_appointment_status(
    db: Session,
    appointment_id: Any,
    new_status: Any,
    actor: models.User,
    reason: str,
    context: Optional[schemas.AuditContext] = None,
    now: Optional[datetime] = None,
) -> models.Appointment:
    """Administrative correction; the only way out of a terminal state."""
    if actor is None or actor.role != models.UserRole.admin:
        raise Forbidden("Only administrators may correct appointment status")
    if not reason or not reason.strip():
        raise ValidationError("A reason is required for a status correction")
    new_status = Status(new_status)

    def differs(current, requested):
        if Status(current) == requested:
            raise InvalidTransition("appointment", Status(current).value, requested.value,
                                    "Appointment already has that status")

    with unit_of_work(db):
        appointment, old_status = storage.status_transition(
            db, models.Appointment, require_identifier("appointment", appointment_id), new_status,
            validator=differs,
            extra={"status_changed_at": _as_utc(now)},
        )
        compliance_logger.record(
            db, actor.id, models.AuditAction.UPDATE, models.ResourceType.appointment, appointment.id,
            {
                "oldStatus": Status(old_status).value,
                "newStatus": new_status.value,
                "reason": reason,
                "automatic": False,
                "correction": True,
            },
            context,
        )
    logger.warning("appointment_status_corrected", appointment_id=str(appointment.id), admin_id=str(actor.id))
    return appointment


# ==================== AUTOMATIC EVALUATOR ====================

def evaluate_appointment(db: Session, appointment: models.Appointment,
                         now: Optional[datetime] = None) -> models.Appointment:
    """Apply the time-based rule to one appointment. Raises if the record moved underneath us."""
    automatic = automatic_status_for(appointment, now)
    if automatic is None:
        return appointment
    new_status, reason = automatic
    return transition_appointment(
        db, appointment.id, new_status,
        reason=reason, expected_version=appointment.version, automatic=True, now=now,
    )


def evaluate_on_read(db: Session, appointment: models.Appointment,
                     now: Optional[datetime] = None) -> models.Appointment:
    """Read-path evaluation: a lost race with a manual change is logged, not raised."""
    try:
        return evaluate_appointment(db, appointment, now=now)
    except (ConflictError, InvalidTransition) as e:
        logger.warning("status_evaluation_skipped", appointment_id=str(appointment.id), issue=e.message)
        return storage.require(db, models.Appointment, appointment.id)


def run_status_evaluator(db: Session, now: Optional[datetime] = None) -> schemas.EvaluatorRunReport:
    """Periodic sweep over scheduled/overdue appointments in the past. One unit of work per appointment."""
    now = _as_utc(now)
    report = schemas.EvaluatorRunReport(checked_at=now)

    candidates = (
        db.query(models.Appointment)
        .filter(
            models.Appointment.status.in_(list(TRANSITIONS)),
            models.Appointment.appointment_date < now,
        )
        .order_by(models.Appointment.appointment_date)
        .all()
    )
    for appointment in candidates:
        report.examined += 1
        appointment_id = str(appointment.id)
        try:
            before = appointment.status
            updated = evaluate_appointment(db, appointment, now=now)
            if updated.status != before:
                report.changed.append(appointment_id)
        except CRUDError as e:
            logger.warning("status_evaluation_skipped", appointment_id=appointment_id, issue=e.message)
            report.skipped.append(schemas.SkippedRecord(resource_id=appointment_id, issue=e.message))

    logger.info(
        "status_evaluator_finished",
        examined=report.examined,
        changed=len(report.changed),
        skipped=len(report.skipped),
    )
    return report
