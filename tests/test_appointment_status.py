# tests/test_appointment_status.py
import uuid
from datetime import timedelta

import pytest

from mindtrack import crud, models
from mindtrack.errors import Forbidden, InvalidTransition, ReferenceNotFound, ValidationError
from mindtrack.services import appointment_status
from mindtrack.services.appointment_status import Status

from conftest import NOW, audit_entries


@pytest.mark.parametrize("current,new,valid", [
    ("scheduled", "completed", True),
    ("scheduled", "cancelled", True),
    ("scheduled", "no-show", True),
    ("scheduled", "overdue", True),
    ("overdue", "completed", True),
    ("overdue", "no-show", True),
    ("overdue", "scheduled", False),
    ("completed", "cancelled", False),
    ("no-show", "completed", False),
    ("cancelled", "scheduled", False),
])
def test_transition_table(current, new, valid):
    assert appointment_status.is_valid_status_transition(current, new) is valid


@pytest.mark.parametrize("terminal", ["completed", "cancelled", "no-show"])
def test_terminal_states_reject_every_move(terminal):
    for target in Status:
        with pytest.raises(InvalidTransition):
            appointment_status.validate_transition(terminal, target)


def test_automatic_rule_by_elapsed_time(db, patient, make_appointment):
    appointment = make_appointment(patient, when=NOW)

    assert appointment_status.automatic_status_for(appointment, NOW - timedelta(hours=1)) is None
    assert appointment_status.automatic_status_for(appointment, NOW + timedelta(hours=10))[0] == Status.overdue
    assert appointment_status.automatic_status_for(appointment, NOW + timedelta(hours=24))[0] == Status.overdue
    assert appointment_status.automatic_status_for(appointment, NOW + timedelta(hours=25))[0] == Status.no_show


def test_evaluator_marks_overdue_then_no_show(db, patient, make_appointment):
    appointment = make_appointment(patient, when=NOW)

    updated = appointment_status.evaluate_appointment(db, appointment, now=NOW + timedelta(hours=10))
    assert updated.status == Status.overdue

    updated = appointment_status.evaluate_appointment(db, updated, now=NOW + timedelta(hours=25))
    assert updated.status == Status.no_show

    entries = audit_entries(db, "appointment", appointment.id, "update")
    assert [(e.details["oldStatus"], e.details["newStatus"]) for e in entries] == [
        ("scheduled", "overdue"), ("overdue", "no-show"),
    ]
    assert all(e.details["automatic"] is True for e in entries)
    assert all(e.user_id == "system" for e in entries)


def test_scheduled_straight_to_no_show(db, patient, make_appointment):
    appointment = make_appointment(patient, when=NOW)
    updated = appointment_status.evaluate_appointment(db, appointment, now=NOW + timedelta(hours=25))
    assert updated.status == Status.no_show
    assert updated.status_changed_at == NOW + timedelta(hours=25)


def test_future_appointment_is_left_alone(db, patient, make_appointment):
    appointment = make_appointment(patient, when=NOW + timedelta(days=2))
    before = len(audit_entries(db))

    assert appointment_status.evaluate_appointment(db, appointment, now=NOW).status == Status.scheduled
    assert len(audit_entries(db)) == before


def test_manual_change_ignores_elapsed_time(db, patient, make_appointment, clinician):
    appointment = make_appointment(patient, when=NOW - timedelta(days=5))
    updated = appointment_status.transition_appointment(
        db, appointment.id, "completed", actor=clinician, reason="Session held", now=NOW,
    )
    assert updated.status == Status.completed

    entry = audit_entries(db, "appointment", appointment.id, "update")[-1]
    assert entry.user_id == str(clinician.id)
    assert entry.details == {
        "oldStatus": "scheduled", "newStatus": "completed", "reason": "Session held", "automatic": False,
    }


def test_completed_cannot_be_cancelled(db, patient, make_appointment, clinician):
    appointment = make_appointment(patient)
    appointment_status.transition_appointment(db, appointment.id, Status.completed, actor=clinician, now=NOW)
    before = len(audit_entries(db))

    with pytest.raises(InvalidTransition):
        appointment_status.transition_appointment(db, appointment.id, Status.cancelled, actor=clinician, now=NOW)

    db.expire_all()
    assert db.get(models.Appointment, appointment.id).status == Status.completed
    assert len(audit_entries(db)) == before


def test_unknown_status_and_reference(db, patient, make_appointment, clinician):
    appointment = make_appointment(patient)
    with pytest.raises(ValidationError):
        appointment_status.transition_appointment(db, appointment.id, "done", actor=clinician)
    with pytest.raises(ReferenceNotFound):
        appointment_status.transition_appointment(db, "nope", "completed", actor=clinician)


def test_admin_correction_reopens_terminal_state(db, patient, make_appointment, clinician, admin):
    appointment = make_appointment(patient)
    appointment_status.transition_appointment(db, appointment.id, "no-show", actor=clinician, now=NOW)

    with pytest.raises(Forbidden):
        appointment_status.correct_appointment_status(db, appointment.id, "completed", clinician, "patient came late")
    with pytest.raises(ValidationError):
        appointment_status.correct_appointment_status(db, appointment.id, "completed", admin, "")
    with pytest.raises(InvalidTransition):
        appointment_status.correct_appointment_status(db, appointment.id, "no-show", admin, "no change")

    corrected = appointment_status.correct_appointment_status(
        db, appointment.id, "completed", admin, "patient came late", now=NOW,
    )
    assert corrected.status == Status.completed
    entry = audit_entries(db, "appointment", appointment.id, "update")[-1]
    assert entry.details["correction"] is True
    assert entry.details["oldStatus"] == "no-show"


def test_recommendation_has_no_side_effects(db, patient, make_appointment):
    appointment = make_appointment(patient, when=NOW - timedelta(hours=30))
    before = len(audit_entries(db))

    recommendation = appointment_status.get_status_recommendation(appointment, now=NOW)
    assert recommendation.should_update
    assert recommendation.recommended_status == Status.no_show
    assert appointment.status == Status.scheduled
    assert len(audit_entries(db)) == before

    future = make_appointment(patient, when=NOW + timedelta(days=1))
    assert not appointment_status.get_status_recommendation(future, now=NOW).should_update


def test_read_path_applies_the_rule(db, patient, make_appointment, clinician):
    appointment = make_appointment(patient, when=NOW)
    read = crud.get_appointment(db, appointment.id, actor=clinician, now=NOW + timedelta(hours=3))
    assert read.status == Status.overdue


def test_list_path_evaluates_stale_appointments(db, patient, make_appointment):
    stale = make_appointment(patient, when=NOW - timedelta(days=2))
    upcoming = make_appointment(patient, when=NOW + timedelta(days=2))

    listed = crud.get_appointments(db, patient_id=str(patient.id), now=NOW)
    statuses = {a.id: a.status for a in listed}
    assert statuses == {stale.id: Status.no_show, upcoming.id: Status.scheduled}

    no_shows = crud.get_appointments(db, status=Status.no_show, now=NOW)
    assert [a.id for a in no_shows] == [stale.id]


def test_list_path_promotes_overdue_past_the_threshold(db, patient, make_appointment):
    appointment = make_appointment(patient, when=NOW - timedelta(hours=2))
    assert crud.get_appointment(db, appointment.id, now=NOW).status == Status.overdue

    later = NOW + timedelta(hours=30)
    listed = crud.get_appointments(db, patient_id=patient.id, now=later)
    assert [a.status for a in listed] == [Status.no_show]

    updates = audit_entries(db, "appointment", appointment.id, "update")
    assert [(e.details["oldStatus"], e.details["newStatus"]) for e in updates] == [
        ("scheduled", "overdue"), ("overdue", "no-show"),
    ]


def test_rescheduling_overdue_appointment_makes_it_scheduled(db, patient, make_appointment, clinician):
    appointment = make_appointment(patient, when=NOW - timedelta(hours=2))
    appointment_status.evaluate_appointment(db, appointment, now=NOW)
    assert appointment.status == Status.overdue

    new_time = NOW + timedelta(days=2)
    updated = crud.update_appointment(
        db, appointment.id, {"appointment_date": new_time}, actor=clinician, now=NOW,
    )
    assert updated.status == Status.scheduled
    assert updated.version == 3

    entry = audit_entries(db, "appointment", appointment.id, "update")[-1]
    assert entry.details["oldStatus"] == "overdue"
    assert entry.details["newStatus"] == "scheduled"
    assert "appointment_date" in entry.details["changedFields"]

    # still in the future, so nothing moves it back
    assert appointment_status.automatic_status_for(updated, NOW + timedelta(days=1)) is None


def test_moving_overdue_appointment_within_the_past_keeps_it_overdue(db, patient, make_appointment, clinician):
    appointment = make_appointment(patient, when=NOW - timedelta(hours=2))
    appointment_status.evaluate_appointment(db, appointment, now=NOW)

    updated = crud.update_appointment(
        db, appointment.id, {"appointment_date": NOW - timedelta(hours=1)}, actor=clinician, now=NOW,
    )
    assert updated.status == Status.overdue
    assert "oldStatus" not in audit_entries(db, "appointment", appointment.id, "update")[-1].details


def test_status_evaluator_run_report(db, patient, make_appointment, clinician):
    late = make_appointment(patient, when=NOW - timedelta(hours=5))
    missed = make_appointment(patient, when=NOW - timedelta(hours=48))
    done = make_appointment(patient, when=NOW - timedelta(hours=72))
    appointment_status.transition_appointment(db, done.id, "completed", actor=clinician, now=NOW)
    make_appointment(patient, when=NOW + timedelta(hours=5))

    report = appointment_status.run_status_evaluator(db, now=NOW)

    assert report.examined == 2
    assert set(report.changed) == {str(late.id), str(missed.id)}
    assert report.skipped == []
    assert db.get(models.Appointment, late.id).status == Status.overdue
    assert db.get(models.Appointment, missed.id).status == Status.no_show

    second = appointment_status.run_status_evaluator(db, now=NOW)
    assert second.examined == 1
    assert second.changed == []


def test_evaluator_is_independent_of_identifier_encoding(db, patient, make_appointment):
    appointment = make_appointment(patient, when=NOW)
    updated = appointment_status.transition_appointment(
        db, {"$oid": str(appointment.id)}, "overdue", automatic=True, now=NOW + timedelta(hours=1),
    )
    assert updated.id == appointment.id
    assert uuid.UUID(audit_entries(db, "appointment", appointment.id, "update")[-1].resource_id) == appointment.id
