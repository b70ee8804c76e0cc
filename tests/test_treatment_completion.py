# tests/test_treatment_completion.py
from datetime import date, timedelta

import pytest

from mindtrack import crud, models
from mindtrack.errors import ConflictError, Forbidden, InvalidTransition, ValidationError
from mindtrack.services import appointment_status, notification_service, treatment_completion

from conftest import NOW, audit_entries


def _sessions(make_record, patient, count):
    for day in range(count):
        make_record(patient, session_date=NOW - timedelta(days=count - day))


def test_session_count_excludes_cancelled_and_no_show(db, patient, make_appointment, make_record, clinician):
    held = make_appointment(patient)
    cancelled = make_appointment(patient)
    missed = make_appointment(patient)
    make_record(patient, held)
    make_record(patient, cancelled)
    make_record(patient, missed)
    make_record(patient)
    appointment_status.transition_appointment(db, held.id, "completed", actor=clinician, now=NOW)
    appointment_status.transition_appointment(db, cancelled.id, "cancelled", actor=clinician, now=NOW)
    appointment_status.transition_appointment(db, missed.id, "no-show", actor=clinician, now=NOW)

    assert treatment_completion.count_completed_sessions(db, patient.id) == 2


def test_eligibility_below_target(db, make_patient, make_record):
    patient = make_patient(auto_discharge=True)
    _sessions(make_record, patient, 11)

    eligibility = treatment_completion.check_for_auto_discharge(db, patient.id, now=NOW)
    assert not eligibility.should_discharge
    assert eligibility.completed_sessions == 11
    assert eligibility.target_sessions == 12


def test_twelfth_session_discharges_automatically(db, make_patient, make_record, clinician):
    patient = make_patient(auto_discharge=True)
    _sessions(make_record, patient, 11)
    assert not treatment_completion.evaluate_patient_discharge(db, patient.id, now=NOW).changed

    make_record(patient, session_date=NOW)
    outcome = treatment_completion.evaluate_patient_discharge(db, patient.id, now=NOW)

    assert outcome.changed and outcome.discharged
    assert outcome.status == models.PatientStatus.discharged
    assert outcome.discharge_date == NOW
    criteria = db.get(models.Patient, patient.id).discharge_criteria
    assert criteria["dischargeMethod"] == "automatic"
    assert criteria["dischargeReason"] == "Session target reached"

    entry = audit_entries(db, "patient", patient.id, "update")[-1]
    assert entry.user_id == "system"
    assert entry.details["newStatus"] == "discharged"
    assert entry.details["completedSessions"] == 12

    notes = notification_service.list_for_user(db, clinician.id)
    assert [n.type for n in notes] == ["treatment_completion"]


def test_discharge_is_idempotent(db, make_patient, make_record):
    patient = make_patient(auto_discharge=True, target_sessions=2)
    _sessions(make_record, patient, 2)
    first = treatment_completion.evaluate_patient_discharge(db, patient.id, now=NOW)
    updates = len(audit_entries(db, "patient", patient.id, "update"))

    again = treatment_completion.evaluate_patient_discharge(db, patient.id, now=NOW + timedelta(days=7))

    assert not again.changed
    assert again.discharge_date == first.discharge_date == NOW
    assert len(audit_entries(db, "patient", patient.id, "update")) == updates


def test_eligible_without_auto_discharge_stays_active(db, make_patient, make_record):
    patient = make_patient(target_sessions=2)
    _sessions(make_record, patient, 3)

    eligibility = treatment_completion.check_for_auto_discharge(db, patient.id, now=NOW)
    assert eligibility.should_discharge and not eligibility.auto_discharge

    outcome = treatment_completion.evaluate_patient_discharge(db, patient.id, now=NOW)
    assert not outcome.changed
    assert db.get(models.Patient, patient.id).status == models.PatientStatus.active


def test_target_date_is_reported_but_not_a_trigger(db, make_patient, make_record, patient):
    crud.update_patient(db, patient.id, {"discharge_criteria": {"target_date": date(2024, 6, 1), "auto_discharge": True}})
    eligibility = treatment_completion.check_for_auto_discharge(db, patient.id, now=NOW)

    assert eligibility.target_date_reached
    assert not eligibility.should_discharge
    assert "Reached target date: 2024-06-01" in eligibility.criteria
    assert not treatment_completion.evaluate_patient_discharge(db, patient.id, now=NOW).changed


def test_inactive_patient_is_on_hold(db, make_patient, make_record, clinician):
    patient = make_patient(auto_discharge=True, target_sessions=1)
    make_record(patient)
    crud.archive_patient(db, patient.id, actor=clinician)

    eligibility = treatment_completion.check_for_auto_discharge(db, patient.id, now=NOW)
    assert not eligibility.should_discharge
    assert "on hold" in eligibility.reason


def test_override_requires_admin_and_reason(db, make_patient, make_record, clinician, admin):
    patient = make_patient(auto_discharge=True, target_sessions=1)
    make_record(patient)
    treatment_completion.evaluate_patient_discharge(db, patient.id, now=NOW)

    with pytest.raises(Forbidden):
        treatment_completion.evaluate_patient_discharge(
            db, patient.id, actor=clinician, override=True, reason="wrong date", now=NOW + timedelta(days=1))
    with pytest.raises(ValidationError):
        treatment_completion.evaluate_patient_discharge(
            db, patient.id, actor=admin, override=True, now=NOW + timedelta(days=1))

    later = NOW + timedelta(days=1)
    outcome = treatment_completion.evaluate_patient_discharge(
        db, patient.id, actor=admin, override=True, reason="final session was later", now=later)
    assert outcome.changed
    assert outcome.discharge_date == later

    entry = audit_entries(db, "patient", patient.id, "update")[-1]
    assert entry.details["override"] is True
    assert entry.details["oldDischargeDate"] == NOW.isoformat()


def test_override_on_active_patient_is_rejected(db, patient, admin):
    with pytest.raises(ValidationError):
        treatment_completion.evaluate_patient_discharge(db, patient.id, actor=admin, override=True, reason="x")


def test_discharge_evaluator_run(db, make_patient, make_record):
    ready = make_patient(first_name="Ready", auto_discharge=True, target_sessions=1)
    make_record(ready)
    waiting = make_patient(first_name="Waiting", auto_discharge=True, target_sessions=5)
    make_record(waiting)
    manual = make_patient(first_name="Manual", target_sessions=1)
    make_record(manual)

    report = treatment_completion.run_discharge_evaluator(db, now=NOW)

    assert report.examined == 2
    assert report.changed == [str(ready.id)]
    assert db.get(models.Patient, manual.id).status == models.PatientStatus.active


def test_manual_discharge_request_and_approval(db, patient, clinician, admin, staff):
    with pytest.raises(Forbidden):
        treatment_completion.request_discharge(db, patient.id, staff, "goals met")

    request = treatment_completion.request_discharge(db, patient.id, clinician, "Treatment goals met", now=NOW)
    assert request.status == models.DischargeRequestStatus.pending
    assert [n.type for n in notification_service.list_for_user(db, admin.id)] == ["discharge_request_created"]

    with pytest.raises(ConflictError):
        treatment_completion.request_discharge(db, patient.id, clinician, "again")
    with pytest.raises(Forbidden):
        treatment_completion.review_discharge_request(db, request.id, clinician, approve=True)

    reviewed = treatment_completion.review_discharge_request(
        db, request.id, admin, approve=True, review_notes="Agreed", now=NOW)
    assert reviewed.status == models.DischargeRequestStatus.approved
    assert reviewed.reviewed_by == admin.id

    discharged = db.get(models.Patient, patient.id)
    assert discharged.status == models.PatientStatus.discharged
    assert discharged.discharge_criteria["dischargeMethod"] == "manual"
    assert discharged.discharge_criteria["dischargeReason"] == "Treatment goals met"
    assert discharged.discharge_date == NOW

    assert [n.type for n in notification_service.list_for_user(db, clinician.id)] == ["discharge_request_approved"]
    assert audit_entries(db, "discharge_request", request.id, "update")[-1].details["newStatus"] == "approved"

    with pytest.raises(InvalidTransition):
        treatment_completion.review_discharge_request(db, request.id, admin, approve=False)


def test_denied_request_leaves_patient_active(db, patient, clinician, admin):
    request = treatment_completion.request_discharge(db, patient.id, clinician, "Client relocating")
    treatment_completion.review_discharge_request(db, request.id, admin, approve=False, review_notes="Refer out first")

    assert db.get(models.Patient, patient.id).status == models.PatientStatus.active
    note = notification_service.list_for_user(db, clinician.id)[0]
    assert note.type == "discharge_request_denied"
    assert note.message == "Refer out first"


def test_discharge_request_for_discharged_patient(db, make_patient, make_record, clinician):
    patient = make_patient(auto_discharge=True, target_sessions=1)
    make_record(patient)
    treatment_completion.evaluate_patient_discharge(db, patient.id, now=NOW)

    with pytest.raises(InvalidTransition):
        treatment_completion.request_discharge(db, patient.id, clinician, "already done")


def test_reactivation_clears_discharge_and_keeps_it_in_audit(db, make_patient, make_record, admin, clinician):
    patient = make_patient(auto_discharge=True, target_sessions=1)
    make_record(patient)
    treatment_completion.evaluate_patient_discharge(db, patient.id, now=NOW)

    with pytest.raises(Forbidden):
        treatment_completion.reactivate_patient(db, patient.id, clinician, "relapse")

    reactivated = treatment_completion.reactivate_patient(db, patient.id, admin, "Returned after relapse")
    assert reactivated.status == models.PatientStatus.active
    assert reactivated.discharge_date is None
    assert reactivated.discharge_criteria == {"targetSessions": 1, "autoDischarge": True}

    entry = audit_entries(db, "patient", patient.id, "update")[-1]
    assert entry.details["reactivated"] is True
    assert entry.details["previousDischarge"]["dischargeMethod"] == "automatic"
    assert entry.details["previousDischarge"]["dischargeDate"] == NOW.isoformat()

    with pytest.raises(InvalidTransition):
        treatment_completion.reactivate_patient(db, patient.id, admin, "twice")


def test_completion_rate(db, make_patient, make_record, clinician, admin):
    auto = make_patient(first_name="Auto", auto_discharge=True, target_sessions=1)
    make_record(auto)
    treatment_completion.evaluate_patient_discharge(db, auto.id, now=NOW)

    manual = make_patient(first_name="Manual")
    request = treatment_completion.request_discharge(db, manual.id, clinician, "Goals met")
    treatment_completion.review_discharge_request(db, request.id, admin, approve=True)

    eligible = make_patient(first_name="Eligible", target_sessions=1)
    make_record(eligible)
    make_patient(first_name="Ongoing")

    rate = treatment_completion.calculate_treatment_completion_rate(db, now=NOW)
    assert rate.total_count == 4
    assert rate.discharged_count == 2
    assert rate.rate == 50.0
    assert rate.breakdown.auto_discharged == 1
    assert rate.breakdown.manually_discharged == 1
    assert rate.breakdown.eligible_for_discharge == 1


def test_completion_rate_with_no_patients(db):
    rate = treatment_completion.calculate_treatment_completion_rate(db)
    assert rate.rate == 0.0
    assert rate.total_count == 0
