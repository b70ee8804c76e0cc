# tests/test_dashboard.py
from datetime import timedelta

from mindtrack import crud
from mindtrack.services import appointment_status

from conftest import NOW


def test_dashboard_stats(db, make_patient, make_appointment, make_record, clinician):
    patient = make_patient()
    archived = make_patient(first_name="Gone")
    crud.archive_patient(db, archived.id, actor=clinician)

    today = make_appointment(patient, when=NOW - timedelta(hours=1))
    make_appointment(patient, when=NOW + timedelta(days=2))
    appointment_status.transition_appointment(db, today.id, "completed", actor=clinician, now=NOW)
    make_record(patient, today, session_date=NOW)

    stats = crud.get_dashboard_stats(db, now=NOW)

    assert stats.total_patients == 2
    assert stats.patients_by_status == {"active": 1, "inactive": 1, "discharged": 0}
    assert stats.appointments_by_status["completed"] == 1
    assert stats.appointments_by_status["scheduled"] == 1
    assert stats.appointments_by_status["no-show"] == 0
    assert stats.appointments_today == 1
    assert stats.completed_appointments == 1
    assert stats.upcoming_appointments == 1
    assert stats.appointments_needing_review == 1
    assert stats.completion_rate.total_count == 2
