# tests/test_references.py
import uuid

import pytest

from mindtrack import crud, models, references
from mindtrack.errors import Forbidden, ReferenceNotFound, ValidationError

from conftest import audit_entries

FIXED = uuid.UUID("6f1c2a9e-3b1d-4c59-9a8e-0d2f4b7c1e55")


@pytest.mark.parametrize("raw", [
    FIXED,
    str(FIXED),
    str(FIXED).upper(),
    FIXED.hex,
    "{" + str(FIXED) + "}",
    "urn:uuid:" + str(FIXED),
    f"  {FIXED}  ",
    {"$oid": str(FIXED)},
    {"_id": {"$oid": str(FIXED)}},
    {"id": FIXED},
    FIXED.bytes,
])
def test_parse_identifier_accepts_every_encoding(raw):
    assert references.parse_identifier(raw) == FIXED


@pytest.mark.parametrize("raw", [None, "", "   ", "not-an-id", "1234", True, 42, {"name": "x"}, b"short"])
def test_parse_identifier_rejects_non_identifiers(raw):
    assert references.parse_identifier(raw) is None


def test_same_reference_compares_canonical_forms():
    assert references.same_reference(FIXED, {"$oid": str(FIXED).upper()})
    assert not references.same_reference(FIXED, uuid.uuid4())
    assert not references.same_reference(None, None)
    assert not references.same_reference("garbage", "garbage")


def test_resolve_patient_by_any_encoding(db, patient):
    assert references.resolve_patient(db, {"$oid": str(patient.id)}).id == patient.id
    assert references.resolve_patient(db, patient.id.hex).id == patient.id


def test_resolve_patient_unknown_or_malformed(db):
    with pytest.raises(ReferenceNotFound) as exc:
        references.resolve_patient(db, uuid.uuid4())
    assert exc.value.reference_type == "patient"

    with pytest.raises(ReferenceNotFound):
        references.resolve_patient(db, "Riley Park")


def test_resolve_clinician_requires_clinical_role(db, clinician, admin, staff):
    assert references.resolve_clinician(db, str(clinician.id)).id == clinician.id
    assert references.resolve_clinician(db, admin.id).id == admin.id
    with pytest.raises(ReferenceNotFound):
        references.resolve_clinician(db, staff.id)


def test_deleted_clinician_does_not_resolve(db, clinician, admin):
    crud.delete_user(db, clinician.id, actor=admin)
    with pytest.raises(ReferenceNotFound):
        references.resolve_clinician(db, clinician.id)


def test_resolve_appointment_checks_patient(db, make_patient, make_appointment):
    first = make_patient()
    second = make_patient(first_name="Taylor")
    appointment = make_appointment(first)

    assert references.resolve_appointment(db, appointment.id, patient_id=str(first.id)).id == appointment.id
    with pytest.raises(ReferenceNotFound):
        references.resolve_appointment(db, appointment.id, patient_id=second.id)


def test_name_matches_are_diagnostic_only(db, make_patient):
    make_patient(first_name="Riley", last_name="Park")
    make_patient(first_name="Riley", last_name="Stone")
    make_patient(first_name="Morgan", last_name="Park")

    matches = references.find_patient_name_matches(db, "riley")
    assert {m.last_name for m in matches} == {"Park", "Stone"}
    assert all(m.diagnostic for m in matches)

    assert [m.first_name for m in references.find_patient_name_matches(db, "RIL", "sto")] == ["Riley"]

    with pytest.raises(ValidationError):
        references.find_patient_name_matches(db, "  ")


def test_orphan_report_flags_deleted_clinician_without_deleting(db, patient, clinician, admin, make_appointment):
    appointment = make_appointment(patient)
    assert references.find_orphaned_appointments(db) == []

    crud.delete_user(db, clinician.id, actor=admin)
    orphans = references.find_orphaned_appointments(db)

    assert len(orphans) == 1
    assert orphans[0].appointment_id == appointment.id
    assert orphans[0].issue == "Clinician has been deleted"
    assert db.get(models.Appointment, appointment.id) is not None


def test_relink_is_admin_only_and_audited(db, make_patient, make_appointment, admin, clinician):
    wrong = make_patient(first_name="Wrong")
    right = make_patient(first_name="Right")
    appointment = make_appointment(wrong)

    with pytest.raises(Forbidden):
        references.relink_appointment_patient(db, appointment.id, right.id, actor=clinician, reason="typo at intake")
    with pytest.raises(ValidationError):
        references.relink_appointment_patient(db, appointment.id, right.id, actor=admin, reason=" ")

    relinked = references.relink_appointment_patient(
        db, str(appointment.id), {"$oid": str(right.id)}, actor=admin, reason="typo at intake"
    )
    assert relinked.patient_id == right.id

    entry = audit_entries(db, "appointment", appointment.id, "update")[-1]
    assert entry.user_id == str(admin.id)
    assert entry.details == {
        "relink": True,
        "oldPatientId": str(wrong.id),
        "newPatientId": str(right.id),
        "reason": "typo at intake",
    }


def test_relink_to_unknown_patient_changes_nothing(db, patient, make_appointment, admin):
    appointment = make_appointment(patient)
    before = len(audit_entries(db))

    with pytest.raises(ReferenceNotFound):
        references.relink_appointment_patient(db, appointment.id, uuid.uuid4(), actor=admin, reason="repair")

    db.expire_all()
    assert db.get(models.Appointment, appointment.id).patient_id == patient.id
    assert len(audit_entries(db)) == before
