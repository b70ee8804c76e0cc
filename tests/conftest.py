# tests/conftest.py
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import uuid
from datetime import date, datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from mindtrack import crud, models
from mindtrack.database import Base, build_engine, build_session_factory, get_db
from mindtrack.main import app

# Fixed clock for lifecycle tests; appointments are placed relative to it
NOW = datetime(2024, 6, 3, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    session = build_session_factory(engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_user(db):
    def _make(role=models.UserRole.clinical, first_name="Casey", last_name="Morgan", email=None):
        user = models.User(
            email=email or f"{uuid.uuid4().hex[:10]}@clinic.test",
            first_name=first_name,
            last_name=last_name,
            role=role,
        )
        db.add(user)
        db.commit()
        return user
    return _make


@pytest.fixture
def admin(make_user):
    return make_user(models.UserRole.admin, first_name="Avery", last_name="Admin")


@pytest.fixture
def clinician(make_user):
    return make_user(models.UserRole.clinical, first_name="Jordan", last_name="Reyes")


@pytest.fixture
def staff(make_user):
    return make_user(models.UserRole.staff, first_name="Sam", last_name="Desk")


@pytest.fixture
def make_patient(db, clinician):
    def _make(first_name="Riley", last_name="Park", target_sessions=None, auto_discharge=False, **extra):
        payload = {
            "first_name": first_name,
            "last_name": last_name,
            "date_of_birth": date(1990, 4, 12),
            "gender": "other",
            "assigned_clinical_id": str(clinician.id),
            "discharge_criteria": {"target_sessions": target_sessions, "auto_discharge": auto_discharge},
            **extra,
        }
        return crud.create_patient(db, payload, actor=clinician)
    return _make


@pytest.fixture
def patient(make_patient):
    return make_patient()


@pytest.fixture
def make_appointment(db, clinician):
    def _make(patient, when=None, actor=None):
        return crud.create_appointment(db, {
            "patient_id": str(patient.id),
            "clinical_id": str(clinician.id),
            "appointment_date": when or NOW - timedelta(hours=2),
            "duration": 50,
            "type": "therapy",
        }, actor=actor or clinician)
    return _make


@pytest.fixture
def make_record(db, clinician):
    def _make(patient, appointment=None, session_date=None):
        return crud.create_treatment_record(db, {
            "patient_id": str(patient.id),
            "clinical_id": str(clinician.id),
            "appointment_id": str(appointment.id) if appointment else None,
            "session_date": session_date or NOW - timedelta(days=1),
            "session_type": "individual",
            "notes": "Reviewed coping plan; mood stable.",
        }, actor=clinician)
    return _make


def audit_entries(db, resource_type=None, resource_id=None, action=None):
    query = db.query(models.AuditLog)
    if resource_type is not None:
        query = query.filter(models.AuditLog.resource_type == models.ResourceType(resource_type).value)
    if resource_id is not None:
        query = query.filter(models.AuditLog.resource_id == str(resource_id))
    if action is not None:
        query = query.filter(models.AuditLog.action == models.AuditAction(action).value)
    return query.order_by(models.AuditLog.id).all()


@pytest.fixture
def client(db):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def auth(user):
    return {"X-User-Id": str(user.id)}
