# tests/conftest.py
import os
import tempfile
from datetime import date, time

# Settings are read on first import of the app, so the environment goes first
_DB_DIR = tempfile.mkdtemp(prefix="hospital-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["SECRET_KEY"] = "test-secret-key-for-hospital-app-0123456789"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["OT_REQUIRE_PREOP_CHECKLIST"] = "false"
os.environ.pop("SENDGRID_API_KEY", None)

import pytest
from fastapi.testclient import TestClient
from httpx import AsyncClient, ASGITransport

from hospital_app import models, schemas
from hospital_app.database import SessionLocal, create_tables, drop_tables
from hospital_app.main import app
from hospital_app.security import create_access_token
from hospital_app.services.notification_service import NotificationService

# 2026-10-20 is a Tuesday
TUESDAY = date(2026, 10, 20)


@pytest.fixture(autouse=True)
def fresh_database():
    drop_tables()
    create_tables()
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def notifier():
    service = NotificationService()
    app.state.notifier = service
    return service


@pytest.fixture
def client(notifier):
    return TestClient(app)


@pytest.fixture
async def async_client(notifier):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


def make_actor(role: models.UserRole, user_id: int = 1) -> schemas.Actor:
    return schemas.Actor(user_id=user_id, username=f"{role.value}-{user_id}", role=role)


def auth_headers(role: models.UserRole, user_id: int = 1) -> dict:
    token = create_access_token({"sub": f"{role.value}-{user_id}", "user_id": user_id, "role": role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin():
    return make_actor(models.UserRole.admin, 1)


@pytest.fixture
def surgeon_actor():
    return make_actor(models.UserRole.doctor, 2)


@pytest.fixture
def nurse():
    return make_actor(models.UserRole.nurse, 3)


@pytest.fixture
def make_doctor(db):
    def _make(name="Dr. Mehta", department="General Surgery", is_active=True):
        doctor = models.Doctor(name=name, specialization="Surgeon", department=department, is_active=is_active)
        db.add(doctor)
        db.commit()
        db.refresh(doctor)
        return doctor
    return _make


@pytest.fixture
def make_patient(db):
    counter = {"n": 0}

    def _make(name="Asha Verma", is_admitted=True, phone="+919800000001", email="asha@example.com"):
        counter["n"] += 1
        patient = models.Patient(
            uhid=f"UHID-{counter['n']:04d}",
            name=name,
            age=34,
            gender="female",
            phone_number=phone,
            email=email,
            is_admitted=is_admitted,
            ward="Ward 3" if is_admitted else None,
        )
        db.add(patient)
        db.commit()
        db.refresh(patient)
        return patient
    return _make


@pytest.fixture
def make_block(db):
    def _make(doctor, start=time(9, 0), end=time(10, 0), day_of_week=1, specific_date=None, location=None, is_available=True):
        block = models.DoctorSchedule(
            doctor_id=doctor.id,
            day_of_week=None if specific_date else day_of_week,
            specific_date=specific_date,
            start_time=start,
            end_time=end,
            location=location,
            is_available=is_available,
        )
        db.add(block)
        db.commit()
        db.refresh(block)
        return block
    return _make


@pytest.fixture
def make_case(db, make_doctor, make_patient):
    def _make(surgery_type="general", status=models.OtCaseStatus.scheduled):
        surgeon = make_doctor()
        patient = make_patient()
        case = models.OtCase(
            patient_id=patient.id,
            patient_name=patient.name,
            uhid=patient.uhid,
            age=patient.age,
            gender=patient.gender,
            surgeon_id=surgeon.id,
            surgeon_name=surgeon.name,
            procedure_name="Laparoscopic cholecystectomy",
            surgery_type=surgery_type,
            scheduled_date=TUESDAY,
            scheduled_time=time(10, 0),
            ot_room="OT-1",
            priority=models.OtPriority.elective,
            status=status,
        )
        db.add(case)
        db.commit()
        db.refresh(case)
        return case
    return _make
