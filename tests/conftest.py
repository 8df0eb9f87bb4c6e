"""
Test configuration and fixtures.

Provides:
- A file-backed SQLite database, rebuilt for every test
- Clinic / staff / patient / slot factories
- A scriptable fake notification transport
- JWT minting and an HTTPX AsyncClient wired to the app
"""
import os
import tempfile
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, List, Optional

import pytest

_tmpdir = tempfile.mkdtemp(prefix="clinicbook-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_tmpdir}/clinicbook.db"
os.environ["SECRET_KEY"] = "test-secret-key-that-is-long-enough-1234567890"
os.environ["ENVIRONMENT"] = "testing"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["REMINDER_RETRY_DELAY_SECONDS"] = "0"
os.environ["REMINDER_SEND_DELAY_SECONDS"] = "0"
os.environ["CRON_SECRET"] = "cron-test-secret"

from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.exc import OperationalError  # noqa: E402

from clinicbook import models  # noqa: E402
from clinicbook.database import SessionLocal, create_tables, drop_tables, get_db  # noqa: E402
from clinicbook.security import create_access_token  # noqa: E402
from clinicbook.services import clock, slot_service  # noqa: E402
from clinicbook.services.notification_service import SendResult, get_transport  # noqa: E402

# 09:00 in Dar es Salaam (UTC+3)
FIXED_NOW = datetime(2026, 3, 10, 6, 0, tzinfo=timezone.utc)
EAT_OFFSET = 180


def local_today_for(now: datetime = FIXED_NOW) -> date:
    return clock.local_today(EAT_OFFSET, now)


class PgDriverError(Exception):
    """Stands in for a psycopg2 error carrying a SQLSTATE."""

    def __init__(self, pgcode: str):
        super().__init__(f"SQLSTATE {pgcode}")
        self.pgcode = pgcode


def pg_operational_error(pgcode: str) -> OperationalError:
    return OperationalError("UPDATE appointment_slots SET is_available=false", {}, PgDriverError(pgcode))


# =============================================================================
# Database
# =============================================================================

@pytest.fixture(scope="function")
def db():
    drop_tables()
    create_tables()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        drop_tables()


@pytest.fixture
def clinic(db) -> models.Clinic:
    clinic = models.Clinic(
        name="Afya Clinic",
        phone="+255222000111",
        region="Dar es Salaam",
        utc_offset_minutes=EAT_OFFSET,
        default_language="sw",
        operating_hours={
            "monday": {"open": "08:00", "close": "10:00"},
            "tuesday": {"open": "08:00", "close": "17:00", "slots": ["08:00", "08:30", "09:00", "14:00"]},
            "sunday": {"closed": True},
        },
    )
    db.add(clinic)
    db.commit()
    return clinic


@pytest.fixture
def other_clinic(db) -> models.Clinic:
    clinic = models.Clinic(name="Mbali Clinic", phone="+255222000999", utc_offset_minutes=EAT_OFFSET)
    db.add(clinic)
    db.commit()
    return clinic


@pytest.fixture
def staff(db, clinic) -> models.Staff:
    member = models.Staff(
        clinic_id=clinic.id, first_name="Amina", last_name="Juma",
        role=models.StaffRole.DOCTOR, specialization="General",
    )
    db.add(member)
    db.commit()
    return member


@pytest.fixture
def second_staff(db, clinic) -> models.Staff:
    member = models.Staff(
        clinic_id=clinic.id, first_name="Baraka", last_name="Mushi",
        role=models.StaffRole.SPECIALIST, specialization="Pediatrics",
    )
    db.add(member)
    db.commit()
    return member


@pytest.fixture
def make_patient(db):
    counter = {"n": 0}

    def _make(first_name: str = "Neema", language: str = "sw",
              channel: models.NotificationChannel = models.NotificationChannel.SMS) -> models.Patient:
        counter["n"] += 1
        patient = models.Patient(
            phone_number=f"+25571200{counter['n']:04d}",
            first_name=first_name,
            last_name="Mwangi",
            language_preference=language,
            preferred_channel=channel,
        )
        db.add(patient)
        db.commit()
        return patient

    return _make


@pytest.fixture
def patient(make_patient) -> models.Patient:
    return make_patient()


@pytest.fixture
def make_slot(db, clinic, staff):
    def _make(slot_date: date, start: str, staff_member: Optional[models.Staff] = None,
              owner: Optional[models.Clinic] = None) -> models.AppointmentSlot:
        start_time = datetime.strptime(start, "%H:%M").time()
        slot = slot_service.create_slot(db, owner or clinic, staff_member or staff, slot_date, start_time)
        db.commit()
        return slot

    return _make


@pytest.fixture
def slot_at(make_slot):
    """Slot whose start lies a given offset after FIXED_NOW."""
    def _make(delta: timedelta, staff_member: Optional[models.Staff] = None) -> models.AppointmentSlot:
        local = clock.to_local(FIXED_NOW + delta, EAT_OFFSET)
        return make_slot(local.date(), local.strftime("%H:%M"), staff_member=staff_member)

    return _make


# =============================================================================
# Transport and time
# =============================================================================

class FakeTransport:
    """Records sends. Numbers can be scripted to fail N times, always fail, or raise."""

    def __init__(self):
        self.calls: List[Dict] = []
        self.fail_next: Dict[str, int] = {}
        self.always_fail = set()
        self.raise_for = set()
        self.delay: float = 0

    @property
    def delivered(self) -> List[Dict]:
        return [c for c in self.calls if c["success"]]

    async def send(self, to, body, kind, channel=models.NotificationChannel.SMS, patient_id=None, appointment_id=None):
        if self.delay:
            import asyncio
            await asyncio.sleep(self.delay)
        call = {"to": to, "body": body, "kind": kind, "channel": channel,
                "patient_id": patient_id, "appointment_id": appointment_id, "success": False}
        self.calls.append(call)
        if to in self.raise_for:
            raise RuntimeError("provider connection reset")
        if self.fail_next.get(to, 0) > 0:
            self.fail_next[to] -= 1
            return SendResult(False, error="provider unavailable")
        if to in self.always_fail:
            return SendResult(False, error="provider unavailable")
        call["success"] = True
        return SendResult(True, provider_message_id=f"SM{len(self.calls):06d}")


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return _sleep


# =============================================================================
# Auth + HTTP
# =============================================================================

def bearer(role: str, **claims) -> Dict[str, str]:
    token = create_access_token({"role": role, **claims})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
async def client(db, transport):
    from clinicbook.main import app

    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_transport] = lambda: transport
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac
    finally:
        app.dependency_overrides.clear()


def at_time(value: str) -> time:
    return datetime.strptime(value, "%H:%M").time()
