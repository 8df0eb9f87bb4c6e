# clinicbook/crud.py
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .config import get_settings
from .errors import NotFound, ValidationError

logger = logging.getLogger(__name__)

E164_PATTERN = re.compile(r"^\+[1-9]\d{7,14}$")


def normalize_phone(raw: str, country_code: Optional[str] = None) -> str:
    """Canonical E.164 form. Accepts +CC..., 00CC..., CC... and national 0... numbers."""
    if not raw or not raw.strip():
        raise ValidationError("Phone number is required", field="phone_number")
    country_code = country_code or get_settings().default_country_code
    stripped = raw.strip()
    digits = re.sub(r"\D", "", stripped)

    if stripped.startswith("+"):
        candidate = f"+{digits}"
    elif digits.startswith("00"):
        candidate = f"+{digits[2:]}"
    elif digits.startswith(country_code):
        candidate = f"+{digits}"
    elif digits.startswith("0"):
        candidate = f"+{country_code}{digits[1:]}"
    else:
        candidate = f"+{country_code}{digits}"

    if not E164_PATTERN.match(candidate):
        raise ValidationError(f"Invalid phone number: {raw}", field="phone_number")
    return candidate


def split_name(full_name: Optional[str]) -> Tuple[str, str]:
    parts = (full_name or "").split()
    if not parts:
        return "Patient", ""
    return parts[0], " ".join(parts[1:])


# ==================== PATIENTS ====================
def get_patient_by_phone(db: Session, phone_number: str) -> Optional[models.Patient]:
    return db.query(models.Patient).filter(models.Patient.phone_number == normalize_phone(phone_number)).first()


def get_or_create_patient(
    db: Session,
    phone_number: str,
    name: Optional[str] = None,
    language: Optional[str] = None,
    preferred_channel: Optional[models.NotificationChannel] = None,
) -> Tuple[models.Patient, bool]:
    """Look a patient up by phone, creating the record on first contact. Returns (patient, is_new)."""
    phone = normalize_phone(phone_number)
    patient = get_patient_by_phone(db, phone)
    if patient is not None:
        return patient, False

    first_name, last_name = split_name(name)
    patient = models.Patient(
        phone_number=phone,
        first_name=first_name,
        last_name=last_name,
        language_preference=language if language in ("sw", "en") else get_settings().default_language,
        preferred_channel=preferred_channel or models.NotificationChannel.SMS,
    )
    db.add(patient)
    try:
        db.commit()
    except IntegrityError:
        # created concurrently by another request
        db.rollback()
        return get_patient_by_phone(db, phone), False
    logger.info("Created patient %s for %s", patient.id, phone)
    return patient, True


# ==================== CLINICS & STAFF ====================
def get_clinic(db: Session, clinic_id: int) -> models.Clinic:
    clinic = db.get(models.Clinic, clinic_id)
    if clinic is None:
        raise NotFound("Clinic", clinic_id)
    return clinic


def get_active_clinics(db: Session) -> List[models.Clinic]:
    return db.query(models.Clinic).filter(models.Clinic.is_active.is_(True)).order_by(models.Clinic.id).all()


def get_staff(db: Session, staff_id: int) -> models.Staff:
    staff = db.get(models.Staff, staff_id)
    if staff is None:
        raise NotFound("Staff", staff_id)
    return staff


# ==================== CONSISTENCY ====================
def run_consistency_checks(db: Session) -> Dict[str, Any]:
    """Report rows that break the slot/appointment pairing or ledger entries stuck in RUNNING."""
    report = {
        "checked_at": datetime.now(timezone.utc),
        "booked_slots_without_appointments": [],
        "available_slots_with_appointments": [],
        "stuck_reminder_runs": [],
    }

    active_slot_ids = select(models.Appointment.slot_id).where(
        models.Appointment.status != models.AppointmentStatus.CANCELLED
    )

    orphaned = db.query(models.AppointmentSlot).filter(
        models.AppointmentSlot.is_available.is_(False),
        ~models.AppointmentSlot.id.in_(active_slot_ids),
    ).all()
    for slot in orphaned:
        report["booked_slots_without_appointments"].append({
            "slot_id": slot.id,
            "clinic_id": slot.clinic_id,
            "slot_date": slot.slot_date,
            "issue": "Slot is unavailable but no active appointment references it.",
        })

    double_booked = db.query(models.AppointmentSlot).filter(
        models.AppointmentSlot.is_available.is_(True),
        models.AppointmentSlot.id.in_(active_slot_ids),
    ).all()
    for slot in double_booked:
        report["available_slots_with_appointments"].append({
            "slot_id": slot.id,
            "clinic_id": slot.clinic_id,
            "slot_date": slot.slot_date,
            "issue": "Slot is available but an active appointment references it.",
        })

    budget = timedelta(seconds=get_settings().reminder_run_budget_seconds * 2)
    cutoff = datetime.now(timezone.utc) - budget
    for run in db.query(models.ReminderRun).filter(
        models.ReminderRun.status == models.RunStatus.RUNNING,
        models.ReminderRun.started_at < cutoff,
    ).all():
        report["stuck_reminder_runs"].append({"run_id": run.id, "started_at": run.started_at})

    return report
