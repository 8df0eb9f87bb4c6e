# clinicbook/services/slot_service.py
import logging
from datetime import date, datetime, time, timedelta
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from .. import models
from ..config import get_settings
from ..errors import NotFound, SlotUnavailable, ValidationError
from . import clock

logger = logging.getLogger(__name__)

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def get_slot(db: Session, slot_id: int) -> models.AppointmentSlot:
    slot = db.get(models.AppointmentSlot, slot_id)
    if slot is None:
        raise NotFound("Slot", slot_id)
    return slot


def find_available(
    db: Session,
    clinic_id: int,
    slot_date: date,
    specialization: Optional[str] = None,
    staff_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> List[models.AppointmentSlot]:
    """Open slots for a clinic-local date, ordered by start time.

    For today's date, slots starting within the booking buffer are left out.
    """
    clinic = db.get(models.Clinic, clinic_id)
    if clinic is None:
        raise NotFound("Clinic", clinic_id)

    settings = get_settings()
    local_now = clock.to_local(now or clock.utcnow(), clinic.utc_offset_minutes)
    if slot_date < local_now.date():
        raise ValidationError("Cannot query slots for past dates", field="date")

    query = db.query(models.AppointmentSlot).filter(
        models.AppointmentSlot.clinic_id == clinic_id,
        models.AppointmentSlot.slot_date == slot_date,
        models.AppointmentSlot.is_available.is_(True),
    )
    if staff_id is not None:
        query = query.filter(models.AppointmentSlot.staff_id == staff_id)
    if specialization:
        query = query.join(models.Staff, models.Staff.id == models.AppointmentSlot.staff_id).filter(
            models.Staff.specialization == specialization
        )

    if slot_date == local_now.date():
        cutoff = local_now + timedelta(minutes=settings.slot_buffer_minutes)
        if cutoff.date() != slot_date:
            return []
        query = query.filter(models.AppointmentSlot.start_time >= cutoff.time())

    return query.order_by(models.AppointmentSlot.start_time, models.AppointmentSlot.id).all()


def mark_unavailable(db: Session, slot_id: int) -> None:
    """Flip a slot to booked. Must run inside the caller's atomic unit."""
    result = db.execute(
        update(models.AppointmentSlot)
        .where(models.AppointmentSlot.id == slot_id, models.AppointmentSlot.is_available.is_(True))
        .values(is_available=False)
    )
    if result.rowcount == 0:
        get_slot(db, slot_id)
        raise SlotUnavailable(slot_id)


def mark_available(db: Session, slot_id: int) -> None:
    """Release a slot. Releasing an already open slot is a no-op."""
    result = db.execute(
        update(models.AppointmentSlot)
        .where(models.AppointmentSlot.id == slot_id)
        .values(is_available=True)
    )
    if result.rowcount == 0:
        raise NotFound("Slot", slot_id)


def create_slot(
    db: Session,
    clinic: models.Clinic,
    staff: models.Staff,
    slot_date: date,
    start_time: time,
    end_time: Optional[time] = None,
) -> models.AppointmentSlot:
    if staff.clinic_id != clinic.id:
        raise ValidationError("Staff member does not belong to this clinic", field="staff_id")
    if end_time is None:
        duration = timedelta(minutes=get_settings().slot_duration_minutes)
        end_time = (datetime.combine(slot_date, start_time) + duration).time()
    if end_time <= start_time:
        raise ValidationError("Slot must end after it starts", field="end_time")

    slot = models.AppointmentSlot(
        clinic_id=clinic.id,
        staff_id=staff.id,
        slot_date=slot_date,
        start_time=start_time,
        end_time=end_time,
        starts_at=clock.slot_starts_at(slot_date, start_time, clinic.utc_offset_minutes),
        is_available=True,
    )
    db.add(slot)
    return slot


def _parse_mark(value: str) -> time:
    try:
        return datetime.strptime(value, "%H:%M").time()
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid time mark '{value}', expected HH:MM", field="operating_hours")


def generate_slots_for_day(
    db: Session, clinic: models.Clinic, staff: models.Staff, target_date: date
) -> List[models.AppointmentSlot]:
    """Materialise slots for one staff member from the clinic's weekly operating hours.

    Uses the day's explicit bookable marks when present, otherwise fills the
    open/close window at the configured slot duration. Existing slots are skipped.
    """
    hours = (clinic.operating_hours or {}).get(WEEKDAYS[target_date.weekday()])
    if not hours or hours.get("closed"):
        logger.info("Clinic %s closed on %s, no slots generated", clinic.id, target_date)
        return []

    duration = timedelta(minutes=get_settings().slot_duration_minutes)
    if hours.get("slots"):
        marks = [_parse_mark(m) for m in hours["slots"]]
    else:
        marks = []
        current = datetime.combine(target_date, _parse_mark(hours.get("open")))
        close = datetime.combine(target_date, _parse_mark(hours.get("close")))
        while current + duration <= close:
            marks.append(current.time())
            current += duration

    existing = {
        s.start_time
        for s in db.query(models.AppointmentSlot.start_time).filter(
            models.AppointmentSlot.staff_id == staff.id,
            models.AppointmentSlot.slot_date == target_date,
        )
    }

    created = []
    for mark in sorted(set(marks)):
        if mark in existing:
            continue
        end = (datetime.combine(target_date, mark) + duration).time()
        if end <= mark:
            # would run past midnight
            continue
        created.append(create_slot(db, clinic, staff, target_date, mark, end))

    db.flush()
    logger.info("Generated %d slots for staff %s on %s", len(created), staff.id, target_date)
    return created
