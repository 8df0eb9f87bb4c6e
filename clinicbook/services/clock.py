# clinicbook/services/clock.py
"""Time helpers. Clinics run on a fixed UTC offset with no daylight saving."""
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive values (as SQLite returns them) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def clinic_tz(utc_offset_minutes: int) -> timezone:
    return timezone(timedelta(minutes=utc_offset_minutes))


def to_local(instant: datetime, utc_offset_minutes: int) -> datetime:
    return as_utc(instant).astimezone(clinic_tz(utc_offset_minutes))


def local_today(utc_offset_minutes: int, now: Optional[datetime] = None) -> date:
    return to_local(now or utcnow(), utc_offset_minutes).date()


def slot_starts_at(slot_date: date, start_time: time, utc_offset_minutes: int) -> datetime:
    """UTC instant of a clinic-local date and time."""
    local = datetime.combine(slot_date, start_time, tzinfo=clinic_tz(utc_offset_minutes))
    return local.astimezone(timezone.utc)


def day_part(start_time: time) -> Optional[str]:
    if start_time < time(12, 0):
        return "morning"
    if start_time < time(17, 0):
        return "afternoon"
    return None
