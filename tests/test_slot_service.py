# tests/test_slot_service.py
from datetime import date, datetime, timedelta, timezone

import pytest

from clinicbook import models
from clinicbook.errors import ConflictError, NotFound, SlotUnavailable, ValidationError
from clinicbook.services import clock, slot_service
from conftest import EAT_OFFSET, FIXED_NOW, at_time, local_today_for


def test_slot_stores_utc_instant_for_local_time(make_slot):
    slot = make_slot(date(2026, 3, 11), "09:00")
    assert clock.as_utc(slot.starts_at) == datetime(2026, 3, 11, 6, 0, tzinfo=timezone.utc)
    assert slot.end_time == at_time("09:30")


def test_find_available_orders_by_start_and_skips_booked(db, clinic, make_slot):
    tomorrow = local_today_for() + timedelta(days=1)
    late = make_slot(tomorrow, "11:00")
    early = make_slot(tomorrow, "08:00")
    booked = make_slot(tomorrow, "09:00")
    slot_service.mark_unavailable(db, booked.id)
    db.commit()

    slots = slot_service.find_available(db, clinic.id, tomorrow, now=FIXED_NOW)

    assert [s.id for s in slots] == [early.id, late.id]


def test_find_available_today_applies_buffer(db, clinic, make_slot):
    today = local_today_for()  # local time is 09:00
    make_slot(today, "09:10")
    at_buffer = make_slot(today, "09:15")
    later = make_slot(today, "10:00")

    slots = slot_service.find_available(db, clinic.id, today, now=FIXED_NOW)

    assert [s.id for s in slots] == [at_buffer.id, later.id]


def test_find_available_today_is_empty_when_buffer_crosses_midnight(db, clinic, make_slot):
    now = datetime(2026, 3, 10, 20, 50, tzinfo=timezone.utc)  # 23:50 local
    today = clock.local_today(EAT_OFFSET, now)
    make_slot(today, "23:20")

    assert slot_service.find_available(db, clinic.id, today, now=now) == []


def test_find_available_rejects_past_dates(db, clinic):
    yesterday = local_today_for() - timedelta(days=1)
    with pytest.raises(ValidationError):
        slot_service.find_available(db, clinic.id, yesterday, now=FIXED_NOW)


def test_find_available_filters_by_specialization(db, clinic, make_slot, second_staff):
    tomorrow = local_today_for() + timedelta(days=1)
    make_slot(tomorrow, "08:00")
    pediatric = make_slot(tomorrow, "08:00", staff_member=second_staff)

    slots = slot_service.find_available(db, clinic.id, tomorrow, specialization="Pediatrics", now=FIXED_NOW)

    assert [s.id for s in slots] == [pediatric.id]


def test_find_available_unknown_clinic(db):
    with pytest.raises(NotFound):
        slot_service.find_available(db, 999, date(2026, 3, 11), now=FIXED_NOW)


def test_mark_unavailable_twice_is_a_conflict(db, make_slot):
    slot = make_slot(date(2026, 3, 11), "08:00")
    slot_service.mark_unavailable(db, slot.id)
    db.commit()

    with pytest.raises(SlotUnavailable) as excinfo:
        slot_service.mark_unavailable(db, slot.id)
    assert isinstance(excinfo.value, ConflictError)


def test_mark_available_is_idempotent(db, make_slot):
    slot = make_slot(date(2026, 3, 11), "08:00")
    slot_service.mark_available(db, slot.id)
    slot_service.mark_available(db, slot.id)
    db.commit()
    db.refresh(slot)
    assert slot.is_available is True


def test_mark_unavailable_unknown_slot(db):
    with pytest.raises(NotFound):
        slot_service.mark_unavailable(db, 12345)


def test_get_slot_not_found(db):
    with pytest.raises(NotFound):
        slot_service.get_slot(db, 42)


def test_generate_slots_uses_explicit_marks(db, clinic, staff):
    tuesday = date(2026, 3, 10)
    created = slot_service.generate_slots_for_day(db, clinic, staff, tuesday)
    db.commit()

    assert [s.start_time for s in created] == [at_time("08:00"), at_time("08:30"), at_time("09:00"), at_time("14:00")]
    assert slot_service.generate_slots_for_day(db, clinic, staff, tuesday) == []


def test_generate_slots_fills_open_window(db, clinic, staff):
    monday = date(2026, 3, 9)
    created = slot_service.generate_slots_for_day(db, clinic, staff, monday)

    assert [s.start_time for s in created] == [at_time("08:00"), at_time("08:30"), at_time("09:00"), at_time("09:30")]


def test_generate_slots_closed_day(db, clinic, staff):
    sunday = date(2026, 3, 15)
    assert slot_service.generate_slots_for_day(db, clinic, staff, sunday) == []


def test_create_slot_rejects_staff_from_other_clinic(db, other_clinic, staff):
    with pytest.raises(ValidationError):
        slot_service.create_slot(db, other_clinic, staff, date(2026, 3, 11), at_time("08:00"))


def test_slot_unique_per_staff_and_time(db, make_slot):
    from sqlalchemy.exc import IntegrityError

    make_slot(date(2026, 3, 11), "08:00")
    with pytest.raises(IntegrityError):
        make_slot(date(2026, 3, 11), "08:00")
    db.rollback()
    assert db.query(models.AppointmentSlot).count() == 1
