# tests/test_waitlist_service.py
from datetime import date, timedelta

import pytest

from clinicbook import models
from clinicbook.errors import ConflictError, NotFound, ScopeError, ValidationError
from clinicbook.models import AppointmentStatus as S, WaitlistStatus
from clinicbook.security import CallerScope
from clinicbook.services import appointment_service, waitlist_service
from conftest import FIXED_NOW, at_time, local_today_for

ADMIN = CallerScope.system()


def _slot(slot_date=date(2026, 3, 11), start="09:00", staff_id=1):
    return models.AppointmentSlot(slot_date=slot_date, start_time=at_time(start), staff_id=staff_id)


def _entry(preferred_date=date(2026, 3, 11), time_slot=None, staff_id=None, priority=0, entry_id=None):
    return models.WaitlistEntry(
        id=entry_id, preferred_date=preferred_date, preferred_time_slot=time_slot,
        staff_id=staff_id, priority=priority,
    )


# =============================================================================
# Scoring
# =============================================================================

def test_score_components():
    slot = _slot()
    assert waitlist_service.score_candidate(_entry(), slot) == 10
    assert waitlist_service.score_candidate(_entry(staff_id=1), slot) == 15
    assert waitlist_service.score_candidate(_entry(time_slot="morning"), slot) == 13
    assert waitlist_service.score_candidate(_entry(time_slot="afternoon"), slot) == 10
    assert waitlist_service.score_candidate(_entry(time_slot="09:00"), slot) == 15
    assert waitlist_service.score_candidate(_entry(preferred_date=date(2026, 3, 12)), slot) == 0
    assert waitlist_service.score_candidate(_entry(priority=4), slot) == 14


def test_afternoon_preference_matches_afternoon_slot():
    slot = _slot(start="14:30")
    assert waitlist_service.score_candidate(_entry(time_slot="Afternoon"), slot) == 13
    assert waitlist_service.score_candidate(_entry(time_slot="morning"), slot) == 10


def test_rank_breaks_ties_by_input_order():
    slot = _slot()
    first, second, third = _entry(entry_id=1), _entry(entry_id=2), _entry(entry_id=3, staff_id=1)

    ranked = waitlist_service.rank_candidates([first, second, third], slot)

    assert [e.id for _, e in ranked] == [3, 1, 2]
    assert waitlist_service.rank_candidates([first, second, third], slot) == ranked


def test_rank_drops_negative_scores():
    slot = _slot()
    ranked = waitlist_service.rank_candidates([_entry(entry_id=1, preferred_date=date(2026, 3, 12), priority=-1)], slot)
    assert ranked == []


# =============================================================================
# Filling
# =============================================================================

@pytest.fixture
def tomorrow():
    return local_today_for() + timedelta(days=1)


async def test_cancellation_promotes_matching_waitlist_entry(db, clinic, staff, make_patient, make_slot, tomorrow, transport):
    holder, hopeful = make_patient("Asha"), make_patient("Baraka")
    slot = make_slot(tomorrow, "09:00")
    appointment = appointment_service.create(db, slot.id, holder.id, clinic.id)
    entry = waitlist_service.add_entry(
        db, ADMIN, hopeful.id, clinic.id, tomorrow, staff_id=staff.id, now=FIXED_NOW,
    )
    hopeful_id, entry_id, slot_id = hopeful.id, entry.id, slot.id

    await appointment_service.transition(db, appointment.id, S.CANCELLED, transport=transport, now=FIXED_NOW)

    db.expire_all()
    promoted = db.query(models.Appointment).filter(
        models.Appointment.slot_id == slot_id, models.Appointment.status == S.BOOKED
    ).one()
    assert promoted.patient_id == hopeful_id
    assert db.get(models.WaitlistEntry, entry_id).status == WaitlistStatus.NOTIFIED
    assert db.get(models.WaitlistEntry, entry_id).filled_slot_id == slot_id
    assert db.get(models.AppointmentSlot, slot_id).is_available is False
    kinds = [c["kind"] for c in transport.calls]
    assert kinds == [models.MessageKind.CANCELLATION, models.MessageKind.BOOKING_CONFIRMATION]


async def test_stale_entry_is_expired_and_next_candidate_wins(db, clinic, staff, make_patient, make_slot, tomorrow):
    already_booked, next_in_line = make_patient("Asha"), make_patient("Baraka")
    stale = waitlist_service.add_entry(db, ADMIN, already_booked.id, clinic.id, tomorrow, priority=5, now=FIXED_NOW)
    fresh = waitlist_service.add_entry(db, ADMIN, next_in_line.id, clinic.id, tomorrow, now=FIXED_NOW)
    stale_id, fresh_id = stale.id, fresh.id
    # the top candidate books something else on that day after joining the waitlist
    appointment_service.create(db, make_slot(tomorrow, "08:00").id, already_booked.id, clinic.id)
    free = make_slot(tomorrow, "11:00")

    result = await waitlist_service.try_fill(db, free.id, clinic.id, now=FIXED_NOW)

    assert result.filled is True
    assert result.patient.id == next_in_line.id
    assert db.get(models.WaitlistEntry, stale_id).status == WaitlistStatus.EXPIRED
    assert db.get(models.WaitlistEntry, fresh_id).status == WaitlistStatus.NOTIFIED


async def test_no_candidates_is_not_an_error(db, clinic, make_slot, tomorrow):
    free = make_slot(tomorrow, "11:00")
    result = await waitlist_service.try_fill(db, free.id, clinic.id, now=FIXED_NOW)
    assert result.filled is False
    assert result.patient is None


async def test_entry_outside_date_tolerance_is_ignored(db, clinic, patient, make_slot, tomorrow):
    waitlist_service.add_entry(db, ADMIN, patient.id, clinic.id, tomorrow + timedelta(days=3), now=FIXED_NOW)
    free = make_slot(tomorrow, "11:00")

    result = await waitlist_service.try_fill(db, free.id, clinic.id, now=FIXED_NOW)
    assert result.filled is False


async def test_taken_slot_is_not_filled(db, clinic, patient, make_patient, make_slot, tomorrow):
    slot = make_slot(tomorrow, "11:00")
    appointment_service.create(db, slot.id, make_patient("Asha").id, clinic.id)
    waitlist_service.add_entry(db, ADMIN, patient.id, clinic.id, tomorrow, now=FIXED_NOW)

    result = await waitlist_service.try_fill(db, slot.id, clinic.id, now=FIXED_NOW)
    assert result.filled is False


async def test_started_slot_is_not_filled(db, clinic, patient, make_slot):
    today = local_today_for()
    early = make_slot(today, "08:00")  # local time is already 09:00
    waitlist_service.add_entry(db, ADMIN, patient.id, clinic.id, today, now=FIXED_NOW)

    result = await waitlist_service.try_fill(db, early.id, clinic.id, now=FIXED_NOW)
    assert result.filled is False


async def test_process_all_places_waiting_patients(db, clinic, make_patient, make_slot, tomorrow):
    first, second, third = make_patient("A"), make_patient("B"), make_patient("C")
    for p in (first, second, third):
        waitlist_service.add_entry(db, ADMIN, p.id, clinic.id, tomorrow, now=FIXED_NOW)
    make_slot(tomorrow, "08:00")
    make_slot(tomorrow, "08:30")

    stats = await waitlist_service.process_all(db, clinic.id, now=FIXED_NOW)

    assert stats.processed == 3
    assert stats.filled == 2
    assert stats.errors == 0
    assert len(stats.filled_appointment_ids) == 2
    waiting = waitlist_service.list_entries(db, ADMIN, clinic.id)
    assert len(waiting) == 1


async def test_process_all_unknown_clinic(db):
    with pytest.raises(NotFound):
        await waitlist_service.process_all(db, 404, now=FIXED_NOW)


# =============================================================================
# Adding and listing
# =============================================================================

def test_add_entry_rejects_patient_with_booking_that_day(db, clinic, patient, make_slot, tomorrow):
    appointment_service.create(db, make_slot(tomorrow, "08:00").id, patient.id, clinic.id)
    with pytest.raises(ConflictError):
        waitlist_service.add_entry(db, ADMIN, patient.id, clinic.id, tomorrow, now=FIXED_NOW)


def test_add_entry_rejects_duplicate_waiting_entry(db, clinic, patient, tomorrow):
    waitlist_service.add_entry(db, ADMIN, patient.id, clinic.id, tomorrow, now=FIXED_NOW)
    with pytest.raises(ConflictError):
        waitlist_service.add_entry(db, ADMIN, patient.id, clinic.id, tomorrow, now=FIXED_NOW)


def test_add_entry_rejects_past_date(db, clinic, patient):
    with pytest.raises(ValidationError):
        waitlist_service.add_entry(db, ADMIN, patient.id, clinic.id, local_today_for() - timedelta(days=1), now=FIXED_NOW)


def test_add_entry_rejects_staff_from_other_clinic(db, clinic, other_clinic, patient, tomorrow):
    outsider = models.Staff(clinic_id=other_clinic.id, first_name="Eli", last_name="Mrema")
    db.add(outsider)
    db.commit()
    with pytest.raises(ValidationError):
        waitlist_service.add_entry(db, ADMIN, patient.id, clinic.id, tomorrow, staff_id=outsider.id, now=FIXED_NOW)


def test_patient_cannot_set_priority(db, clinic, patient, tomorrow):
    scope = CallerScope(role="patient", patient_id=patient.id)
    entry = waitlist_service.add_entry(db, scope, patient.id, clinic.id, tomorrow, priority=9, now=FIXED_NOW)
    assert entry.priority == 0


def test_patient_cannot_enqueue_someone_else(db, clinic, patient, make_patient, tomorrow):
    scope = CallerScope(role="patient", patient_id=make_patient("Juma").id)
    with pytest.raises(NotFound):
        waitlist_service.add_entry(db, scope, patient.id, clinic.id, tomorrow, now=FIXED_NOW)


def test_list_entries_orders_by_priority_and_is_clinic_scoped(db, clinic, other_clinic, make_patient, tomorrow):
    low = waitlist_service.add_entry(db, ADMIN, make_patient("A").id, clinic.id, tomorrow, now=FIXED_NOW)
    high = waitlist_service.add_entry(db, ADMIN, make_patient("B").id, clinic.id, tomorrow, priority=3, now=FIXED_NOW)

    entries = waitlist_service.list_entries(db, CallerScope(role="staff", clinic_id=clinic.id), clinic.id)
    assert [e.id for e in entries] == [high.id, low.id]
    assert waitlist_service.summarize(entries) == {"total": 2, "waiting": 2, "notified": 0}

    with pytest.raises(ScopeError):
        waitlist_service.list_entries(db, CallerScope(role="staff", clinic_id=other_clinic.id), clinic.id)
