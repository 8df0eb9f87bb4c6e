# tests/test_messages_and_patients.py
from datetime import date, timedelta

import pytest

from clinicbook import crud, models
from clinicbook.errors import ValidationError
from clinicbook.models import MessageKind
from clinicbook.services import appointment_service, message_templates
from conftest import at_time, local_today_for


@pytest.mark.parametrize("raw,expected", [
    ("0712345678", "+255712345678"),
    ("712345678", "+255712345678"),
    ("255712345678", "+255712345678"),
    ("00255712345678", "+255712345678"),
    ("+255 712 345 678", "+255712345678"),
    ("+1 (415) 555-0100", "+14155550100"),
])
def test_normalize_phone(raw, expected):
    assert crud.normalize_phone(raw) == expected


@pytest.mark.parametrize("raw", ["", "   ", "abc", "+12"])
def test_normalize_phone_rejects_garbage(raw):
    with pytest.raises(ValidationError):
        crud.normalize_phone(raw)


def test_split_name():
    assert crud.split_name("Neema Grace Mwangi") == ("Neema", "Grace Mwangi")
    assert crud.split_name(None) == ("Patient", "")


def test_get_or_create_patient_is_idempotent_per_phone(db):
    created, is_new = crud.get_or_create_patient(db, "0712000001", "Asha Said", language="en")
    again, is_new_again = crud.get_or_create_patient(db, "+255712000001")

    assert is_new is True
    assert is_new_again is False
    assert again.id == created.id
    assert created.first_name == "Asha"
    assert created.language_preference == "en"


def test_unknown_language_falls_back_to_default(db):
    patient, _ = crud.get_or_create_patient(db, "0712000002", "Juma", language="fr")
    assert patient.language_preference == "sw"


# =============================================================================
# Message bodies
# =============================================================================

def test_display_helpers():
    assert message_templates.display_date(date(2026, 3, 11), "en") == "March 11, 2026"
    assert message_templates.display_date(date(2026, 3, 11), "sw") == "11 Machi, 2026"
    assert message_templates.display_time(at_time("09:00")) == "9:00 AM"
    assert message_templates.display_time(at_time("14:30")) == "2:30 PM"
    assert message_templates.display_time(at_time("00:15")) == "12:15 AM"


def test_resolve_language():
    assert message_templates.resolve_language("en", "sw") == "en"
    assert message_templates.resolve_language("fr", "en") == "en"
    assert message_templates.resolve_language("fr", "de") == "sw"


def test_every_kind_has_both_languages():
    for kind in (MessageKind.BOOKING_CONFIRMATION, MessageKind.REMINDER_24H,
                 MessageKind.REMINDER_SAME_DAY, MessageKind.CANCELLATION):
        for language in message_templates.SUPPORTED_LANGUAGES:
            assert f"{language}/{kind.value}" in message_templates.TEMPLATES


def test_reminder_rendered_in_patient_language(db, clinic, make_patient, make_slot):
    english = make_patient("Grace", language="en")
    slot = make_slot(date(2026, 3, 11), "09:00")
    appointment = appointment_service.create(db, slot.id, english.id, clinic.id)

    body = message_templates.render_for_appointment(MessageKind.REMINDER_24H, appointment)

    assert body.startswith("Reminder: Tomorrow March 11, 2026 at 9:00 AM")
    assert "Dr. Amina Juma" in body
    assert "Afya Clinic" in body


def test_swahili_confirmation(db, clinic, patient, make_slot):
    slot = make_slot(date(2026, 3, 11), "14:00")
    appointment = appointment_service.create(db, slot.id, patient.id, clinic.id)

    body = message_templates.render_for_appointment(MessageKind.BOOKING_CONFIRMATION, appointment)

    assert body.startswith("Habari Neema,")
    assert "11 Machi, 2026 saa 2:00 PM" in body


# =============================================================================
# Consistency report
# =============================================================================

def test_consistency_check_flags_mismatched_slots(db, clinic, patient, make_slot):
    tomorrow = local_today_for() + timedelta(days=1)
    healthy = make_slot(tomorrow, "08:00")
    appointment_service.create(db, healthy.id, patient.id, clinic.id)
    orphan = make_slot(tomorrow, "09:00")
    orphan.is_available = False
    db.commit()

    report = crud.run_consistency_checks(db)

    assert [row["slot_id"] for row in report["booked_slots_without_appointments"]] == [orphan.id]
    assert report["available_slots_with_appointments"] == []
    assert report["stuck_reminder_runs"] == []


def test_consistency_check_flags_available_slot_with_active_appointment(db, clinic, patient, make_slot):
    slot = make_slot(local_today_for() + timedelta(days=1), "08:00")
    appointment_service.create(db, slot.id, patient.id, clinic.id)
    db.query(models.AppointmentSlot).filter(models.AppointmentSlot.id == slot.id).update({"is_available": True})
    db.commit()

    report = crud.run_consistency_checks(db)

    assert [row["slot_id"] for row in report["available_slots_with_appointments"]] == [slot.id]
