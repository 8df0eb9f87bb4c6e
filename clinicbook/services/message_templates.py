# clinicbook/services/message_templates.py
"""Bilingual (Swahili/English) notification bodies."""
from datetime import date, time
from typing import Any, Dict

from jinja2 import DictLoader, Environment, StrictUndefined

from ..models import MessageKind

SWAHILI_MONTHS = (
    "Januari", "Februari", "Machi", "Aprili", "Mei", "Juni",
    "Julai", "Agosti", "Septemba", "Oktoba", "Novemba", "Desemba",
)
ENGLISH_MONTHS = (
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
)

SUPPORTED_LANGUAGES = ("sw", "en")

TEMPLATES = {
    "sw/BOOKING_CONFIRMATION": (
        "Habari {{ patient_name }}, umefanikiwa kuweka miadi {{ date|display_date('sw') }} "
        "saa {{ time|display_time }} na {{ doctor_name }}. Kliniki: {{ clinic_name }}. "
        "Mawasiliano: {{ clinic_phone }}. Tafadhali kuja mapema. Asante!"
    ),
    "sw/REMINDER_24H": (
        "Kumbuka kesho {{ date|display_date('sw') }} saa {{ time|display_time }} una miadi na "
        "{{ doctor_name }} kutoka {{ clinic_name }}. Mawasiliano: {{ clinic_phone }}. Tafadhali kuja mapema."
    ),
    "sw/REMINDER_SAME_DAY": (
        "Habari {{ patient_name }}, leo saa {{ time|display_time }} una miadi na {{ doctor_name }} "
        "katika {{ clinic_name }}. Tafadhali kuja mapema."
    ),
    "sw/CANCELLATION": (
        "Habari {{ patient_name }}, miadi yako ya {{ date|display_date('sw') }} saa {{ time|display_time }} "
        "na {{ doctor_name }} imeghairiwa. Tafadhali piga {{ clinic_phone }} kupanga tena."
    ),
    "en/BOOKING_CONFIRMATION": (
        "Hello {{ patient_name }}, your appointment is confirmed for {{ date|display_date('en') }} "
        "at {{ time|display_time }} with {{ doctor_name }}. Clinic: {{ clinic_name }}. "
        "Phone: {{ clinic_phone }}. Please arrive early. Thank you!"
    ),
    "en/REMINDER_24H": (
        "Reminder: Tomorrow {{ date|display_date('en') }} at {{ time|display_time }} you have an appointment "
        "with {{ doctor_name }} at {{ clinic_name }}. Phone: {{ clinic_phone }}. Please arrive early."
    ),
    "en/REMINDER_SAME_DAY": (
        "Hello {{ patient_name }}, you have an appointment today at {{ time|display_time }} "
        "with {{ doctor_name }} at {{ clinic_name }}. Please arrive early."
    ),
    "en/CANCELLATION": (
        "Hello {{ patient_name }}, your appointment on {{ date|display_date('en') }} at {{ time|display_time }} "
        "with {{ doctor_name }} has been cancelled. Please call {{ clinic_phone }} to reschedule."
    ),
}


def display_date(value: date, language: str) -> str:
    if language == "sw":
        return f"{value.day} {SWAHILI_MONTHS[value.month - 1]}, {value.year}"
    return f"{ENGLISH_MONTHS[value.month - 1]} {value.day}, {value.year}"


def display_time(value: time) -> str:
    hour = value.hour % 12 or 12
    suffix = "AM" if value.hour < 12 else "PM"
    return f"{hour}:{value.minute:02d} {suffix}"


_env = Environment(loader=DictLoader(TEMPLATES), undefined=StrictUndefined, autoescape=False)
_env.filters["display_date"] = display_date
_env.filters["display_time"] = display_time


def resolve_language(preferred: str, fallback: str) -> str:
    if preferred in SUPPORTED_LANGUAGES:
        return preferred
    if fallback in SUPPORTED_LANGUAGES:
        return fallback
    return "sw"


def render(kind: MessageKind, language: str, context: Dict[str, Any]) -> str:
    return _env.get_template(f"{language}/{kind.value}").render(**context)


def appointment_context(appointment) -> Dict[str, Any]:
    slot = appointment.slot
    clinic = appointment.clinic
    return {
        "patient_name": appointment.patient.first_name,
        "date": slot.slot_date,
        "time": slot.start_time,
        "doctor_name": slot.staff.display_name,
        "clinic_name": clinic.name,
        "clinic_phone": clinic.phone or "",
    }


def render_for_appointment(kind: MessageKind, appointment) -> str:
    """Render in the patient's language, falling back to the clinic default."""
    language = resolve_language(appointment.patient.language_preference, appointment.clinic.default_language)
    return render(kind, language, appointment_context(appointment))
