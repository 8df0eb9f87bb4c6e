# clinicbook/schemas.py
from datetime import date, datetime, time
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import (
    AppointmentStatus, NotificationChannel, ReminderKind, RunStatus, RunTrigger, StaffRole, WaitlistStatus,
)


class ErrorResponse(BaseModel):
    error: str
    code: str
    details: Dict[str, Any] = {}


# --- Slots ---
class StaffBrief(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    first_name: str
    last_name: str
    role: StaffRole
    specialization: Optional[str] = None


class SlotResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    clinic_id: int
    staff_id: int
    slot_date: date
    start_time: time
    end_time: time
    starts_at: datetime
    is_available: bool
    staff: Optional[StaffBrief] = None


class AvailableSlotsResponse(BaseModel):
    clinic_id: int
    date: date
    count: int
    slots: List[SlotResponse]


# --- Patients ---
class PatientLookupRequest(BaseModel):
    phone_number: str = Field(..., min_length=6, max_length=20)
    name: Optional[str] = Field(default=None, max_length=200)
    language: Optional[str] = None
    preferred_channel: Optional[NotificationChannel] = None


class PatientResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    phone_number: str
    first_name: str
    last_name: str
    language_preference: str
    preferred_channel: NotificationChannel


class PatientLookupResponse(BaseModel):
    patient: PatientResponse
    is_new: bool


# --- Appointments ---
class AppointmentCreate(BaseModel):
    slot_id: int
    patient_id: int
    clinic_id: int
    appointment_type: str = Field(default="CONSULTATION", max_length=50)
    notes: Optional[str] = Field(default=None, max_length=1000)


class StatusUpdate(BaseModel):
    status: AppointmentStatus
    reason: Optional[str] = Field(default=None, max_length=500)


class AppointmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    slot_id: int
    patient_id: int
    clinic_id: int
    status: AppointmentStatus
    appointment_type: str
    notes: Optional[str] = None
    reminder_24h_sent: bool
    reminder_24h_failed: bool
    reminder_24h_sent_at: Optional[datetime] = None
    reminder_same_day_sent: bool
    reminder_same_day_failed: bool
    reminder_same_day_sent_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    slot: Optional[SlotResponse] = None


class TodaySummary(BaseModel):
    total: int
    by_status: Dict[str, int]
    pending: int
    checked_in: int
    completed: int
    cancelled: int
    no_show: int


class TodayResponse(BaseModel):
    date: date
    appointments: List[AppointmentResponse]
    summary: TodaySummary


# --- Waitlist ---
class WaitlistCreate(BaseModel):
    patient_id: int
    clinic_id: int
    preferred_date: date
    preferred_time_slot: Optional[str] = None
    staff_id: Optional[int] = None
    appointment_type: str = Field(default="CONSULTATION", max_length=50)
    priority: int = Field(default=0, ge=0, le=100)
    notes: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("preferred_time_slot")
    @classmethod
    def validate_time_slot(cls, v):
        if v is None:
            return v
        v = v.strip().lower()
        if v in ("morning", "afternoon"):
            return v
        try:
            return datetime.strptime(v, "%H:%M").strftime("%H:%M")
        except ValueError:
            raise ValueError("preferred_time_slot must be 'morning', 'afternoon' or HH:MM")


class WaitlistResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    patient_id: int
    clinic_id: int
    preferred_date: date
    preferred_time_slot: Optional[str] = None
    staff_id: Optional[int] = None
    appointment_type: str
    priority: int
    status: WaitlistStatus
    created_at: Optional[datetime] = None
    filled_at: Optional[datetime] = None
    filled_slot_id: Optional[int] = None


class WaitlistListResponse(BaseModel):
    entries: List[WaitlistResponse]
    summary: Dict[str, int]


class WaitlistProcessResponse(BaseModel):
    processed: int
    filled: int
    errors: int
    filled_appointment_ids: List[int] = []


# --- Reminders ---
class ReminderSendRequest(BaseModel):
    force: bool = False
    dry_run: bool = False
    appointment_id: Optional[int] = None
    kind: Optional[ReminderKind] = None


class ReminderResultItem(BaseModel):
    appointment_id: int
    kind: str
    status: str
    message_id: Optional[str] = None
    error: Optional[str] = None
    attempts: Optional[int] = None


class ReminderRunOutcome(BaseModel):
    run_id: int
    status: RunStatus
    trigger: RunTrigger
    appointments_checked: int
    reminders_sent: int
    reminders_failed: int
    reminders_skipped: int
    retries_attempted: int
    duration_ms: int
    error_message: Optional[str] = None
    results: List[ReminderResultItem] = []


class ReminderRunResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    job_name: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    status: RunStatus
    appointments_checked: int
    reminders_sent: int
    reminders_failed: int
    reminders_skipped: int
    retries_attempted: int
    error_message: Optional[str] = None
    duration_ms: Optional[int] = None
    triggered_by: RunTrigger
