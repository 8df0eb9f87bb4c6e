# clinicbook/models.py
import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, DateTime, Time, ForeignKey, Text, Date,
    Enum as SQLAlchemyEnum, Boolean, JSON, Index, UniqueConstraint, text
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


def _utcnow():
    return datetime.now(timezone.utc)


class AppointmentStatus(str, enum.Enum):
    BOOKED = "BOOKED"
    CONFIRMED = "CONFIRMED"
    REMINDER_SENT = "REMINDER_SENT"
    CHECKED_IN = "CHECKED_IN"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"


class StaffRole(str, enum.Enum):
    DOCTOR = "DOCTOR"
    NURSE = "NURSE"
    SPECIALIST = "SPECIALIST"
    ADMIN = "ADMIN"


class NotificationChannel(str, enum.Enum):
    SMS = "SMS"
    WHATSAPP = "WHATSAPP"
    BOTH = "BOTH"


class WaitlistStatus(str, enum.Enum):
    WAITING = "WAITING"
    NOTIFIED = "NOTIFIED"
    EXPIRED = "EXPIRED"


class ReminderKind(str, enum.Enum):
    """The two independent reminder tracks kept on every appointment."""
    REMINDER_24H = "24h"
    SAME_DAY = "same_day"


class MessageKind(str, enum.Enum):
    BOOKING_CONFIRMATION = "BOOKING_CONFIRMATION"
    REMINDER_24H = "REMINDER_24H"
    REMINDER_SAME_DAY = "REMINDER_SAME_DAY"
    CANCELLATION = "CANCELLATION"
    GENERAL = "GENERAL"


class MessageStatus(str, enum.Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"
    UNDELIVERED = "UNDELIVERED"


class RunStatus(str, enum.Enum):
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"


class RunTrigger(str, enum.Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"
    TEST = "test"


class AuditAction(str, enum.Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    STATUS_CHANGE = "STATUS_CHANGE"
    CANCEL = "CANCEL"


class Clinic(Base):
    __tablename__ = "clinics"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    phone = Column(String(30), nullable=True)
    address = Column(String(255), nullable=True)
    region = Column(String(100), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    # {"monday": {"open": "08:00", "close": "17:00", "slots": ["08:00", "08:30", ...]}, ...}
    operating_hours = Column(JSON, nullable=True)
    timezone = Column(String(64), default="Africa/Dar_es_Salaam", nullable=False)
    utc_offset_minutes = Column(Integer, default=180, nullable=False)
    default_language = Column(String(5), default="sw", nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now())

    staff = relationship("Staff", back_populates="clinic")


class Staff(Base):
    __tablename__ = "staff"

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False, index=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    role = Column(SQLAlchemyEnum(StaffRole, name="staff_role"), default=StaffRole.DOCTOR, nullable=False)
    specialization = Column(String(100), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    clinic = relationship("Clinic", back_populates="staff")

    @property
    def display_name(self) -> str:
        if self.role == StaffRole.DOCTOR:
            return f"Dr. {self.first_name} {self.last_name}"
        return f"{self.first_name} {self.last_name}"


class AppointmentSlot(Base):
    """A materialised bookable window. slot_date/start_time are clinic-local, starts_at is UTC."""
    __tablename__ = "appointment_slots"
    __table_args__ = (
        UniqueConstraint("staff_id", "slot_date", "start_time", name="uq_slot_staff_date_time"),
        Index("idx_slots_clinic_date_available", "clinic_id", "slot_date", "is_available"),
    )

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False)
    staff_id = Column(Integer, ForeignKey("staff.id"), nullable=False)
    slot_date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    starts_at = Column(DateTime(timezone=True), nullable=False, index=True)
    is_available = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now())

    clinic = relationship("Clinic")
    staff = relationship("Staff")


class Patient(Base):
    __tablename__ = "patients"

    id = Column(Integer, primary_key=True, index=True)
    phone_number = Column(String(20), unique=True, nullable=False, index=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False, default="")
    language_preference = Column(String(5), default="sw", nullable=False)
    preferred_channel = Column(
        SQLAlchemyEnum(NotificationChannel, name="notification_channel"),
        default=NotificationChannel.SMS,
        nullable=False,
    )
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now())

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        # at most one live appointment per slot
        Index(
            "uq_appointments_active_slot", "slot_id", unique=True,
            postgresql_where=text("status != 'CANCELLED'"),
            sqlite_where=text("status != 'CANCELLED'"),
        ),
        Index("idx_appointments_clinic_status", "clinic_id", "status"),
        Index("idx_appointments_patient", "patient_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    slot_id = Column(Integer, ForeignKey("appointment_slots.id"), nullable=False)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False)
    status = Column(
        SQLAlchemyEnum(AppointmentStatus, name="appointment_status"),
        default=AppointmentStatus.BOOKED,
        nullable=False,
    )
    appointment_type = Column(String(50), default="CONSULTATION", nullable=False)
    notes = Column(Text, nullable=True)

    reminder_24h_sent = Column(Boolean, default=False, nullable=False)
    reminder_24h_failed = Column(Boolean, default=False, nullable=False)
    reminder_24h_sent_at = Column(DateTime(timezone=True), nullable=True)
    reminder_24h_error = Column(Text, nullable=True)
    reminder_same_day_sent = Column(Boolean, default=False, nullable=False)
    reminder_same_day_failed = Column(Boolean, default=False, nullable=False)
    reminder_same_day_sent_at = Column(DateTime(timezone=True), nullable=True)
    reminder_same_day_error = Column(Text, nullable=True)

    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    slot = relationship("AppointmentSlot")
    patient = relationship("Patient")
    clinic = relationship("Clinic")


class WaitlistEntry(Base):
    __tablename__ = "waitlist_entries"
    __table_args__ = (
        Index("idx_waitlist_clinic_status_date", "clinic_id", "status", "preferred_date"),
    )

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False)
    preferred_date = Column(Date, nullable=False)
    # "HH:MM", "morning" or "afternoon"
    preferred_time_slot = Column(String(20), nullable=True)
    staff_id = Column(Integer, ForeignKey("staff.id"), nullable=True)
    appointment_type = Column(String(50), default="CONSULTATION", nullable=False)
    priority = Column(Integer, default=0, nullable=False)
    notes = Column(Text, nullable=True)
    status = Column(
        SQLAlchemyEnum(WaitlistStatus, name="waitlist_status"),
        default=WaitlistStatus.WAITING,
        nullable=False,
    )
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now())
    filled_at = Column(DateTime(timezone=True), nullable=True)
    filled_slot_id = Column(Integer, ForeignKey("appointment_slots.id"), nullable=True)

    patient = relationship("Patient")
    staff = relationship("Staff")


class ReminderRun(Base):
    """Run ledger: one row per reminder scheduler execution."""
    __tablename__ = "reminder_runs"
    __table_args__ = (
        Index("idx_reminder_runs_job_started", "job_name", "started_at"),
        Index("idx_reminder_runs_status", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    job_name = Column(String(100), nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    status = Column(SQLAlchemyEnum(RunStatus, name="run_status"), default=RunStatus.RUNNING, nullable=False)
    appointments_checked = Column(Integer, default=0, nullable=False)
    reminders_sent = Column(Integer, default=0, nullable=False)
    reminders_failed = Column(Integer, default=0, nullable=False)
    reminders_skipped = Column(Integer, default=0, nullable=False)
    retries_attempted = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)
    error_stack = Column(Text, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    triggered_by = Column(SQLAlchemyEnum(RunTrigger, name="run_trigger"), default=RunTrigger.SCHEDULED, nullable=False)


class CommunicationLog(Base):
    """Outbound message log, keyed by the provider's message id for delivery callbacks"""
    __tablename__ = "communication_logs"
    __table_args__ = (
        Index("idx_communications_patient", "patient_id"),
        Index("idx_communications_status", "status", "sent_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=True)
    channel = Column(SQLAlchemyEnum(NotificationChannel, name="notification_channel"), nullable=False)
    kind = Column(SQLAlchemyEnum(MessageKind, name="message_kind"), nullable=False)
    to_address = Column(String(50), nullable=False)
    content = Column(Text, nullable=True)
    channel_message_id = Column(String(255), nullable=True, unique=True)
    status = Column(SQLAlchemyEnum(MessageStatus, name="message_status"), default=MessageStatus.PENDING, nullable=False)
    error_message = Column(Text, nullable=True)
    sent_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now())
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)


class AuditLog(Base):
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("idx_audit_resource", "resource_type", "resource_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=True)
    actor_staff_id = Column(Integer, ForeignKey("staff.id"), nullable=True)
    actor_role = Column(String(20), nullable=True)
    action = Column(SQLAlchemyEnum(AuditAction, name="audit_action"), nullable=False)
    resource_type = Column(String(50), nullable=False)
    resource_id = Column(Integer, nullable=True)
    old_value = Column(String(100), nullable=True)
    new_value = Column(String(100), nullable=True)
    details = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now())
