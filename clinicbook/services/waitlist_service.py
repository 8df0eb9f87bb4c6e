# clinicbook/services/waitlist_service.py
"""Promotes waiting patients into freed slots."""
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import models
from ..config import get_settings
from ..database import atomic
from ..errors import ConflictError, NotFound, SerializationConflict, SlotUnavailable, ValidationError
from ..models import WaitlistStatus
from ..security import CallerScope
from . import appointment_service, clock, message_templates
from .notification_service import notify_patient

logger = structlog.get_logger(__name__)


@dataclass
class FillResult:
    filled: bool
    patient: Optional[models.Patient] = None
    appointment: Optional[models.Appointment] = None
    entry: Optional[models.WaitlistEntry] = None


@dataclass
class ProcessStats:
    processed: int = 0
    filled: int = 0
    errors: int = 0
    filled_appointment_ids: List[int] = field(default_factory=list)


def score_candidate(entry: models.WaitlistEntry, slot: models.AppointmentSlot) -> int:
    score = 0
    if entry.preferred_date == slot.slot_date:
        score += 10
    if entry.staff_id is not None and entry.staff_id == slot.staff_id:
        score += 5
    preference = (entry.preferred_time_slot or "").strip().lower()
    if preference:
        if preference in ("morning", "afternoon"):
            if clock.day_part(slot.start_time) == preference:
                score += 3
        elif preference == slot.start_time.strftime("%H:%M"):
            score += 5
    score += entry.priority or 0
    return score


def rank_candidates(
    entries: Sequence[models.WaitlistEntry], slot: models.AppointmentSlot
) -> List[Tuple[int, models.WaitlistEntry]]:
    """Eligible candidates best first. Entries arrive ordered by (priority desc, created asc); that order breaks ties."""
    scored = [(score_candidate(e, slot), index, e) for index, e in enumerate(entries)]
    scored = [item for item in scored if item[0] >= 0]
    scored.sort(key=lambda item: (-item[0], item[1]))
    return [(score, entry) for score, _, entry in scored]


def _candidate_pool(db: Session, slot: models.AppointmentSlot, clinic_id: int) -> List[models.WaitlistEntry]:
    settings = get_settings()
    tolerance = timedelta(days=settings.waitlist_date_tolerance_days)
    return db.query(models.WaitlistEntry).filter(
        models.WaitlistEntry.clinic_id == clinic_id,
        models.WaitlistEntry.status == WaitlistStatus.WAITING,
        models.WaitlistEntry.preferred_date >= slot.slot_date - tolerance,
        models.WaitlistEntry.preferred_date <= slot.slot_date + tolerance,
    ).order_by(
        models.WaitlistEntry.priority.desc(),
        models.WaitlistEntry.created_at.asc(),
        models.WaitlistEntry.id.asc(),
    ).limit(settings.waitlist_candidate_limit).all()


async def try_fill(
    db: Session, slot_id: int, clinic_id: int, transport=None, now: Optional[datetime] = None
) -> FillResult:
    """Offer a free slot to the best-scoring waiting patient.

    Stale entries (patient already booked that day) are expired and the scan
    moves on. No match is a normal outcome, not an error.
    """
    log = logger.bind(slot_id=slot_id, clinic_id=clinic_id)
    slot = db.get(models.AppointmentSlot, slot_id)
    if slot is None or slot.clinic_id != clinic_id:
        log.info("waitlist_fill_skipped", reason="slot not found")
        return FillResult(False)
    if not slot.is_available:
        log.info("waitlist_fill_skipped", reason="slot already taken")
        return FillResult(False)
    if clock.as_utc(slot.starts_at) <= (now or clock.utcnow()):
        log.info("waitlist_fill_skipped", reason="slot already started")
        return FillResult(False)

    ranked = rank_candidates(_candidate_pool(db, slot, clinic_id), slot)
    if not ranked:
        log.info("waitlist_no_candidates")
        return FillResult(False)

    slot_date = slot.slot_date
    for score, entry in ranked:
        entry_id, patient_id = entry.id, entry.patient_id
        if appointment_service.has_active_booking_on(db, patient_id, clinic_id, slot_date):
            entry.status = WaitlistStatus.EXPIRED
            db.commit()
            log.info("waitlist_entry_expired", entry_id=entry_id, patient_id=patient_id)
            continue

        try:
            with atomic(db):
                locked = db.query(models.WaitlistEntry).filter(
                    models.WaitlistEntry.id == entry_id
                ).with_for_update().first()
                if locked is None or locked.status != WaitlistStatus.WAITING:
                    continue
                appointment = appointment_service.book_slot(
                    db, slot_id, patient_id, clinic_id,
                    appointment_type=locked.appointment_type,
                    notes=locked.notes,
                )
                locked.status = WaitlistStatus.NOTIFIED
                locked.filled_at = clock.utcnow()
                locked.filled_slot_id = slot_id
        except (SlotUnavailable, SerializationConflict, IntegrityError):
            log.info("waitlist_fill_lost_race")
            return FillResult(False)

        log.info("waitlist_filled", entry_id=entry_id, patient_id=patient_id,
                 appointment_id=appointment.id, score=score)
        await _confirm(db, transport, appointment)
        return FillResult(True, patient=appointment.patient, appointment=appointment, entry=locked)

    return FillResult(False)


async def _confirm(db: Session, transport, appointment: models.Appointment) -> None:
    if transport is None:
        return
    kind = models.MessageKind.BOOKING_CONFIRMATION
    try:
        body = message_templates.render_for_appointment(kind, appointment)
        result = await notify_patient(transport, appointment.patient, body, kind, appointment_id=appointment.id)
        db.commit()
        if not result.success:
            logger.warning("waitlist_confirmation_failed", appointment_id=appointment.id, error=result.error)
    except Exception:
        db.rollback()
        logger.exception("waitlist_confirmation_error", appointment_id=appointment.id)


async def process_all(
    db: Session, clinic_id: int, transport=None, now: Optional[datetime] = None
) -> ProcessStats:
    """Sweep every future WAITING entry and try to place it into any open slot within the date tolerance."""
    clinic = db.get(models.Clinic, clinic_id)
    if clinic is None:
        raise NotFound("Clinic", clinic_id)
    moment = now or clock.utcnow()
    today = clock.local_today(clinic.utc_offset_minutes, moment)
    tolerance = timedelta(days=get_settings().waitlist_date_tolerance_days)

    entry_ids = [row.id for row in db.query(models.WaitlistEntry.id).filter(
        models.WaitlistEntry.clinic_id == clinic_id,
        models.WaitlistEntry.status == WaitlistStatus.WAITING,
        models.WaitlistEntry.preferred_date >= today,
    ).order_by(
        models.WaitlistEntry.preferred_date.asc(),
        models.WaitlistEntry.priority.desc(),
        models.WaitlistEntry.created_at.asc(),
        models.WaitlistEntry.id.asc(),
    )]

    stats = ProcessStats()
    for entry_id in entry_ids:
        entry = db.get(models.WaitlistEntry, entry_id)
        if entry is None or entry.status != WaitlistStatus.WAITING:
            continue
        stats.processed += 1
        try:
            slot = db.query(models.AppointmentSlot).filter(
                models.AppointmentSlot.clinic_id == clinic_id,
                models.AppointmentSlot.is_available.is_(True),
                models.AppointmentSlot.slot_date >= entry.preferred_date - tolerance,
                models.AppointmentSlot.slot_date <= entry.preferred_date + tolerance,
                models.AppointmentSlot.starts_at > moment,
            ).order_by(
                models.AppointmentSlot.slot_date, models.AppointmentSlot.start_time, models.AppointmentSlot.id
            ).first()
            if slot is None:
                continue
            result = await try_fill(db, slot.id, clinic_id, transport=transport, now=moment)
            if result.filled:
                stats.filled += 1
                stats.filled_appointment_ids.append(result.appointment.id)
        except Exception:
            db.rollback()
            stats.errors += 1
            logger.exception("waitlist_process_entry_failed", entry_id=entry_id)

    logger.info("waitlist_processed", clinic_id=clinic_id, processed=stats.processed,
                filled=stats.filled, errors=stats.errors)
    return stats


def add_entry(
    db: Session,
    scope: CallerScope,
    patient_id: int,
    clinic_id: int,
    preferred_date: date,
    preferred_time_slot: Optional[str] = None,
    staff_id: Optional[int] = None,
    appointment_type: str = "CONSULTATION",
    priority: int = 0,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> models.WaitlistEntry:
    if scope.role == "patient":
        if scope.patient_id != patient_id:
            raise NotFound("Patient", patient_id)
        priority = 0
    else:
        scope.ensure_clinic(clinic_id)

    clinic = db.get(models.Clinic, clinic_id)
    if clinic is None:
        raise NotFound("Clinic", clinic_id)
    if db.get(models.Patient, patient_id) is None:
        raise NotFound("Patient", patient_id)
    if preferred_date < clock.local_today(clinic.utc_offset_minutes, now):
        raise ValidationError("Preferred date cannot be in the past", field="preferred_date")
    if staff_id is not None:
        staff = db.get(models.Staff, staff_id)
        if staff is None or staff.clinic_id != clinic_id:
            raise ValidationError("Staff member does not belong to this clinic", field="staff_id")

    if appointment_service.has_active_booking_on(db, patient_id, clinic_id, preferred_date):
        raise ConflictError("Patient already has an appointment on this date")
    already_waiting = db.query(models.WaitlistEntry.id).filter(
        models.WaitlistEntry.patient_id == patient_id,
        models.WaitlistEntry.clinic_id == clinic_id,
        models.WaitlistEntry.preferred_date == preferred_date,
        models.WaitlistEntry.status == WaitlistStatus.WAITING,
    ).first()
    if already_waiting is not None:
        raise ConflictError("Patient is already on the waitlist for this date")

    entry = models.WaitlistEntry(
        patient_id=patient_id,
        clinic_id=clinic_id,
        preferred_date=preferred_date,
        preferred_time_slot=preferred_time_slot,
        staff_id=staff_id,
        appointment_type=appointment_type or "CONSULTATION",
        priority=priority,
        notes=notes,
        status=WaitlistStatus.WAITING,
    )
    db.add(entry)
    db.commit()
    logger.info("waitlist_entry_added", entry_id=entry.id, patient_id=patient_id, clinic_id=clinic_id)
    return entry


def list_entries(
    db: Session,
    scope: CallerScope,
    clinic_id: int,
    status: Optional[WaitlistStatus] = WaitlistStatus.WAITING,
    on_date: Optional[date] = None,
) -> List[models.WaitlistEntry]:
    scope.ensure_clinic(clinic_id)
    query = db.query(models.WaitlistEntry).filter(models.WaitlistEntry.clinic_id == clinic_id)
    if status is not None:
        query = query.filter(models.WaitlistEntry.status == status)
    if on_date is not None:
        query = query.filter(models.WaitlistEntry.preferred_date == on_date)
    return query.order_by(
        models.WaitlistEntry.priority.desc(),
        models.WaitlistEntry.created_at.asc(),
        models.WaitlistEntry.id.asc(),
    ).all()


def summarize(entries: Sequence[models.WaitlistEntry]) -> Dict[str, int]:
    return {
        "total": len(entries),
        "waiting": sum(1 for e in entries if e.status == WaitlistStatus.WAITING),
        "notified": sum(1 for e in entries if e.status == WaitlistStatus.NOTIFIED),
    }
