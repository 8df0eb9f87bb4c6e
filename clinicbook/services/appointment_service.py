# clinicbook/services/appointment_service.py
"""Appointment lifecycle: booking against the slot store and validated status transitions."""
import logging
from collections import Counter
from datetime import date, datetime
from typing import Callable, Dict, FrozenSet, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from .. import models
from ..compliance_logger import compliance_logger
from ..database import atomic
from ..errors import (
    AlreadyPast, InvalidTransition, NotCancellable, NotFound, ScopeError,
    SerializationConflict, SlotUnavailable, ValidationError,
)
from ..models import AppointmentStatus as S
from ..security import CallerScope
from . import clock, message_templates, slot_service
from .notification_service import notify_patient

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[S, FrozenSet[S]] = {
    S.BOOKED: frozenset({S.CONFIRMED, S.CANCELLED}),
    S.CONFIRMED: frozenset({S.CHECKED_IN, S.CANCELLED, S.NO_SHOW}),
    S.REMINDER_SENT: frozenset({S.CHECKED_IN, S.CANCELLED, S.NO_SHOW}),
    S.CHECKED_IN: frozenset({S.COMPLETED, S.CANCELLED, S.NO_SHOW}),
    S.COMPLETED: frozenset(),
    S.CANCELLED: frozenset(),
    S.NO_SHOW: frozenset(),
}

TERMINAL: FrozenSet[S] = frozenset({S.COMPLETED, S.CANCELLED, S.NO_SHOW})

# statuses that count as "holding" an appointment for a day
ACTIVE_BOOKING: FrozenSet[S] = frozenset({S.BOOKED, S.CONFIRMED})

PATIENT_CANCELLABLE: FrozenSet[S] = frozenset({S.BOOKED, S.CONFIRMED})

PATIENT_CANCEL_REASON = "Cancelled by patient via portal"


def validate_transition(current: S, target: S) -> None:
    if current in TERMINAL:
        raise InvalidTransition(current, target, "already finalized")
    if target not in TRANSITIONS[current]:
        raise InvalidTransition(current, target)


def _check_booking_scope(scope: Optional[CallerScope], patient_id: int, clinic_id: int) -> None:
    if scope is None or scope.is_admin:
        return
    if scope.role == "patient":
        if scope.patient_id != patient_id:
            raise ScopeError("Patients can only book for themselves")
        return
    scope.ensure_clinic(clinic_id)


def book_slot(
    db: Session,
    slot_id: int,
    patient_id: int,
    clinic_id: int,
    appointment_type: str = "CONSULTATION",
    notes: Optional[str] = None,
    actor_staff_id: Optional[int] = None,
) -> models.Appointment:
    """Lock the slot, flip it unavailable and insert the appointment. Caller owns the transaction."""
    slot = db.query(models.AppointmentSlot).filter(
        models.AppointmentSlot.id == slot_id
    ).with_for_update().first()
    if slot is None:
        raise NotFound("Slot", slot_id)
    if slot.clinic_id != clinic_id:
        raise ValidationError("Slot does not belong to this clinic", field="slot_id")
    if db.get(models.Patient, patient_id) is None:
        raise NotFound("Patient", patient_id)

    slot_service.mark_unavailable(db, slot_id)

    appointment = models.Appointment(
        slot_id=slot_id,
        patient_id=patient_id,
        clinic_id=clinic_id,
        status=S.BOOKED,
        appointment_type=appointment_type or "CONSULTATION",
        notes=notes,
    )
    db.add(appointment)
    db.flush()
    compliance_logger.log_event(
        db,
        action="CREATE",
        resource_type="appointment",
        resource_id=appointment.id,
        clinic_id=clinic_id,
        actor_staff_id=actor_staff_id,
        new_value=S.BOOKED.value,
        details=f"slot={slot_id} patient={patient_id}",
    )
    return appointment


def create(
    db: Session,
    slot_id: int,
    patient_id: int,
    clinic_id: int,
    appointment_type: str = "CONSULTATION",
    notes: Optional[str] = None,
    scope: Optional[CallerScope] = None,
) -> models.Appointment:
    """Book a slot in one serializable unit. Losing a race raises SlotUnavailable."""
    _check_booking_scope(scope, patient_id, clinic_id)
    try:
        with atomic(db):
            appointment = book_slot(
                db, slot_id, patient_id, clinic_id, appointment_type, notes,
                actor_staff_id=scope.staff_id if scope else None,
            )
    except (IntegrityError, SerializationConflict) as exc:
        # a concurrent booking won the slot first
        raise SlotUnavailable(slot_id) from exc

    logger.info("Appointment %s booked on slot %s for patient %s", appointment.id, slot_id, patient_id)
    return appointment


async def _send_best_effort(db: Session, transport, appointment: models.Appointment, kind: models.MessageKind) -> None:
    if transport is None:
        return
    try:
        body = message_templates.render_for_appointment(kind, appointment)
        result = await notify_patient(transport, appointment.patient, body, kind, appointment_id=appointment.id)
        db.commit()
        if not result.success:
            logger.warning("%s for appointment %s not delivered: %s", kind.value, appointment.id, result.error)
    except Exception:
        db.rollback()
        logger.exception("%s for appointment %s failed", kind.value, appointment.id)


async def create_and_confirm(
    db: Session,
    slot_id: int,
    patient_id: int,
    clinic_id: int,
    appointment_type: str = "CONSULTATION",
    notes: Optional[str] = None,
    scope: Optional[CallerScope] = None,
    transport=None,
) -> models.Appointment:
    """Book, then send the booking confirmation. A failed send does not undo the booking."""
    appointment = create(db, slot_id, patient_id, clinic_id, appointment_type, notes, scope)
    await _send_best_effort(db, transport, appointment, models.MessageKind.BOOKING_CONFIRMATION)
    return appointment


def _load_for_update(db: Session, appointment_id: int) -> models.Appointment:
    appointment = db.query(models.Appointment).filter(
        models.Appointment.id == appointment_id
    ).with_for_update().first()
    if appointment is None:
        raise NotFound("Appointment", appointment_id)
    return appointment


def apply_transition(
    db: Session,
    appointment_id: int,
    target: S,
    scope: Optional[CallerScope] = None,
    actor_staff_id: Optional[int] = None,
    reason: Optional[str] = None,
    guard: Optional[Callable[[models.Appointment], None]] = None,
    now: Optional[datetime] = None,
) -> models.Appointment:
    """Validate and apply one status change atomically, releasing the slot on cancel."""
    target = S(target)
    with atomic(db):
        appointment = _load_for_update(db, appointment_id)
        if scope is not None and not scope.is_admin:
            if scope.role == "patient":
                raise ScopeError("Patients may only cancel through the patient endpoint")
            scope.ensure_clinic(appointment.clinic_id)
        if guard is not None:
            guard(appointment)

        current = appointment.status
        validate_transition(current, target)

        appointment.status = target
        moment = now or clock.utcnow()
        if target == S.CANCELLED:
            appointment.cancelled_at = moment
            appointment.cancellation_reason = reason
            slot_service.mark_available(db, appointment.slot_id)
        elif target == S.COMPLETED:
            appointment.completed_at = moment

        compliance_logger.log_status_change(
            db, appointment, current, target,
            actor_staff_id=actor_staff_id if actor_staff_id is not None else (scope.staff_id if scope else None),
            actor_role=scope.role if scope else None,
            reason=reason,
        )

    logger.info("Appointment %s: %s -> %s", appointment_id, current.value, target.value)
    return appointment


async def transition(
    db: Session,
    appointment_id: int,
    target: S,
    scope: Optional[CallerScope] = None,
    actor_staff_id: Optional[int] = None,
    reason: Optional[str] = None,
    transport=None,
    fill_waitlist: bool = True,
    guard: Optional[Callable[[models.Appointment], None]] = None,
    now: Optional[datetime] = None,
) -> models.Appointment:
    """Change an appointment's status.

    Cancellation frees the slot and, once committed, offers it to the
    waitlist. Waitlist and notification failures are logged, never raised.
    """
    appointment = apply_transition(db, appointment_id, target, scope, actor_staff_id, reason, guard, now)

    if appointment.status == S.CANCELLED:
        slot_id, clinic_id = appointment.slot_id, appointment.clinic_id
        await _send_best_effort(db, transport, appointment, models.MessageKind.CANCELLATION)
        if fill_waitlist:
            from . import waitlist_service
            try:
                await waitlist_service.try_fill(db, slot_id, clinic_id, transport=transport, now=now)
            except Exception:
                db.rollback()
                logger.exception("Waitlist fill after cancelling appointment %s failed", appointment_id)

    return appointment


async def cancel_by_patient(
    db: Session,
    appointment_id: int,
    scope: CallerScope,
    transport=None,
    now: Optional[datetime] = None,
) -> models.Appointment:
    if scope.role != "patient" or scope.patient_id is None:
        raise ScopeError("Patient access required")
    moment = now or clock.utcnow()

    def guard(appointment: models.Appointment) -> None:
        if appointment.patient_id != scope.patient_id:
            raise NotFound("Appointment", appointment_id)
        if clock.as_utc(appointment.slot.starts_at) < moment:
            raise AlreadyPast()
        if appointment.status not in PATIENT_CANCELLABLE:
            raise NotCancellable(appointment.status)

    return await transition(
        db, appointment_id, S.CANCELLED,
        reason=PATIENT_CANCEL_REASON, transport=transport, guard=guard, now=moment,
    )


def get_appointment(db: Session, appointment_id: int, scope: CallerScope) -> models.Appointment:
    appointment = db.get(models.Appointment, appointment_id)
    if appointment is None:
        raise NotFound("Appointment", appointment_id)
    if scope.role == "patient":
        if appointment.patient_id != scope.patient_id:
            raise NotFound("Appointment", appointment_id)
    else:
        scope.ensure_clinic(appointment.clinic_id)
    return appointment


def list_appointments(
    db: Session,
    scope: CallerScope,
    clinic_id: Optional[int] = None,
    patient_id: Optional[int] = None,
    status: Optional[S] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    limit: int = 100,
    offset: int = 0,
) -> List[models.Appointment]:
    query = db.query(models.Appointment).join(models.AppointmentSlot).options(
        joinedload(models.Appointment.slot), joinedload(models.Appointment.patient)
    )

    if scope.role == "patient":
        query = query.filter(models.Appointment.patient_id == scope.patient_id)
    else:
        pinned = scope.clinic_filter()
        if pinned is not None:
            if clinic_id is not None and clinic_id != pinned:
                raise ScopeError(details={"clinic_id": clinic_id})
            clinic_id = pinned
        if patient_id is not None:
            query = query.filter(models.Appointment.patient_id == patient_id)

    if clinic_id is not None:
        query = query.filter(models.Appointment.clinic_id == clinic_id)
    if status is not None:
        query = query.filter(models.Appointment.status == S(status))
    if date_from is not None:
        query = query.filter(models.AppointmentSlot.slot_date >= date_from)
    if date_to is not None:
        query = query.filter(models.AppointmentSlot.slot_date <= date_to)

    return query.order_by(
        models.AppointmentSlot.slot_date, models.AppointmentSlot.start_time, models.Appointment.id
    ).offset(offset).limit(limit).all()


def list_todays_appointments(
    db: Session, clinic_id: int, scope: CallerScope, now: Optional[datetime] = None
) -> Dict[str, object]:
    """Today's schedule in clinic-local time with a status summary."""
    scope.ensure_clinic(clinic_id)
    clinic = db.get(models.Clinic, clinic_id)
    if clinic is None:
        raise NotFound("Clinic", clinic_id)

    today = clock.local_today(clinic.utc_offset_minutes, now)
    appointments = list_appointments(db, scope, clinic_id=clinic_id, date_from=today, date_to=today, limit=1000)

    counts = Counter(a.status for a in appointments)
    summary = {
        "total": len(appointments),
        "by_status": {s.value: counts.get(s, 0) for s in S},
        "pending": counts[S.BOOKED] + counts[S.CONFIRMED] + counts[S.REMINDER_SENT],
        "checked_in": counts[S.CHECKED_IN],
        "completed": counts[S.COMPLETED],
        "cancelled": counts[S.CANCELLED],
        "no_show": counts[S.NO_SHOW],
    }
    return {"date": today, "appointments": appointments, "summary": summary}


def has_active_booking_on(db: Session, patient_id: int, clinic_id: int, on_date: date) -> bool:
    return db.query(models.Appointment.id).join(models.AppointmentSlot).filter(
        models.Appointment.patient_id == patient_id,
        models.Appointment.clinic_id == clinic_id,
        models.Appointment.status.in_(ACTIVE_BOOKING),
        models.AppointmentSlot.slot_date == on_date,
    ).first() is not None
