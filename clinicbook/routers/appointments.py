# clinicbook/routers/appointments.py
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from .. import schemas
from ..config import get_settings
from ..database import get_db
from ..limiter import limiter
from ..models import AppointmentStatus
from ..security import CallerScope, get_caller, require_staff
from ..services import appointment_service
from ..services.notification_service import NotificationService, get_transport

router = APIRouter(
    prefix="/appointments",
    tags=["Appointments"],
    responses={404: {"description": "Not found"}},
)


@router.post(
    "",
    response_model=schemas.AppointmentResponse,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"model": schemas.ErrorResponse}},
)
@limiter.limit(get_settings().booking_rate_limit)
async def create_appointment(
    request: Request,
    payload: schemas.AppointmentCreate,
    db: Session = Depends(get_db),
    caller: CallerScope = Depends(get_caller),
    transport: NotificationService = Depends(get_transport),
):
    """Book a slot. Exactly one of two concurrent requests for the same slot succeeds."""
    return await appointment_service.create_and_confirm(
        db,
        slot_id=payload.slot_id,
        patient_id=payload.patient_id,
        clinic_id=payload.clinic_id,
        appointment_type=payload.appointment_type,
        notes=payload.notes,
        scope=caller,
        transport=transport,
    )


@router.get("", response_model=List[schemas.AppointmentResponse])
def list_appointments(
    clinic_id: Optional[int] = None,
    patient_id: Optional[int] = None,
    status_filter: Optional[AppointmentStatus] = Query(default=None, alias="status"),
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    caller: CallerScope = Depends(get_caller),
):
    return appointment_service.list_appointments(
        db, caller, clinic_id=clinic_id, patient_id=patient_id, status=status_filter,
        date_from=date_from, date_to=date_to, limit=limit, offset=offset,
    )


@router.get("/today", response_model=schemas.TodayResponse)
def todays_appointments(
    clinic_id: int,
    db: Session = Depends(get_db),
    caller: CallerScope = Depends(require_staff),
):
    today = appointment_service.list_todays_appointments(db, clinic_id, caller)
    return schemas.TodayResponse(
        date=today["date"],
        appointments=[schemas.AppointmentResponse.model_validate(a) for a in today["appointments"]],
        summary=schemas.TodaySummary(**today["summary"]),
    )


@router.get("/{appointment_id}", response_model=schemas.AppointmentResponse)
def get_appointment(
    appointment_id: int,
    db: Session = Depends(get_db),
    caller: CallerScope = Depends(get_caller),
):
    return appointment_service.get_appointment(db, appointment_id, caller)


@router.patch("/{appointment_id}/status", response_model=schemas.AppointmentResponse)
async def update_status(
    appointment_id: int,
    payload: schemas.StatusUpdate,
    db: Session = Depends(get_db),
    caller: CallerScope = Depends(require_staff),
    transport: NotificationService = Depends(get_transport),
):
    """Move an appointment through its lifecycle. Cancelling frees the slot and offers it to the waitlist."""
    return await appointment_service.transition(
        db,
        appointment_id,
        payload.status,
        scope=caller,
        actor_staff_id=caller.staff_id,
        reason=payload.reason,
        transport=transport,
    )
