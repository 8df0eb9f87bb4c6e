# clinicbook/routers/waitlist.py
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..models import WaitlistStatus
from ..security import CallerScope, get_caller, require_staff
from ..services import waitlist_service
from ..services.notification_service import NotificationService, get_transport

router = APIRouter(
    prefix="/waitlist",
    tags=["Waitlist"],
    responses={404: {"description": "Not found"}},
)


@router.post("", response_model=schemas.WaitlistResponse, status_code=status.HTTP_201_CREATED)
def add_to_waitlist(
    payload: schemas.WaitlistCreate,
    db: Session = Depends(get_db),
    caller: CallerScope = Depends(get_caller),
):
    return waitlist_service.add_entry(
        db,
        caller,
        patient_id=payload.patient_id,
        clinic_id=payload.clinic_id,
        preferred_date=payload.preferred_date,
        preferred_time_slot=payload.preferred_time_slot,
        staff_id=payload.staff_id,
        appointment_type=payload.appointment_type,
        priority=payload.priority,
        notes=payload.notes,
    )


@router.get("", response_model=schemas.WaitlistListResponse)
def list_waitlist(
    clinic_id: int,
    status_filter: Optional[WaitlistStatus] = Query(default=WaitlistStatus.WAITING, alias="status"),
    on_date: Optional[date] = Query(default=None, alias="date"),
    db: Session = Depends(get_db),
    caller: CallerScope = Depends(require_staff),
):
    entries = waitlist_service.list_entries(db, caller, clinic_id, status=status_filter, on_date=on_date)
    return schemas.WaitlistListResponse(
        entries=[schemas.WaitlistResponse.model_validate(e) for e in entries],
        summary=waitlist_service.summarize(entries),
    )


@router.post("/process", response_model=schemas.WaitlistProcessResponse)
async def process_waitlist(
    clinic_id: int,
    db: Session = Depends(get_db),
    caller: CallerScope = Depends(require_staff),
    transport: NotificationService = Depends(get_transport),
):
    """Try to place every waiting patient of a clinic into an open slot."""
    caller.ensure_clinic(clinic_id)
    stats = await waitlist_service.process_all(db, clinic_id, transport=transport)
    return schemas.WaitlistProcessResponse(
        processed=stats.processed,
        filled=stats.filled,
        errors=stats.errors,
        filled_appointment_ids=stats.filled_appointment_ids,
    )
