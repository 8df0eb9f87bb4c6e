# clinicbook/routers/slots.py
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from .. import crud, schemas
from ..database import get_db
from ..security import CallerScope, get_caller, require_staff
from ..services import slot_service

router = APIRouter(
    prefix="/slots",
    tags=["Slots"],
    responses={404: {"description": "Not found"}},
)


class GenerateSlotsRequest(BaseModel):
    clinic_id: int
    staff_id: int
    date: date


@router.get("/available", response_model=schemas.AvailableSlotsResponse)
def available_slots(
    clinic_id: int,
    target_date: date = Query(..., alias="date"),
    specialization: Optional[str] = None,
    staff_id: Optional[int] = None,
    db: Session = Depends(get_db),
    caller: CallerScope = Depends(get_caller),
):
    """Open slots for a clinic and date, earliest first."""
    slots = slot_service.find_available(
        db, clinic_id, target_date, specialization=specialization, staff_id=staff_id
    )
    return schemas.AvailableSlotsResponse(
        clinic_id=clinic_id,
        date=target_date,
        count=len(slots),
        slots=[schemas.SlotResponse.model_validate(s) for s in slots],
    )


@router.get("/{slot_id}", response_model=schemas.SlotResponse)
def get_slot(slot_id: int, db: Session = Depends(get_db), caller: CallerScope = Depends(get_caller)):
    return slot_service.get_slot(db, slot_id)


@router.post("/generate", response_model=List[schemas.SlotResponse], status_code=status.HTTP_201_CREATED)
def generate_slots(
    payload: GenerateSlotsRequest,
    db: Session = Depends(get_db),
    caller: CallerScope = Depends(require_staff),
):
    """Materialise a staff member's slots for one day from the clinic's operating hours."""
    caller.ensure_clinic(payload.clinic_id)
    clinic = crud.get_clinic(db, payload.clinic_id)
    staff = crud.get_staff(db, payload.staff_id)
    created = slot_service.generate_slots_for_day(db, clinic, staff, payload.date)
    db.commit()
    return created
