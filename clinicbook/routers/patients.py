# clinicbook/routers/patients.py
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import crud, schemas
from ..database import get_db
from ..security import CallerScope, require_patient, require_staff
from ..services import appointment_service
from ..services.notification_service import NotificationService, get_transport

router = APIRouter(
    prefix="/patients",
    tags=["Patients"],
    responses={404: {"description": "Not found"}},
)

# patient self-service
portal_router = APIRouter(
    prefix="/patient",
    tags=["Patient Portal"],
    responses={404: {"description": "Not found"}},
)


@router.post("/lookup", response_model=schemas.PatientLookupResponse)
def lookup_patient(
    payload: schemas.PatientLookupRequest,
    db: Session = Depends(get_db),
    caller: CallerScope = Depends(require_staff),
):
    """Find a patient by phone number, registering them on first contact."""
    patient, is_new = crud.get_or_create_patient(
        db,
        payload.phone_number,
        name=payload.name,
        language=payload.language,
        preferred_channel=payload.preferred_channel,
    )
    return schemas.PatientLookupResponse(patient=schemas.PatientResponse.model_validate(patient), is_new=is_new)


@portal_router.get("/appointments", response_model=List[schemas.AppointmentResponse])
def my_appointments(db: Session = Depends(get_db), caller: CallerScope = Depends(require_patient)):
    return appointment_service.list_appointments(db, caller)


@portal_router.patch("/appointments/{appointment_id}/cancel", response_model=schemas.AppointmentResponse)
async def cancel_my_appointment(
    appointment_id: int,
    db: Session = Depends(get_db),
    caller: CallerScope = Depends(require_patient),
    transport: NotificationService = Depends(get_transport),
):
    return await appointment_service.cancel_by_patient(db, appointment_id, caller, transport=transport)
