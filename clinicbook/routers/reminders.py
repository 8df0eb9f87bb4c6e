# clinicbook/routers/reminders.py
import dataclasses
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..security import CallerScope, require_staff, verify_cron_secret
from ..services import reminder_service
from ..services.notification_service import NotificationService, get_transport
from ..services.reminder_service import ReminderScheduler

router = APIRouter(
    prefix="/reminders",
    tags=["Reminders"],
    responses={404: {"description": "Not found"}},
)


def _outcome(outcome: reminder_service.RunOutcome) -> schemas.ReminderRunOutcome:
    return schemas.ReminderRunOutcome.model_validate(dataclasses.asdict(outcome))


@router.post("/run", response_model=schemas.ReminderRunOutcome, dependencies=[Depends(verify_cron_secret)])
async def scheduled_run(
    db: Session = Depends(get_db),
    transport: NotificationService = Depends(get_transport),
):
    """Entry point for the external hourly timer."""
    outcome = await ReminderScheduler(db, transport).run()
    return _outcome(outcome)


@router.post("/send-now", response_model=schemas.ReminderRunOutcome)
async def send_now(
    payload: schemas.ReminderSendRequest,
    db: Session = Depends(get_db),
    caller: CallerScope = Depends(require_staff),
    transport: NotificationService = Depends(get_transport),
):
    """Manual run. `force` resends already-sent reminders; `dry_run` renders without sending."""
    outcome = await ReminderScheduler(db, transport).run_manual(
        caller,
        force=payload.force,
        dry_run=payload.dry_run,
        appointment_id=payload.appointment_id,
        kind=payload.kind,
    )
    return _outcome(outcome)


@router.get("/runs", response_model=List[schemas.ReminderRunResponse])
def list_runs(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    job_name: Optional[str] = None,
    db: Session = Depends(get_db),
    caller: CallerScope = Depends(require_staff),
):
    return reminder_service.list_runs(db, limit=limit, offset=offset, job_name=job_name)


@router.get("/runs/{run_id}", response_model=schemas.ReminderRunResponse)
def get_run(run_id: int, db: Session = Depends(get_db), caller: CallerScope = Depends(require_staff)):
    return reminder_service.get_run(db, run_id)
