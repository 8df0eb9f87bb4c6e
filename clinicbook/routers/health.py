# clinicbook/routers/health.py
import logging
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import crud
from ..config import get_settings
from ..database import get_db
from ..security import CallerScope, get_caller

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/health",
    tags=["Health Checks"],
    responses={404: {"description": "Not found"}},
)


async def get_admin_caller(caller: CallerScope = Depends(get_caller)) -> CallerScope:
    if not caller.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You do not have permission to access this resource.",
        )
    return caller


@router.get("")
def health(db: Session = Depends(get_db)) -> Dict[str, Any]:
    settings = get_settings()
    try:
        db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as e:
        logger.error("Health check database ping failed: %s", e)
        database = "unavailable"
    return {
        "status": "ok" if database == "ok" else "degraded",
        "database": database,
        "sms": "configured" if settings.sms_enabled else "simulated",
        "whatsapp": "configured" if settings.whatsapp_enabled else "simulated",
        "version": settings.app_version,
        "timestamp": datetime.now(timezone.utc),
    }


@router.get("/consistency-check", dependencies=[Depends(get_admin_caller)])
def consistency_check(db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Slots whose availability disagrees with their appointments, plus reminder runs stuck in RUNNING."""
    report = crud.run_consistency_checks(db)
    logger.info(
        "Consistency check: %d orphaned slots, %d double-booked slots, %d stuck runs",
        len(report["booked_slots_without_appointments"]),
        len(report["available_slots_with_appointments"]),
        len(report["stuck_reminder_runs"]),
    )
    return report
